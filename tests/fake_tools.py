"""
Stand-ins for the PostgreSQL client tools used by the tests
"""

import stat
import sys
import textwrap
from pathlib import Path


DUMP_PREAMBLE = b"--\n-- PostgreSQL database dump\n--\n\n"

FAKE_PG_DUMP = r'''
import os
import sys
import time

assert sys.argv[1] == "--dbname", sys.argv
out = sys.stdout.buffer
out.write(b"--\n-- PostgreSQL database dump\n--\n\n")
out.write(b"CREATE TABLE public.items (id integer, name text);\n")
out.write(b"COPY public.items (id, name) FROM stdin;\n1\tpallet\n\\.\n")
padding = int(os.environ.get("FAKE_DUMP_PADDING", "20000"))
for i in range(padding):
    out.write(b"-- padding line %d\n" % i)
out.flush()
message = os.environ.get("FAKE_DUMP_STDERR")
if message:
    sys.stderr.write(message + "\n")
    sys.stderr.flush()
delay = float(os.environ.get("FAKE_DUMP_SLEEP", "0"))
if delay:
    time.sleep(delay)
sys.exit(int(os.environ.get("FAKE_DUMP_EXIT", "0")))
'''

FAKE_PSQL = r'''
import os
import sys
import time

args = sys.argv[1:]
script = args[args.index("-f") + 1]
marker = os.environ.get("FAKE_PSQL_MARKER")
if marker:
    with open(marker, "a") as fh:
        fh.write(" ".join(args) + "\n")

with open(script, "rb") as fh:
    sql = fh.read()

print("SET")
sys.stdout.flush()
if b"pg_sleep" in sql:
    time.sleep(30)
if b"SELEC " in sql or b"INVALID" in sql:
    sys.stderr.write('psql:%s:1: ERROR:  syntax error at or near "SELEC"\n' % script)
    sys.exit(3)
print("CREATE TABLE")
sys.exit(0)
'''


def write_fake_tool(directory: Path, name: str, body: str) -> str:
    """Write an executable Python script standing in for a PostgreSQL client tool"""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)
