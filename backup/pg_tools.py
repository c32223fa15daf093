"""
PostgreSQL client tool discovery and command lines.
"""

import glob
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


def _candidate_paths(tool: str) -> List[str]:
    """Common install locations, newest server version first"""
    if os.name == 'nt':  # Windows
        program_files = os.environ.get('ProgramFiles', 'C:\\Program Files')
        postgres_base = Path(program_files) / 'PostgreSQL'
        if not postgres_base.exists():
            return []
        versions = sorted(
            [d for d in postgres_base.iterdir() if d.is_dir()],
            key=lambda x: x.name,
            reverse=True
        )
        return [str(v / 'bin' / f'{tool}.exe') for v in versions]

    candidates = [
        f'/usr/bin/{tool}',
        f'/usr/local/bin/{tool}',
        f'/opt/homebrew/bin/{tool}',  # macOS Homebrew ARM
        f'/usr/local/opt/postgresql/bin/{tool}',  # macOS Homebrew Intel
    ]
    # Debian/Ubuntu keep versioned binaries off PATH
    candidates.extend(sorted(glob.glob(f'/usr/lib/postgresql/*/bin/{tool}'), reverse=True))
    return candidates


def find_pg_executable(tool: str, override: Optional[str] = None) -> Optional[str]:
    """
    Find a PostgreSQL client executable.

    Checks the configured override first, then PATH, then common
    PostgreSQL installation directories.

    Returns:
        Path to the executable if found, None otherwise
    """
    if override:
        resolved = shutil.which(override)
        if resolved:
            return resolved
        logger.warning(f"Configured {tool} path {override} is not executable")
        return None

    on_path = shutil.which(tool)
    if on_path:
        return on_path

    for path in _candidate_paths(tool):
        if Path(path).exists():
            logger.info(f"Found {tool} at {path}")
            return path

    return None


def find_pg_dump(override: Optional[str] = None) -> Optional[str]:
    return find_pg_executable("pg_dump", override)


def find_psql(override: Optional[str] = None) -> Optional[str]:
    return find_pg_executable("psql", override)


def pg_dump_command(pg_dump: str, database_url: str) -> List[str]:
    """Plain-format dump of the whole database to stdout"""
    return [pg_dump, "--dbname", database_url]


def psql_restore_command(psql: str, database_url: str, script_path) -> List[str]:
    """Replay a SQL script, stopping at the first failing statement"""
    return [
        psql,
        "--dbname", database_url,
        "-v", "ON_ERROR_STOP=1",
        "-f", str(script_path),
    ]
