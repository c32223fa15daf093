"""
SQL Restore Utility
Replays an uploaded SQL script into the target database with psql.
"""

import asyncio
import logging
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from config import UtilityConfig
from backup.pg_tools import find_psql, psql_restore_command
from backup.process import forward_lines, terminate_process

logger = logging.getLogger(__name__)

_SAFE_SUFFIX = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


@dataclass
class RestoreResult:
    returncode: Optional[int]
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def save_upload(upload_dir: Path, source: BinaryIO, original_name: Optional[str] = None) -> Path:
    """Copy an uploaded file into the upload directory under a unique name"""
    suffix = Path(original_name or "").suffix
    if not _SAFE_SUFFIX.match(suffix):
        suffix = ""
    path = upload_dir / f"{uuid.uuid4().hex}{suffix}"
    try:
        with open(path, "wb") as buffer:
            shutil.copyfileobj(source, buffer)
    except Exception:
        path.unlink(missing_ok=True)
        raise
    return path


def discard_upload(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


async def restore_sql_file(config: UtilityConfig, script_path: Path) -> RestoreResult:
    """
    Run psql against `script_path` and remove the file afterwards.

    The upload is deleted whatever the outcome. psql output goes to the
    operator log only.

    Returns:
        RestoreResult; `ok` is True only for a zero exit within the timeout
    """
    try:
        psql = find_psql(config.psql_path)
        if psql is None:
            logger.error("[ERROR] psql not found in PATH or common PostgreSQL installation directories")
            return RestoreResult(returncode=None)

        try:
            process = await asyncio.create_subprocess_exec(
                *psql_restore_command(psql, config.database_url, script_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"[ERROR] Could not start psql: {e}")
            return RestoreResult(returncode=None)

        logger.info(f"psql started (pid {process.pid}) replaying {script_path.name}")
        relays = asyncio.gather(
            forward_lines(process.stdout, logging.INFO, "psql"),
            forward_lines(process.stderr, logging.ERROR, "psql error"),
        )

        timed_out = False
        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=config.restore_timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.error(f"psql still running after {config.restore_timeout}s, terminating")
            await terminate_process(process)
            returncode = process.returncode
        await relays

        if returncode != 0:
            logger.error(f"psql exited with code {returncode}")
        else:
            logger.info(f"[OK] Restore completed from {script_path.name}")
        return RestoreResult(returncode=returncode, timed_out=timed_out)
    finally:
        discard_upload(script_path)
