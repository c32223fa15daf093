"""
SQL Dump Streaming
Runs pg_dump and tees its output to the HTTP caller and a local archive.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import AsyncIterator, BinaryIO, List, Optional, Set, Tuple

from config import UtilityConfig
from backup.history import prune_archives
from backup.pg_tools import pg_dump_command
from backup.process import forward_lines, read_chunks, spawn_background, terminate_process
from backup.tee import StreamTee, TeeBranch

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "backup_"
ARCHIVE_SUFFIX = ".sql"

# Archives of dumps still running in this process; retention skips them
_open_archives: Set[Path] = set()


def archive_filename(epoch_ms: int) -> str:
    return f"{ARCHIVE_PREFIX}{epoch_ms}{ARCHIVE_SUFFIX}"


def open_new_archive(backup_dir: Path, epoch_ms: Optional[int] = None) -> Tuple[Path, BinaryIO]:
    """
    Create a fresh archive file named after the current time.

    The file is opened in exclusive mode; if two dumps land on the same
    millisecond the later one moves to the next free stamp.
    """
    stamp = epoch_ms if epoch_ms is not None else int(time.time() * 1000)
    while True:
        path = backup_dir / archive_filename(stamp)
        try:
            return path, open(path, "xb")
        except FileExistsError:
            stamp += 1


class SqlDumpStream:
    """
    One pg_dump run.

    `start()` creates the archive and launches the tool; iterating
    `stream()` yields the dump bytes while the same bytes are written to
    the archive. If the consumer stops early (client disconnect) pg_dump
    is terminated and whatever was received stays in the archive.
    """

    def __init__(self, config: UtilityConfig, pg_dump: str):
        self.config = config
        self.pg_dump = pg_dump
        self.archive_path: Optional[Path] = None
        self.returncode: Optional[int] = None
        self.bytes_streamed = 0
        self.timed_out = False
        self.cancelled = False
        self._archive: Optional[BinaryIO] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._watchdog: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    @property
    def filename(self) -> str:
        return self.archive_path.name if self.archive_path else ""

    async def start(self) -> None:
        self.archive_path, self._archive = open_new_archive(self.config.backup_dir)
        _open_archives.add(self.archive_path)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *pg_dump_command(self.pg_dump, self.config.database_url),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError:
            self._close()
            raise
        logger.info(f"pg_dump started (pid {self._process.pid}) -> {self.archive_path}")

        if self.config.dump_timeout:
            self._watchdog = asyncio.create_task(self._enforce_timeout(self.config.dump_timeout))

    async def _enforce_timeout(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self._process.returncode is None:
            self.timed_out = True
            logger.error(f"pg_dump still running after {timeout}s, terminating")
            await terminate_process(self._process)

    async def _write_archive(self, branch: TeeBranch) -> None:
        async for chunk in branch:
            await asyncio.to_thread(self._archive.write, chunk)
        await asyncio.to_thread(self._archive.flush)

    async def stream(self) -> AsyncIterator[bytes]:
        if self._process is None:
            raise RuntimeError("SqlDumpStream.start() must be awaited first")

        process = self._process
        tee = StreamTee(read_chunks(process.stdout, self.config.stream_chunk_size))
        response = tee.branch("response")
        archive = tee.branch("archive")
        workers: List[asyncio.Task] = [
            asyncio.create_task(tee.pump()),
            asyncio.create_task(self._write_archive(archive)),
            asyncio.create_task(forward_lines(process.stderr, logging.ERROR, "pg_dump error")),
        ]

        completed = False
        try:
            async for chunk in response:
                self.bytes_streamed += len(chunk)
                yield chunk
            await self._finish(workers)
            completed = True
        finally:
            if not completed:
                self.cancelled = True
                response.detach()
                logger.warning(
                    f"Dump stream for {self.filename} ended early after "
                    f"{self.bytes_streamed} bytes, stopping pg_dump"
                )
                # Cleanup must outlive the cancelled request task
                spawn_background(self._abort(workers))

    async def _finish(self, workers: List[asyncio.Task]) -> None:
        await asyncio.gather(*workers)
        self.returncode = await self._process.wait()
        self._close()

        if self.returncode != 0:
            logger.error(f"pg_dump exited with code {self.returncode}")
        else:
            logger.info(f"[OK] Backup created: {self.archive_path} ({self.bytes_streamed} bytes)")

        if self.config.backup_keep > 0:
            try:
                await asyncio.to_thread(
                    prune_archives,
                    self.config.backup_dir,
                    self.config.backup_keep,
                    _open_archives | {self.archive_path},
                )
            except OSError as e:
                logger.warning(f"Failed to prune old backups: {e}")

    async def _abort(self, workers: List[asyncio.Task]) -> None:
        try:
            await terminate_process(self._process)
            # pump and writer finish on their own once stdout hits EOF
            results = await asyncio.gather(*workers, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.warning(f"Dump worker failed during abort: {result}")
            self.returncode = self._process.returncode
        finally:
            self._close()

    def _close(self) -> None:
        if self._watchdog is not None and not self._watchdog.done():
            self._watchdog.cancel()
        if self._archive is not None and not self._archive.closed:
            self._archive.close()
        _open_archives.discard(self.archive_path)
        self._closed.set()

    async def wait_closed(self) -> None:
        """Block until the archive file has been closed"""
        await self._closed.wait()
