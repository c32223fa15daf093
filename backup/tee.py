"""
Fan-out of one async byte stream to several independent consumers.

A single pump task reads the source once and offers every chunk to each
branch. Each branch buffers at most `max_pending` chunks; a slow branch
holds the pump back (bounded coupling) but a branch whose consumer has
gone away is detached and never blocks the others again.
"""

import asyncio
import logging
from typing import AsyncIterator, List, Optional

logger = logging.getLogger(__name__)

_EOF = object()


class TeeBranch:
    """One consumer's ordered view of the tee'd stream"""

    def __init__(self, name: str, max_pending: int):
        self.name = name
        self.detached = False
        self.bytes_delivered = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._credits = asyncio.Semaphore(max_pending)

    async def _offer(self, chunk: bytes) -> None:
        if self.detached:
            return
        await self._credits.acquire()
        # Consumer may have left while we were waiting for room
        if self.detached:
            return
        self._queue.put_nowait(chunk)

    def _finish(self, error: Optional[BaseException] = None) -> None:
        self._queue.put_nowait(error if error is not None else _EOF)

    def detach(self) -> None:
        """Stop receiving; wakes the pump if it is waiting on this branch"""
        if not self.detached:
            self.detached = True
            self._credits.release()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            while True:
                item = await self._queue.get()
                if item is _EOF:
                    return
                if isinstance(item, BaseException):
                    raise item
                self._credits.release()
                self.bytes_delivered += len(item)
                yield item
        finally:
            self.detach()


class StreamTee:
    """
    Duplicate a byte stream into several sinks without re-reading the source.

    Usage:
        tee = StreamTee(source)
        a = tee.branch("response")
        b = tee.branch("archive")
        pump = asyncio.create_task(tee.pump())
        ... consume `a` and `b` concurrently ...
    """

    def __init__(self, source: AsyncIterator[bytes], max_pending: int = 16):
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self._source = source
        self._max_pending = max_pending
        self._branches: List[TeeBranch] = []
        self._started = False
        self.bytes_read = 0

    def branch(self, name: str) -> TeeBranch:
        if self._started:
            raise RuntimeError("Cannot add a branch after the tee has started")
        new_branch = TeeBranch(name, self._max_pending)
        self._branches.append(new_branch)
        return new_branch

    async def pump(self) -> int:
        """Read the source to the end, broadcasting each chunk. Returns bytes read."""
        self._started = True
        error: Optional[BaseException] = None
        try:
            async for chunk in self._source:
                if not chunk:
                    continue
                self.bytes_read += len(chunk)
                live = [b for b in self._branches if not b.detached]
                if not live:
                    logger.debug("All tee branches detached, stopping early")
                    break
                for target in live:
                    await target._offer(chunk)
        except Exception as e:
            error = e
            raise
        finally:
            for target in self._branches:
                target._finish(error)
        return self.bytes_read
