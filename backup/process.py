"""
Helpers for driving external tools from the event loop.
"""

import asyncio
import logging
from typing import AsyncIterator, Set

logger = logging.getLogger(__name__)

# Strong references to fire-and-forget cleanup tasks
_background_tasks: Set[asyncio.Task] = set()


async def read_chunks(stream: asyncio.StreamReader, chunk_size: int) -> AsyncIterator[bytes]:
    """Yield raw chunks from a subprocess pipe until EOF"""
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            return
        yield chunk


async def forward_lines(stream: asyncio.StreamReader, level: int, prefix: str) -> None:
    """Relay each line a tool writes to the operator log"""
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # Line longer than the reader limit; the oversized part is dropped
            logger.log(level, f"{prefix}: <line too long, truncated>")
            continue
        if not line:
            return
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            logger.log(level, f"{prefix}: {text}")


async def terminate_process(process: asyncio.subprocess.Process, grace: float = 5.0) -> None:
    """SIGTERM, then SIGKILL if the tool ignores it for `grace` seconds"""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} ignored SIGTERM, killing")
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def spawn_background(coro) -> asyncio.Task:
    """Run a coroutine detached from the current request's cancellation scope"""
    task = asyncio.get_running_loop().create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
