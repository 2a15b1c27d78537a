"""
Stream Splicing
Copy bytes both ways between two stream pairs until either side closes.
"""
import asyncio
import logging

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


async def _copy(reader, writer, chunk_size: int) -> int:
    total = 0
    try:
        while True:
            data = await reader.read(chunk_size)
            if not data:
                break
            writer.write(data)
            await writer.drain()
            total += len(data)
    except (ConnectionError, OSError, EOFError) as e:
        logger.debug(f"Stream copy ended: {e}")
    return total


def _close(writer):
    try:
        writer.close()
    except (ConnectionError, OSError) as e:
        logger.debug(f"Writer close failed: {e}")


async def pipe_streams(a_reader, a_writer, b_reader, b_writer, chunk_size: int = CHUNK_SIZE):
    """
    Splice stream A to stream B and back.

    Works with any reader exposing `read(n)` and writer exposing
    `write/drain/close` (asyncio streams and asyncssh channels alike).
    When one direction finishes the other is cancelled and both writers are
    closed, so neither side is left half-open.

    Returns (bytes A->B, bytes B->A); a cancelled direction reports 0.
    """
    forward = asyncio.ensure_future(_copy(a_reader, b_writer, chunk_size))
    backward = asyncio.ensure_future(_copy(b_reader, a_writer, chunk_size))

    try:
        await asyncio.wait([forward, backward], return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (forward, backward):
            if not task.done():
                task.cancel()
        await asyncio.gather(forward, backward, return_exceptions=True)
        _close(a_writer)
        _close(b_writer)

    sent = forward.result() if not forward.cancelled() else 0
    received = backward.result() if not backward.cancelled() else 0
    return sent, received
