"""
Chunked processing on the event loop

Splits a list into fixed size chunks and runs a synchronous processor over
them with bounded concurrency, yielding to the loop between chunks so job
polling and cancellation stay responsive during large transforms.
"""

import asyncio
import logging
from typing import Any, Callable, List, Sequence, TypeVar

from error_handlers import AbortedError, TransformError

# Configure logging
logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def split_chunks(items: Sequence[T], chunk_size: int) -> List[Sequence[T]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    return [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]


async def process_in_chunks(
    items: Sequence[T],
    processor: Callable[[Sequence[T]], List[R]],
    chunk_size: int = 500,
    concurrency: int = 4,
    token: Any = None,
) -> List[R]:
    """
    Run processor over items chunk by chunk, at most `concurrency` at once.

    Output order matches input order. A cancelled token raises AbortedError;
    any other failure is raised as TransformError.

    Args:
        items: Records to process
        processor: Synchronous function mapping a chunk to its results
        chunk_size: Records per chunk
        concurrency: Maximum chunks in flight
        token: Optional cancellation token exposing raise_if_cancelled()

    Returns:
        Flattened results of every chunk
    """
    chunks = split_chunks(items, chunk_size)
    if not chunks:
        return []

    semaphore = asyncio.Semaphore(max(1, concurrency))
    logger.debug(f"Processing {len(items)} items in {len(chunks)} chunks (concurrency={concurrency})")

    async def run_chunk(index: int, chunk: Sequence[T]) -> List[R]:
        async with semaphore:
            if token is not None:
                token.raise_if_cancelled()
            try:
                result = processor(chunk)
            except AbortedError:
                raise
            except Exception as e:
                raise TransformError(str(e), chunk_index=index) from e
            # Let other tasks (progress polls, cancel requests) run
            await asyncio.sleep(0)
            return result

    tasks = [asyncio.ensure_future(run_chunk(i, chunk)) for i, chunk in enumerate(chunks)]
    try:
        results = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        raise

    flattened: List[R] = []
    for chunk_result in results:
        flattened.extend(chunk_result)
    return flattened
