"""Split large upserts into bounded batches."""

from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

import structlog

from ferresdb.schemas import FailedPoint, Point, UpsertResult

logger = structlog.get_logger()

T = TypeVar("T")

# Largest number of points the server accepts in one upsert call
MAX_BATCH_SIZE = 1000

WriteBatch = Callable[[list[Point]], Awaitable[UpsertResult]]


def plan_batches(items: Sequence[T], max_size: int = MAX_BATCH_SIZE) -> list[list[T]]:
    """Partition items into contiguous chunks of at most ``max_size``.

    Args:
        items: Items to partition, in order.
        max_size: Maximum chunk length.

    Returns:
        Chunks in original order. Empty input yields no chunks.
    """
    if max_size < 1:
        raise ValueError("max_size must be at least 1")
    return [list(items[i : i + max_size]) for i in range(0, len(items), max_size)]


async def upsert_in_batches(
    write_batch: WriteBatch,
    points: Sequence[Point],
    *,
    max_size: int = MAX_BATCH_SIZE,
) -> UpsertResult:
    """Upsert points through ``write_batch``, one bounded batch at a time.

    Batches run sequentially: batch N+1 starts only after batch N returned.
    An exception from any batch propagates immediately and the remaining
    batches are skipped. Batches already written are not rolled back.

    Args:
        write_batch: Coroutine function writing a single batch.
        points: Points to upsert.
        max_size: Maximum points per batch.

    Returns:
        Aggregated result: ``upserted`` summed, ``failed`` concatenated in
        batch order.
    """
    if not points:
        return UpsertResult(upserted=0, failed=[])

    if len(points) <= max_size:
        return await write_batch(list(points))

    batches = plan_batches(points, max_size)
    upserted = 0
    failed: list[FailedPoint] = []

    for index, batch in enumerate(batches):
        result = await write_batch(batch)
        upserted += result.upserted
        failed.extend(result.failed)
        logger.debug(
            "ferresdb_batch_upserted",
            batch=index + 1,
            batches=len(batches),
            batch_size=len(batch),
            upserted=result.upserted,
            failed=len(result.failed),
        )

    logger.info(
        "ferresdb_batch_upsert_complete",
        points=len(points),
        batches=len(batches),
        upserted=upserted,
        failed=len(failed),
    )
    return UpsertResult(upserted=upserted, failed=failed)
