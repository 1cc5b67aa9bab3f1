"""Bounded-parallelism task runner shared by file and part uploads."""
import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_bounded(
    tasks: Sequence[Callable[[], Awaitable[T]]],
    limit: int,
    should_stop: Optional[Callable[[], bool]] = None,
) -> List[Optional[T]]:
    """
    Run zero-argument coroutine factories with at most ``limit`` in flight.

    Each worker claims the head of the queue, awaits it, then claims the
    next one. Returns results in queue order once every started task has
    settled; tasks never started (after a stop) leave ``None``.

    Failure policy belongs to the tasks: an exception escaping a task stops
    further dispatch and is re-raised after in-flight tasks settle
    (fail-fast). Tasks that catch their own errors get continue-on-error.
    ``should_stop`` is checked before each claim and stops dispatch
    without raising.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")

    queue = deque(enumerate(tasks))
    results: List[Optional[T]] = [None] * len(queue)
    errors: List[BaseException] = []

    async def worker() -> None:
        while queue and not errors:
            if should_stop is not None and should_stop():
                return
            index, task = queue.popleft()
            try:
                results[index] = await task()
            except Exception as exc:
                errors.append(exc)
                return

    workers = min(limit, len(queue))
    if workers:
        await asyncio.gather(*(worker() for _ in range(workers)))

    if errors:
        if queue:
            logger.debug("Stopped dispatch with %d task(s) not started", len(queue))
        raise errors[0]
    return results
