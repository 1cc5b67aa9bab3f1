"""Multipart upload: split, transfer parts concurrently, collect ETags."""
import logging
import math
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from ..errors import UploadError
from ..models import PartInfo
from ..services.transfer import TransferService
from ..services.worker_client import PresignedPart
from .parallel import run_bounded

logger = logging.getLogger(__name__)


def plan_parts(total_size: int, part_count: int) -> List[Tuple[int, int, int]]:
    """
    Partition ``total_size`` bytes into ``part_count`` contiguous ranges.

    Chunk size is ``ceil(total_size / part_count)``, the same scheme the
    coordinating service used to decide how many URLs to issue; only the
    last chunk may be shorter. Returns ``(part_number, start, end)``.
    """
    if part_count < 1:
        raise ValueError("part_count must be >= 1")
    chunk = math.ceil(total_size / part_count)
    plan = []
    for index in range(part_count):
        start = min(index * chunk, total_size)
        end = min(start + chunk, total_size)
        plan.append((index + 1, start, end))
    return plan


def order_presigned_parts(
    parts: Sequence[PresignedPart],
    file_name: str,
    file_size: int,
    part_size: Optional[int] = None,
) -> List[str]:
    """
    Return part URLs ordered by part number, after checking the partition.

    Part numbers must be exactly 1..N and, when ``part_size`` is given,
    N must equal ``ceil(file_size / part_size)``.
    """
    if not parts:
        raise UploadError(f"No presigned part URLs provided for {file_name}", file_name, retryable=False)

    ordered = sorted(parts, key=lambda p: p.part_number)
    numbers = [p.part_number for p in ordered]
    if numbers != list(range(1, len(ordered) + 1)):
        raise UploadError(
            f"Presigned part numbers for {file_name} are not contiguous from 1: {numbers}",
            file_name,
            retryable=False,
        )

    if part_size:
        expected = math.ceil(file_size / part_size)
        if expected != len(ordered):
            raise UploadError(
                f"{file_name}: {len(ordered)} part URLs do not match size {file_size} "
                f"with part size {part_size} (expected {expected})",
                file_name,
                retryable=False,
            )

    return [p.url for p in ordered]


async def upload_multipart(
    transfer: TransferService,
    data: bytes,
    presigned_urls: Sequence[str],
    file_name: str,
    concurrency: int = 3,
    on_part_complete: Optional[Callable[[int], Awaitable[None]]] = None,
) -> List[PartInfo]:
    """
    Upload ``data`` as ``len(presigned_urls)`` parts.

    The first part that exhausts its retries fails the whole upload; parts
    already stored are left for the coordinating service to clean up.
    The returned list is sorted by part number regardless of completion order.
    """
    plan = plan_parts(len(data), len(presigned_urls))
    completed: List[PartInfo] = []

    def make_task(part_number: int, start: int, end: int, url: str):
        async def upload_one() -> None:
            etag = await transfer.upload_part(data[start:end], url, file_name, part_number)
            completed.append(PartInfo(part_number=part_number, etag=etag))
            if on_part_complete:
                await on_part_complete(end - start)
        return upload_one

    queue = [
        make_task(part_number, start, end, presigned_urls[part_number - 1])
        for part_number, start, end in plan
    ]

    logger.debug("Uploading %s in %d parts (%d in parallel)", file_name, len(queue), concurrency)
    await run_bounded(queue, concurrency)

    return sorted(completed, key=lambda p: p.part_number)
