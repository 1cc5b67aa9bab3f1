"""Single file upload: ask for instructions, transfer bytes, confirm."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..errors import UploadError
from ..models import UploadTask
from ..services.transfer import TransferService
from ..services.worker_client import WorkerClient
from .multipart import order_presigned_parts, upload_multipart

logger = logging.getLogger(__name__)

BytesCallback = Callable[[UploadTask, int], Awaitable[None]]


class FileUploader:
    """
    Uploads one task end to end.

    The coordinating service decides between simple and multipart
    transfer; this class only follows ``upload_type``.
    """

    def __init__(self, worker: WorkerClient, transfer: TransferService, parallel_parts: int = 3):
        self._worker = worker
        self._transfer = transfer
        self._parallel_parts = parallel_parts

    async def upload(
        self,
        batch_id: str,
        task: UploadTask,
        on_bytes: Optional[BytesCallback] = None,
    ) -> None:
        """Raise on failure; the caller records the outcome on the task."""
        instructions = await self._worker.start_file_upload(
            batch_id,
            file_name=task.file_name,
            file_size=task.size,
            logical_path=task.logical_path,
            content_type=task.content_type,
            processing_config=task.processing.to_dict(),
            cid=task.cid,
        )
        task.storage_key = instructions.storage_key
        task.upload_type = instructions.upload_type

        data = await asyncio.to_thread(task.read_bytes)

        if instructions.is_multipart:
            if not instructions.upload_id:
                raise UploadError(
                    f"Multipart upload for {task.file_name} has no upload_id",
                    task.file_name,
                    retryable=False,
                )
            task.upload_id = instructions.upload_id
            urls = order_presigned_parts(
                instructions.presigned_urls,
                task.file_name,
                len(data),
                instructions.part_size,
            )
            logger.info("Uploading %s as multipart (%d parts)", task.logical_path, len(urls))

            async def part_done(size: int) -> None:
                task.bytes_uploaded += size
                if on_bytes:
                    await on_bytes(task, size)

            task.completed_parts = await upload_multipart(
                self._transfer,
                data,
                urls,
                task.file_name,
                concurrency=self._parallel_parts,
                on_part_complete=part_done,
            )
            await self._worker.complete_file_upload(
                batch_id,
                instructions.storage_key,
                upload_id=instructions.upload_id,
                parts=task.completed_parts,
            )
            return

        if not instructions.presigned_url:
            raise UploadError(
                f"Simple upload for {task.file_name} has no presigned_url",
                task.file_name,
                retryable=False,
            )
        logger.info("Uploading %s (%d bytes)", task.logical_path, len(data))
        await self._transfer.upload_simple(
            data,
            instructions.presigned_url,
            task.file_name,
            task.content_type,
        )
        task.bytes_uploaded = len(data)
        if on_bytes:
            await on_bytes(task, len(data))
        await self._worker.complete_file_upload(batch_id, instructions.storage_key)
