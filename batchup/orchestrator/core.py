"""Core orchestrator - drives one batch from scan to finalize."""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..errors import BatchCancelledError, BatchFailedError, ValidationError
from ..models import (
    BatchContext,
    BatchPhase,
    BatchResult,
    FileFailure,
    ProgressSnapshot,
    ScanResult,
    TaskStatus,
    UploadConfig,
    UploadTask,
    utcnow,
)
from ..services.scanner import FileScanner, Source
from ..services.transfer import TransferService
from ..services.worker_client import WorkerClient
from ..utils.validation import (
    format_bytes,
    validate_batch_size,
    validate_parent_pi,
    validate_uploader,
    validate_worker_url,
)
from .file_uploader import FileUploader
from .parallel import run_bounded
from .process import BatchUploadProcess

logger = logging.getLogger(__name__)

DRY_RUN_BATCH_ID = "dry-run"


class BatchUploader:
    """
    Uploads batches of files through the coordinating service.

    Collaborators are injected where given and created (and closed) here
    otherwise, so tests can pass an ``httpx.MockTransport`` and a fake sleep.

    Usage:
        async with BatchUploader(config) as uploader:
            result = await uploader.upload("./scans")

        # Or observe the run
        async with BatchUploader(config) as uploader:
            process = uploader.upload_batch("./scans")
            process.on_progress(lambda snap: print(f"{snap.percent_complete}%"))
            result = await process.wait()
    """

    def __init__(
        self,
        config: UploadConfig,
        worker_client: Optional[WorkerClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        validate_worker_url(config.worker_url)
        validate_uploader(config.uploader)
        validate_parent_pi(config.parent_pi)
        if config.parallel_uploads < 1 or config.parallel_parts < 1:
            raise ValidationError("Parallelism must be at least 1", "parallel_uploads")

        self._config = config
        self._transport = transport
        self._sleep = sleep
        self._worker = worker_client
        self._http = http_client
        self._owns_worker = worker_client is None
        self._owns_http = http_client is None

        self._scanner = FileScanner(follow_symlinks=config.follow_symlinks)
        self._files: Optional[FileUploader] = None

    async def __aenter__(self):
        if self._worker is None:
            self._worker = WorkerClient(
                self._config.worker_url,
                timeout=self._config.timeout,
                retry=self._config.retry,
                transport=self._transport,
                sleep=self._sleep,
            )
        if self._owns_worker:
            await self._worker.__aenter__()

        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout, write=None),
                transport=self._transport,
            )

        transfer = TransferService(self._http, retry=self._config.retry, sleep=self._sleep)
        self._files = FileUploader(self._worker, transfer, self._config.parallel_parts)
        return self

    async def __aexit__(self, *args):
        if self._owns_http and self._http:
            await self._http.aclose()
            self._http = None
        if self._owns_worker and self._worker:
            await self._worker.__aexit__(*args)
            self._worker = None

    @property
    def config(self) -> UploadConfig:
        return self._config

    def upload_batch(self, source: Source, dry_run: bool = False) -> BatchUploadProcess:
        """
        Prepare an upload of ``source`` (a directory or an iterable of
        ``InMemoryFile``) and return its process handle without starting it.
        """
        return BatchUploadProcess(self, source, dry_run)

    async def upload(
        self,
        source: Source,
        dry_run: bool = False,
        on_progress: Optional[Callable[[ProgressSnapshot], Any]] = None,
    ) -> BatchResult:
        """Upload ``source`` and return the result. Raises when the batch fails."""
        process = self.upload_batch(source, dry_run)
        if on_progress:
            process.on_progress(on_progress)
        return await process.wait()

    async def _run(self, source: Source, dry_run: bool, process: BatchUploadProcess) -> BatchResult:
        if self._files is None or self._worker is None:
            raise RuntimeError("BatchUploader not initialized. Use 'async with' context.")

        started = time.monotonic()
        phase = BatchPhase.SCANNING
        await process.emit("phase", phase)
        try:
            scan = await self._scan(source)

            if dry_run:
                logger.info(
                    "Dry run: %d files (%s) would be uploaded",
                    scan.total_files, format_bytes(scan.total_size),
                )
                phase = BatchPhase.COMPLETE
                await process.emit("phase", phase)
                return BatchResult(
                    batch_id=DRY_RUN_BATCH_ID,
                    files_total=scan.total_files,
                    files_uploaded=0,
                    bytes_uploaded=0,
                    total_bytes=scan.total_size,
                    duration=time.monotonic() - started,
                    dry_run=True,
                )

            if process.should_stop():
                raise BatchCancelledError("Batch upload cancelled before initialization")

            init = await self._worker.init_batch(
                uploader=self._config.uploader,
                root_path=self._config.root_path,
                parent_pi=self._config.parent_pi,
                file_count=scan.total_files,
                total_size=scan.total_size,
                metadata=self._config.metadata,
            )
            context = BatchContext.create(init.batch_id, init.session_id, scan.tasks)
            process.batch_id = context.batch_id
            logger.info(
                "Batch %s initialized: %d files, %s",
                context.batch_id, len(context.tasks), format_bytes(context.total_size),
            )
            phase = BatchPhase.INITIALIZED
            await process.emit("phase", phase)

            phase = BatchPhase.UPLOADING
            await process.emit("phase", phase)
            await process.emit("progress", _snapshot(context, phase))
            await self._upload_tasks(context, process)

            if process.should_stop():
                raise BatchCancelledError(f"Batch {context.batch_id} cancelled during upload")

            failures = [FileFailure(t.logical_path, t.error or "Unknown error") for t in context.failed_tasks]
            if failures and len(failures) == len(context.tasks):
                raise BatchFailedError(
                    f"All {len(failures)} files failed to upload",
                    failures,
                    context.batch_id,
                )
            if failures:
                logger.warning(
                    "%d of %d files failed to upload:\n%s",
                    len(failures), len(context.tasks),
                    "\n".join(f"  - {f.logical_path}: {f.error}" for f in failures),
                )

            phase = BatchPhase.FINALIZING
            await process.emit("phase", phase)
            finalized = await self._worker.finalize_batch(context.batch_id)
            context.finalized_at = utcnow()
            if finalized.files_uploaded != len(context.completed_tasks):
                logger.info(
                    "Service will process %d files (%d uploaded locally)",
                    finalized.files_uploaded, len(context.completed_tasks),
                )

            phase = BatchPhase.COMPLETE
            await process.emit("phase", phase)
            await process.emit("progress", _snapshot(context, phase))

            completed = context.completed_tasks
            return BatchResult(
                batch_id=context.batch_id,
                session_id=context.session_id,
                files_total=len(context.tasks),
                files_uploaded=len(completed),
                bytes_uploaded=sum(t.size for t in completed),
                total_bytes=context.total_size,
                failures=failures,
                files_enqueued=finalized.files_uploaded,
                storage_prefix=finalized.storage_prefix,
                duration=time.monotonic() - started,
            )
        except BatchCancelledError:
            raise
        except Exception:
            logger.error("Batch failed during %s phase", phase.value)
            await process.emit("phase", BatchPhase.FAILED)
            raise

    async def _scan(self, source: Source) -> ScanResult:
        scan = await self._scanner.scan(
            source,
            root_path=self._config.root_path,
            processing=self._config.processing,
        )
        if scan.skipped:
            logger.warning("Skipped %d files that cannot be uploaded", len(scan.skipped))
        if not scan.tasks:
            raise ValidationError("No files found to upload", "source")
        validate_batch_size(scan.total_size)
        return scan

    async def _upload_tasks(self, context: BatchContext, process: BatchUploadProcess) -> None:
        assert self._files is not None
        files = self._files

        async def on_bytes(task: UploadTask, size: int) -> None:
            await process.emit("file_progress", task, size)

        def make_job(task: UploadTask):
            async def job() -> None:
                task.status = TaskStatus.UPLOADING
                task.started_at = utcnow()
                await process.emit("file_start", task)
                try:
                    await files.upload(context.batch_id, task, on_bytes)
                except Exception as e:
                    task.status = TaskStatus.FAILED
                    task.error = str(e) or type(e).__name__
                    logger.error("Failed to upload %s: %s", task.logical_path, task.error)
                else:
                    task.status = TaskStatus.COMPLETED
                    logger.debug("Completed %s", task.logical_path)
                task.completed_at = utcnow()

                snapshot = _snapshot(context, BatchPhase.UPLOADING, task.logical_path)
                event = "file_complete" if task.status == TaskStatus.COMPLETED else "file_fail"
                await process.emit(event, task)
                await process.emit("progress", snapshot)
            return job

        await run_bounded(
            [make_job(task) for task in context.tasks],
            self._config.parallel_uploads,
            should_stop=process.should_stop,
        )


def _snapshot(context: BatchContext, phase: BatchPhase, current_file: Optional[str] = None) -> ProgressSnapshot:
    completed = context.completed_tasks
    return ProgressSnapshot(
        phase=phase,
        files_total=len(context.tasks),
        files_completed=len(completed),
        files_failed=len(context.failed_tasks),
        bytes_total=context.total_size,
        bytes_uploaded=sum(t.size for t in completed),
        current_file=current_file,
    )
