"""Tests for the upload session state machine."""
import asyncio
import io
import threading
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from batchup import BatchUploader
from batchup.errors import ValidationError
from batchup.models import BatchPhase, RetryOptions
from batchup.server.config import Settings
from batchup.server.sessions import (
    SessionConflictError,
    SessionManager,
    SessionNotFoundError,
    SessionStatus,
)

from conftest import STORAGE_HOST, WORKER_URL


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


async def wait_until(predicate, attempts=5000):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition not reached")


def manager_for(tmp_path, coordinator=None, sleep=None, transport=None, **kwargs):
    transport = transport or (coordinator.transport if coordinator else None)
    kwargs.setdefault("retry", RetryOptions(max_retries=1, jitter=False))
    return SessionManager(
        upload_dir=tmp_path / "uploads",
        worker_url=WORKER_URL,
        uploader_factory=lambda cfg: BatchUploader(cfg, transport=transport, sleep=sleep),
        **kwargs,
    )


def files(*pairs):
    return [(name, io.BytesIO(data)) for name, data in pairs]


class GatedReader(io.BytesIO):
    """A handle whose first read blocks until released."""

    def __init__(self, data):
        super().__init__(data)
        self.entered = threading.Event()
        self.release = threading.Event()

    def read(self, size=-1):
        if not self.entered.is_set():
            self.entered.set()
            self.release.wait(5)
        return super().read(size)


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_creates_directory_and_expiry(self, tmp_path):
        clock = FakeClock()
        manager = manager_for(tmp_path, ttl=timedelta(hours=2), clock=clock, parallel_uploads=4)

        session = await manager.create_session("alice", root_path="/series", metadata={"k": 1})

        assert session.status == SessionStatus.INITIALIZED
        assert session.upload_dir.is_dir()
        assert session.upload_dir.parent == tmp_path / "uploads"
        assert session.expires_at == clock.now + timedelta(hours=2)
        assert session.config.uploader == "alice"
        assert session.config.root_path == "/series"
        assert session.config.metadata == {"k": 1}
        assert session.config.parallel_uploads == 4
        assert session.config.parallel_parts == 3
        assert manager.get(session.session_id) == session
        assert manager.session_count == 1

    @pytest.mark.asyncio
    async def test_session_ids_are_unique(self, tmp_path):
        manager = manager_for(tmp_path)
        ids = {(await manager.create_session("alice")).session_id for _ in range(5)}
        assert len(ids) == 5

    @pytest.mark.asyncio
    async def test_rejects_invalid_input(self, tmp_path):
        manager = manager_for(tmp_path)
        with pytest.raises(ValidationError):
            await manager.create_session("")
        with pytest.raises(ValidationError):
            await manager.create_session("alice", root_path="relative")
        with pytest.raises(ValidationError):
            await manager.create_session("alice", parent_pi="not-a-ulid")
        assert manager.session_count == 0

    def test_from_settings(self, tmp_path):
        settings = Settings(
            UPLOAD_DIR=str(tmp_path),
            WORKER_URL=WORKER_URL,
            SESSION_TTL_SECONDS=60,
            DEFAULT_PARALLEL_UPLOADS=7,
            MAX_RETRIES=5,
        )
        manager = SessionManager.from_settings(settings)
        assert manager.upload_dir == tmp_path
        assert manager._ttl == timedelta(seconds=60)
        assert manager._parallel_uploads == 7
        assert manager._retry.max_retries == 5


class TestAcceptFiles:
    @pytest.mark.asyncio
    async def test_keeps_relative_directories(self, tmp_path):
        manager = manager_for(tmp_path)
        session = await manager.create_session("alice")

        updated = await manager.accept_files(session.session_id, files(
            ("a.txt", b"aaa"),
            ("folder/sub/b.txt", b"bbbbb"),
        ))

        assert updated.status == SessionStatus.RECEIVING
        assert updated.files_received == 2
        assert updated.total_size == 8
        assert (session.upload_dir / "a.txt").read_bytes() == b"aaa"
        assert (session.upload_dir / "folder" / "sub" / "b.txt").read_bytes() == b"bbbbb"

    @pytest.mark.asyncio
    async def test_counts_accumulate(self, tmp_path):
        manager = manager_for(tmp_path)
        session = await manager.create_session("alice")
        await manager.accept_files(session.session_id, files(("a.txt", b"1")))
        updated = await manager.accept_files(session.session_id, files(("b.txt", b"22")))
        assert updated.files_received == 2
        assert updated.total_size == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["../escape.txt", "a/../../escape.txt", "/etc/passwd", "", "."])
    async def test_rejects_escaping_names(self, tmp_path, name):
        manager = manager_for(tmp_path)
        session = await manager.create_session("alice")
        with pytest.raises(ValidationError):
            await manager.accept_files(session.session_id, files((name, b"x")))
        assert not (tmp_path / "uploads" / "escape.txt").exists()
        assert manager.get(session.session_id).status == SessionStatus.INITIALIZED

    @pytest.mark.asyncio
    async def test_bad_name_later_in_request_writes_nothing(self, tmp_path):
        manager = manager_for(tmp_path)
        session = await manager.create_session("alice")

        with pytest.raises(ValidationError):
            await manager.accept_files(session.session_id, files(("a.txt", b"aaa"), ("../x", b"x")))

        assert list(session.upload_dir.iterdir()) == []
        assert manager.get(session.session_id).files_received == 0

    @pytest.mark.asyncio
    async def test_cancel_during_write_leaves_no_directory(self, tmp_path):
        manager = manager_for(tmp_path)
        session = await manager.create_session("alice")
        first = GatedReader(b"aaa")
        receiving = asyncio.create_task(manager.accept_files(
            session.session_id,
            [("a.txt", first), ("b.txt", io.BytesIO(b"bbb"))],
        ))
        try:
            await wait_until(first.entered.is_set)
            await manager.cancel(session.session_id)
        finally:
            first.release.set()

        with pytest.raises(SessionNotFoundError):
            await receiving
        assert not session.upload_dir.exists()
        assert list((tmp_path / "uploads").iterdir()) == []

    @pytest.mark.asyncio
    async def test_unknown_session(self, tmp_path):
        manager = manager_for(tmp_path)
        with pytest.raises(SessionNotFoundError) as excinfo:
            await manager.accept_files("missing", files(("a.txt", b"x")))
        assert excinfo.value.status_code == 404

    @pytest.mark.asyncio
    async def test_refused_once_processing(self, tmp_path, coordinator, sleep):
        manager = manager_for(tmp_path, coordinator, sleep)
        session = await manager.create_session("alice")
        await manager.accept_files(session.session_id, files(("a.txt", b"x")))
        manager.start_processing(session.session_id)

        with pytest.raises(SessionConflictError) as excinfo:
            await manager.accept_files(session.session_id, files(("b.txt", b"y")))
        assert excinfo.value.status_code == 409
        await manager.shutdown()


class TestProcessing:
    @pytest.mark.asyncio
    async def test_runs_batch_to_completion(self, tmp_path, coordinator, sleep):
        manager = manager_for(tmp_path, coordinator, sleep)
        session = await manager.create_session("alice", root_path="/inbox")
        await manager.accept_files(session.session_id, files(("a.txt", b"aaa"), ("d/b.txt", b"bbbbb")))

        started = manager.start_processing(session.session_id)
        assert started.status == SessionStatus.PROCESSING
        assert started.progress.phase == BatchPhase.SCANNING

        await wait_until(lambda: manager.get(session.session_id).status.is_terminal)
        done = manager.get(session.session_id)

        assert done.status == SessionStatus.COMPLETED
        assert done.batch_id == coordinator.batch_id
        assert done.progress.phase == BatchPhase.COMPLETE
        assert done.progress.files_completed == 2
        assert done.progress.bytes_uploaded == 8
        assert done.progress.percent_complete == 100
        assert done.errors == ()
        assert sorted(r["logical_path"] for r in coordinator.start_requests) == ["/inbox/a.txt", "/inbox/d/b.txt"]
        assert coordinator.finalize_calls == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_start_twice_is_a_conflict(self, tmp_path, coordinator, sleep):
        manager = manager_for(tmp_path, coordinator, sleep)
        session = await manager.create_session("alice")
        await manager.accept_files(session.session_id, files(("a.txt", b"x")))
        manager.start_processing(session.session_id)

        with pytest.raises(SessionConflictError, match="already processing"):
            manager.start_processing(session.session_id)

        await wait_until(lambda: manager.get(session.session_id).status.is_terminal)
        with pytest.raises(SessionConflictError, match="already completed"):
            manager.start_processing(session.session_id)
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_failed_batch_records_errors(self, tmp_path, coordinator, sleep):
        coordinator.storage_hook = lambda request: httpx.Response(403)
        manager = manager_for(tmp_path, coordinator, sleep)
        session = await manager.create_session("alice")
        await manager.accept_files(session.session_id, files(("a.txt", b"x"), ("b.txt", b"yy")))

        manager.start_processing(session.session_id)
        await wait_until(lambda: manager.get(session.session_id).status.is_terminal)
        failed = manager.get(session.session_id)

        assert failed.status == SessionStatus.FAILED
        assert failed.progress.phase == BatchPhase.FAILED
        assert failed.errors[0] == "All 2 files failed to upload"
        assert any(e.startswith("/a.txt: ") for e in failed.errors)
        assert coordinator.finalize_calls == 0
        assert failed.upload_dir.exists()
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_empty_session_fails(self, tmp_path, coordinator, sleep):
        manager = manager_for(tmp_path, coordinator, sleep)
        session = await manager.create_session("alice")

        manager.start_processing(session.session_id)
        await wait_until(lambda: manager.get(session.session_id).status.is_terminal)

        failed = manager.get(session.session_id)
        assert failed.status == SessionStatus.FAILED
        assert "No files found" in failed.errors[0]
        assert coordinator.init_requests == []
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_dry_run(self, tmp_path, coordinator, sleep):
        manager = manager_for(tmp_path, coordinator, sleep)
        session = await manager.create_session("alice")
        await manager.accept_files(session.session_id, files(("a.txt", b"abc")))

        manager.start_processing(session.session_id, dry_run=True)
        await wait_until(lambda: manager.get(session.session_id).status.is_terminal)

        done = manager.get(session.session_id)
        assert done.status == SessionStatus.COMPLETED
        assert done.batch_id == "dry-run"
        assert coordinator.init_requests == []
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_completed_session_deleted_after_grace(self, tmp_path, coordinator, sleep):
        manager = manager_for(tmp_path, coordinator, sleep, completed_grace=timedelta(0))
        session = await manager.create_session("alice")
        await manager.accept_files(session.session_id, files(("a.txt", b"x")))

        manager.start_processing(session.session_id)
        await wait_until(lambda: manager.get(session.session_id) is None)

        assert not session.upload_dir.exists()
        assert coordinator.finalize_calls == 1


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_removes_session(self, tmp_path):
        manager = manager_for(tmp_path)
        session = await manager.create_session("alice")
        await manager.accept_files(session.session_id, files(("a.txt", b"x")))

        cancelled = await manager.cancel(session.session_id)

        assert cancelled.status == SessionStatus.CANCELLED
        assert manager.get(session.session_id) is None
        assert not session.upload_dir.exists()
        with pytest.raises(SessionNotFoundError):
            await manager.cancel(session.session_id)

    @pytest.mark.asyncio
    async def test_cancel_while_processing_discards_outcome(self, tmp_path, coordinator, sleep):
        gate = asyncio.Event()

        async def handler(request):
            if request.url.host == STORAGE_HOST:
                await gate.wait()
            return await coordinator.handle(request)

        manager = manager_for(tmp_path, sleep=sleep, transport=httpx.MockTransport(handler))
        session = await manager.create_session("alice")
        await manager.accept_files(session.session_id, files(("a.txt", b"x"), ("b.txt", b"yy")))
        manager.start_processing(session.session_id)
        await wait_until(lambda: len(coordinator.start_requests) > 0)

        cancelled = await manager.cancel(session.session_id)
        assert cancelled.status == SessionStatus.CANCELLED
        assert manager.get(session.session_id) is None

        gate.set()
        await wait_until(lambda: not manager._tasks)
        assert coordinator.finalize_calls == 0
        assert manager.get(session.session_id) is None
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_terminal_session_keeps_status(self, tmp_path, coordinator, sleep):
        manager = manager_for(tmp_path, coordinator, sleep)
        session = await manager.create_session("alice")
        await manager.accept_files(session.session_id, files(("a.txt", b"x")))
        manager.start_processing(session.session_id)
        await wait_until(lambda: manager.get(session.session_id).status.is_terminal)

        result = await manager.cancel(session.session_id)

        assert result.status == SessionStatus.COMPLETED
        assert manager.get(session.session_id) is None
        await manager.shutdown()


class TestExpiry:
    @pytest.mark.asyncio
    async def test_sweep_deletes_expired_sessions(self, tmp_path):
        clock = FakeClock()
        manager = manager_for(tmp_path, ttl=timedelta(hours=1), clock=clock)
        old = await manager.create_session("alice")
        await manager.accept_files(old.session_id, files(("a.txt", b"x")))
        clock.advance(minutes=30)
        young = await manager.create_session("bob")

        clock.advance(minutes=31)
        assert await manager.sweep_expired() == 1

        assert manager.get(old.session_id) is None
        assert not old.upload_dir.exists()
        assert manager.get(young.session_id) is not None

    @pytest.mark.asyncio
    async def test_expiry_ignores_activity(self, tmp_path):
        clock = FakeClock()
        manager = manager_for(tmp_path, ttl=timedelta(hours=1), clock=clock)
        session = await manager.create_session("alice")

        clock.advance(minutes=59)
        await manager.accept_files(session.session_id, files(("a.txt", b"x")))
        clock.advance(minutes=1)

        assert await manager.sweep_expired() == 1
        assert manager.session_count == 0

    @pytest.mark.asyncio
    async def test_sweep_with_explicit_time(self, tmp_path):
        manager = manager_for(tmp_path, ttl=timedelta(seconds=10))
        session = await manager.create_session("alice")
        assert await manager.sweep_expired(now=session.created_at) == 0
        assert await manager.sweep_expired(now=session.expires_at) == 1


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_deletes_everything(self, tmp_path):
        manager = manager_for(tmp_path, sweep_interval=3600)
        manager.start()
        first = await manager.create_session("alice")
        second = await manager.create_session("bob")

        await manager.shutdown()

        assert manager.session_count == 0
        assert not first.upload_dir.exists()
        assert not second.upload_dir.exists()
