"""Tests for file collection, content addresses and input validation."""
import io
import json

import pytest

from batchup.errors import ScanError, ValidationError
from batchup.models import InMemoryFile, ProcessingConfig
from batchup.services.scanner import FileScanner, guess_content_type
from batchup.utils.hashing import compute_cid, compute_file_cid
from batchup.utils.validation import (
    format_bytes,
    parse_metadata,
    validate_file_size,
    validate_logical_path,
    validate_parent_pi,
    validate_ref_json,
)


@pytest.fixture
def scanner():
    return FileScanner()


class TestDirectoryScan:
    @pytest.mark.asyncio
    async def test_collects_tree_with_logical_paths(self, tmp_path, scanner):
        (tmp_path / "b.txt").write_bytes(b"bbbb")
        (tmp_path / "letters").mkdir()
        (tmp_path / "letters" / "a.pdf").write_bytes(b"%PDF-1")

        result = await scanner.scan(tmp_path, root_path="/archive")

        by_path = {t.logical_path: t for t in result.tasks}
        assert set(by_path) == {"/archive/b.txt", "/archive/letters/a.pdf"}
        pdf = by_path["/archive/letters/a.pdf"]
        assert pdf.file_name == "a.pdf"
        assert pdf.size == 6
        assert pdf.content_type == "application/pdf"
        assert pdf.cid == compute_cid(b"%PDF-1")
        assert pdf.read_bytes() == b"%PDF-1"
        assert result.total_size == 10

    @pytest.mark.asyncio
    async def test_orders_smallest_first(self, tmp_path, scanner):
        for name, size in [("big", 300), ("small", 10), ("mid", 100)]:
            (tmp_path / name).write_bytes(b"x" * size)

        result = await scanner.scan(tmp_path)
        assert [t.size for t in result.tasks] == [10, 100, 300]

    @pytest.mark.asyncio
    async def test_skips_empty_files(self, tmp_path, scanner):
        (tmp_path / "empty.txt").write_bytes(b"")
        (tmp_path / "full.txt").write_bytes(b"data")

        result = await scanner.scan(tmp_path)

        assert [t.logical_path for t in result.tasks] == ["/full.txt"]
        assert result.skipped == ["/empty.txt"]

    @pytest.mark.asyncio
    async def test_directory_processing_override(self, tmp_path, scanner):
        (tmp_path / "top.txt").write_bytes(b"1")
        photos = tmp_path / "photos"
        photos.mkdir()
        (photos / ".batchup-process.json").write_text(json.dumps({"ocr": False}), encoding="utf-8")
        (photos / "p.jpg").write_bytes(b"22")
        (photos / "nested").mkdir()
        (photos / "nested" / "q.jpg").write_bytes(b"333")

        result = await scanner.scan(tmp_path, processing=ProcessingConfig(describe=False))

        by_path = {t.logical_path: t.processing for t in result.tasks}
        assert "/photos/.batchup-process.json" not in by_path
        assert by_path["/top.txt"] == ProcessingConfig(ocr=True, describe=False)
        assert by_path["/photos/p.jpg"] == ProcessingConfig(ocr=False, describe=False)
        assert by_path["/photos/nested/q.jpg"] == ProcessingConfig(ocr=False, describe=False)

    @pytest.mark.asyncio
    async def test_unreadable_override_is_ignored(self, tmp_path, scanner):
        (tmp_path / ".batchup-process.json").write_text("{not json", encoding="utf-8")
        (tmp_path / "a.txt").write_bytes(b"a")

        result = await scanner.scan(tmp_path)
        assert result.tasks[0].processing == ProcessingConfig()

    @pytest.mark.asyncio
    async def test_valid_ref_file_is_uploaded(self, tmp_path, scanner):
        (tmp_path / "scan.ref.json").write_text(
            json.dumps({"url": "https://example.org/scan.tif", "type": "image/tiff"}), encoding="utf-8"
        )
        result = await scanner.scan(tmp_path)
        assert [t.file_name for t in result.tasks] == ["scan.ref.json"]

    @pytest.mark.asyncio
    async def test_invalid_ref_file_fails_scan(self, tmp_path, scanner):
        (tmp_path / "scan.ref.json").write_text(json.dumps({"url": "ftp://x"}), encoding="utf-8")
        with pytest.raises(ScanError, match="ref.json"):
            await scanner.scan(tmp_path)

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path, scanner):
        with pytest.raises(ScanError, match="not found"):
            await scanner.scan(tmp_path / "missing")

    @pytest.mark.asyncio
    async def test_file_is_not_a_directory(self, tmp_path, scanner):
        path = tmp_path / "file.txt"
        path.write_bytes(b"x")
        with pytest.raises(ScanError, match="not a directory"):
            await scanner.scan(path)

    @pytest.mark.asyncio
    async def test_symlinks_can_be_skipped(self, tmp_path):
        target = tmp_path / "real.txt"
        target.write_bytes(b"real")
        source = tmp_path / "src"
        source.mkdir()
        (source / "own.txt").write_bytes(b"own")
        try:
            (source / "link.txt").symlink_to(target)
        except OSError:
            pytest.skip("symlinks not supported")

        followed = await FileScanner(follow_symlinks=True).scan(source)
        skipped = await FileScanner(follow_symlinks=False).scan(source)

        assert {t.logical_path for t in followed.tasks} == {"/own.txt", "/link.txt"}
        assert {t.logical_path for t in skipped.tasks} == {"/own.txt"}


class TestMemoryScan:
    @pytest.mark.asyncio
    async def test_bytes_and_handles(self, scanner):
        files = [
            InMemoryFile(name="a.txt", data=b"hello"),
            InMemoryFile(name="b.bin", data=io.BytesIO(b"\x00\x01"), relative_path="sub/b.bin"),
            InMemoryFile(name="c", data=b"ccc", content_type="image/png"),
        ]

        result = await scanner.scan(files, root_path="/mem")

        by_path = {t.logical_path: t for t in result.tasks}
        assert set(by_path) == {"/mem/a.txt", "/mem/sub/b.bin", "/mem/c"}
        assert by_path["/mem/sub/b.bin"].read_bytes() == b"\x00\x01"
        assert by_path["/mem/c"].content_type == "image/png"
        assert by_path["/mem/a.txt"].cid == compute_cid(b"hello")

    @pytest.mark.asyncio
    async def test_invalid_root_path(self, scanner):
        with pytest.raises(ValidationError):
            await scanner.scan([InMemoryFile(name="a", data=b"a")], root_path="no-slash")


class TestHashing:
    def test_cid_format(self):
        cid = compute_cid(b"hello world")
        assert cid.startswith("bafkrei")
        assert len(cid) == 59
        assert cid == cid.lower()

    def test_cid_depends_on_content(self):
        assert compute_cid(b"a") != compute_cid(b"b")
        assert compute_cid(b"a") == compute_cid(b"a")

    @pytest.mark.asyncio
    async def test_file_cid_matches_bytes_cid(self, tmp_path):
        data = b"x" * (3 * 1024 * 1024 + 17)
        path = tmp_path / "big.bin"
        path.write_bytes(data)
        assert await compute_file_cid(path) == compute_cid(data)


class TestValidation:
    def test_logical_paths(self):
        validate_logical_path("/")
        validate_logical_path("/archives/1920/letter.pdf")
        for bad in ["relative", "/a/../b", "/a/./b", "/bad|name"]:
            with pytest.raises(ValidationError):
                validate_logical_path(bad)

    def test_parent_pi(self):
        validate_parent_pi("")
        validate_parent_pi("01ARZ3NDEKTSV4RRFFQ69G5FAV")
        with pytest.raises(ValidationError, match="26 characters"):
            validate_parent_pi("01ARZ3")
        with pytest.raises(ValidationError, match="alphanumeric"):
            validate_parent_pi("01ARZ3NDEKTSV4RRFFQ69G5FA-")

    def test_file_size(self):
        validate_file_size(1)
        with pytest.raises(ValidationError):
            validate_file_size(0)
        with pytest.raises(ValidationError, match="exceeds"):
            validate_file_size(6 * 1024 ** 3)

    def test_parse_metadata(self):
        assert parse_metadata(None) is None
        assert parse_metadata("  ") is None
        assert parse_metadata('{"a": 1}') == {"a": 1}
        with pytest.raises(ValidationError):
            parse_metadata("[1, 2]")
        with pytest.raises(ValidationError):
            parse_metadata("{oops")

    def test_ref_json(self):
        parsed = validate_ref_json('{"url": "https://x.org/a", "type": "image/jpeg"}', "a.ref.json")
        assert parsed["type"] == "image/jpeg"
        for bad in ['[]', '{"url": 1}', '{"url": "file:///etc"}', "nope"]:
            with pytest.raises(ValidationError):
                validate_ref_json(bad, "a.ref.json")

    def test_format_bytes(self):
        assert format_bytes(0) == "0 B"
        assert format_bytes(1536) == "1.50 KB"
        assert format_bytes(5 * 1024 ** 3) == "5.00 GB"

    def test_guess_content_type(self):
        assert guess_content_type("a.json") == "application/json"
        assert guess_content_type("noext") == "application/octet-stream"
