"""File collection for batch uploads."""
from __future__ import annotations

import asyncio
import io
import json
import logging
import mimetypes
import posixpath
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..errors import ScanError, ValidationError
from ..models import InMemoryFile, ProcessingConfig, ScanResult, UploadTask
from ..utils.hashing import compute_cid, compute_file_cid
from ..utils.validation import (
    normalize_path,
    validate_file_size,
    validate_logical_path,
    validate_ref_json,
)

logger = logging.getLogger(__name__)

PROCESS_CONFIG_FILE = ".batchup-process.json"
REF_SUFFIX = ".ref.json"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

Source = Union[str, Path, Iterable[InMemoryFile]]


def guess_content_type(file_name: str) -> str:
    content_type, _ = mimetypes.guess_type(file_name)
    return content_type or DEFAULT_CONTENT_TYPE


def _load_directory_config(directory: Path) -> Optional[Dict[str, Any]]:
    config_path = directory / PROCESS_CONFIG_FILE
    if not config_path.is_file():
        return None
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Error reading processing config %s: %s", config_path, e)
        return None
    return data if isinstance(data, dict) else None


class FileScanner:
    """
    Collects upload tasks from a directory tree or from in-memory files.

    Directories may carry a ``.batchup-process.json`` whose keys override
    the processing switches for that directory and everything below it.
    """

    def __init__(self, follow_symlinks: bool = True):
        self._follow_symlinks = follow_symlinks

    async def scan(
        self,
        source: Source,
        root_path: str = "/",
        processing: Optional[ProcessingConfig] = None,
    ) -> ScanResult:
        validate_logical_path(root_path)
        processing = processing or ProcessingConfig()

        if isinstance(source, (str, Path)):
            result = await self._scan_directory(Path(source), root_path, processing)
        else:
            result = self._scan_memory(list(source), root_path, processing)

        result.tasks.sort(key=lambda t: t.size)
        logger.info(
            "Scan found %d files (%d bytes), skipped %d",
            result.total_files, result.total_size, len(result.skipped),
        )
        return result

    # Directory sources

    async def _scan_directory(self, directory: Path, root_path: str, processing: ProcessingConfig) -> ScanResult:
        if not directory.exists():
            raise ScanError(f"Directory not found: {directory}", str(directory))
        if not directory.is_dir():
            raise ScanError(f"Path is not a directory: {directory}", str(directory))

        found, skipped = await asyncio.to_thread(self._collect, directory, root_path, processing)

        tasks: List[UploadTask] = []
        for path, logical_path, size, file_processing in found:
            try:
                cid = await compute_file_cid(path)
            except OSError as e:
                logger.warning("Skipping file with CID computation error: %s (%s)", path, e)
                skipped.append(logical_path)
                continue
            tasks.append(UploadTask(
                logical_path=logical_path,
                file_name=path.name,
                size=size,
                content_type=guess_content_type(path.name),
                source=path,
                cid=cid,
                processing=file_processing,
            ))
        return ScanResult(tasks=tasks, skipped=skipped)

    def _collect(
        self,
        directory: Path,
        root_path: str,
        processing: ProcessingConfig,
    ) -> Tuple[List[Tuple[Path, str, int, ProcessingConfig]], List[str]]:
        found: List[Tuple[Path, str, int, ProcessingConfig]] = []
        skipped: List[str] = []
        visited = set()

        def walk(current: Path, relative: str, inherited: ProcessingConfig) -> None:
            real = current.resolve()
            if real in visited:
                return
            visited.add(real)

            current_processing = inherited.merge(_load_directory_config(current))
            try:
                entries = sorted(current.iterdir())
            except OSError as e:
                logger.warning("Cannot read directory %s: %s", current, e)
                return

            for entry in entries:
                rel = f"{relative}/{entry.name}" if relative else entry.name
                if entry.is_symlink() and not self._follow_symlinks:
                    continue
                if entry.is_dir():
                    walk(entry, rel, current_processing)
                elif entry.is_file():
                    self._add_file(entry, rel, root_path, current_processing, found, skipped)

        walk(directory, "", processing)
        return found, skipped

    def _add_file(self, path, relative, root_path, processing, found, skipped) -> None:
        if path.name == PROCESS_CONFIG_FILE:
            return

        if path.name.endswith(REF_SUFFIX):
            try:
                validate_ref_json(path.read_text(encoding="utf-8"), path.name)
            except (OSError, ValidationError) as e:
                raise ScanError(f"Invalid {REF_SUFFIX} file: {path.name} - {e}", str(path)) from e

        logical_path = posixpath.join(root_path, normalize_path(relative))
        try:
            size = path.stat().st_size
            validate_file_size(size)
            validate_logical_path(logical_path)
        except (OSError, ValidationError) as e:
            logger.warning("Skipping %s: %s", path, e)
            skipped.append(logical_path)
            return

        found.append((path, logical_path, size, processing))

    # In-memory sources

    def _scan_memory(self, files: List[InMemoryFile], root_path: str, processing: ProcessingConfig) -> ScanResult:
        tasks: List[UploadTask] = []
        skipped: List[str] = []
        for item in files:
            logical_path = posixpath.join(root_path, normalize_path(item.path).lstrip("/"))
            data = item.data if isinstance(item.data, (bytes, bytearray)) else _read_handle(item.data)

            if item.name.endswith(REF_SUFFIX):
                try:
                    validate_ref_json(bytes(data).decode("utf-8"), item.name)
                except (UnicodeDecodeError, ValidationError) as e:
                    raise ScanError(f"Invalid {REF_SUFFIX} file: {item.name} - {e}", item.path) from e

            try:
                validate_file_size(len(data))
                validate_logical_path(logical_path)
            except ValidationError as e:
                logger.warning("Skipping %s: %s", item.path, e)
                skipped.append(logical_path)
                continue

            tasks.append(UploadTask(
                logical_path=logical_path,
                file_name=item.name,
                size=len(data),
                content_type=item.content_type or guess_content_type(item.name),
                source=bytes(data),
                cid=compute_cid(bytes(data)),
                processing=processing,
            ))
        return ScanResult(tasks=tasks, skipped=skipped)


def _read_handle(handle: io.IOBase) -> bytes:
    if hasattr(handle, "seek"):
        handle.seek(0)
    return handle.read()
