"""Validation of paths, sizes and batch configuration."""
import json
import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from ..errors import ValidationError

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 5 * 1024 ** 3  # 5 GB
MAX_BATCH_SIZE = 100 * 1024 ** 3  # 100 GB

INVALID_PATH_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')
PARENT_PI_PATTERN = re.compile(r"^[0-9A-Za-z]{26}$")


def normalize_path(path: str) -> str:
    """Use forward slashes regardless of platform."""
    return path.replace("\\", "/")


def validate_file_size(size: int) -> None:
    if size <= 0:
        raise ValidationError("File size must be greater than 0", "size")
    if size > MAX_FILE_SIZE:
        raise ValidationError(
            f"File size ({format_bytes(size)}) exceeds maximum allowed size ({format_bytes(MAX_FILE_SIZE)})",
            "size",
        )


def validate_batch_size(total_size: int) -> None:
    if total_size > MAX_BATCH_SIZE:
        raise ValidationError(
            f"Total batch size ({format_bytes(total_size)}) exceeds maximum allowed size ({format_bytes(MAX_BATCH_SIZE)})",
            "total_size",
        )


def validate_logical_path(path: str) -> None:
    """
    Logical paths are absolute POSIX-style paths inside the batch.

    "/" is a valid root; any other path needs at least one segment and
    may not contain "." or ".." segments.
    """
    if not path.startswith("/"):
        raise ValidationError("Logical path must start with /", "path")
    if INVALID_PATH_CHARS.search(path):
        raise ValidationError("Logical path contains invalid characters", "path")

    segments = [s for s in path.split("/") if s]
    for segment in segments:
        if segment in (".", ".."):
            raise ValidationError("Logical path cannot contain . or .. segments", "path")


def validate_worker_url(url: str) -> None:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid worker URL: {url!r}", "worker_url")


def validate_uploader(uploader: Optional[str]) -> None:
    if not uploader or not uploader.strip():
        raise ValidationError("Uploader name cannot be empty", "uploader")


def validate_parent_pi(pi: str) -> None:
    """Parent identifiers are 26-character ULIDs; empty means 'no parent'."""
    if not pi:
        return
    if len(pi) != 26:
        raise ValidationError("parent_pi must be exactly 26 characters", "parent_pi")
    if not PARENT_PI_PATTERN.match(pi):
        raise ValidationError(
            "parent_pi must contain only alphanumeric characters (0-9, A-Z)", "parent_pi"
        )


def parse_metadata(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a JSON object given on the command line."""
    if raw is None or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid metadata JSON: {exc}", "metadata") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("Invalid metadata JSON: must be a JSON object", "metadata")
    return parsed


def validate_ref_json(content: str, file_name: str) -> Dict[str, Any]:
    """
    Validate a ``*.ref.json`` reference file.

    It must hold a JSON object whose ``url`` is an http(s) URL. Other
    fields pass through to the coordinating service untouched.
    """
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid JSON in {file_name}: {exc}", "ref") from exc

    if not isinstance(parsed, dict):
        raise ValidationError(f"{file_name} must contain a JSON object", "ref")

    url = parsed.get("url")
    if not isinstance(url, str) or not url:
        raise ValidationError(f"{file_name} must contain a 'url' field with a string value", "ref")

    scheme = urlparse(url).scheme
    if scheme not in ("http", "https"):
        raise ValidationError(f"Invalid URL in {file_name}: URL must use HTTP or HTTPS protocol", "ref")

    if "type" not in parsed:
        logger.warning("%s: missing 'type' field (optional but recommended)", file_name)

    return parsed


def format_bytes(value: int) -> str:
    size = float(max(value, 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_idx = 0
    while size >= 1024.0 and unit_idx < len(units) - 1:
        size /= 1024.0
        unit_idx += 1
    if unit_idx == 0:
        return f"{int(size)} {units[unit_idx]}"
    return f"{size:.2f} {units[unit_idx]}"
