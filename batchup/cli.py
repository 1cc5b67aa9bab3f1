"""Command line interface for batchup."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from rich.logging import RichHandler

from . import __version__
from .cli_progress import BatchProgressDisplay, render_configuration_summary
from .errors import UploaderError
from .models import ProcessingConfig, RetryOptions, UploadConfig
from .utils.validation import parse_metadata


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _setup_logging(debug: bool, silent: bool, log_level: Optional[str]) -> str:
    """
    Configure logging.

    Default behavior is silent unless --debug or --log-level is provided.
    Returns a string describing effective mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    logging.disable(logging.NOTSET)

    if silent or (not debug and not log_level):
        logging.disable(logging.CRITICAL)
        root_logger.setLevel(logging.CRITICAL + 1)
        return "silent"

    if debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, log_level.upper(), logging.INFO)

    handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    return logging.getLevelName(level)


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_env_file(path: Path, override: bool = False) -> None:
    if not path.exists():
        raise CLIError(f"env file not found: {path}")
    if not path.is_file():
        raise CLIError(f"env path is not a file: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"could not read env file {path}: {exc}") from exc

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = _strip_optional_quotes(value.strip())
        if override or key not in os.environ:
            os.environ[key] = value


def _resolve_default_env_file() -> Optional[Path]:
    default_env = Path(".env")
    return default_env if default_env.exists() and default_env.is_file() else None


def _build_config(args: argparse.Namespace) -> UploadConfig:
    worker_url = args.worker_url or os.getenv("WORKER_URL")
    if not worker_url:
        raise CLIError("worker URL is required (--worker-url or WORKER_URL)")
    uploader = args.uploader or os.getenv("BATCHUP_UPLOADER")
    if not uploader:
        raise CLIError("uploader name is required (--uploader or BATCHUP_UPLOADER)")

    return UploadConfig(
        worker_url=worker_url,
        uploader=uploader,
        root_path=args.root_path,
        parent_pi=args.parent_pi,
        metadata=parse_metadata(args.metadata),
        processing=ProcessingConfig(
            ocr=not args.no_ocr,
            describe=not args.no_describe,
            pinax=not args.no_pinax,
        ),
        parallel_uploads=args.parallel,
        parallel_parts=args.parallel_parts,
        retry=RetryOptions(max_retries=args.max_retries),
    )


async def _run_upload(config: UploadConfig, source: Path, dry_run: bool) -> int:
    from .orchestrator import BatchUploader

    display = BatchProgressDisplay()
    async with BatchUploader(config) as uploader:
        process = uploader.upload_batch(source, dry_run=dry_run)
        process.on_phase(display.on_phase)
        process.on_file_start(display.on_file_start)
        process.on_file_progress(display.on_file_progress)
        process.on_file_complete(display.on_file_complete)
        process.on_file_fail(display.on_file_fail)
        process.on_progress(display.on_progress)
        process.on_finish(display.on_finish)
        process.on_error(display.on_error)

        try:
            await process.wait()
        except UploaderError:
            return 1
        return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="batchup",
        description="Upload a directory tree as one batch through the ingest worker.",
    )
    parser.add_argument("directory", nargs="?", type=Path, help="Directory to upload")
    parser.add_argument(
        "--worker-url",
        default=None,
        help="Ingest worker URL (default from WORKER_URL)",
    )
    parser.add_argument(
        "-u",
        "--uploader",
        default=None,
        help="Name of the person or system uploading (default from BATCHUP_UPLOADER)",
    )
    parser.add_argument(
        "-r",
        "--root-path",
        default="/",
        help="Logical root path for the batch (example: /archives/1920)",
    )
    parser.add_argument(
        "--parent-pi",
        default="",
        help="Persistent identifier of the parent entity (26 characters)",
    )
    parser.add_argument(
        "--metadata",
        default=None,
        help="Batch metadata as a JSON object",
    )
    parser.add_argument(
        "-p",
        "--parallel",
        type=int,
        default=5,
        help="Files uploaded in parallel (default: 5)",
    )
    parser.add_argument(
        "--parallel-parts",
        type=int,
        default=3,
        help="Parts uploaded in parallel per multipart file (default: 3)",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=3,
        help="Retries per network operation (default: 3)",
    )
    parser.add_argument("--no-ocr", action="store_true", help="Disable OCR processing")
    parser.add_argument("--no-describe", action="store_true", help="Disable description generation")
    parser.add_argument("--no-pinax", action="store_true", help="Disable PINAX metadata extraction")
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Scan and validate without uploading",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"batchup {__version__}",
    )
    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1

    effective_log_mode = _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level or os.getenv("LOG_LEVEL"),
    )

    if args.directory is None:
        parser.print_help()
        return 0

    directory = Path(args.directory).expanduser()
    if not directory.is_dir():
        print(f"ERROR: directory does not exist: {directory}", file=sys.stderr)
        return 1

    try:
        config = _build_config(args)
    except (CLIError, UploaderError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    render_configuration_summary(
        {
            "Directory": str(directory),
            "Worker": config.worker_url,
            "Uploader": config.uploader,
            "Root Path": config.root_path,
            "Parent PI": config.parent_pi or "-",
            "Parallel": f"{config.parallel_uploads} files / {config.parallel_parts} parts",
            "Processing": ", ".join(k for k, v in config.processing.to_dict().items() if v) or "none",
            "Dry Run": "yes" if args.dry_run else "no",
            "Env File": str(used_env_file) if used_env_file else "-",
            "Logging": effective_log_mode,
        }
    )

    try:
        return asyncio.run(_run_upload(config, directory, args.dry_run))
    except (CLIError, UploaderError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return 130


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
