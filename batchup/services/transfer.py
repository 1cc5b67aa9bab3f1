"""Transfer primitives: PUT a whole file or one part to a presigned URL."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

import httpx

from ..errors import UploadError
from ..models import RetryOptions
from ..utils.retry import parse_retry_after, retry_with_backoff

logger = logging.getLogger(__name__)


class TransferService:
    """
    Performs single PUT requests against object storage.

    Presigned URLs carry their own authorization, so the shared
    ``httpx.AsyncClient`` has no base URL and sends no credentials.
    Every non-2xx status and every transport failure is retryable unless
    ``RetryOptions.should_retry`` says otherwise.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        retry: Optional[RetryOptions] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._retry = retry or RetryOptions()
        self._sleep = sleep

    async def _put(
        self,
        url: str,
        data: bytes,
        headers: Dict[str, str],
        file_name: str,
        part_number: Optional[int] = None,
    ) -> httpx.Response:
        what = f"Part {part_number} of {file_name}" if part_number else file_name
        try:
            response = await self._client.put(url, content=data, headers=headers)
        except httpx.HTTPError as exc:
            raise UploadError(
                f"{what} upload failed: {exc or type(exc).__name__}",
                file_name,
                part_number=part_number,
                cause=exc,
            ) from exc

        if not response.is_success:
            retry_after = None
            if response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("retry-after"))
            raise UploadError(
                f"{what} upload failed with status {response.status_code}: {response.reason_phrase}",
                file_name,
                part_number=part_number,
                status_code=response.status_code,
                retry_after=retry_after,
            )
        return response

    async def upload_simple(
        self,
        data: bytes,
        presigned_url: str,
        file_name: str,
        content_type: Optional[str] = None,
    ) -> None:
        """PUT the full body in one request."""
        headers = {"Content-Type": content_type} if content_type else {}
        await retry_with_backoff(
            lambda: self._put(presigned_url, data, headers, file_name),
            self._retry,
            label=f"PUT {file_name}",
            sleep=self._sleep,
        )
        logger.debug("Uploaded %s (%d bytes)", file_name, len(data))

    async def upload_part(
        self,
        data: bytes,
        presigned_url: str,
        file_name: str,
        part_number: int,
    ) -> str:
        """PUT one chunk and return its ETag without quotes."""

        async def attempt() -> str:
            response = await self._put(presigned_url, data, {}, file_name, part_number)
            etag = response.headers.get("etag")
            if not etag:
                raise UploadError(
                    f"Part {part_number} of {file_name} upload succeeded but no ETag returned",
                    file_name,
                    part_number=part_number,
                    status_code=response.status_code,
                )
            return etag.replace('"', "")

        etag = await retry_with_backoff(
            attempt,
            self._retry,
            label=f"PUT {file_name} part {part_number}",
            sleep=self._sleep,
        )
        logger.debug("Uploaded %s part %d (%d bytes, etag %s)", file_name, part_number, len(data), etag)
        return etag
