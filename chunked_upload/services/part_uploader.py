# services/part_uploader.py
import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from chunked_upload.errors import PartUploadError
from chunked_upload.services.retry import retry_with_backoff

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 1.0


class PartUploader:
    """PUTs one part to a pre-signed URL and returns its ETag"""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        content_type: str = "application/octet-stream",
    ):
        self.http_client = http_client
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.content_type = content_type
        self._sleep = sleep

    async def upload(self, upload_url: str, data: bytes, part_number: int) -> str:
        """Upload a part, retrying transport errors, bad statuses and missing ETags"""
        try:
            return await retry_with_backoff(
                lambda: self._put(upload_url, data, part_number),
                attempts=self.max_attempts,
                base_delay=self.retry_delay,
                sleep=self._sleep,
                retry_on=(PartUploadError, httpx.HTTPError),
                label=f"Part {part_number}",
            )
        except (PartUploadError, httpx.HTTPError) as e:
            raise PartUploadError(
                part_number,
                f"Part {part_number} failed after {self.max_attempts} attempts: {e}",
            ) from e

    async def _put(self, upload_url: str, data: bytes, part_number: int) -> str:
        response = await self.http_client.put(
            upload_url,
            content=data,
            headers={"Content-Type": self.content_type},
        )
        if response.is_error:
            raise PartUploadError(
                part_number,
                f"Storage returned {response.status_code} for part {part_number}",
            )

        # S3 returns the part's ETag in the response headers
        etag = response.headers.get("etag")
        if not etag:
            raise PartUploadError(part_number, f"ETag not found in response for part {part_number}")

        logger.debug(f"Part {part_number} stored ({len(data)} bytes, ETag {etag})")
        return etag
