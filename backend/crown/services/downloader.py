"""Bounded in-memory video download."""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import httpx

from crown.config import settings
from crown.services.operation_log import OperationLog
from crown.utils.exceptions import DownloadError, DownloadTimeoutError, SizeExceededError

logger = logging.getLogger(__name__)

MEDIA_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
    "Accept": "video/mp4,video/*,*/*",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://www.tiktok.com/",
    "Sec-Fetch-Dest": "video",
    "Sec-Fetch-Mode": "no-cors",
    "Sec-Fetch-Site": "cross-site",
}
MAX_REDIRECTS = 5
PROGRESS_INTERVAL_BYTES = 5 * 1024 * 1024


@dataclass
class DownloadedMedia:
    """Bytes fetched from a media URL plus transfer metadata."""
    content: bytes
    source_url: str
    final_url: str
    content_type: Optional[str]
    declared_length: Optional[int]
    duration_seconds: float

    @property
    def size_bytes(self) -> int:
        return len(self.content)


def _status_message(status: int) -> str:
    if status == 403:
        return "Access denied - the video URL may be invalid or restricted"
    if status == 404:
        return "Video not found - the URL may be expired or incorrect"
    if status >= 500:
        return "Video server error - please try again later"
    return f"Video download failed with HTTP {status}"


def _mb(num_bytes: int) -> str:
    return f"{num_bytes / (1024 * 1024):.2f}MB"


class StreamingDownloader:
    """
    Streams a media URL into memory under a size ceiling and a wall-clock bound.

    The timeout covers the whole transfer, not just connection setup. A
    declared Content-Length over the ceiling is rejected before any byte is
    read; the running total is checked on every chunk so a response that
    omits or misreports its length is cut off mid-transfer.
    """

    def __init__(
        self,
        max_bytes: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        progress_interval_bytes: int = PROGRESS_INTERVAL_BYTES,
    ):
        self.max_bytes = max_bytes or settings.max_video_bytes
        self.timeout_seconds = timeout_seconds or settings.download_timeout_seconds
        self.progress_interval_bytes = progress_interval_bytes

    async def fetch(self, url: str, log: Optional[OperationLog] = None) -> DownloadedMedia:
        """Download ``url`` fully into memory."""
        log = log if log is not None else OperationLog("download")
        try:
            return await asyncio.wait_for(self._fetch(url, log), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise DownloadTimeoutError(self.timeout_seconds) from exc

    async def _fetch(self, url: str, log: OperationLog) -> DownloadedMedia:
        started = time.monotonic()
        chunks: List[bytes] = []
        total = 0
        next_progress = self.progress_interval_bytes

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers=MEDIA_HEADERS,
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code < 200 or response.status_code >= 300:
                        raise DownloadError(_status_message(response.status_code), status=response.status_code)

                    content_type = response.headers.get("content-type")
                    if content_type and "video/" not in content_type and "application/octet-stream" not in content_type:
                        log.warn(f"Unexpected content type: {content_type}", step="download")

                    declared_length = None
                    raw_length = response.headers.get("content-length")
                    if raw_length and raw_length.isdigit():
                        declared_length = int(raw_length)
                        log.info(f"Video size: {_mb(declared_length)}", step="download")
                        if declared_length > self.max_bytes:
                            raise SizeExceededError(declared_length, self.max_bytes)

                    async for chunk in response.aiter_bytes():
                        total += len(chunk)
                        if total > self.max_bytes:
                            # Leaving the stream context closes the connection
                            raise SizeExceededError(total, self.max_bytes)
                        chunks.append(chunk)
                        if total >= next_progress:
                            log.info(f"Downloaded {_mb(total)}", step="download")
                            while next_progress <= total:
                                next_progress += self.progress_interval_bytes

                    final_url = str(response.url)
        except httpx.TimeoutException as exc:
            raise DownloadTimeoutError(self.timeout_seconds) from exc
        except httpx.TooManyRedirects as exc:
            raise DownloadError(f"Too many redirects (max {MAX_REDIRECTS})") from exc
        except httpx.RequestError as exc:
            raise DownloadError(f"Failed to download video: {exc}") from exc

        duration = time.monotonic() - started
        logger.debug("Downloaded %s bytes from %s in %.2fs", total, url, duration)
        return DownloadedMedia(
            content=b"".join(chunks),
            source_url=url,
            final_url=final_url,
            content_type=content_type,
            declared_length=declared_length,
            duration_seconds=duration,
        )
