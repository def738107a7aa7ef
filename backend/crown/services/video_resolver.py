"""Classify submitted video URLs and extract media URLs from TikTok pages."""
import json
import logging
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse

import httpx

from crown.config import settings
from crown.utils.exceptions import ExtractionError

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = ("mp4", "mov", "webm", "m4v")
VIDEO_PATH_MARKERS = ("/video/tos/", "/aweme/v1/play", "/obj/tos")

PLATFORM_HOSTS = ("tiktok.com",)
SHORT_LINK_HOSTS = ("vm.tiktok.com", "vt.tiktok.com")
CDN_DOMAINS = (
    "tiktokcdn.com",
    "tiktokcdn-us.com",
    "tiktokcdn-eu.com",
    "tiktokv.com",
    "tiktokv.us",
    "byteoversea.com",
    "ibytedtos.com",
    "muscdn.com",
)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://www.google.com/",
}
MAX_REDIRECTS = 5

_PAGE_PATH_PATTERNS = (
    re.compile(r"^/@[^/]+/video/(\d+)"),
    re.compile(r"^/v/(\d+)"),
    re.compile(r"^/t/[A-Za-z0-9]+/?$"),
)
_SHORT_LINK_PATH = re.compile(r"^/[A-Za-z0-9]+/?$")

_SCRIPT_BLOCK = re.compile(r"<script[^>]*>(.*?)</script>", re.IGNORECASE | re.DOTALL)
_ADDRESS_FIELD = re.compile(
    r'"(?:playAddr|downloadAddr|play_addr|download_addr|playApi|PlayAddr)"\s*:\s*"((?:[^"\\]|\\.)+)"'
)
_EXT_GROUP = "|".join(VIDEO_EXTENSIONS)
_BARE_VIDEO_URL = re.compile(
    r"https?://[^\s\"'<>\\]+?\.(?:%s)(?:\?[^\s\"'<>\\]*)?(?=[\s\"'<>\\]|$)" % _EXT_GROUP,
    re.IGNORECASE,
)
_CDN_VIDEO_URL = re.compile(
    r"https?://[A-Za-z0-9.-]*(?:%s)/[^\s\"'<>\\]*?(?:\.(?:%s)|mime_type=video_\w+)[^\s\"'<>\\]*"
    % ("|".join(re.escape(d) for d in CDN_DOMAINS), _EXT_GROUP),
    re.IGNORECASE,
)
_QUALITY_MARKER = re.compile(r"(?<![a-z0-9])(?:hd|720p?|1080p?)(?![a-z0-9])", re.IGNORECASE)
_WATERMARK_MARKER = re.compile(r"watermark|(?<![a-z0-9])wm(?![a-z0-9])", re.IGNORECASE)


@dataclass(frozen=True)
class ResolvedUrl:
    """Classification of a submitted URL."""
    url: str
    is_page_url: bool
    is_direct_media_url: bool
    video_id: Optional[str] = None
    warning: Optional[str] = None


def _host_matches(host: str, domains) -> bool:
    return any(host == domain or host.endswith("." + domain) for domain in domains)


def _unescape(text: str) -> str:
    """Undo the JSON/HTML escaping TikTok applies to embedded URLs."""
    return (
        text.replace("\\u002F", "/")
        .replace("\\u0026", "&")
        .replace("\\/", "/")
        .replace("&amp;", "&")
    )


class VideoUrlResolver:
    """
    Turns a user-supplied link into a downloadable media URL.

    ``resolve`` is a pure classification of the URL. ``extract_actual_url``
    scrapes a TikTok content page; the markup it depends on is undocumented
    and may change without notice.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or settings.page_fetch_timeout_seconds

    def resolve(self, url: str) -> ResolvedUrl:
        """Classify ``url`` as a direct media URL, a TikTok content page, or neither."""
        parsed = urlparse((url or "").strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid video URL: {url!r}")

        host = (parsed.hostname or "").lower()
        path = parsed.path or "/"

        if _host_matches(host, PLATFORM_HOSTS):
            for pattern in _PAGE_PATH_PATTERNS:
                match = pattern.match(path)
                if match:
                    video_id = match.group(1) if match.groups() else None
                    return ResolvedUrl(url=url, is_page_url=True, is_direct_media_url=False, video_id=video_id)
            if _host_matches(host, SHORT_LINK_HOSTS) and _SHORT_LINK_PATH.match(path):
                return ResolvedUrl(url=url, is_page_url=True, is_direct_media_url=False)

        lowered_path = path.lower()
        if lowered_path.rsplit(".", 1)[-1] in VIDEO_EXTENSIONS and "." in lowered_path.rsplit("/", 1)[-1]:
            return ResolvedUrl(url=url, is_page_url=False, is_direct_media_url=True)
        if any(marker in lowered_path for marker in VIDEO_PATH_MARKERS) or "mime_type=video" in (parsed.query or ""):
            return ResolvedUrl(url=url, is_page_url=False, is_direct_media_url=True)

        if _host_matches(host, PLATFORM_HOSTS):
            warning = "TikTok URL is not a recognized video page; attempting a direct download"
        else:
            warning = "URL does not look like a video file; attempting a direct download"
        return ResolvedUrl(url=url, is_page_url=False, is_direct_media_url=False, warning=warning)

    # =========================================================================
    # Page extraction
    # =========================================================================

    @staticmethod
    def find_candidates(html: str) -> List[str]:
        """Collect media URL candidates from page markup, in strategy order, deduplicated."""
        candidates: List[str] = []

        def _add(candidate: str) -> None:
            candidate = _unescape(candidate).strip()
            if candidate.startswith("//"):
                candidate = "https:" + candidate
            if candidate.startswith("http") and candidate not in candidates:
                candidates.append(candidate)

        # Embedded state JSON: play/download address fields
        for block in _SCRIPT_BLOCK.findall(html):
            for raw in _ADDRESS_FIELD.findall(block):
                try:
                    value = json.loads(f'"{raw}"')
                except ValueError:
                    value = raw
                _add(value)

        text = _unescape(html)
        for match in _BARE_VIDEO_URL.finditer(text):
            _add(match.group(0))
        for match in _CDN_VIDEO_URL.finditer(text):
            _add(match.group(0))

        return candidates

    @staticmethod
    def select_candidate(candidates: List[str]) -> Optional[str]:
        """Prefer a quality-marked, unwatermarked URL; otherwise the first candidate."""
        if not candidates:
            return None
        for candidate in candidates:
            if _QUALITY_MARKER.search(candidate) and not _WATERMARK_MARKER.search(candidate):
                return candidate
        return candidates[0]

    async def fetch_page(self, page_url: str) -> str:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=BROWSER_HEADERS,
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
            ) as client:
                response = await client.get(page_url)
        except httpx.TooManyRedirects as exc:
            raise ExtractionError(page_url, f"Too many redirects fetching page: {page_url}") from exc
        except httpx.TimeoutException as exc:
            raise ExtractionError(page_url, f"Timed out fetching page: {page_url}") from exc
        except httpx.RequestError as exc:
            raise ExtractionError(page_url, f"Unable to fetch page: {page_url}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ExtractionError(page_url, f"Page fetch failed with HTTP {response.status_code}: {page_url}")
        return response.text

    async def extract_actual_url(self, page_url: str) -> str:
        """Fetch a TikTok content page and extract the best media URL from it."""
        html = await self.fetch_page(page_url)
        candidates = self.find_candidates(html)
        logger.info("Found %s media URL candidate(s) on %s", len(candidates), page_url)

        selected = self.select_candidate(candidates)
        if not selected:
            raise ExtractionError(page_url)
        return selected
