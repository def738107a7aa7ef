"""Tests for video URL classification and page extraction."""
import httpx
import pytest

from crown.services import video_resolver
from crown.services.video_resolver import VideoUrlResolver
from crown.utils.exceptions import ExtractionError

_REAL_ASYNC_CLIENT = httpx.AsyncClient


def _patch_transport(monkeypatch, handler):
    monkeypatch.setattr(
        video_resolver.httpx,
        "AsyncClient",
        lambda **kwargs: _REAL_ASYNC_CLIENT(transport=httpx.MockTransport(handler), **kwargs),
    )


@pytest.mark.parametrize(
    "url,is_page,is_direct,video_id",
    [
        ("https://www.tiktok.com/@creator/video/7234567890123456789", True, False, "7234567890123456789"),
        ("https://m.tiktok.com/v/7234567890123456789.html", True, False, "7234567890123456789"),
        ("https://vm.tiktok.com/ZMabc123/", True, False, None),
        ("https://cdn.example.com/media/clip.mp4", False, True, None),
        ("https://cdn.example.com/media/CLIP.MOV?sig=abc", False, True, None),
        ("https://v16-webapp.tiktok.com/video/tos/useast2a/abc/", False, True, None),
        ("https://v19.tiktokcdn.com/obj/tos-maliva-ve/abc?mime_type=video_mp4", False, True, None),
    ],
)
def test_resolve_classifies_urls(url, is_page, is_direct, video_id):
    resolved = VideoUrlResolver().resolve(url)
    assert resolved.is_page_url is is_page
    assert resolved.is_direct_media_url is is_direct
    assert resolved.video_id == video_id


def test_resolve_unknown_url_warns():
    resolved = VideoUrlResolver().resolve("https://example.com/watch?id=1")
    assert not resolved.is_page_url
    assert not resolved.is_direct_media_url
    assert resolved.warning


def test_resolve_is_pure():
    resolver = VideoUrlResolver()
    urls = [
        "https://www.tiktok.com/@creator/video/123",
        "https://cdn.example.com/a.mp4",
        "https://example.com/page",
    ]
    for url in urls:
        assert resolver.resolve(url) == resolver.resolve(url)
        assert VideoUrlResolver().resolve(url) == resolver.resolve(url)


@pytest.mark.parametrize("url", ["", "ftp://example.com/a.mp4", "not a url"])
def test_resolve_rejects_invalid_urls(url):
    with pytest.raises(ValueError):
        VideoUrlResolver().resolve(url)


def test_find_candidates_merges_strategies_in_order():
    html = """
    <html><head>
    <script id="__UNIVERSAL_DATA_FOR_REHYDRATION__" type="application/json">
      {"video": {"playAddr": "https:\\u002F\\u002Fv16-webapp.tiktok.com\\u002Fplay\\u002Fabc?a=1\\u0026b=2",
                 "downloadAddr": "https:\\u002F\\u002Fv16-webapp.tiktok.com\\u002Fplay\\u002Fabc?a=1\\u0026b=2"}}
    </script>
    </head><body>
    <a href="https://static.example.com/preview.mp4">preview</a>
    <video src="https://v19.tiktokcdn.com/obj/tos/xyz?mime_type=video_mp4&amp;q=1"></video>
    </body></html>
    """
    candidates = VideoUrlResolver.find_candidates(html)
    assert candidates == [
        "https://v16-webapp.tiktok.com/play/abc?a=1&b=2",
        "https://static.example.com/preview.mp4",
        "https://v19.tiktokcdn.com/obj/tos/xyz?mime_type=video_mp4&q=1",
    ]


def test_select_candidate_prefers_quality_over_watermark():
    candidates = [
        "https://v16.tiktokcdn.com/watermark/video.mp4",
        "https://v16.tiktokcdn.com/hd/video.mp4",
    ]
    assert VideoUrlResolver.select_candidate(candidates) == "https://v16.tiktokcdn.com/hd/video.mp4"


def test_select_candidate_defaults_to_first():
    candidates = ["https://a.example.com/one.mp4", "https://a.example.com/two.mp4"]
    assert VideoUrlResolver.select_candidate(candidates) == "https://a.example.com/one.mp4"
    assert VideoUrlResolver.select_candidate([]) is None


@pytest.mark.asyncio
async def test_extract_actual_url_follows_redirects_and_sends_browser_headers(monkeypatch):
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        if request.url.host == "vm.tiktok.com":
            return httpx.Response(301, headers={"Location": "https://www.tiktok.com/@c/video/1"})
        return httpx.Response(200, text='<script>{"playAddr":"https://v16.tiktokcdn.com/v/1080p.mp4"}</script>')

    _patch_transport(monkeypatch, handler)

    url = await VideoUrlResolver().extract_actual_url("https://vm.tiktok.com/ZMabc/")

    assert url == "https://v16.tiktokcdn.com/v/1080p.mp4"
    assert len(seen) == 2
    assert "Mozilla/5.0" in seen[0].headers["user-agent"]


@pytest.mark.asyncio
async def test_extract_with_zero_candidates_raises_with_page_url(monkeypatch):
    _patch_transport(monkeypatch, lambda request: httpx.Response(200, text="<html><body>No video</body></html>"))
    page_url = "https://www.tiktok.com/@creator/video/123"

    with pytest.raises(ExtractionError) as exc_info:
        await VideoUrlResolver().extract_actual_url(page_url)

    assert exc_info.value.details["page_url"] == page_url
    assert exc_info.value.error_code == "EXTRACTION_FAILED"


@pytest.mark.asyncio
async def test_extract_stops_after_five_redirects(monkeypatch):
    def handler(request: httpx.Request):
        hop = int(request.url.params.get("hop", "0"))
        return httpx.Response(302, headers={"Location": f"https://www.tiktok.com/loop?hop={hop + 1}"})

    _patch_transport(monkeypatch, handler)

    with pytest.raises(ExtractionError):
        await VideoUrlResolver().extract_actual_url("https://www.tiktok.com/@c/video/1")


@pytest.mark.asyncio
async def test_extract_page_fetch_failure_is_extraction_error(monkeypatch):
    _patch_transport(monkeypatch, lambda request: httpx.Response(404, text="gone"))
    with pytest.raises(ExtractionError) as exc_info:
        await VideoUrlResolver().extract_actual_url("https://www.tiktok.com/@c/video/1")
    assert "404" in exc_info.value.message
