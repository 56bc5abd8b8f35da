"""
Tests for the extraction services and the cookie store.
"""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from tiktok_api.client import normalize_content
from tiktok_api.cookie_store import CookieStore
from tiktok_api.extractors import HybridApiExtractor, extract_video_id, is_short_url
from tiktok_api.models import ApiVersion, ContentKind

AWEME_VIDEO = {
    "aweme_id": "7300",
    "aweme_type": 0,
    "create_time": 1700000000,
    "desc": "dance",
    "author": {"uid": "99", "unique_id": "dancer", "nickname": "Dancer"},
    "video": {"play_addr": {"url_list": ["https://cdn.example/a.mp4", "https://cdn.example/b.mp4"]}},
}

AWEME_IMAGES = {
    "aweme_id": "7400",
    "aweme_type": 150,
    "desc": "",
    "author": {"uid": "99", "unique_id": "dancer"},
    "image_post_info": {"images": [
        {"display_image": {"url_list": ["https://img/1.heic", "https://img/1.jpeg"]}},
        {"display_image": {"url_list": ["https://img/2.jpeg"]}},
    ]},
}


def test_extract_video_id():
    assert extract_video_id("https://www.tiktok.com/@a/video/7300?lang=en") == "7300"
    assert extract_video_id("https://www.tiktok.com/@a/photo/7400") == "7400"
    assert extract_video_id("https://www.tiktok.com/@a") is None


def test_is_short_url():
    assert is_short_url("https://vt.tiktok.com/ZS123/")
    assert is_short_url("https://vm.tiktok.com/ZS123/")
    assert is_short_url("https://www.tiktok.com/t/ZS123/")
    assert not is_short_url("https://www.tiktok.com/@a/video/7300")


def test_to_v2_maps_video():
    data = HybridApiExtractor.to_v2(AWEME_VIDEO)
    assert data["type"] == "video"
    assert data["video"]["playAddr"] == ["https://cdn.example/a.mp4", "https://cdn.example/b.mp4"]

    content = normalize_content(data, ApiVersion.V2, "https://vt.tiktok.com/x/")
    assert content.best_url == "https://cdn.example/a.mp4"
    assert content.author.handle == "dancer"


def test_to_v2_maps_image_post():
    data = HybridApiExtractor.to_v2(AWEME_IMAGES)
    assert data["type"] == "image"
    assert data["images"] == ["https://img/1.jpeg", "https://img/2.jpeg"]

    content = normalize_content(data, ApiVersion.V2, "https://vt.tiktok.com/x/")
    assert content.kind == ContentKind.IMAGE_SET


@pytest.mark.asyncio
async def test_hybrid_downloader(http_session):
    seen = []

    async def video_data(request):
        seen.append(request.query["url"])
        if "missing" in request.query["url"]:
            return web.json_response({"code": 400, "message": "not found"})
        return web.json_response({"code": 200, "data": AWEME_VIDEO})

    app = web.Application()
    app.router.add_get("/api/hybrid/video_data", video_data)
    server = TestServer(app)
    await server.start_server()
    try:
        extractor = HybridApiExtractor(str(server.make_url("/")), lambda: http_session)

        ok = await extractor.downloader("https://vt.tiktok.com/ok/")
        assert ok["status"] == "success"
        assert ok["result"]["id"] == "7300"

        missing = await extractor.downloader("https://vt.tiktok.com/missing/")
        assert missing["status"] == "error"
        assert seen == ["https://vt.tiktok.com/ok/", "https://vt.tiktok.com/missing/"]
    finally:
        await server.close()


def test_cookie_store_loads_file(tmp_path):
    path = tmp_path / "cookies.txt"
    path.write_text("sessionid=abc; tt_webid=1\n", encoding="utf-8")

    store = CookieStore(str(path))

    assert store.has_cookie()
    assert store.cookie == "sessionid=abc; tt_webid=1"


def test_cookie_store_without_file(tmp_path):
    store = CookieStore(str(tmp_path / "missing.txt"))
    assert not store.has_cookie()
    assert store.cookie is None


def test_cookie_store_singleton(tmp_path):
    CookieStore.reset()
    try:
        store = CookieStore.initialize(str(tmp_path / "missing.txt"))
        assert CookieStore.get_instance() is store
        assert CookieStore.initialize("other.txt") is store
    finally:
        CookieStore.reset()
