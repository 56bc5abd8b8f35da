"""
Shared fixtures: a recording stand-in for the aiogram Bot, scripted
extraction services and an in-process media server.
"""

import asyncio
from collections import defaultdict
from types import SimpleNamespace

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from misc.queue_manager import ResourceGovernor

# Smallest payload that passes the default plausibility threshold comfortably
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 4096


async def no_sleep(_delay):
    await asyncio.sleep(0)


class SleepRecorder:
    """Injectable sleep that records requested delays without waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeBot:
    """Records every Telegram call.

    ``failures[method]`` holds errors to raise in order; a None entry lets that call through.
    """

    def __init__(self, member_status="administrator", can_delete=True, bot_id=42):
        self.calls = []
        self.failures = defaultdict(list)
        self.member_status = member_status
        self.can_delete = can_delete
        self.bot_id = bot_id
        self._next_id = 1000

    def _record(self, method, **kwargs):
        self.calls.append((method, kwargs))
        if self.failures[method]:
            error = self.failures[method].pop(0)
            if error is not None:
                raise error
        self._next_id += 1
        return SimpleNamespace(message_id=self._next_id)

    def sent(self, method):
        return [kwargs for name, kwargs in self.calls if name == method]

    async def send_message(self, chat_id, text, **kwargs):
        return self._record("send_message", chat_id=chat_id, text=text, **kwargs)

    async def send_video(self, chat_id, video, **kwargs):
        return self._record("send_video", chat_id=chat_id, video=video, **kwargs)

    async def send_photo(self, chat_id, photo, **kwargs):
        return self._record("send_photo", chat_id=chat_id, photo=photo, **kwargs)

    async def send_media_group(self, chat_id, media, **kwargs):
        message = self._record("send_media_group", chat_id=chat_id, media=media, **kwargs)
        return [message for _ in media]

    async def edit_message_text(self, text, chat_id=None, message_id=None, **kwargs):
        return self._record("edit_message_text", text=text, chat_id=chat_id,
                            message_id=message_id, **kwargs)

    async def delete_message(self, chat_id, message_id, **kwargs):
        self._record("delete_message", chat_id=chat_id, message_id=message_id, **kwargs)
        return True

    async def me(self):
        return SimpleNamespace(id=self.bot_id)

    async def get_chat_member(self, chat_id, user_id):
        self._record("get_chat_member", chat_id=chat_id, user_id=user_id)
        return SimpleNamespace(status=self.member_status, can_delete_messages=self.can_delete)


class FakeExtractor:
    """Extraction service answering from a script; the last entry repeats."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    async def downloader(self, url, version):
        self.calls += 1
        if len(self.responses) > 1:
            response = self.responses.pop(0)
        else:
            response = self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


def success(result):
    return {"status": "success", "result": result}


class MediaApp:
    """aiohttp app serving media fixtures and counting hits per path."""

    def __init__(self):
        self.hits = defaultdict(int)
        self.cookies_seen = []
        self.bodies = {}
        self.flaky_failures = 2
        self.stalls = 1
        self.stall_seconds = 1.0
        self.app = web.Application()
        self.app.router.add_get("/media/{name}", self.media)
        self.app.router.add_get("/flaky", self.flaky)
        self.app.router.add_get("/private", self.private)
        self.app.router.add_get("/redirect", self.redirect)
        self.app.router.add_get("/chunked/{name}", self.chunked)
        self.app.router.add_get("/stall", self.stall)

    def add(self, name, body):
        self.bodies[name] = body

    async def media(self, request):
        name = request.match_info["name"]
        self.hits[name] += 1
        if name not in self.bodies:
            raise web.HTTPNotFound()
        return web.Response(body=self.bodies[name], content_type="video/mp4")

    async def flaky(self, request):
        self.hits["flaky"] += 1
        if self.hits["flaky"] <= self.flaky_failures:
            raise web.HTTPServiceUnavailable()
        return web.Response(body=JPEG_BYTES, content_type="image/jpeg")

    async def private(self, request):
        self.hits["private"] += 1
        cookie = request.headers.get("Cookie")
        self.cookies_seen.append(cookie)
        if cookie != "sessionid=abc":
            raise web.HTTPForbidden()
        return web.Response(body=JPEG_BYTES, content_type="image/jpeg")

    async def redirect(self, request):
        raise web.HTTPFound("/media/video.mp4")

    async def chunked(self, request):
        """Same bodies as /media, sent without Content-Length."""
        name = request.match_info["name"]
        self.hits[name] += 1
        if name not in self.bodies:
            raise web.HTTPNotFound()
        response = web.StreamResponse(headers={"Content-Type": "video/mp4"})
        response.enable_chunked_encoding()
        await response.prepare(request)
        body = self.bodies[name]
        for start in range(0, len(body), 256):
            await response.write(body[start:start + 256])
        await response.write_eof()
        return response

    async def stall(self, request):
        """Hangs before answering for the first ``stalls`` hits."""
        self.hits["stall"] += 1
        if self.hits["stall"] <= self.stalls:
            await asyncio.sleep(self.stall_seconds)
        return web.Response(body=JPEG_BYTES, content_type="image/jpeg")


@pytest_asyncio.fixture
async def media_app():
    media = MediaApp()
    server = TestServer(media.app)
    await server.start_server()
    media.url = lambda path: str(server.make_url(path))
    try:
        yield media
    finally:
        await server.close()


@pytest_asyncio.fixture
async def http_session():
    session = aiohttp.ClientSession()
    try:
        yield session
    finally:
        await session.close()


@pytest_asyncio.fixture
async def governor():
    governor = ResourceGovernor(max_users=5, max_downloads=3, max_uploads=2)
    try:
        yield governor
    finally:
        await governor.close()


@pytest.fixture
def fake_bot():
    return FakeBot()
