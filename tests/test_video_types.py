"""
Tests for Telegram delivery helpers: input files, albums, degradation and
image conversion.
"""

import asyncio
import io
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiogram.exceptions import TelegramBadRequest
from aiogram.types import BufferedInputFile, FSInputFile
from PIL import Image

from conftest import FakeBot, JPEG_BYTES
from misc.video_types import (
    StreamInputFile,
    detect_image_format,
    ensure_telegram_image,
    input_file_for,
    send_image_result,
    send_video_result,
)
from tiktok_api.exceptions import DeliveryFailed
from tiktok_api.models import FileHandle, LiveStream, TransferMode, TransferResult


def buffer_result(data=JPEG_BYTES):
    return TransferResult(payload=data, byte_size=len(data), mime_type="image/jpeg",
                          mode=TransferMode.BUFFER, source_url="https://cdn.example/i.jpg")


def stream_result(response=None):
    response = response or MagicMock()
    return TransferResult(payload=LiveStream(response), byte_size=None, mime_type="video/mp4",
                          mode=TransferMode.STREAM, source_url="https://cdn.example/v.mp4")


def bad_request():
    return TelegramBadRequest(method=None, message="Bad Request: can't parse entities")


def png_bytes(mode="RGBA"):
    output = io.BytesIO()
    Image.new(mode, (8, 8), (255, 0, 0, 128) if mode == "RGBA" else (255, 0, 0)).save(output, format="PNG")
    return output.getvalue()


def test_input_file_matches_payload(tmp_path):
    path = tmp_path / "v.mp4"
    path.write_bytes(b"data")
    file_result = TransferResult(payload=FileHandle(str(path)), byte_size=4, mime_type="video/mp4",
                                 mode=TransferMode.FILE, source_url="https://cdn.example/v.mp4")

    assert isinstance(input_file_for(file_result, "v.mp4"), FSInputFile)
    assert isinstance(input_file_for(buffer_result(), "i.jpg"), BufferedInputFile)
    assert isinstance(input_file_for(stream_result(), "v.mp4"), StreamInputFile)


def test_detect_image_format():
    assert detect_image_format(JPEG_BYTES) == ".jpg"
    assert detect_image_format(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == ".webp"
    assert detect_image_format(b"\x00\x00\x00\x18ftypheic\x00\x00") == ".heic"
    assert detect_image_format(png_bytes()) == ".png"


@pytest.mark.asyncio
async def test_png_is_converted_to_jpeg():
    result = await ensure_telegram_image(buffer_result(png_bytes()))
    assert detect_image_format(result.payload) == ".jpg"
    assert result.byte_size == len(result.payload)
    assert result.mime_type == "image/jpeg"


@pytest.mark.asyncio
async def test_undecodable_image_is_kept():
    data = b"\x00\x00\x00\x18ftypheic" + b"\x00" * 64
    result = await ensure_telegram_image(buffer_result(data))
    assert result.payload == data


@pytest.mark.asyncio
async def test_albums_are_chunked_by_ten_with_caption_on_first():
    bot = FakeBot()
    results = [buffer_result() for _ in range(12)]

    sent = await send_image_result(bot, 1, results, "<b>caption</b>", "caption", "7400", reply_to=5)

    albums = bot.sent("send_media_group")
    assert [len(a["media"]) for a in albums] == [10, 2]
    assert albums[0]["media"][0].caption == "<b>caption</b>"
    assert albums[0]["media"][1].caption is None
    assert albums[1]["media"][0].caption is None
    assert len(sent) == 12


@pytest.mark.asyncio
async def test_single_image_is_sent_as_photo():
    bot = FakeBot()
    await send_image_result(bot, 1, [buffer_result()], "cap", "cap", "7400")
    assert len(bot.sent("send_photo")) == 1
    assert bot.sent("send_media_group") == []


@pytest.mark.asyncio
async def test_album_degrades_to_bare_media():
    bot = FakeBot()
    bot.failures["send_media_group"].extend([bad_request(), bad_request()])

    await send_image_result(bot, 1, [buffer_result(), buffer_result()], "cap", "cap", "7400")

    albums = bot.sent("send_media_group")
    assert len(albums) == 3
    assert albums[0]["media"][0].caption == "cap"
    assert albums[2]["media"][0].caption is None


@pytest.mark.asyncio
async def test_later_album_failure_is_skipped_after_first_album():
    bot = FakeBot()
    bot.failures["send_media_group"].extend([None, bad_request(), bad_request(), bad_request()])

    sent = await send_image_result(bot, 1, [buffer_result() for _ in range(13)], "cap", "cap", "7400")

    assert len(sent) == 10
    assert len(bot.sent("send_media_group")) == 4


@pytest.mark.asyncio
async def test_first_album_failure_raises():
    bot = FakeBot()
    bot.failures["send_media_group"].extend(bad_request() for _ in range(3))

    with pytest.raises(DeliveryFailed):
        await send_image_result(bot, 1, [buffer_result() for _ in range(13)], "cap", "cap", "7400")

    assert len(bot.sent("send_media_group")) == 3


@pytest.mark.asyncio
async def test_consumed_stream_is_reopened_for_next_stage():
    bot = FakeBot()
    bot.failures["send_video"].append(bad_request())
    first = stream_result()
    first.payload._consumed = True
    fresh = stream_result()
    reopen = AsyncMock(return_value=fresh)

    await send_video_result(bot, 1, first, "cap", "plain", "v.mp4", reopen=reopen)

    reopen.assert_awaited_once_with(first)
    videos = bot.sent("send_video")
    assert videos[1]["video"].stream is fresh.payload


@pytest.mark.asyncio
async def test_consumed_stream_without_reopen_fails():
    bot = FakeBot()
    bot.failures["send_video"].append(bad_request())
    result = stream_result()
    result.payload._consumed = True

    with pytest.raises(DeliveryFailed):
        await send_video_result(bot, 1, result, "cap", "plain", "v.mp4")


@pytest.mark.asyncio
async def test_upload_timeout_triggers_degradation():
    bot = FakeBot()
    bot.failures["send_video"].append(asyncio.TimeoutError())

    await send_video_result(bot, 1, buffer_result(), "cap", "plain", "v.mp4", timeout=10)

    videos = bot.sent("send_video")
    assert len(videos) == 2
    assert videos[0]["request_timeout"] == 10
    assert videos[1]["caption"] is None


@pytest.mark.asyncio
async def test_stream_input_file_yields_body_once():
    chunks = [b"ab", b"cd"]

    async def iter_chunked(size):
        for chunk in chunks:
            yield chunk

    response = MagicMock()
    response.content.iter_chunked = iter_chunked
    stream = LiveStream(response)
    input_file = StreamInputFile(stream, filename="v.mp4")

    body = [chunk async for chunk in input_file.read(None)]

    assert body == chunks
    assert stream.consumed and stream.closed
    response.close.assert_called_once()
