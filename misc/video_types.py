import asyncio
import concurrent.futures
import io
import logging
import threading
from enum import IntEnum
from typing import Any, Awaitable, Callable, Optional

from aiogram import Bot
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError
from aiogram.types import (
    BufferedInputFile,
    FSInputFile,
    InputFile,
    InputMediaPhoto,
    LinkPreviewOptions,
    Message,
    ReplyParameters,
)
from PIL import Image
import pillow_heif

from tiktok_api.exceptions import DeliveryFailed
from tiktok_api.models import FileHandle, LiveStream, TransferResult

# Configure logger
logger = logging.getLogger(__name__)

# Register HEIF opener with pillow
pillow_heif.register_heif_opener()

# Telegram limit for one media group
ALBUM_SIZE = 10

Reopen = Callable[[TransferResult], Awaitable[TransferResult]]


class DeliveryStage(IntEnum):
    RICH = 1  # media + HTML caption
    SEPARATE_CAPTION = 2  # media, then plain caption as its own message
    BARE = 3  # media only


class StreamInputFile(InputFile):
    """Uploads a live HTTP response body without storing it first."""

    def __init__(self, stream: LiveStream, filename: Optional[str] = None, chunk_size: int = 65536):
        super().__init__(filename=filename, chunk_size=chunk_size)
        self.stream = stream

    async def read(self, bot: Bot):
        async for chunk in self.stream.iter_chunks(self.chunk_size):
            yield chunk


def input_file_for(result: TransferResult, filename: str) -> InputFile:
    payload = result.payload
    if isinstance(payload, FileHandle):
        return FSInputFile(payload.path, filename=filename)
    if isinstance(payload, LiveStream):
        return StreamInputFile(payload, filename=filename)
    return BufferedInputFile(payload, filename)


def _reply_parameters(reply_to: Optional[int]) -> Optional[ReplyParameters]:
    if reply_to is None:
        return None
    return ReplyParameters(message_id=reply_to, allow_sending_without_reply=True)


async def _fresh(result: TransferResult, reopen: Optional[Reopen]) -> TransferResult:
    """Make sure a stream payload can be read again for another stage."""
    payload = result.payload
    if not isinstance(payload, LiveStream) or not (payload.consumed or payload.closed):
        return result
    if reopen is None:
        raise DeliveryFailed("Stream was consumed by a failed upload and cannot be re-opened")
    logger.info("Re-opening consumed stream for the next delivery stage")
    return await reopen(result)


async def send_plain_caption(bot: Bot, chat_id: int, text: str, reply_to: Optional[int] = None,
                             timeout: Optional[int] = None) -> None:
    try:
        await bot.send_message(chat_id, text, parse_mode=None,
                               reply_parameters=_reply_parameters(reply_to),
                               link_preview_options=LinkPreviewOptions(is_disabled=True),
                               request_timeout=timeout)
    except (TelegramAPIError, asyncio.TimeoutError) as e:
        # Media is already delivered at this point
        logger.warning(f"Failed to send separate caption: {e}")


async def deliver_with_degradation(attempt: Callable[[DeliveryStage], Awaitable[Any]], what: str) -> Any:
    """Run ``attempt`` for each delivery stage until one is accepted by Telegram.

    Raises:
        DeliveryFailed: Every stage was rejected
    """
    last_error: Optional[BaseException] = None
    for stage in DeliveryStage:
        try:
            result = await attempt(stage)
            if stage != DeliveryStage.RICH:
                logger.info(f"{what} delivered at degraded stage {stage.name}")
            return result
        except (TelegramAPIError, asyncio.TimeoutError) as e:
            last_error = e
            logger.warning(f"Failed to send {what} (stage {stage.name}): {type(e).__name__}: {e}")
    raise DeliveryFailed(f"Failed to send {what}: {last_error}") from last_error


async def send_video_result(bot: Bot, chat_id: int, result: TransferResult, caption: str,
                            plain_caption: str, filename: str, reopen: Optional[Reopen] = None,
                            reply_to: Optional[int] = None, timeout: Optional[int] = None) -> Message:
    current = result

    async def attempt(stage: DeliveryStage) -> Message:
        nonlocal current
        if stage != DeliveryStage.RICH:
            current = await _fresh(current, reopen)
        rich = stage == DeliveryStage.RICH
        message = await bot.send_video(
            chat_id,
            video=input_file_for(current, filename),
            caption=caption if rich else None,
            parse_mode=ParseMode.HTML if rich else None,
            supports_streaming=True,
            reply_parameters=_reply_parameters(reply_to),
            request_timeout=timeout,
        )
        if stage == DeliveryStage.SEPARATE_CAPTION:
            await send_plain_caption(bot, chat_id, plain_caption, reply_to, timeout)
        return message

    return await deliver_with_degradation(attempt, "video")


async def send_image_result(bot: Bot, chat_id: int, results: list[TransferResult], caption: str,
                            plain_caption: str, file_prefix: str, reply_to: Optional[int] = None,
                            timeout: Optional[int] = None) -> list[Message]:
    """Send images as albums of up to 10, caption on the first item.

    Every album goes through the degradation stages on its own. Once an album
    has been delivered, a later album that fails every stage is skipped and its
    images are missing from the returned messages.

    Raises:
        DeliveryFailed: The first album could not be delivered
    """
    albums = [results[x:x + ALBUM_SIZE] for x in range(0, len(results), ALBUM_SIZE)]
    sent: list[Message] = []

    for num, part in enumerate(albums):
        first_album = num == 0

        async def attempt(stage: DeliveryStage, part=part, num=num, first_album=first_album):
            rich = stage == DeliveryStage.RICH and first_album
            files = [
                input_file_for(r, f'{file_prefix}_{num * ALBUM_SIZE + i + 1}{image_extension(r)}')
                for i, r in enumerate(part)
            ]
            if len(files) == 1:
                messages = [await bot.send_photo(
                    chat_id, photo=files[0],
                    caption=caption if rich else None,
                    parse_mode=ParseMode.HTML if rich else None,
                    reply_parameters=_reply_parameters(reply_to),
                    request_timeout=timeout,
                )]
            else:
                media = [
                    InputMediaPhoto(
                        media=file,
                        caption=caption if rich and i == 0 else None,
                        parse_mode=ParseMode.HTML if rich and i == 0 else None,
                    )
                    for i, file in enumerate(files)
                ]
                messages = await bot.send_media_group(
                    chat_id, media=media,
                    reply_parameters=_reply_parameters(reply_to),
                    request_timeout=timeout,
                )
            if stage == DeliveryStage.SEPARATE_CAPTION and first_album:
                await send_plain_caption(bot, chat_id, plain_caption, reply_to, timeout)
            return messages

        try:
            sent.extend(await deliver_with_degradation(attempt, f"album {num + 1}/{len(albums)}"))
        except DeliveryFailed as e:
            if not sent:
                raise
            logger.warning(f"Skipping album {num + 1}/{len(albums)} ({len(part)} images): {e}")

    return sent


# ----- image conversion -----

_executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> concurrent.futures.ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=4, thread_name_prefix="image_convert_"
            )
        return _executor


def shutdown_executor() -> None:
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=False)
            _executor = None


def detect_image_format(image_data: bytes) -> str:
    """Detect image format from magic bytes and return appropriate extension."""
    if image_data.startswith(b'\xff\xd8\xff'):
        return '.jpg'
    elif image_data.startswith(b'\x89PNG'):
        return '.png'
    elif image_data.startswith(b'RIFF') and image_data[8:12] == b'WEBP':
        return '.webp'
    elif image_data[4:12] in (b'ftypheic', b'ftypmif1', b'ftypheix', b'ftyphevc'):
        return '.heic'
    else:
        # Unknown format, default to jpg
        return '.jpg'


def image_extension(result: TransferResult) -> str:
    if isinstance(result.payload, bytes):
        return detect_image_format(result.payload)
    return '.jpg'


def convert_image_to_jpeg_optimized(image_data: bytes) -> bytes:
    """
    Convert any image data to JPEG format with a focus on minimizing
    computing power and achieving a good size/quality ratio.

    Raises:
        OSError: Pillow could not decode the data
    """
    with Image.open(io.BytesIO(image_data)) as img:
        if img.mode == 'RGBA':
            # Drop transparency onto a white background
            background = Image.new("RGB", img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[3])  # 3 is the alpha channel
            img = background
        elif img.mode != 'RGB':  # Ensure it's RGB for JPEG
            img = img.convert('RGB')

        output = io.BytesIO()
        img.save(
            output,
            format='JPEG',
            quality=75,
            optimize=False,
            subsampling=2,  # 4:2:0 chroma subsampling
            progressive=False
        )
        return output.getvalue()


async def ensure_telegram_image(result: TransferResult) -> TransferResult:
    """Convert a buffered HEIC (or PNG) image to JPEG so Telegram accepts it as a photo.

    The original bytes are kept if conversion fails.
    """
    if not isinstance(result.payload, bytes):
        return result
    extension = detect_image_format(result.payload)
    if extension in ('.jpg', '.webp'):
        return result

    loop = asyncio.get_running_loop()
    try:
        converted = await loop.run_in_executor(
            _get_executor(), convert_image_to_jpeg_optimized, result.payload
        )
    except Exception as e:
        logger.error(f"Image to JPEG conversion failed: {e}")
        return result

    logger.debug(f"Converted {extension} image to JPEG ({len(result.payload)} -> {len(converted)} bytes)")
    result.payload = converted
    result.byte_size = len(converted)
    result.mime_type = 'image/jpeg'
    return result
