"""Per-link delivery pipeline: fetch, transfer, validate, deliver, clean up."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from aiogram import Bot
from aiogram.enums import ChatMemberStatus
from aiogram.exceptions import TelegramAPIError
from aiogram.types import Message, ReplyParameters

from data.config import config, locale, second_ids
from misc.queue_manager import ResourceGovernor, SessionSlot
from misc.utils import error_catch, error_reason, format_size_mb, generate_caption
from misc.video_types import ensure_telegram_image, send_image_result, send_video_result
from tiktok_api.client import TikTokClient
from tiktok_api.exceptions import PayloadTooSmall, PermissionDenied, TransferFailed
from tiktok_api.models import ContentReference, TransferMode, TransferResult
from tiktok_api.transfer import MediaTransfer

logger = logging.getLogger(__name__)

GROUP_CHAT_TYPES = ("group", "supergroup")

# Telegram message length limit
MAX_MESSAGE_LENGTH = 4096


class PipelineState(str, Enum):
    QUEUED = "queued"
    SLOT_ACQUIRED = "slot_acquired"
    FETCHING = "fetching"
    TRANSFERRING = "transferring"
    VALIDATING = "validating"
    DELIVERING = "delivering"
    CLEANING = "cleaning"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class LinkRequest:
    """One TikTok link from one incoming message."""

    chat_id: int
    chat_type: str
    message_id: int
    user_id: int
    url: str
    lang: str

    @property
    def group_chat(self) -> bool:
        return self.chat_type in GROUP_CHAT_TYPES


@dataclass
class PipelineSettings:
    video_mode: TransferMode = TransferMode.STREAM
    min_payload_bytes: int = 1024
    upload_timeout: int = 120
    image_file_fallback: bool = True
    convert_images: bool = True
    auto_delete: bool = True
    delete_delay: float = 2.0
    only_in_groups: bool = True
    delete_status_messages: bool = True
    debug_chat_ids: tuple[int, ...] = ()

    @classmethod
    def from_config(cls) -> "PipelineSettings":
        transfer_config = config["transfer"]
        delete_config = config["delete"]
        return cls(
            video_mode=TransferMode(transfer_config["video_mode"]),
            min_payload_bytes=transfer_config["min_payload_bytes"],
            upload_timeout=transfer_config["upload_timeout"],
            image_file_fallback=transfer_config["image_file_fallback"],
            convert_images=transfer_config["convert_images"],
            auto_delete=delete_config["enabled"],
            delete_delay=delete_config["delay"],
            only_in_groups=delete_config["only_in_groups"],
            delete_status_messages=delete_config["delete_status_messages"],
            debug_chat_ids=tuple(second_ids),
        )


@dataclass
class PipelineRun:
    """State owned by one pipeline run."""

    request: LinkRequest
    state: PipelineState = PipelineState.QUEUED
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.QUEUED])
    slot: Optional[SessionSlot] = None
    status_message: Optional[Message] = None
    can_delete: bool = False
    content: Optional[ContentReference] = None
    results: list[TransferResult] = field(default_factory=list)
    delivered: int = 0
    failed: int = 0
    error: Optional[Exception] = None

    def advance(self, state: PipelineState) -> None:
        logger.debug(f"[{self.request.chat_id}] {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


class DeliveryPipeline:
    """
    Runs one TikTok link through the delivery state machine:

        QUEUED -> SLOT_ACQUIRED -> FETCHING -> TRANSFERRING -> VALIDATING
               -> DELIVERING -> CLEANING -> DONE

    Any step may end in ERRORED. Cleanup (temp files, open streams, status
    message, user slot) runs on both paths, and a failed run answers the user
    with exactly one error message.

    Usage:
        pipeline = DeliveryPipeline(bot, governor, client, transfer)
        state = await pipeline.process(LinkRequest(...))
    """

    def __init__(
        self,
        bot: Bot,
        governor: ResourceGovernor,
        client: TikTokClient,
        transfer: MediaTransfer,
        settings: Optional[PipelineSettings] = None,
    ):
        self.bot = bot
        self.governor = governor
        self.client = client
        self.transfer = transfer
        self.settings = settings or PipelineSettings.from_config()
        self._background: set[asyncio.Task] = set()

    async def process(self, request: LinkRequest) -> PipelineState:
        """Process a link and return the terminal state."""
        run = await self.run(request)
        return run.state

    async def run(self, request: LinkRequest) -> PipelineRun:
        run = PipelineRun(request)
        error: Optional[Exception] = None
        try:
            await self._execute(run)
        except Exception as e:
            error = e
        finally:
            await self._cleanup(run, success=error is None)

        if error is None:
            run.advance(PipelineState.DONE)
            logger.info(
                f"Delivered {run.content.kind.value} {run.content.media_id} to chat {request.chat_id} "
                f"({run.content.source_version.label}, {run.delivered} item(s))"
            )
            if run.can_delete:
                self.schedule_delete(request.chat_id, request.message_id, self.settings.delete_delay)
        else:
            run.error = error
            run.advance(PipelineState.ERRORED)
            await self._reply_error(run, error)
        return run

    # ----- steps -----

    async def _execute(self, run: PipelineRun) -> None:
        request = run.request
        run.slot = await self.governor.acquire_user_slot(request.user_id)
        run.advance(PipelineState.SLOT_ACQUIRED)

        run.can_delete = await self._resolve_delete_rights(request)
        await self._send_status(run, locale[request.lang]['status_downloading'])

        run.advance(PipelineState.FETCHING)
        content = await self.client.fetch(request.url)
        run.content = content
        await self._edit_status(run, locale[request.lang]['status_processing'])

        if content.is_video:
            await self._video_path(run, content)
        else:
            await self._image_path(run, content)

    async def _video_path(self, run: PipelineRun, content: ContentReference) -> None:
        request = run.request
        texts = locale[request.lang]
        mode = self.settings.video_mode

        run.advance(PipelineState.TRANSFERRING)
        if mode == TransferMode.STREAM:
            await self._edit_status(run, texts['status_streaming_video'])
        async with self.governor.download_slot():
            result = await self.transfer.transfer(
                content.best_url, mode,
                filename_prefix=f"video_{content.media_id}", suffix=".mp4",
            )
            run.results.append(result)

        run.advance(PipelineState.VALIDATING)
        self.validate(result)

        run.advance(PipelineState.DELIVERING)
        await self._edit_status(run, texts['status_sending_video'])
        size_mb = format_size_mb(result.byte_size)
        caption = generate_caption(content, request.lang, size_mb)
        plain_caption = generate_caption(content, request.lang, size_mb, plain=True)

        async def reopen(old: TransferResult) -> TransferResult:
            fresh = await self.transfer.reopen(old)
            run.results.append(fresh)
            return fresh

        async with self.governor.upload_slot():
            await send_video_result(
                self.bot, request.chat_id, result, caption, plain_caption,
                filename=f"{content.media_id}.mp4", reopen=reopen,
                reply_to=request.message_id, timeout=self.settings.upload_timeout,
            )
        run.delivered = 1

    async def _transfer_image(self, run: PipelineRun, content: ContentReference,
                              index: int, url: str) -> TransferResult:
        async with self.governor.download_slot():
            try:
                result = await self.transfer.transfer(url, TransferMode.BUFFER)
            except TransferFailed:
                if not self.settings.image_file_fallback:
                    raise
                logger.info(f"Image {index + 1} failed in buffer mode, trying file mode")
                result = await self.transfer.transfer(
                    url, TransferMode.FILE,
                    filename_prefix=f"image_{content.media_id}_{index + 1}", suffix=".jpg",
                )
            run.results.append(result)
        return result

    async def _image_path(self, run: PipelineRun, content: ContentReference) -> None:
        request = run.request
        texts = locale[request.lang]
        total = len(content.media_locators)

        run.advance(PipelineState.TRANSFERRING)
        await self._edit_status(run, texts['status_streaming_images'].format(total))
        outcomes = await asyncio.gather(
            *(self._transfer_image(run, content, i, url) for i, url in enumerate(content.media_locators)),
            return_exceptions=True,
        )

        run.advance(PipelineState.VALIDATING)
        valid: list[TransferResult] = []
        last_error: Optional[Exception] = None
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                last_error = outcome
                logger.warning(f"Image {index + 1}/{total} of {content.media_id} failed: {outcome}")
                continue
            try:
                self.validate(outcome)
            except PayloadTooSmall as e:
                last_error = e
                logger.warning(f"Image {index + 1}/{total} of {content.media_id} rejected: {e}")
                continue
            if self.settings.convert_images:
                outcome = await ensure_telegram_image(outcome)
            valid.append(outcome)

        run.failed = total - len(valid)
        if not valid:
            raise TransferFailed(
                f"All {total} images failed: {last_error}",
                status=getattr(last_error, "status", None),
                cause=last_error,
            ) from last_error

        run.advance(PipelineState.DELIVERING)
        await self._edit_status(run, texts['status_sending_images'].format(len(valid)))
        caption = generate_caption(content, request.lang)
        plain_caption = generate_caption(content, request.lang, plain=True)
        async with self.governor.upload_slot():
            sent = await send_image_result(
                self.bot, request.chat_id, valid, caption, plain_caption,
                file_prefix=content.media_id, reply_to=request.message_id,
                timeout=self.settings.upload_timeout,
            )
        run.delivered = len(sent)
        run.failed = total - run.delivered

        if run.failed:
            logger.warning(f"{run.failed} of {total} images of {content.media_id} were not delivered")
            await self._send_text(request, texts['partial_images'].format(run.failed, total))

    def validate(self, result: TransferResult) -> None:
        """Reject empty or implausibly small payloads (error pages).

        Unknown size is accepted: a stream without Content-Length reports a
        size only when its body ended within the transfer read-ahead.

        Raises:
            PayloadTooSmall
        """
        size = result.byte_size
        if size is None:
            return
        if size == 0 or size < self.settings.min_payload_bytes:
            raise PayloadTooSmall(size, self.settings.min_payload_bytes)

    # ----- cleanup -----

    async def _cleanup(self, run: PipelineRun, success: bool) -> None:
        if success:
            run.advance(PipelineState.CLEANING)
        for result in run.results:
            result.release()
        run.results.clear()

        if run.status_message is not None and self.settings.delete_status_messages:
            await self._delete_message(run.request.chat_id, run.status_message.message_id)
            run.status_message = None

        if run.slot is not None:
            self.governor.release_user_slot(run.request.user_id, run.slot)
            run.slot = None

    def schedule_delete(self, chat_id: int, message_id: int, delay: float) -> asyncio.Task:
        """Delete a message after ``delay`` seconds without blocking the caller."""
        task = asyncio.create_task(self._delete_later(chat_id, message_id, delay))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _delete_later(self, chat_id: int, message_id: int, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._delete_message(chat_id, message_id)

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ----- telegram helpers -----

    async def _resolve_delete_rights(self, request: LinkRequest) -> bool:
        if not self.settings.auto_delete:
            return False
        if not request.group_chat:
            return not self.settings.only_in_groups
        try:
            await self._check_delete_rights(request.chat_id)
        except PermissionDenied as e:
            logger.info(f"Auto-delete disabled for chat {request.chat_id}: {e}")
            return False
        return True

    async def _check_delete_rights(self, chat_id: int) -> None:
        """
        Raises:
            PermissionDenied: The bot may not delete messages in ``chat_id``
        """
        try:
            me = await self.bot.me()
            member = await self.bot.get_chat_member(chat_id, me.id)
        except TelegramAPIError as e:
            raise PermissionDenied(f"Failed to check permissions: {e}") from e
        if member.status == ChatMemberStatus.CREATOR:
            return
        if member.status == ChatMemberStatus.ADMINISTRATOR and getattr(member, "can_delete_messages", False):
            return
        raise PermissionDenied("Bot has no delete rights")

    async def _send_status(self, run: PipelineRun, text: str) -> None:
        request = run.request
        try:
            run.status_message = await self.bot.send_message(
                request.chat_id, text,
                reply_parameters=ReplyParameters(message_id=request.message_id,
                                                 allow_sending_without_reply=True),
                disable_notification=True,
            )
        except TelegramAPIError as e:
            logger.warning(f"Failed to send status message: {e}")

    async def _edit_status(self, run: PipelineRun, text: str) -> None:
        if run.status_message is None:
            return
        try:
            await self.bot.edit_message_text(
                text=text, chat_id=run.request.chat_id,
                message_id=run.status_message.message_id,
            )
        except TelegramAPIError as e:
            logger.debug(f"Failed to edit status message: {e}")

    async def _delete_message(self, chat_id: int, message_id: int) -> None:
        try:
            await self.bot.delete_message(chat_id, message_id)
        except TelegramAPIError as e:
            logger.debug(f"Failed to delete message {message_id} in {chat_id}: {e}")

    async def _send_text(self, request: LinkRequest, text: str, **kwargs) -> None:
        try:
            await self.bot.send_message(
                request.chat_id, text,
                reply_parameters=ReplyParameters(message_id=request.message_id,
                                                 allow_sending_without_reply=True),
                **kwargs,
            )
        except TelegramAPIError as e:
            logger.error(f"Failed to send message to {request.chat_id}: {e}")

    async def _reply_error(self, run: PipelineRun, error: Exception) -> None:
        request = run.request
        error_text = error_catch(error)
        logger.error(f"Failed to process {request.url} for chat {request.chat_id} "
                     f"(state {run.history[-2].value}): {error}")
        logger.debug(error_text)

        reason = error_reason(error, request.lang)
        await self._send_text(request, locale[request.lang]['error'].format(reason), parse_mode=None)
        if request.chat_id in self.settings.debug_chat_ids:
            await self._send_text(request, error_text[-MAX_MESSAGE_LENGTH:], parse_mode=None)
