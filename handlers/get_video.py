import asyncio
import logging

from aiogram import Router, F
from aiogram.types import Message

from data.config import locale
from misc.pipeline import DeliveryPipeline, LinkRequest, PipelineState
from misc.utils import extract_urls, lang_func

video_router = Router(name=__name__)


@video_router.message(F.text)
async def send_tiktok_video(message: Message, pipeline: DeliveryPipeline):
    # Group chat set
    group_chat = message.chat.type != 'private'
    lang = lang_func(message.from_user.language_code if message.from_user else None)

    links = extract_urls(message.text)
    if not links:
        # Send error message, if not in group chat
        if not group_chat:
            await message.reply(locale[lang]['link_error'])
        return

    user_id = message.from_user.id if message.from_user else message.chat.id
    logging.info(f'Processing {len(links)} link(s): CHAT {message.chat.id} - USER {user_id}')

    requests = [
        LinkRequest(
            chat_id=message.chat.id,
            chat_type=message.chat.type,
            message_id=message.message_id,
            user_id=user_id,
            url=link,
            lang=lang,
        )
        for link in links
    ]
    # Every run handles its own errors, one failing link never stops the others
    states = await asyncio.gather(*(pipeline.process(request) for request in requests))

    failed = sum(1 for state in states if state == PipelineState.ERRORED)
    if len(links) > 1 and failed:
        await message.reply(locale[lang]['partial_links'].format(failed, len(links)), parse_mode=None)
