import asyncio
import errno
import logging
import re
from datetime import datetime, timezone
from sys import exc_info
from traceback import format_exception
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

import aiohttp
from aiogram.utils.markdown import hlink
from aiogram.utils.text_decorations import html_decoration

from data.config import locale, config
from tiktok_api.exceptions import (
    FetchFailed,
    TikTokDeletedError,
    TikTokPrivateError,
    TikTokRegionError,
    TransferFailed,
)
from tiktok_api.models import ContentReference

logger = logging.getLogger(__name__)

url_regex = re.compile(r'https?://[^\s]+')
tiktok_regex = re.compile(r'(?:https?://)?(?:www\.)?(?:tiktok\.com|vt\.tiktok\.com|vm\.tiktok\.com)', re.IGNORECASE)

DESCRIPTION_LIMIT = 300
CAPTION_TIMEZONE = 'Asia/Jakarta'


def lang_func(usrlang: Optional[str]) -> str:
    if usrlang in locale['langs']:
        return usrlang
    return config["locale"]["default_lang"]


def is_valid_tiktok_url(url: str) -> bool:
    return tiktok_regex.search(url) is not None


def extract_urls(text: Optional[str]) -> list[str]:
    """Return every TikTok link in ``text``, in order of appearance."""
    if not text:
        return []
    return [url for url in url_regex.findall(text) if is_valid_tiktok_url(url)]


def format_timestamp(timestamp, lang: str = 'id', tz: str = CAPTION_TIMEZONE) -> str:
    try:
        date = datetime.fromtimestamp(int(timestamp), tz=timezone.utc).astimezone(ZoneInfo(tz))
    except (TypeError, ValueError, OverflowError, OSError):
        return locale[lang]['unknown_date']
    return date.strftime('%d/%m/%Y %H:%M:%S %Z')


def format_size_mb(byte_size: Optional[int]) -> Optional[str]:
    if byte_size is None:
        return None
    return f'{byte_size / 1024 / 1024:.2f}'


def content_url(content: ContentReference) -> str:
    if content.link:
        return content.link
    kind = 'photo' if content.is_image_set else 'video'
    return f'https://www.tiktok.com/@{content.author.handle}/{kind}/{content.media_id}'


def generate_caption(content: ContentReference, lang: str, size_mb: Optional[str] = None,
                     plain: bool = False) -> str:
    """Build the result caption.

    ``plain`` drops HTML markup so the text can be sent without a parse mode.
    """
    texts = locale[lang]
    url = content_url(content)
    quote = (lambda s: s) if plain else html_decoration.quote

    username = quote(content.author.handle)
    if not plain:
        username = hlink(content.author.handle, url)

    lines = [
        texts['caption_date'].format(format_timestamp(content.created_at, lang)),
        texts['caption_uid'].format(quote(content.author.id)),
        texts['caption_username'].format(username),
    ]
    if size_mb:
        lines.append(texts['caption_size'].format(size_mb))
    lines.append(texts['caption_api'].format(content.source_version.label))
    if plain:
        lines.append(f"🔗 {texts['caption_link']}: {url}")
    else:
        lines.append(f"🔗 {hlink(texts['caption_link'], url)}")
    caption = '\n'.join(lines)

    description = (content.description or '').strip()
    if description:
        clean = description[:DESCRIPTION_LIMIT]
        ellipsis = '...' if len(description) > DESCRIPTION_LIMIT else ''
        caption += f'\n\n📝 "{quote(clean)}{ellipsis}"'
    return caption


def _error_chain(e: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = e
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if isinstance(current, FetchFailed) and current.last_error is not None:
            current = current.last_error
        elif isinstance(current, TransferFailed) and current.cause is not None:
            current = current.cause
        else:
            current = current.__cause__ or current.__context__


def _http_status(e: BaseException) -> Optional[int]:
    if isinstance(e, TransferFailed):
        return e.status
    if isinstance(e, aiohttp.ClientResponseError):
        return e.status
    return None


def classify_error(e: BaseException) -> str:
    """Map a pipeline failure to a user-facing category.

    Returns one of ``refused``, ``timeout``, ``denied``, ``not_found``,
    ``fetch`` or ``generic``.
    """
    for err in _error_chain(e):
        if isinstance(err, ConnectionRefusedError) or (
            isinstance(err, OSError) and err.errno == errno.ECONNREFUSED
        ):
            return 'refused'
        if isinstance(err, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return 'timeout'
        if isinstance(err, (TikTokPrivateError, TikTokRegionError)):
            return 'denied'
        if isinstance(err, TikTokDeletedError):
            return 'not_found'
        status = _http_status(err)
        if status in (401, 403):
            return 'denied'
        if status == 404:
            return 'not_found'
    if isinstance(e, FetchFailed):
        return 'fetch'
    message = str(e)
    if '403' in message:
        return 'denied'
    if '404' in message:
        return 'not_found'
    return 'generic'


def error_reason(e: BaseException, lang: str) -> str:
    category = classify_error(e)
    if category == 'generic':
        return str(e) or type(e).__name__
    return locale[lang][f'error_{category}']


def error_catch(e):
    error_type, error_instance, tb = exc_info()
    if error_instance is None:
        error_type, error_instance, tb = type(e), e, e.__traceback__
    tb_str = format_exception(error_type, error_instance, tb)
    error_message = "".join(tb_str)
    return error_message
