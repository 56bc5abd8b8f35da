"""Extraction services backing the two fetch tiers.

Both services expose the same contract::

    await extractor.downloader(url, version) -> {"status": ..., "result": ..., "message": ...}

``status == "success"`` with a non-empty ``result`` is a usable answer; any other
response, or a raised exception, is a failed attempt for the calling tier.

- :class:`WebExtractor` (V1) runs yt-dlp's TikTok web extractor and returns the raw
  ``itemStruct`` (``video.playAddr``/``downloadAddr`` strings, ``imagePost``).
- :class:`HybridApiExtractor` (V2) queries a self-hosted hybrid API and maps the
  ``aweme_detail`` payload into the V2 shape (``video.playAddr`` list, ``images``).
"""

import asyncio
import logging
import os
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol, Tuple

import aiohttp
from aiohttp import ClientTimeout
import yt_dlp

from .exceptions import (
    TikTokDeletedError,
    TikTokExtractionError,
    TikTokInvalidLinkError,
    TikTokPrivateError,
    TikTokRegionError,
)
from .models import ApiVersion

logger = logging.getLogger(__name__)

SessionGetter = Callable[[], aiohttp.ClientSession]

# TikTok web status codes
STATUS_DELETED = 10204
STATUS_UNDER_REVIEW = 10216
STATUS_PRIVATE = 10222

# aweme_type of image slideshows in the mobile API
IMAGE_POST_AWEME_TYPES = (150, 2)


class TikTokExtractor(Protocol):
    async def downloader(self, url: str, version: ApiVersion) -> dict[str, Any]:
        ...


def extract_video_id(url: str) -> Optional[str]:
    """Extract video ID from a full TikTok URL."""
    match = re.search(r"/(?:video|photo)/(\d+)", url)
    if match:
        return match.group(1)
    return None


def is_short_url(url: str) -> bool:
    return "vm.tiktok.com" in url or "vt.tiktok.com" in url or "/t/" in url


async def resolve_url(session: aiohttp.ClientSession, url: str, timeout: float = 15) -> str:
    """Resolve short URLs (vm.tiktok.com, vt.tiktok.com, /t/) to full URLs.

    Raises:
        TikTokInvalidLinkError: If the redirect does not lead to tiktok.com
    """
    if not is_short_url(url):
        return url

    async with session.get(
        url, allow_redirects=True, timeout=ClientTimeout(total=timeout)
    ) as response:
        resolved_url = str(response.url)
    if "tiktok.com" not in resolved_url:
        raise TikTokInvalidLinkError(f"Unexpected redirect: {resolved_url}")
    logger.debug(f"URL resolved: {url} -> {resolved_url}")
    return resolved_url


class WebExtractor:
    """Primary tier: TikTok web page data through yt-dlp.

    yt-dlp is synchronous, so extraction runs in a shared thread pool.

    Args:
        session_getter: Returns the shared aiohttp session (for short URL resolution)
        cookies: Optional Netscape-format cookie file for yt-dlp
    """

    _executor: Optional[ThreadPoolExecutor] = None
    _executor_lock = threading.Lock()
    _executor_size: int = 32

    def __init__(self, session_getter: SessionGetter, cookies: Optional[str] = None):
        self.session_getter = session_getter
        if cookies and not os.path.isabs(cookies):
            cookies = os.path.abspath(cookies)
        self.cookies = cookies if cookies and os.path.isfile(cookies) else None

    @classmethod
    def _get_executor(cls) -> ThreadPoolExecutor:
        """Get or create the shared ThreadPoolExecutor."""
        with cls._executor_lock:
            if cls._executor is None:
                cls._executor = ThreadPoolExecutor(
                    max_workers=cls._executor_size,
                    thread_name_prefix="tiktok_sync_",
                )
                logger.info(f"Created extractor executor with {cls._executor_size} workers")
            return cls._executor

    @classmethod
    def shutdown_executor(cls) -> None:
        """Shutdown the shared executor. Call on application shutdown."""
        with cls._executor_lock:
            if cls._executor is not None:
                cls._executor.shutdown(wait=False)
                cls._executor = None

    def _get_ydl_opts(self) -> dict[str, Any]:
        opts: dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
        }
        if self.cookies:
            opts["cookiefile"] = self.cookies
        return opts

    def _extract_sync(self, url: str, video_id: str) -> Tuple[Optional[dict[str, Any]], int]:
        """Run yt-dlp's web extractor and return (itemStruct, status_code)."""
        with yt_dlp.YoutubeDL(self._get_ydl_opts()) as ydl:
            ie = ydl.get_info_extractor("TikTok")
            ie.set_downloader(ydl)
            if not hasattr(ie, "_extract_web_data_and_status"):
                raise TikTokExtractionError(
                    "Incompatible yt-dlp version: missing required internal method. "
                    "Please update yt-dlp: pip install -U yt-dlp"
                )
            try:
                video_data, status = ie._extract_web_data_and_status(url, video_id)
            except yt_dlp.utils.DownloadError as e:
                error_msg = str(e).lower()
                if "private" in error_msg:
                    raise TikTokPrivateError(f"Video {video_id} is private") from e
                if "region" in error_msg or "not available in your" in error_msg:
                    raise TikTokRegionError(f"Video {video_id} is not available in your region") from e
                if "unavailable" in error_msg or "removed" in error_msg or "deleted" in error_msg:
                    raise TikTokDeletedError(f"Video {video_id} was deleted") from e
                raise TikTokExtractionError(f"yt-dlp failed for {video_id}: {e}") from e
        return video_data, status or 0

    async def downloader(self, url: str, version: ApiVersion = ApiVersion.V1) -> dict[str, Any]:
        full_url = await resolve_url(self.session_getter(), url)
        video_id = extract_video_id(full_url)
        if not video_id:
            raise TikTokInvalidLinkError("Invalid or expired TikTok link")

        # yt-dlp works better with clean URLs and needs /video/ for photo posts
        extraction_url = f"https://www.tiktok.com/@_/video/{video_id}"
        loop = asyncio.get_running_loop()
        video_data, status = await loop.run_in_executor(
            self._get_executor(), self._extract_sync, extraction_url, video_id
        )

        if status in (STATUS_DELETED, STATUS_UNDER_REVIEW):
            raise TikTokDeletedError(f"Video {video_id} was deleted")
        if status == STATUS_PRIVATE:
            raise TikTokPrivateError(f"Video {video_id} is private")
        if not video_data:
            return {"status": "error", "message": f"No video data (status: {status})"}
        return {"status": "success", "result": video_data}


class HybridApiExtractor:
    """Secondary tier: self-hosted hybrid download API.

    Args:
        api_link: Base URL of the API (``/api/hybrid/video_data`` is appended)
        session_getter: Returns the shared aiohttp session
        timeout: Request timeout in seconds
    """

    def __init__(self, api_link: str, session_getter: SessionGetter, timeout: float = 15):
        self.url = api_link.rstrip("/") + "/api/hybrid/video_data"
        self.session_getter = session_getter
        self.timeout = timeout

    async def get_video_data(self, video_link: str) -> Optional[dict[str, Any]]:
        params = {"url": video_link, "minimal": "false"}
        async with self.session_getter().get(
            self.url, params=params, timeout=ClientTimeout(total=self.timeout)
        ) as response:
            response.raise_for_status()
            res = await response.json(content_type=None)
        if not isinstance(res, dict) or res.get("code") != 200:
            return None
        return res.get("data")

    @staticmethod
    def to_v2(data: dict[str, Any]) -> dict[str, Any]:
        """Map an aweme_detail payload into the V2 result shape."""
        author = data.get("author") or {}
        video = data.get("video") or {}
        image_post = data.get("image_post_info") or {}

        images = []
        for image in image_post.get("images") or []:
            url_list = (image.get("display_image") or {}).get("url_list") or []
            if url_list:
                images.append(url_list[-1])

        play_addr = video.get("play_addr_h264") or video.get("play_addr") or {}
        is_image = bool(images) or data.get("aweme_type") in IMAGE_POST_AWEME_TYPES
        return {
            "type": "image" if is_image else "video",
            "id": str(data.get("aweme_id", "")),
            "createTime": data.get("create_time"),
            "desc": data.get("desc", ""),
            "author": {
                "uid": str(author.get("uid", "")),
                "username": author.get("unique_id", ""),
                "nickname": author.get("nickname", ""),
            },
            "video": {"playAddr": list(play_addr.get("url_list") or [])},
            "images": images,
        }

    async def downloader(self, url: str, version: ApiVersion = ApiVersion.V2) -> dict[str, Any]:
        data = await self.get_video_data(url)
        if not data:
            return {"status": "error", "message": "Hybrid API returned no data"}
        return {"status": "success", "result": self.to_v2(data)}
