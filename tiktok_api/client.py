"""TikTok content fetcher with two-tier retry and fallback."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .exceptions import FetchFailed, TikTokExtractionError
from .extractors import TikTokExtractor
from .models import ApiVersion, Author, ContentKind, ContentReference, FetchPolicy
from .retry import backoff_delay
from data.config import config

logger = logging.getLogger(__name__)

# V1 responses carry several legacy video fields, in preference order
V1_VIDEO_FIELDS = ("playAddr", "downloadAddr", "play", "noWaterMark", "watermark")


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def video_locators(data: dict[str, Any], api_version: ApiVersion) -> list[str]:
    """Candidate video URLs for a tier response, best first."""
    video = data.get("video")
    if not isinstance(video, dict):
        return []

    if api_version == ApiVersion.V2:
        # V2: playAddr is an array
        sources = video.get("playAddr")
        if not isinstance(sources, list):
            return []
    else:
        sources = [_first(video.get(name)) for name in V1_VIDEO_FIELDS]

    return [url for url in sources if isinstance(url, str) and url]


def get_best_video_url(data: dict[str, Any], api_version: ApiVersion) -> Optional[str]:
    """Pick the playable video URL according to the tier's field rules."""
    locators = video_locators(data, api_version)
    if not locators:
        return None
    logger.debug(
        f"Found {len(locators)} video sources ({api_version.label}), "
        f"using: {locators[0][:100]}..."
    )
    return locators[0]


def image_locators(data: dict[str, Any], api_version: ApiVersion) -> list[str]:
    images: list[str] = []
    if api_version == ApiVersion.V1:
        image_post = data.get("imagePost") or {}
        for img in image_post.get("images") or []:
            url_list = (img.get("imageURL") or {}).get("urlList") or []
            if url_list:
                # Use first URL (primary CDN)
                images.append(url_list[0])
    if not images:
        for img in data.get("images") or []:
            url = _first(img)
            if isinstance(url, str) and url:
                images.append(url)
    return images


def normalize_content(
    data: dict[str, Any], api_version: ApiVersion, link: str
) -> ContentReference:
    """Resolve a tier-specific result into a ContentReference.

    Raises:
        TikTokExtractionError: If the response has no usable media locator
    """
    if not isinstance(data, dict):
        raise TikTokExtractionError("Malformed extraction result")

    images = image_locators(data, api_version)
    if data.get("type") == "image" or images:
        if not images:
            raise TikTokExtractionError("No images found in slideshow data")
        kind = ContentKind.IMAGE_SET
        locators = images
    else:
        kind = ContentKind.VIDEO
        locators = video_locators(data, api_version)
        if not locators:
            raise TikTokExtractionError("No video URL found in response data")

    author = data.get("author") or {}
    if not isinstance(author, dict):
        author = {"uniqueId": str(author)}
    author_id = author.get("uid") or author.get("id") or "Unknown"
    handle = (
        author.get("uniqueId")
        or author.get("username")
        or author.get("nickname")
        or "Unknown"
    )

    created = data.get("createTime") or data.get("create_time")
    try:
        created_at = int(created) if created is not None else None
    except (TypeError, ValueError):
        created_at = None

    return ContentReference(
        kind=kind,
        source_version=api_version,
        created_at=created_at,
        author=Author(id=str(author_id), handle=str(handle)),
        media_id=str(data.get("id") or data.get("aweme_id") or "Unknown"),
        description=data.get("desc") or data.get("description") or "",
        media_locators=tuple(locators),
        link=link,
    )


class TikTokClient:
    """Resolves TikTok links into ContentReference objects.

    Two extraction tiers are tried, each with its own retry budget and
    exponential backoff between attempts:

    - primary (V1) first, with ``v1_max_retries`` attempts
    - secondary (V2) afterwards, with ``v2_max_retries`` attempts, if
      ``v2_fallback`` is enabled

    With ``FetchPolicy.RACE`` the secondary tier starts ``race_grace_delay``
    seconds after the primary one and the first success wins; the losing
    tier is cancelled.

    Args:
        primary: Extraction service for the V1 tier
        secondary: Extraction service for the V2 tier
        sleep: Awaitable sleep function (injectable for tests)

    Example:
        >>> client = TikTokClient(WebExtractor(governor.get_session),
        ...                       HybridApiExtractor(api_link, governor.get_session))
        >>> content = await client.fetch("https://vt.tiktok.com/ZS123/")
        >>> content.source_version, content.best_url
    """

    def __init__(
        self,
        primary: Optional[TikTokExtractor],
        secondary: Optional[TikTokExtractor] = None,
        v1_max_retries: Optional[int] = None,
        v2_max_retries: Optional[int] = None,
        v2_fallback: Optional[bool] = None,
        policy: Optional[FetchPolicy] = None,
        race_grace_delay: Optional[float] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        retry_config = config.get("retry", {})
        self.extractors = {ApiVersion.V1: primary, ApiVersion.V2: secondary}
        self.max_retries = {
            ApiVersion.V1: retry_config.get("v1_max_retries", 1)
            if v1_max_retries is None else v1_max_retries,
            ApiVersion.V2: retry_config.get("v2_max_retries", 2)
            if v2_max_retries is None else v2_max_retries,
        }
        self.v2_fallback = (
            retry_config.get("v2_fallback", True) if v2_fallback is None else v2_fallback
        )
        self.policy = FetchPolicy(policy or retry_config.get("fetch_policy", "sequential"))
        self.race_grace_delay = (
            retry_config.get("race_grace_delay", 1.0)
            if race_grace_delay is None else race_grace_delay
        )
        self.base_delay = retry_config.get("base_delay", 1.0) if base_delay is None else base_delay
        self.max_delay = retry_config.get("max_delay", 8.0) if max_delay is None else max_delay
        self._sleep = sleep

    def _enabled_tiers(self) -> list[ApiVersion]:
        tiers = []
        if self.extractors[ApiVersion.V1] and self.max_retries[ApiVersion.V1] > 0:
            tiers.append(ApiVersion.V1)
        if (
            self.v2_fallback
            and self.extractors[ApiVersion.V2]
            and self.max_retries[ApiVersion.V2] > 0
        ):
            tiers.append(ApiVersion.V2)
        return tiers

    async def _attempt(self, url: str, api_version: ApiVersion) -> ContentReference:
        result = await self.extractors[api_version].downloader(url, api_version)
        if not (isinstance(result, dict) and result.get("status") == "success" and result.get("result")):
            message = result.get("message") if isinstance(result, dict) else None
            raise TikTokExtractionError(
                message or f"{api_version.label} API returned unsuccessful status"
            )
        return normalize_content(result["result"], api_version, url)

    async def _run_tier(self, url: str, api_version: ApiVersion) -> ContentReference:
        """Run one tier's retry loop.

        Raises:
            FetchFailed: After the tier's retry budget is spent
        """
        max_retries = self.max_retries[api_version]
        last_error: Optional[Exception] = None

        for attempt in range(1, max_retries + 1):
            logger.info(
                f"Attempting {api_version.label} API "
                f"(attempt {attempt}/{max_retries}): {url}"
            )
            try:
                content = await self._attempt(url, api_version)
                logger.info(f"{api_version.label} API successful for {url}")
                return content
            except Exception as e:
                last_error = e
                logger.warning(
                    f"{api_version.label} API attempt {attempt}/{max_retries} failed: {e}"
                )

            if attempt < max_retries:
                delay = backoff_delay(attempt, self.base_delay, self.max_delay)
                logger.debug(f"Retrying {api_version.label} in {delay:.1f}s")
                await self._sleep(delay)

        raise FetchFailed(
            f"{api_version.label} API failed after {max_retries} attempts: {last_error}",
            last_error=last_error,
        ) from last_error

    async def _fetch_sequential(self, url: str, tiers: list[ApiVersion]) -> ContentReference:
        last_error: Optional[FetchFailed] = None
        for index, api_version in enumerate(tiers):
            if index > 0:
                logger.info(
                    f"{tiers[index - 1].label} API failed, "
                    f"trying {api_version.label} API as fallback"
                )
            try:
                return await self._run_tier(url, api_version)
            except FetchFailed as e:
                last_error = e
        raise self._exhausted(tiers, last_error)

    async def _delayed_tier(self, url: str, api_version: ApiVersion) -> ContentReference:
        # Give the primary tier a head start
        await self._sleep(self.race_grace_delay)
        return await self._run_tier(url, api_version)

    async def _fetch_race(self, url: str, tiers: list[ApiVersion]) -> ContentReference:
        primary, secondary = tiers
        tasks = {
            asyncio.create_task(self._run_tier(url, primary)): primary,
            asyncio.create_task(self._delayed_tier(url, secondary)): secondary,
        }
        pending = set(tasks)
        last_error: Optional[FetchFailed] = None
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    error = task.exception()
                    if error is None:
                        content = task.result()
                        logger.info(f"{tasks[task].label} API won the race for {url}")
                        return content
                    last_error = error if isinstance(error, FetchFailed) else FetchFailed(
                        str(error), last_error=error
                    )
        finally:
            # Cancel the loser so its in-flight request is released now
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        raise self._exhausted(tiers, last_error)

    def _exhausted(self, tiers: list[ApiVersion], last_error: Optional[FetchFailed]) -> FetchFailed:
        cause = last_error.last_error if last_error and last_error.last_error else last_error
        labels = " and ".join(t.label for t in tiers)
        error = FetchFailed(
            f"{labels} API failed. Last error: {cause or 'Unknown error'}",
            last_error=cause,
        )
        error.__cause__ = cause
        return error

    async def fetch(self, url: str) -> ContentReference:
        """Resolve ``url`` into a ContentReference.

        Raises:
            FetchFailed: Every enabled tier exhausted its retries
        """
        tiers = self._enabled_tiers()
        if not tiers:
            raise FetchFailed("No extraction tier is enabled")

        if self.policy == FetchPolicy.RACE and len(tiers) == 2:
            content = await self._fetch_race(url, tiers)
        else:
            content = await self._fetch_sequential(url, tiers)

        logger.info(
            f"Fetched {content.kind.value} {content.media_id} "
            f"using {content.source_version.label} API"
        )
        return content

