"""TikTok content fetching and media transfer.

This package resolves TikTok links into normalized content references using
two extraction tiers (yt-dlp web data, then a hybrid API), and downloads the
referenced media as temp files, in-memory buffers or pass-through streams.

Example:
    >>> from tiktok_api import TikTokClient, MediaTransfer, WebExtractor, TransferMode
    >>>
    >>> client = TikTokClient(WebExtractor(governor.get_session),
    ...                       HybridApiExtractor(api_link, governor.get_session))
    >>> transfer = MediaTransfer(governor.get_session, CookieStore.get_instance())
    >>> content = await client.fetch("https://www.tiktok.com/@user/video/123")
    >>> result = await transfer.transfer(content.best_url, TransferMode.STREAM)
    >>> try:
    ...     print(content.author.handle, result.byte_size)
    ... finally:
    ...     result.release()
"""

from .client import TikTokClient, get_best_video_url, normalize_content
from .cookie_store import CookieStore
from .exceptions import (
    DeliveryFailed,
    FetchFailed,
    PayloadTooSmall,
    PermissionDenied,
    TikTokDeletedError,
    TikTokError,
    TikTokExtractionError,
    TikTokInvalidLinkError,
    TikTokPrivateError,
    TikTokRegionError,
    TransferFailed,
)
from .extractors import HybridApiExtractor, WebExtractor
from .models import (
    ApiVersion,
    Author,
    ContentKind,
    ContentReference,
    FetchPolicy,
    FileHandle,
    LiveStream,
    TransferMode,
    TransferResult,
)
from .transfer import MediaTransfer

__all__ = [
    # Fetching
    "TikTokClient",
    "WebExtractor",
    "HybridApiExtractor",
    "get_best_video_url",
    "normalize_content",
    # Transfer
    "MediaTransfer",
    "CookieStore",
    # Models
    "ApiVersion",
    "Author",
    "ContentKind",
    "ContentReference",
    "FetchPolicy",
    "FileHandle",
    "LiveStream",
    "TransferMode",
    "TransferResult",
    # Exceptions
    "TikTokError",
    "TikTokDeletedError",
    "TikTokPrivateError",
    "TikTokRegionError",
    "TikTokExtractionError",
    "TikTokInvalidLinkError",
    "FetchFailed",
    "TransferFailed",
    "PayloadTooSmall",
    "DeliveryFailed",
    "PermissionDenied",
]
