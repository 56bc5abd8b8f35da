"""TikTok API exception classes."""

from typing import Optional


class TikTokError(Exception):
    """Base exception for TikTok API errors."""

    pass


class TikTokDeletedError(TikTokError):
    """Video has been deleted by the creator."""

    pass


class TikTokPrivateError(TikTokError):
    """Video is private and cannot be accessed."""

    pass


class TikTokRegionError(TikTokError):
    """Video is not available in the user's region (geo-blocked)."""

    pass


class TikTokExtractionError(TikTokError):
    """Generic extraction/parsing error (malformed payload, no media URL, etc.)."""

    pass


class TikTokInvalidLinkError(TikTokError):
    """Invalid or unrecognized TikTok video link."""

    pass


class FetchFailed(TikTokError):
    """Every extraction tier exhausted its retries.

    The last underlying error is kept in ``last_error`` and chained as
    ``__cause__`` by the raiser.
    """

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class TransferFailed(TikTokError):
    """Media transfer retry budget exhausted for a single URL.

    Attributes:
        status: Last HTTP status seen, if the server answered at all
        cause: Last underlying exception
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.status = status
        self.cause = cause


class PayloadTooSmall(TransferFailed):
    """Transferred payload is below the plausibility threshold (error page)."""

    def __init__(self, size: int, threshold: int):
        super().__init__(
            f"Payload is too small ({size} bytes, minimum {threshold}), "
            "likely an error response"
        )
        self.size = size
        self.threshold = threshold


class DeliveryFailed(TikTokError):
    """Telegram rejected every delivery degradation stage."""

    pass


class PermissionDenied(TikTokError):
    """Bot cannot delete messages in the chat. Never fatal."""

    pass
