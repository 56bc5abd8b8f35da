"""Media transfer engine: file, buffer and pass-through stream downloads."""

import asyncio
import errno
import logging
import os
import uuid
from typing import Any, Awaitable, Callable, Optional

import aiofiles
import aiohttp
from aiohttp import ClientTimeout

# Browser headers maintained by yt-dlp (updates automatically with yt-dlp)
from yt_dlp.utils import std_headers as YTDLP_STD_HEADERS

from .cookie_store import CookieStore
from .exceptions import TransferFailed
from .models import FileHandle, LiveStream, TransferMode, TransferResult
from .retry import backoff_delay
from data.config import config

logger = logging.getLogger(__name__)

SessionGetter = Callable[[], aiohttp.ClientSession]

# Failures that may be cured by sending the session cookie
AUTH_REJECTION_STATUSES = (401, 403)


def is_auth_rejection(e: BaseException) -> bool:
    """True for an authorization rejection or a refused connection."""
    if isinstance(e, aiohttp.ClientResponseError):
        return e.status in AUTH_REJECTION_STATUSES
    if isinstance(e, ConnectionRefusedError):
        return True
    return isinstance(e, OSError) and e.errno == errno.ECONNREFUSED


def parse_content_length(value: Optional[str]) -> Optional[int]:
    """Declared body size, or None when the header is absent or malformed."""
    if not value:
        return None
    try:
        size = int(value)
    except ValueError:
        logger.debug(f"Ignoring malformed Content-Length: {value!r}")
        return None
    return size if size >= 0 else None


class MediaTransfer:
    """Downloads media referenced by a ContentReference.

    Every attempt goes through the shared connection pool with a bounded
    socket timeout. Failed attempts are retried with exponential backoff;
    partial files are removed and superseded streams closed before retrying.

    If an attempt is rejected (HTTP 401/403 or connection refused) and the
    cookie store holds a cookie that was not sent yet, every following attempt
    sends it.

    A stream without a usable Content-Length is read ahead by ``peek_bytes``
    so that short bodies still report their size.

    Args:
        session_getter: Returns the shared aiohttp session
        cookie_store: Optional credential store
        peek_bytes: Read-ahead for streams of unknown length (default min_payload_bytes)
        sleep: Awaitable sleep function (injectable for tests)

    Example:
        >>> transfer = MediaTransfer(governor.get_session, CookieStore.get_instance())
        >>> result = await transfer.transfer(url, TransferMode.FILE, suffix=".mp4")
        >>> try:
        ...     print(result.path, result.byte_size)
        ... finally:
        ...     result.release()
    """

    def __init__(
        self,
        session_getter: SessionGetter,
        cookie_store: Optional[CookieStore] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        max_redirects: Optional[int] = None,
        temp_dir: Optional[str] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        reopen_retries: Optional[int] = None,
        peek_bytes: Optional[int] = None,
        chunk_size: int = 65536,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        retry_config = config.get("retry", {})
        transfer_config = config.get("transfer", {})
        self.session_getter = session_getter
        self.cookie_store = cookie_store
        self.max_retries = (
            retry_config.get("download_max_retries", 3) if max_retries is None else max_retries
        )
        self.reopen_retries = (
            retry_config.get("stream_reopen_retries", 2) if reopen_retries is None else reopen_retries
        )
        self.base_delay = retry_config.get("base_delay", 1.0) if base_delay is None else base_delay
        self.max_delay = retry_config.get("max_delay", 8.0) if max_delay is None else max_delay
        self.timeout = transfer_config.get("timeout", 30) if timeout is None else timeout
        self.max_redirects = (
            transfer_config.get("max_redirects", 10) if max_redirects is None else max_redirects
        )
        self.peek_bytes = (
            transfer_config.get("min_payload_bytes", 1024) if peek_bytes is None else peek_bytes
        )
        self.temp_dir = temp_dir or transfer_config.get("temp_dir", "./temp")
        self.chunk_size = chunk_size
        self._sleep = sleep

    @property
    def cookie(self) -> Optional[str]:
        if self.cookie_store is None:
            return None
        return self.cookie_store.cookie

    def _get_headers(self, use_cookies: bool) -> dict[str, str]:
        headers = dict(YTDLP_STD_HEADERS)  # Copy to avoid mutation
        headers["Referer"] = "https://www.tiktok.com/"
        headers["Accept"] = "*/*"
        if use_cookies and self.cookie:
            headers["Cookie"] = self.cookie
        return headers

    async def _open(self, url: str, use_cookies: bool) -> aiohttp.ClientResponse:
        response = await self.session_getter().get(
            url,
            headers=self._get_headers(use_cookies),
            timeout=ClientTimeout(
                total=None, sock_connect=self.timeout, sock_read=self.timeout
            ),
            allow_redirects=True,
            max_redirects=self.max_redirects,
        )
        try:
            response.raise_for_status()
        except aiohttp.ClientResponseError:
            response.close()
            raise
        return response

    def _new_temp_path(self, prefix: str, suffix: str) -> str:
        os.makedirs(self.temp_dir, exist_ok=True)
        return os.path.join(self.temp_dir, f"{prefix}_{uuid.uuid4().hex}{suffix}")

    async def _attempt(
        self,
        url: str,
        mode: TransferMode,
        use_cookies: bool,
        prefix: str,
        suffix: str,
    ) -> TransferResult:
        response = await self._open(url, use_cookies)
        mime_type = response.headers.get("Content-Type", "application/octet-stream")

        if mode == TransferMode.STREAM:
            stream = LiveStream(response, self.chunk_size)
            byte_size = parse_content_length(response.headers.get("Content-Length"))
            if byte_size is None and self.peek_bytes:
                # Short bodies without a declared length get their exact size
                try:
                    if await stream.prefetch(self.peek_bytes):
                        byte_size = stream.prefetched
                except BaseException:
                    stream.close()
                    raise
            return TransferResult(
                payload=stream,
                byte_size=byte_size,
                mime_type=mime_type,
                mode=mode,
                source_url=url,
                used_cookies=use_cookies,
            )

        if mode == TransferMode.BUFFER:
            stream = LiveStream(response, self.chunk_size)
            data = await stream.read_all()
            return TransferResult(
                payload=data,
                byte_size=len(data),
                mime_type=mime_type,
                mode=mode,
                source_url=url,
                used_cookies=use_cookies,
            )

        handle = FileHandle(self._new_temp_path(prefix, suffix))
        try:
            async with aiofiles.open(handle.path, "wb") as f:
                async for chunk in response.content.iter_chunked(self.chunk_size):
                    await f.write(chunk)
            # Writer is flushed and closed here
            byte_size = os.path.getsize(handle.path)
        except BaseException:
            handle.release()
            raise
        finally:
            response.close()

        logger.debug(
            f"File downloaded: {os.path.basename(handle.path)} "
            f"({byte_size / 1024 / 1024:.2f} MB)"
        )
        return TransferResult(
            payload=handle,
            byte_size=byte_size,
            mime_type=mime_type,
            mode=mode,
            source_url=url,
            used_cookies=use_cookies,
        )

    async def transfer(
        self,
        url: str,
        mode: TransferMode = TransferMode.FILE,
        max_retries: Optional[int] = None,
        use_cookies: bool = False,
        filename_prefix: str = "media",
        suffix: str = "",
    ) -> TransferResult:
        """Retrieve ``url`` in the given mode.

        Args:
            url: Direct media URL
            mode: File, stream or buffer
            max_retries: Attempts for this call (default from config)
            use_cookies: Send the cookie from the first attempt
            filename_prefix: Temp file name prefix (file mode)
            suffix: Temp file extension (file mode)

        Returns:
            TransferResult; the caller must release() it

        Raises:
            TransferFailed: All attempts failed
        """
        if max_retries is None:
            max_retries = self.max_retries

        last_error: Optional[BaseException] = None
        last_status: Optional[int] = None
        verb = "stream" if mode == TransferMode.STREAM else "download"

        for attempt in range(1, max_retries + 1):
            logger.debug(
                f"{verb.capitalize()} attempt {attempt}/{max_retries} ({mode.value})"
                f"{' with cookies' if use_cookies else ''}: {url[:100]}"
            )
            try:
                result = await self._attempt(url, mode, use_cookies, filename_prefix, suffix)
                if result.byte_size is not None:
                    logger.info(
                        f"{verb.capitalize()} ready: {result.byte_size / 1024 / 1024:.2f} MB "
                        f"({mode.value})"
                    )
                return result
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                last_error = e
                if isinstance(e, aiohttp.ClientResponseError):
                    last_status = e.status
                logger.warning(
                    f"{verb.capitalize()} attempt {attempt}/{max_retries} failed: "
                    f"{type(e).__name__}: {e}"
                )

                if not use_cookies and self.cookie and is_auth_rejection(e):
                    logger.info("Attempt was rejected, will retry with cookies")
                    use_cookies = True

            if attempt < max_retries:
                delay = backoff_delay(attempt, self.base_delay, self.max_delay)
                logger.debug(f"Retrying in {delay:.1f}s...")
                await self._sleep(delay)

        logger.error(f"Failed to {verb} {url[:100]} after {max_retries} attempts: {last_error}")
        raise TransferFailed(
            f"Failed to {verb} after {max_retries} attempts. "
            f"Last error: {last_error or 'Unknown error'}",
            status=last_status,
            cause=last_error,
        ) from last_error

    async def reopen(self, result: TransferResult) -> TransferResult:
        """Open a fresh live stream for the URL behind ``result``.

        The old result is released; the credential decision is kept.
        """
        result.release()
        return await self.transfer(
            result.source_url,
            TransferMode.STREAM,
            max_retries=self.reopen_retries,
            use_cookies=result.used_cookies,
        )
