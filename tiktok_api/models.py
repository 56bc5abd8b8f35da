"""Data models for TikTok content and media transfers."""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Optional, Tuple, Union

if TYPE_CHECKING:
    from aiohttp import ClientResponse

logger = logging.getLogger(__name__)


class ApiVersion(str, enum.Enum):
    """Extraction tier that produced a ContentReference."""

    V1 = "v1"  # primary
    V2 = "v2"  # secondary

    @property
    def label(self) -> str:
        return self.value.upper()


class ContentKind(str, enum.Enum):
    VIDEO = "video"
    IMAGE_SET = "images"


class TransferMode(str, enum.Enum):
    """How retrieved bytes are held before delivery."""

    FILE = "file"
    STREAM = "stream"
    BUFFER = "buffer"


class FetchPolicy(str, enum.Enum):
    """How the two extraction tiers are combined."""

    SEQUENTIAL = "sequential"
    RACE = "race"


@dataclass(frozen=True)
class Author:
    id: str
    handle: str


@dataclass(frozen=True)
class ContentReference:
    """Normalized result of a successful fetch, independent of tier shape.

    Attributes:
        kind: Video or image slideshow
        source_version: Tier that produced this reference (decides locator rules)
        created_at: Upload time as unix seconds, None if unknown
        author: Author id and handle
        media_id: TikTok post id
        description: Post description (may be empty)
        media_locators: Candidate video URLs in preference order, or image URLs
        link: Link the user sent
    """

    kind: ContentKind
    source_version: ApiVersion
    created_at: Optional[int]
    author: Author
    media_id: str
    description: str
    media_locators: Tuple[str, ...]
    link: str

    def __post_init__(self) -> None:
        if not self.media_locators or not all(self.media_locators):
            raise ValueError("ContentReference requires at least one media locator")

    @property
    def is_video(self) -> bool:
        return self.kind == ContentKind.VIDEO

    @property
    def is_image_set(self) -> bool:
        return self.kind == ContentKind.IMAGE_SET

    @property
    def best_url(self) -> str:
        return self.media_locators[0]


class FileHandle:
    """Temporary file owned by a single delivery attempt.

    ``release()`` deletes the file and is idempotent.
    """

    def __init__(self, path: str):
        self.path = path
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            os.remove(self.path)
            logger.debug(f"Cleaned up temp file: {os.path.basename(self.path)}")
        except FileNotFoundError:
            pass

    def __repr__(self) -> str:
        return f"FileHandle({self.path!r})"


class LiveStream:
    """Single-consumption byte channel over an open HTTP response.

    Once iterated it cannot be replayed; a retry needs a fresh stream opened
    by the transfer engine. ``close()`` drops the connection and is idempotent.
    """

    def __init__(self, response: "ClientResponse", chunk_size: int = 65536):
        self._response = response
        self.chunk_size = chunk_size
        self._consumed = False
        self._closed = False
        self._head = b""

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def prefetched(self) -> int:
        return len(self._head)

    async def prefetch(self, limit: int) -> bool:
        """Read up to ``limit`` bytes ahead of the consumer.

        The bytes are replayed first by ``iter_chunks``. Returns True if the
        body ended within the read-ahead, so ``prefetched`` is its full size.
        """
        buffered = bytearray(self._head)
        while len(buffered) < limit:
            chunk = await self._response.content.read(limit - len(buffered))
            if not chunk:
                self._head = bytes(buffered)
                return True
            buffered.extend(chunk)
        self._head = bytes(buffered)
        return self._response.content.at_eof()

    async def iter_chunks(self, chunk_size: Optional[int] = None) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("LiveStream was already consumed")
        self._consumed = True
        try:
            if self._head:
                head, self._head = self._head, b""
                yield head
            async for chunk in self._response.content.iter_chunked(
                chunk_size or self.chunk_size
            ):
                yield chunk
        finally:
            # A fully read response already returned its connection to the pool
            self.close()

    async def read_all(self) -> bytes:
        chunks: list[bytes] = []
        async for chunk in self.iter_chunks():
            chunks.append(chunk)
        return b"".join(chunks)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()


Payload = Union[FileHandle, bytes, LiveStream]


@dataclass
class TransferResult:
    """Outcome of a successful media transfer.

    Owned by the call that produced it until handed to delivery. Whoever holds
    it must call ``release()`` on every exit path.
    """

    payload: Payload
    byte_size: Optional[int]
    mime_type: str
    mode: TransferMode
    source_url: str
    used_cookies: bool = False
    _released: bool = field(default=False, repr=False)

    @property
    def size_mb(self) -> Optional[float]:
        if self.byte_size is None:
            return None
        return self.byte_size / 1024 / 1024

    @property
    def path(self) -> Optional[str]:
        if isinstance(self.payload, FileHandle):
            return self.payload.path
        return None

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if isinstance(self.payload, FileHandle):
            self.payload.release()
        elif isinstance(self.payload, LiveStream):
            self.payload.close()
