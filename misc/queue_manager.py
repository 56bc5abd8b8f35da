"""Global resource governor for controlling concurrent operations."""

from __future__ import annotations

import asyncio
import collections
import logging
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncGenerator, Callable, Optional

import aiohttp
from aiohttp import TCPConnector

from data.config import config

if TYPE_CHECKING:
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


class FairSemaphore:
    """Semaphore that grants permits strictly in FIFO arrival order.

    ``release()`` hands the permit directly to the oldest waiter instead of
    incrementing the counter, so a newly arriving ``acquire()`` can never take
    a permit ahead of a caller that is already waiting.
    """

    def __init__(self, value: int):
        if value < 1:
            raise ValueError("Semaphore size must be positive")
        self._value = value
        self._waiters: collections.deque[asyncio.Future] = collections.deque()

    @property
    def available(self) -> int:
        return self._value

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if self._value > 0 and not self._waiters:
            self._value -= 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Permit was handed over right before cancellation, pass it on
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._value += 1


@dataclass(eq=False)
class SessionSlot:
    """One user's claim on user-concurrency capacity."""

    user_id: int
    acquired_at: float = field(default_factory=time.monotonic)


class ResourceGovernor:
    """
    Singleton governor for concurrent user sessions, downloads and uploads.

    Features:
    - User sessions: one slot per link being processed, bounded globally
    - Download and upload pools, independent and tighter than the user pool
    - FIFO-fair waiting on every pool
    - Periodic sweep that force-releases sessions leaked by a crashed caller
    - Shared aiohttp connection pool for all outbound requests

    Usage:
        governor = ResourceGovernor.get_instance()

        async with governor.user_slot(user_id):
            content = await client.fetch(link)
            async with governor.download_slot():
                result = await transfer.transfer(content.best_url)
            async with governor.upload_slot():
                await send_video_result(...)
    """

    _instance: ResourceGovernor | None = None

    def __init__(
        self,
        max_users: int,
        max_downloads: int,
        max_uploads: int,
        session_timeout: float = 300,
        sweep_interval: float = 30,
        max_sockets: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the governor.

        Args:
            max_users: Maximum links processed at once (global)
            max_downloads: Maximum concurrent media downloads (global)
            max_uploads: Maximum concurrent Telegram uploads (global)
            session_timeout: Age in seconds after which a session is reclaimed
            sweep_interval: Seconds between stale-session sweeps
            max_sockets: Connection limit of the shared HTTP pool
            clock: Monotonic time source
        """
        self.user_semaphore = FairSemaphore(max_users)
        self.download_semaphore = FairSemaphore(max_downloads)
        self.upload_semaphore = FairSemaphore(max_uploads)
        self.max_users = max_users
        self.session_timeout = session_timeout
        self.sweep_interval = sweep_interval
        self.max_sockets = max_sockets
        self._clock = clock
        self._sessions: dict[int, list[SessionSlot]] = {}

        self._http_session: Optional[aiohttp.ClientSession] = None
        self._session_lock = threading.Lock()

        logger.info(
            f"ResourceGovernor initialized: max_users={max_users}, "
            f"max_downloads={max_downloads}, max_uploads={max_uploads}, "
            f"session_timeout={session_timeout}s"
        )

    @classmethod
    def get_instance(cls) -> ResourceGovernor:
        """Get or create the singleton instance."""
        if cls._instance is None:
            queue_config = config["queue"]
            cls._instance = cls(
                max_users=queue_config["max_concurrent_users"],
                max_downloads=queue_config["max_concurrent_downloads"],
                max_uploads=queue_config["max_concurrent_uploads"],
                session_timeout=queue_config["session_timeout"],
                sweep_interval=queue_config["sweep_interval"],
                max_sockets=queue_config["max_sockets"],
            )
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None

    # ----- user sessions -----

    async def acquire_user_slot(self, user_id: int) -> SessionSlot:
        """Wait for a user permit and record the session. Never fails."""
        await self.user_semaphore.acquire()
        slot = SessionSlot(user_id=user_id, acquired_at=self._clock())
        self._sessions.setdefault(user_id, []).append(slot)
        logger.debug(
            f"User {user_id} acquired session slot "
            f"(active={self.active_sessions_count}/{self.max_users})"
        )
        return slot

    def release_user_slot(self, user_id: int, slot: Optional[SessionSlot] = None) -> bool:
        """Release a session of ``user_id`` (the given one, or the oldest).

        Idempotent: releasing an unknown user or an already released/reclaimed
        slot is a no-op.

        Returns:
            True if a permit was returned to the pool
        """
        slots = self._sessions.get(user_id)
        if not slots:
            return False
        if slot is None:
            slot = slots[0]
        elif slot not in slots:
            return False

        slots.remove(slot)
        if not slots:
            del self._sessions[user_id]
        self.user_semaphore.release()
        logger.debug(
            f"User {user_id} released session slot "
            f"(active={self.active_sessions_count}/{self.max_users})"
        )
        return True

    @asynccontextmanager
    async def user_slot(self, user_id: int) -> AsyncGenerator[SessionSlot, None]:
        slot = await self.acquire_user_slot(user_id)
        try:
            yield slot
        finally:
            self.release_user_slot(user_id, slot)

    def sweep_stale_sessions(self) -> int:
        """Force-release every session older than ``session_timeout``.

        Backstop for callers that failed before reaching their release call.

        Returns:
            Number of reclaimed sessions
        """
        now = self._clock()
        stale = [
            slot
            for slots in self._sessions.values()
            for slot in slots
            if now - slot.acquired_at > self.session_timeout
        ]
        for slot in stale:
            if self.release_user_slot(slot.user_id, slot):
                logger.warning(
                    f"Reclaimed stale session of user {slot.user_id} "
                    f"(held {now - slot.acquired_at:.0f}s)"
                )
        return len(stale)

    def start_sweeper(self, scheduler: AsyncIOScheduler) -> None:
        """Register the stale-session sweep as a periodic scheduler job."""
        scheduler.add_job(
            self.sweep_stale_sessions,
            "interval",
            seconds=self.sweep_interval,
            id="sweep_stale_sessions",
            replace_existing=True,
            misfire_grace_time=None,
        )

    # ----- downloads / uploads -----

    async def acquire_download_slot(self) -> None:
        await self.download_semaphore.acquire()

    def release_download_slot(self) -> None:
        self.download_semaphore.release()

    async def acquire_upload_slot(self) -> None:
        await self.upload_semaphore.acquire()

    def release_upload_slot(self) -> None:
        self.upload_semaphore.release()

    @asynccontextmanager
    async def download_slot(self) -> AsyncGenerator[None, None]:
        """
        Context manager for download slots.

        Usage:
            async with governor.download_slot():
                result = await transfer.transfer(url)
        """
        await self.acquire_download_slot()
        try:
            yield
        finally:
            self.release_download_slot()

    @asynccontextmanager
    async def upload_slot(self) -> AsyncGenerator[None, None]:
        await self.acquire_upload_slot()
        try:
            yield
        finally:
            self.release_upload_slot()

    # ----- shared connection pool -----

    def get_session(self) -> aiohttp.ClientSession:
        """Get or create the shared keep-alive HTTP session.

        Must be called from inside the running event loop.
        """
        with self._session_lock:
            if self._http_session is None or self._http_session.closed:
                connector = TCPConnector(
                    limit=self.max_sockets,
                    limit_per_host=0,
                    ttl_dns_cache=300,
                    enable_cleanup_closed=True,
                    force_close=False,  # Keep connections alive for reuse
                )
                self._http_session = aiohttp.ClientSession(connector=connector)
                logger.info(f"Created shared HTTP session (max_sockets={self.max_sockets})")
            return self._http_session

    async def close(self) -> None:
        """Close the shared HTTP session. Call on application shutdown."""
        with self._session_lock:
            session = self._http_session
            self._http_session = None
        if session is not None and not session.closed:
            await session.close()

    # ----- introspection -----

    @property
    def active_sessions_count(self) -> int:
        """Number of sessions currently held."""
        return sum(len(slots) for slots in self._sessions.values())

    @property
    def active_users_count(self) -> int:
        return len(self._sessions)

    @property
    def user_available_slots(self) -> int:
        return self.user_semaphore.available

    @property
    def download_available_slots(self) -> int:
        return self.download_semaphore.available

    @property
    def upload_available_slots(self) -> int:
        return self.upload_semaphore.available
