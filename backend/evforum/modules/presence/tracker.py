"""
Presence Tracker - live viewers and typing indicators.

A single process-wide map of ``PresenceRecord`` keyed by user id. Records
are created by the first heartbeat, refreshed by every heartbeat or typing
event, and treated as absent as soon as their TTL lapses, whether or not the
background sweep has evicted them yet. Nothing here is persisted.

Every mutation is a plain synchronous method with no awaits inside, so it
runs atomically on the event loop.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from loguru import logger

from evforum.core.config import settings

ALL_CHANNEL = "*"


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


@dataclass
class PresenceRecord:
    """Ephemeral presence state for one user."""

    user_id: int
    status: PresenceStatus
    last_seen: float
    username: str | None = None
    avatar: str | None = None
    current_page: str | None = None
    is_typing: bool = False
    typing_context: str | None = None
    typing_at: float | None = None
    sent_at: float | None = None  # Client timestamp of the newest accepted heartbeat


def channel_name(context_id: str) -> str:
    return f"presence:{context_id}"


def typing_summary(usernames: list[str], max_users: int = 3) -> str:
    """Human readable typing line, e.g. "ann and bo are typing"."""
    if not usernames:
        return ""
    if len(usernames) == 1:
        return f"{usernames[0]} is typing"
    if len(usernames) == 2:
        return f"{usernames[0]} and {usernames[1]} are typing"
    if len(usernames) <= max_users:
        return f"{', '.join(usernames[:-1])}, and {usernames[-1]} are typing"

    remaining = len(usernames) - max_users
    names = ", ".join(usernames[:max_users])
    return f"{names} and {remaining} other{'s' if remaining > 1 else ''} are typing"


class PresenceTracker:
    """
    Tracks who is online where, and who is typing.

    Subscribers receive ``snapshot`` messages for a context whenever a
    record in it changes, and ``leave`` messages when a user expires or
    disconnects.

    Usage:
        tracker = await get_presence_tracker()
        tracker.heartbeat(user_id, "/forums/tesla")
        users = tracker.list_online("/forums/tesla")
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        typing_debounce_seconds: float | None = None,
        sweep_interval: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize presence tracker.

        Args:
            ttl_seconds: Seconds without a heartbeat before a user is absent
            typing_debounce_seconds: Seconds before a typing flag auto-clears
            sweep_interval: How often the background sweep evicts expired records
            clock: Time source in epoch seconds (overridable in tests)
        """
        self.ttl_seconds = ttl_seconds or settings.presence_ttl_seconds
        self.typing_debounce_seconds = (
            typing_debounce_seconds or settings.presence_typing_debounce_seconds
        )
        self.sweep_interval = sweep_interval or settings.presence_sweep_interval_seconds
        self.clock = clock

        self._records: dict[int, PresenceRecord] = {}
        self._connections: dict[int, int] = {}
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

        self._running = False
        self._sweep_task: asyncio.Task | None = None

    # ==================== Liveness ====================

    def _is_live(self, record: PresenceRecord, now: float) -> bool:
        return record.status != PresenceStatus.OFFLINE and now - record.last_seen <= self.ttl_seconds

    def _is_typing(self, record: PresenceRecord, now: float) -> bool:
        return (
            record.is_typing
            and record.typing_at is not None
            and now - record.typing_at <= self.typing_debounce_seconds
        )

    def _in_context(self, record: PresenceRecord, context_id: str, now: float) -> bool:
        """On the page, or typing there within the debounce window."""
        if record.current_page == context_id:
            return True
        return record.typing_context == context_id and self._is_typing(record, now)

    def _live_record(self, user_id: int, now: float) -> PresenceRecord | None:
        record = self._records.get(user_id)
        if record is None or not self._is_live(record, now):
            return None
        return record

    def _serialize(self, record: PresenceRecord, now: float) -> dict[str, Any]:
        typing = self._is_typing(record, now)
        return {
            "user_id": record.user_id,
            "username": record.username,
            "avatar": record.avatar,
            "status": record.status.value,
            "current_page": record.current_page,
            "is_typing": typing,
            "typing_context": record.typing_context if typing else None,
            "last_seen": datetime.fromtimestamp(record.last_seen, tz=timezone.utc).isoformat(),
        }

    # ==================== Writes ====================

    def heartbeat(
        self,
        user_id: int,
        page: str | None,
        status: PresenceStatus = PresenceStatus.ONLINE,
        username: str | None = None,
        avatar: str | None = None,
        sent_at: float | None = None,
    ) -> list[dict[str, Any]]:
        """
        Create or refresh a user's presence record.

        Duplicate heartbeats are harmless. A heartbeat whose ``sent_at`` is
        older than the newest accepted one is ignored.

        Returns:
            Snapshot of users online on ``page``
        """
        now = self.clock()
        record = self._live_record(user_id, now)

        if record is not None and sent_at is not None and record.sent_at is not None:
            if sent_at < record.sent_at:
                logger.debug(f"Ignoring out-of-order heartbeat from user {user_id}")
                return self.list_online(page)

        previous_page = record.current_page if record else None
        if record is None:
            record = PresenceRecord(user_id=user_id, status=status, last_seen=now)
            self._records[user_id] = record
            logger.debug(f"User {user_id} is now present on {page}")

        record.status = status
        record.current_page = page
        record.last_seen = now
        if sent_at is not None:
            record.sent_at = sent_at
        if username is not None:
            record.username = username
        if avatar is not None:
            record.avatar = avatar

        if previous_page and previous_page != page:
            self._publish_snapshot(previous_page, now)
        if page:
            self._publish_snapshot(page, now)
        self._publish_all(now)
        return self.list_online(page)

    def set_typing(
        self,
        user_id: int,
        context_id: str,
        is_typing: bool,
        username: str | None = None,
        avatar: str | None = None,
    ) -> bool:
        """
        Start or stop a typing indicator in a context (thread or reply).

        Typing also counts as activity and refreshes ``last_seen``. The
        flag clears itself after the debounce window without a stop event.

        Returns:
            Effective typing state for the user
        """
        now = self.clock()
        record = self._live_record(user_id, now)
        if record is None:
            record = PresenceRecord(user_id=user_id, status=PresenceStatus.ONLINE, last_seen=now)
            self._records[user_id] = record

        record.last_seen = now
        if username is not None:
            record.username = username
        if avatar is not None:
            record.avatar = avatar
        if is_typing:
            record.is_typing = True
            record.typing_context = context_id
            record.typing_at = now
        elif record.typing_context in (None, context_id):
            record.is_typing = False
            record.typing_context = None
            record.typing_at = None

        self._publish_snapshot(context_id, now)
        return self._is_typing(record, now)

    def disconnect(self, user_id: int) -> None:
        """Explicit leave (socket closed, logout)."""
        record = self._records.pop(user_id, None)
        if record is None:
            return
        record.status = PresenceStatus.OFFLINE
        now = self.clock()
        self._publish_leave(record, now)
        logger.debug(f"User {user_id} disconnected")

    def open_connection(self, user_id: int) -> int:
        """Count a live socket for a user. Returns the open socket count."""
        self._connections[user_id] = self._connections.get(user_id, 0) + 1
        return self._connections[user_id]

    def close_connection(self, user_id: int) -> int:
        """
        Release one of a user's sockets.

        Closing the last socket is an explicit leave. Returns the sockets
        still open.
        """
        remaining = self._connections.get(user_id, 0) - 1
        if remaining > 0:
            self._connections[user_id] = remaining
            return remaining

        self._connections.pop(user_id, None)
        self.disconnect(user_id)
        return 0

    # ==================== Reads ====================

    def get(self, user_id: int) -> dict[str, Any] | None:
        now = self.clock()
        record = self._live_record(user_id, now)
        return self._serialize(record, now) if record else None

    def list_online(self, context_id: str | None = None) -> list[dict[str, Any]]:
        """
        Snapshot of live users, optionally only those in a context.

        Expired records are filtered out here even if no sweep has run.
        """
        now = self.clock()
        records = [
            record
            for record in self._records.values()
            if self._is_live(record, now)
            and (context_id is None or self._in_context(record, context_id, now))
        ]
        records.sort(key=lambda r: ((r.username or "").lower(), r.user_id))
        return [self._serialize(record, now) for record in records]

    def list_typing(self, context_id: str) -> list[dict[str, Any]]:
        """Live users currently typing in a context."""
        return [
            user
            for user in self.list_online(context_id)
            if user["is_typing"] and user["typing_context"] == context_id
        ]

    def count_online(self) -> int:
        now = self.clock()
        return sum(1 for record in self._records.values() if self._is_live(record, now))

    # ==================== Expiry ====================

    def sweep(self) -> list[int]:
        """
        Evict expired records and clear lapsed typing flags.

        Returns:
            IDs of evicted users
        """
        now = self.clock()
        evicted: list[int] = []

        for user_id, record in list(self._records.items()):
            if not self._is_live(record, now):
                record.status = PresenceStatus.OFFLINE
                del self._records[user_id]
                evicted.append(user_id)
                self._publish_leave(record, now)
            elif record.is_typing and not self._is_typing(record, now):
                context_id = record.typing_context
                record.is_typing = False
                record.typing_context = None
                record.typing_at = None
                if context_id:
                    self._publish_snapshot(context_id, now)

        if evicted:
            logger.debug(f"Presence sweep evicted {len(evicted)} user(s)")
        return evicted

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Presence tracker started")

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("Presence tracker stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Presence sweep error: {e}")
            await asyncio.sleep(self.sweep_interval)

    # ==================== Pub/sub ====================

    def subscribe(self, context_id: str) -> asyncio.Queue:
        """Register for ``presence:{context_id}`` messages. Use ``*`` for all."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=100)
        self._subscribers.setdefault(context_id, set()).add(queue)
        logger.debug(f"Presence subscriber added to {channel_name(context_id)}")
        return queue

    def unsubscribe(self, context_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(context_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[context_id]

    def _deliver(self, context_id: str, message: dict[str, Any]) -> None:
        for queue in self._subscribers.get(context_id, ()):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.debug(f"Dropping presence message for slow subscriber on {context_id}")

    def _publish_snapshot(self, context_id: str, now: float) -> None:
        if context_id not in self._subscribers:
            return
        self._deliver(
            context_id,
            {
                "channel": channel_name(context_id),
                "event": "snapshot",
                "users": self.list_online(context_id),
            },
        )

    def _publish_all(self, now: float) -> None:
        if ALL_CHANNEL not in self._subscribers:
            return
        self._deliver(
            ALL_CHANNEL,
            {"channel": channel_name(ALL_CHANNEL), "event": "snapshot", "users": self.list_online()},
        )

    def _publish_leave(self, record: PresenceRecord, now: float) -> None:
        contexts = {c for c in (record.current_page, record.typing_context) if c}
        contexts.add(ALL_CHANNEL)
        for context_id in contexts:
            self._deliver(
                context_id,
                {
                    "channel": channel_name(context_id),
                    "event": "leave",
                    "user_id": record.user_id,
                    "status": PresenceStatus.OFFLINE.value,
                },
            )


# Singleton instance
_presence_tracker: PresenceTracker | None = None


async def get_presence_tracker() -> PresenceTracker:
    """Get or create presence tracker singleton."""
    global _presence_tracker
    if _presence_tracker is None:
        _presence_tracker = PresenceTracker()
    return _presence_tracker


def reset_presence_tracker(tracker: PresenceTracker | None = None) -> None:
    """Replace the singleton (used at shutdown and in tests)."""
    global _presence_tracker
    _presence_tracker = tracker
