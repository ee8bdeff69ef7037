"""
Reply Tree Engine - threaded replies stored as a parent-referencing forest.

Replies live in a flat arena keyed by id; ``parent_id`` is the only link.
Depths and display parents are derived per read, so deep chains can be
rendered flattened past a depth limit without touching storage.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Iterable, Iterator

from loguru import logger
from sqlalchemy import func, inspect, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from evforum.core.config import settings
from evforum.core.errors import (
    ForbiddenError,
    ParentNotFound,
    ReplyNotFound,
    ThreadLocked,
    ThreadNotFound,
    ValidationError,
)
from evforum.core.security import Actor, can_moderate
from evforum.models.forum import Reply, Thread
from evforum.modules.forum.categories import CategoryRegistry


@dataclass(frozen=True)
class DisplayReply:
    """A reply as positioned for rendering."""

    id: int
    thread_id: int
    author_id: int
    author_username: str | None
    author_avatar: str | None
    parent_id: int | None
    display_parent_id: int | None
    depth: int
    display_depth: int
    content: str
    is_active: bool
    is_edited: bool
    upvotes: int
    downvotes: int
    created_at: datetime
    updated_at: datetime

    @property
    def is_tombstone(self) -> bool:
        return not self.is_active

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["is_tombstone"] = self.is_tombstone
        data["score"] = self.score
        data["like_count"] = self.upvotes
        return data


# ==================== Arena helpers ====================


def sort_key(reply: Reply) -> tuple[datetime, int]:
    """Display order: created_at ascending, id as tie-break."""
    return (reply.created_at, reply.id)


def build_arena(replies: Iterable[Reply]) -> dict[int, Reply]:
    """Index replies by id, in display order."""
    return {reply.id: reply for reply in sorted(replies, key=sort_key)}


def compute_depths(arena: dict[int, Reply]) -> dict[int, int]:
    """
    True nesting depth of every reply (top-level replies are depth 0).

    A parent id that is not in the arena is treated as a root. Chains are
    walked iteratively, so arbitrarily deep threads are fine.
    """
    depths: dict[int, int] = {}

    for reply_id in arena:
        chain: list[int] = []
        current: int | None = reply_id
        seen: set[int] = set()
        while current is not None and current not in depths:
            if current in seen:
                raise ValueError(f"Reply cycle detected at {current}")
            seen.add(current)
            chain.append(current)
            parent_id = arena[current].parent_id
            current = parent_id if parent_id in arena else None

        base = -1 if current is None else depths[current]
        for offset, node in enumerate(reversed(chain), start=1):
            depths[node] = base + offset

    return depths


def display_parent(
    reply_id: int,
    arena: dict[int, Reply],
    depths: dict[int, int],
    depth_limit: int | None,
) -> int | None:
    """
    Parent to render a reply under.

    Replies at depth >= ``depth_limit`` are hung off their ancestor at depth
    ``depth_limit - 1``; shallower replies keep their true parent.
    """
    parent_id = arena[reply_id].parent_id
    if parent_id not in arena:
        return None
    if depth_limit is None or depths[reply_id] < depth_limit:
        return parent_id
    if depth_limit <= 0:
        return None

    ancestor = parent_id
    while depths[ancestor] > depth_limit - 1:
        ancestor = arena[ancestor].parent_id
    return ancestor


def check_forest(replies: Iterable[Reply]) -> list[str]:
    """
    Validate structural invariants of a reply forest.

    Every parent must exist, belong to the same thread and sort strictly
    before its child. Returns a list of violations (empty when sound).
    """
    by_id = {reply.id: reply for reply in replies}
    problems: list[str] = []
    for reply in by_id.values():
        if reply.parent_id is None:
            continue
        parent = by_id.get(reply.parent_id)
        if parent is None:
            problems.append(f"reply {reply.id}: parent {reply.parent_id} missing")
        elif parent.thread_id != reply.thread_id:
            problems.append(f"reply {reply.id}: parent {parent.id} is in another thread")
        elif sort_key(parent) >= sort_key(reply):
            problems.append(f"reply {reply.id}: parent {parent.id} is not earlier")
    return problems


class ReplyListing:
    """
    Restartable, lazily positioned view over a thread's replies.

    Each iteration walks the arena again, so the listing can be consumed
    more than once (e.g. for a flat and a nested rendering).
    """

    def __init__(self, replies: Iterable[Reply], depth_limit: int | None) -> None:
        self._arena = build_arena(replies)
        self._depths = compute_depths(self._arena)
        self.depth_limit = depth_limit

    def __len__(self) -> int:
        return len(self._arena)

    def __iter__(self) -> Iterator[DisplayReply]:
        for reply_id, reply in self._arena.items():
            yield self._position(reply_id, reply)

    def _position(self, reply_id: int, reply: Reply) -> DisplayReply:
        depth = self._depths[reply_id]
        display_depth = depth if self.depth_limit is None else min(depth, max(self.depth_limit, 0))
        author = None if "author" in inspect(reply).unloaded else reply.author
        return DisplayReply(
            id=reply.id,
            thread_id=reply.thread_id,
            author_id=reply.author_id,
            author_username=author.username if author else None,
            author_avatar=author.avatar_url if author else None,
            parent_id=reply.parent_id,
            display_parent_id=display_parent(reply_id, self._arena, self._depths, self.depth_limit),
            depth=depth,
            display_depth=display_depth,
            content=reply.content,
            is_active=reply.is_active,
            is_edited=reply.is_edited,
            upvotes=reply.upvotes,
            downvotes=reply.downvotes,
            created_at=reply.created_at,
            updated_at=reply.updated_at,
        )

    def nest(self) -> list[dict[str, Any]]:
        """Nested tree of reply dicts, children under ``replies``."""
        nodes: dict[int, dict[str, Any]] = {}
        roots: list[dict[str, Any]] = []
        for item in self:
            node = item.to_dict()
            node["replies"] = []
            nodes[item.id] = node
            if item.display_parent_id is None:
                roots.append(node)
            else:
                nodes[item.display_parent_id]["replies"].append(node)
        return roots


# ==================== Engine ====================


class ReplyTreeEngine:
    """
    Creates, edits, deletes and lists replies.

    The engine is the single writer of ``thread.reply_count`` and
    ``thread.last_reply_*``. Counter updates are atomic SQL increments issued
    after the reply row is flushed, inside the same transaction.

    Usage:
        engine = ReplyTreeEngine(db_session)
        reply = await engine.create_reply(thread_id, author_id, "Hello")
        for item in await engine.list_replies(thread_id):
            ...
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.categories = CategoryRegistry(db)

    def _validate_content(self, content: str) -> str:
        if content is None or not content.strip():
            raise ValidationError("Reply content is required", fields={"content": "empty"})
        if len(content) > settings.forum_reply_max_length:
            raise ValidationError(
                f"Reply exceeds {settings.forum_reply_max_length} characters",
                fields={"content": "too_long"},
            )
        return content

    async def _get_open_thread(self, thread_id: int) -> Thread:
        thread = await self.db.get(Thread, thread_id)
        if thread is None or thread.is_deleted:
            raise ThreadNotFound()
        return thread

    async def get_reply(self, reply_id: int) -> Reply:
        reply = await self.db.get(Reply, reply_id)
        if reply is None:
            raise ReplyNotFound()
        return reply

    async def create_reply(
        self,
        thread_id: int,
        author_id: int,
        content: str,
        parent_id: int | None = None,
    ) -> Reply:
        """
        Create a reply in a thread.

        Args:
            thread_id: Thread ID
            author_id: Author user ID
            content: Reply body (markdown)
            parent_id: Reply being answered, in the same thread

        Returns:
            Created reply

        Raises:
            ValidationError: content empty or too long
            ThreadNotFound: thread missing or deleted
            ThreadLocked: thread is locked
            ParentNotFound: parent missing, deleted or in another thread
        """
        content = self._validate_content(content)
        thread = await self._get_open_thread(thread_id)
        if thread.is_locked:
            raise ThreadLocked()

        if parent_id is not None:
            parent = await self.db.get(Reply, parent_id)
            if parent is None or parent.thread_id != thread_id or not parent.is_active:
                raise ParentNotFound()

        reply = Reply(
            thread_id=thread_id,
            author_id=author_id,
            content=content,
            parent_id=parent_id,
        )
        self.db.add(reply)
        await self.db.flush()

        await self.db.execute(
            update(Thread)
            .where(Thread.id == thread_id)
            .values(
                reply_count=Thread.reply_count + 1,
                last_reply_at=reply.created_at,
                last_reply_by=author_id,
            )
        )
        await self.categories.on_reply_created(thread.category_id, reply.created_at)

        logger.debug(f"Reply {reply.id} created in thread {thread_id} (parent={parent_id})")
        return reply

    async def edit_reply(self, reply_id: int, actor: Actor, content: str) -> Reply:
        """Update reply content (author or moderator)."""
        reply = await self.get_reply(reply_id)
        if actor.id != reply.author_id and not can_moderate(actor):
            raise ForbiddenError("Only the author or a moderator can edit this reply")
        if not reply.is_active:
            raise ValidationError("Deleted replies cannot be edited", fields={"reply": "deleted"})

        reply.content = self._validate_content(content)
        reply.is_edited = True
        reply.updated_at = datetime.utcnow()
        await self.db.flush()
        return reply

    async def soft_delete_reply(self, reply_id: int, actor: Actor) -> Reply:
        """
        Tombstone a reply. Children stay attached and keep rendering.

        Deleting an already deleted reply is a no-op.
        """
        reply = await self.get_reply(reply_id)
        if actor.id != reply.author_id and not can_moderate(actor):
            raise ForbiddenError("Only the author or a moderator can delete this reply")
        return await self.tombstone(reply)

    async def tombstone(self, reply: Reply) -> Reply:
        if not reply.is_active:
            return reply

        reply.deleted_content = reply.content
        reply.content = settings.forum_tombstone_text
        reply.is_active = False
        reply.updated_at = datetime.utcnow()
        await self.db.flush()

        await self.db.execute(
            update(Thread)
            .where(Thread.id == reply.thread_id, Thread.reply_count > 0)
            .values(reply_count=Thread.reply_count - 1)
        )
        category_id = await self._category_of(reply.thread_id)
        await self.categories.on_reply_removed(category_id)

        logger.debug(f"Reply {reply.id} tombstoned")
        return reply

    async def restore_reply(self, reply: Reply) -> Reply:
        """Undo a tombstone, bringing back the original content."""
        if reply.is_active:
            return reply

        reply.content = reply.deleted_content or ""
        reply.deleted_content = None
        reply.is_active = True
        reply.updated_at = datetime.utcnow()
        await self.db.flush()

        await self.db.execute(
            update(Thread)
            .where(Thread.id == reply.thread_id)
            .values(reply_count=Thread.reply_count + 1)
        )
        category_id = await self._category_of(reply.thread_id)
        await self.categories.on_reply_restored(category_id)

        logger.debug(f"Reply {reply.id} restored")
        return reply

    async def _category_of(self, thread_id: int) -> int:
        result = await self.db.execute(select(Thread.category_id).where(Thread.id == thread_id))
        return result.scalar_one()

    async def list_replies(
        self,
        thread_id: int,
        depth_limit: int | None = None,
        include_deleted_thread: bool = False,
    ) -> ReplyListing:
        """
        List a thread's replies in display order.

        Args:
            thread_id: Thread ID
            depth_limit: Max rendered nesting (default from settings)
            include_deleted_thread: Allow listing a deleted thread (moderator view)

        Returns:
            Restartable listing of positioned replies
        """
        thread = await self.db.get(Thread, thread_id)
        if thread is None or (thread.is_deleted and not include_deleted_thread):
            raise ThreadNotFound()

        query = (
            select(Reply)
            .options(selectinload(Reply.author))
            .where(Reply.thread_id == thread_id)
            .order_by(Reply.created_at, Reply.id)
        )
        result = await self.db.execute(query)

        if depth_limit is None:
            depth_limit = settings.forum_reply_depth_limit
        return ReplyListing(result.scalars().all(), depth_limit)

    # ==================== Consistency ====================

    async def count_active(self, thread_id: int) -> int:
        result = await self.db.execute(
            select(func.count(Reply.id)).where(
                Reply.thread_id == thread_id, Reply.is_active == True
            )
        )
        return result.scalar_one()

    async def reconcile_reply_count(self, thread_id: int, fix: bool = False) -> bool:
        """
        Check ``thread.reply_count`` against active reply rows.

        Returns True when consistent. A mismatch is logged as an invariant
        failure and only overwritten when ``fix`` is set.
        """
        result = await self.db.execute(
            select(Thread.reply_count).where(Thread.id == thread_id)
        )
        cached = result.scalar_one_or_none()
        if cached is None:
            raise ThreadNotFound()

        actual = await self.count_active(thread_id)
        if cached == actual:
            return True

        logger.error(f"reply_count drift on thread {thread_id}: cached={cached} actual={actual}")
        if fix:
            await self.db.execute(
                update(Thread).where(Thread.id == thread_id).values(reply_count=actual)
            )
        return False
