"""
Moderation Controller - pin/lock/delete/restore with an audit trail.

Flags are independent booleans, so a thread can be pinned, locked and
deleted at once. Every attempt is written to ``forum_moderation_log``,
including attempts that are rejected.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from evforum.core.errors import ForbiddenError, ForumError, TargetNotFound, ValidationError
from evforum.core.security import Actor, can_moderate
from evforum.models.forum import (
    Category,
    ModerationFlag,
    ModerationLogEntry,
    ModerationOutcome,
    Reply,
    Thread,
)
from evforum.models.user import User
from evforum.modules.forum.categories import CategoryRegistry
from evforum.modules.forum.replies import ReplyTreeEngine

TARGET_THREAD = "thread"
TARGET_REPLY = "reply"

_ACTIONS = {
    (ModerationFlag.PINNED, True): "pin",
    (ModerationFlag.PINNED, False): "unpin",
    (ModerationFlag.LOCKED, True): "lock",
    (ModerationFlag.LOCKED, False): "unlock",
    (ModerationFlag.DELETED, True): "delete",
    (ModerationFlag.DELETED, False): "restore",
}

_THREAD_COLUMNS = {
    ModerationFlag.PINNED: "is_pinned",
    ModerationFlag.LOCKED: "is_locked",
    ModerationFlag.DELETED: "is_deleted",
}


@dataclass
class ModerationResult:
    """Summary of a moderated target after the flag change."""

    target_type: str
    target_id: int
    action: str
    outcome: ModerationOutcome
    flags: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_type": self.target_type,
            "target_id": self.target_id,
            "action": self.action,
            "outcome": self.outcome.value,
            "flags": self.flags,
        }


def action_name(flag: ModerationFlag, value: bool) -> str:
    return _ACTIONS[(flag, value)]


class ModerationController:
    """
    Applies moderation flags and records them.

    Usage:
        moderation = ModerationController(db_session)
        result = await moderation.apply_flag("thread", 42, ModerationFlag.LOCKED, True, actor)
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.categories = CategoryRegistry(db)
        self.replies = ReplyTreeEngine(db)

    async def apply_flag(
        self,
        target_type: str,
        target_id: int,
        flag: ModerationFlag,
        value: bool,
        actor: Actor | None,
        reason: str | None = None,
    ) -> ModerationResult:
        """
        Set one moderation flag on a thread or reply.

        Args:
            target_type: "thread" or "reply"
            target_id: Target ID
            flag: pinned, locked or deleted (replies only support deleted)
            value: New flag value
            actor: Caller; must hold moderation privilege
            reason: Optional free-text reason for the log

        Returns:
            Updated target summary

        Raises:
            ForbiddenError: actor may not moderate
            TargetNotFound: no such thread/reply
            ValidationError: flag not supported for the target type
        """
        action = action_name(flag, value)
        actor_id = actor.id if actor else None

        try:
            if not can_moderate(actor):
                raise ForbiddenError("Moderator role required")
            if target_type == TARGET_THREAD:
                result = await self._apply_to_thread(target_id, flag, value, action)
            elif target_type == TARGET_REPLY:
                if flag != ModerationFlag.DELETED:
                    raise ValidationError(
                        f"Replies cannot be {flag.value}", fields={"flag": "unsupported"}
                    )
                result = await self._apply_to_reply(target_id, value, action)
            else:
                raise ValidationError(
                    f"Unknown target type '{target_type}'", fields={"target_type": "invalid"}
                )
        except ForumError as e:
            # Rejected attempts are committed to the log before the error propagates
            await self.db.rollback()
            self._record(
                actor_id,
                action,
                target_type,
                target_id,
                reason,
                ModerationOutcome.REJECTED,
                detail=e.code,
            )
            await self.db.commit()
            logger.warning(
                f"Moderation rejected: user {actor_id} {action} {target_type} {target_id} ({e.code})"
            )
            raise
        except SQLAlchemyError as e:
            logger.error(
                f"Moderation failed: user {actor_id} {action} {target_type} {target_id}: {e}"
            )
            raise

        self._record(actor_id, action, target_type, target_id, reason, result.outcome)
        await self.db.flush()
        logger.info(
            f"Moderation {result.outcome.value}: user {actor_id} {action} "
            f"{target_type} {target_id}. Reason: {reason or 'No reason provided'}"
        )
        return result

    def _record(
        self,
        admin_id: int | None,
        action: str,
        target_type: str,
        target_id: int,
        reason: str | None,
        outcome: ModerationOutcome,
        detail: str | None = None,
    ) -> None:
        self.db.add(
            ModerationLogEntry(
                admin_id=admin_id,
                action_type=action,
                target_type=target_type,
                target_id=target_id,
                reason=reason,
                outcome=outcome,
                detail=detail,
            )
        )

    async def _apply_to_thread(
        self,
        thread_id: int,
        flag: ModerationFlag,
        value: bool,
        action: str,
    ) -> ModerationResult:
        thread = await self.db.get(Thread, thread_id)
        if thread is None:
            raise TargetNotFound("Thread not found")

        column = _THREAD_COLUMNS[flag]
        outcome = ModerationOutcome.NOOP
        if getattr(thread, column) != value:
            setattr(thread, column, value)
            thread.updated_at = datetime.utcnow()
            await self.db.flush()
            if flag == ModerationFlag.DELETED:
                if value:
                    await self.categories.on_thread_hidden(thread.category_id)
                else:
                    await self.categories.on_thread_restored(thread.category_id)
            outcome = ModerationOutcome.APPLIED

        return ModerationResult(
            target_type=TARGET_THREAD,
            target_id=thread.id,
            action=action,
            outcome=outcome,
            flags={
                "pinned": thread.is_pinned,
                "locked": thread.is_locked,
                "deleted": thread.is_deleted,
            },
        )

    async def _apply_to_reply(self, reply_id: int, value: bool, action: str) -> ModerationResult:
        reply = await self.db.get(Reply, reply_id)
        if reply is None:
            raise TargetNotFound("Reply not found")

        deleted = not reply.is_active
        outcome = ModerationOutcome.NOOP
        if deleted != value:
            if value:
                await self.replies.tombstone(reply)
            else:
                await self.replies.restore_reply(reply)
            outcome = ModerationOutcome.APPLIED

        return ModerationResult(
            target_type=TARGET_REPLY,
            target_id=reply.id,
            action=action,
            outcome=outcome,
            flags={"deleted": not reply.is_active},
        )

    # ==================== Read helpers ====================

    async def history(
        self,
        target_type: str | None = None,
        target_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ModerationLogEntry]:
        """Moderation log, newest first."""
        query = select(ModerationLogEntry)
        if target_type:
            query = query.where(ModerationLogEntry.target_type == target_type)
        if target_id is not None:
            query = query.where(ModerationLogEntry.target_id == target_id)
        query = (
            query.order_by(ModerationLogEntry.created_at.desc(), ModerationLogEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def stats(self, days: int = 7) -> dict[str, Any]:
        """Forum totals for the moderator dashboard."""
        since = datetime.utcnow() - timedelta(days=days)

        async def scalar(query: Any) -> int:
            result = await self.db.execute(query)
            return result.scalar_one() or 0

        categories = await self.db.execute(
            select(Category.id, Category.name, Category.thread_count, Category.post_count)
            .where(Category.is_active == True)
            .order_by(Category.sort_order, Category.id)
        )

        return {
            "total_threads": await scalar(
                select(func.count(Thread.id)).where(Thread.is_deleted == False)
            ),
            "total_replies": await scalar(
                select(func.count(Reply.id)).where(Reply.is_active == True)
            ),
            "total_users": await scalar(select(func.count(User.id))),
            "pinned_threads": await scalar(
                select(func.count(Thread.id)).where(
                    Thread.is_pinned == True, Thread.is_deleted == False
                )
            ),
            "locked_threads": await scalar(
                select(func.count(Thread.id)).where(
                    Thread.is_locked == True, Thread.is_deleted == False
                )
            ),
            "deleted_threads": await scalar(
                select(func.count(Thread.id)).where(Thread.is_deleted == True)
            ),
            "recent_activity": {
                "days": days,
                "threads": await scalar(
                    select(func.count(Thread.id)).where(
                        Thread.is_deleted == False, Thread.created_at >= since
                    )
                ),
                "replies": await scalar(
                    select(func.count(Reply.id)).where(
                        Reply.is_active == True, Reply.created_at >= since
                    )
                ),
            },
            "categories": [
                {
                    "id": row.id,
                    "name": row.name,
                    "thread_count": row.thread_count,
                    "post_count": row.post_count,
                }
                for row in categories.all()
            ],
        }
