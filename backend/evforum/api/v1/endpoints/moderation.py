"""
Moderation API Endpoints.

Pin/lock/delete/restore flags, the moderation log, dashboard stats and
counter reconciliation.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from evforum.core.database import get_db
from evforum.core.errors import ForbiddenError
from evforum.core.security import Actor, can_moderate, get_current_actor, get_optional_actor
from evforum.models.forum import ModerationFlag, Thread
from evforum.modules.forum import (
    CategoryRegistry,
    ModerationController,
    ReplyTreeEngine,
    VoteAggregator,
)
from evforum.modules.forum.moderation import TARGET_REPLY, TARGET_THREAD

router = APIRouter()


class SetFlagRequest(BaseModel):
    """Set one moderation flag."""

    flag: ModerationFlag
    value: bool
    reason: str | None = Field(None, max_length=500)


def _require_moderator(actor: Actor) -> None:
    if not can_moderate(actor):
        raise ForbiddenError("Moderator role required")


# ==================== Flags ====================


@router.put("/threads/{thread_id}/flags")
async def set_thread_flag(
    thread_id: int,
    request: SetFlagRequest,
    actor: Actor | None = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Pin, lock or delete a thread (or undo it)."""
    moderation = ModerationController(db)
    result = await moderation.apply_flag(
        TARGET_THREAD, thread_id, request.flag, request.value, actor, reason=request.reason
    )

    return result.to_dict()


@router.put("/replies/{reply_id}/flags")
async def set_reply_flag(
    reply_id: int,
    request: SetFlagRequest,
    actor: Actor | None = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Delete or restore a reply."""
    moderation = ModerationController(db)
    result = await moderation.apply_flag(
        TARGET_REPLY, reply_id, request.flag, request.value, actor, reason=request.reason
    )

    return result.to_dict()


# ==================== Dashboard ====================


@router.get("/moderation/log")
async def get_moderation_log(
    target_type: str | None = Query(None, pattern="^(thread|reply)$"),
    target_id: int | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Moderation history, newest first."""
    _require_moderator(actor)

    moderation = ModerationController(db)
    entries = await moderation.history(
        target_type=target_type, target_id=target_id, limit=limit, offset=offset
    )

    return {
        "items": [
            {
                "id": e.id,
                "admin_id": e.admin_id,
                "action_type": e.action_type,
                "target_type": e.target_type,
                "target_id": e.target_id,
                "reason": e.reason,
                "outcome": e.outcome.value,
                "detail": e.detail,
                "created_at": e.created_at.isoformat(),
            }
            for e in entries
        ],
        "limit": limit,
        "offset": offset,
    }


@router.get("/moderation/stats")
async def get_moderation_stats(
    days: int = Query(7, ge=1, le=90),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Forum totals for the moderator dashboard."""
    _require_moderator(actor)

    moderation = ModerationController(db)
    return await moderation.stats(days=days)


@router.post("/moderation/reconcile")
async def reconcile_counters(
    fix: bool = Query(True),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """
    Recompute every cached counter from source rows.

    Mismatches are logged and, with ``fix``, overwritten.
    """
    if not actor.is_admin:
        raise ForbiddenError("Admin role required")

    engine = ReplyTreeEngine(db)
    thread_ids = (await db.execute(select(Thread.id).order_by(Thread.id))).scalars().all()
    drifted_threads = [
        thread_id
        for thread_id in thread_ids
        if not await engine.reconcile_reply_count(thread_id, fix=fix)
    ]

    categories = await CategoryRegistry(db).reconcile_counters(fix=fix)
    votes = await VoteAggregator(db).reconcile(fix=fix)

    return {
        "fixed": fix,
        "threads": drifted_threads,
        "categories": categories,
        "votes": votes,
    }
