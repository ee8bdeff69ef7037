"""
Vote API Endpoints.

Up/down votes on threads and replies, and vote summaries.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from evforum.core.database import get_db
from evforum.core.retry import with_store_retry
from evforum.core.security import Actor, get_current_actor, get_optional_actor
from evforum.models.forum import VotableType, VoteType
from evforum.modules.forum import VoteAggregator, quality_of
from evforum.modules.forum.votes import format_vote_count

router = APIRouter()


class CastVoteRequest(BaseModel):
    """Cast or switch a vote."""

    votable_type: VotableType
    votable_id: int
    vote_type: VoteType


@router.post("/votes")
async def cast_vote(
    request: CastVoteRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Cast a vote. Repeating the same vote changes nothing."""
    votes = VoteAggregator(db)
    result = await votes.cast_vote(
        request.votable_type,
        request.votable_id,
        actor.id,
        request.vote_type,
    )

    return result.to_dict()


@router.delete("/votes")
async def retract_vote(
    votable_type: VotableType = Query(...),
    votable_id: int = Query(...),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Remove the caller's vote."""
    votes = VoteAggregator(db)
    result = await votes.retract_vote(votable_type, votable_id, actor.id)

    return result.to_dict()


@router.get("/votes/{votable_type}/{votable_id}")
async def get_vote_summary(
    votable_type: VotableType,
    votable_id: int,
    actor: Actor | None = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Tallies, quality rating and the caller's own vote."""
    votes = VoteAggregator(db)
    upvotes, downvotes = await with_store_retry(
        lambda: votes.counts(votable_type, votable_id), db=db
    )
    user_vote = await votes.user_vote(votable_type, votable_id, actor.id) if actor else None
    quality = quality_of(upvotes, downvotes)

    return {
        "votable_type": votable_type.value,
        "votable_id": votable_id,
        "upvotes": upvotes,
        "downvotes": downvotes,
        "score": quality.score,
        "total": quality.total,
        "percentage": quality.percentage,
        "quality": quality.quality,
        "description": quality.description,
        "display": {
            "upvotes": format_vote_count(upvotes),
            "downvotes": format_vote_count(downvotes),
            "score": format_vote_count(quality.score),
        },
        "user_vote": user_vote.value if user_vote else None,
    }
