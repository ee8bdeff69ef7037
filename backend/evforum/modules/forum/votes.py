"""
Vote Aggregator - up/down votes on threads and replies.

Cached ``upvotes``/``downvotes`` on the votable rows are only moved by
atomic SQL increments issued next to the vote row write, and can be
recomputed from ``forum_votes`` at any time.
"""

from dataclasses import dataclass
from typing import Any

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from evforum.core.errors import VotableNotFound
from evforum.core.retry import retry_on_conflict
from evforum.models.forum import Reply, Thread, VotableType, Vote, VoteType

_MODELS: dict[VotableType, type[Thread] | type[Reply]] = {
    VotableType.THREAD: Thread,
    VotableType.REPLY: Reply,
}

_BUCKETS = {
    VoteType.UPVOTE: "upvotes",
    VoteType.DOWNVOTE: "downvotes",
}


@dataclass(frozen=True)
class VoteQuality:
    """Coarse classification of a vote distribution."""

    quality: str
    description: str
    percentage: int
    score: int
    total: int


@dataclass(frozen=True)
class VoteResult:
    """Tallies after a cast/retract, plus the voter's current vote."""

    votable_type: VotableType
    votable_id: int
    upvotes: int
    downvotes: int
    user_vote: VoteType | None
    changed: bool

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes

    def to_dict(self) -> dict[str, Any]:
        return {
            "votable_type": self.votable_type.value,
            "votable_id": self.votable_id,
            "upvotes": self.upvotes,
            "downvotes": self.downvotes,
            "score": self.score,
            "user_vote": self.user_vote.value if self.user_vote else None,
            "changed": self.changed,
        }


def vote_percentage(upvotes: int, downvotes: int) -> int:
    """Share of upvotes, rounded to a whole percent (0 when there are no votes)."""
    total = upvotes + downvotes
    if total == 0:
        return 0
    return int(upvotes / total * 100 + 0.5)


def quality_of(upvotes: int, downvotes: int) -> VoteQuality:
    """
    Classify a vote distribution for display.

    Rules, first match wins:
        unrated        no votes
        controversial  at least 20 votes and within 10 points of 50%
        excellent      at least 90% positive with at least 10 votes
        good           at least 70% positive
        mixed          at least 40% positive
        poor           below 40%
    """
    total = upvotes + downvotes
    percentage = vote_percentage(upvotes, downvotes)
    score = upvotes - downvotes

    if total == 0:
        quality, description = "unrated", "No votes yet"
    elif total >= 20 and abs(percentage - 50) < 10:
        quality, description = "controversial", "Mixed reactions"
    elif percentage >= 90 and total >= 10:
        quality, description = "excellent", "Highly upvoted"
    elif percentage >= 70:
        quality, description = "good", "Well received"
    elif percentage >= 40:
        quality, description = "mixed", "Mixed feedback"
    else:
        quality, description = "poor", "Poorly received"

    return VoteQuality(
        quality=quality,
        description=description,
        percentage=percentage,
        score=score,
        total=total,
    )


def format_vote_count(count: int) -> str:
    """Compact display form: 999, 1.2k, 3.4M."""
    magnitude = abs(count)
    if magnitude >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if magnitude >= 1_000:
        return f"{count / 1_000:.1f}k"
    return str(count)


class VoteAggregator:
    """
    Casts and retracts votes and keeps cached tallies exact.

    Usage:
        votes = VoteAggregator(db_session)
        result = await votes.cast_vote(VotableType.REPLY, reply_id, user_id, VoteType.UPVOTE)
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _ensure_votable(self, votable_type: VotableType, votable_id: int) -> None:
        """Reject votes on missing, deleted or tombstoned targets."""
        if votable_type == VotableType.THREAD:
            thread = await self.db.get(Thread, votable_id)
            if thread is None or thread.is_deleted:
                raise VotableNotFound()
            return

        reply = await self.db.get(Reply, votable_id)
        if reply is None or not reply.is_active:
            raise VotableNotFound()
        thread = await self.db.get(Thread, reply.thread_id)
        if thread is None or thread.is_deleted:
            raise VotableNotFound()

    async def _find_vote(
        self,
        votable_type: VotableType,
        votable_id: int,
        voter_id: int,
    ) -> Vote | None:
        result = await self.db.execute(
            select(Vote).where(
                Vote.voter_id == voter_id,
                Vote.votable_type == votable_type,
                Vote.votable_id == votable_id,
            )
        )
        return result.scalar_one_or_none()

    async def _adjust(
        self,
        votable_type: VotableType,
        votable_id: int,
        **deltas: int,
    ) -> None:
        """Apply bucket deltas in a single UPDATE statement."""
        model = _MODELS[votable_type]
        values = {name: getattr(model, name) + delta for name, delta in deltas.items()}
        await self.db.execute(update(model).where(model.id == votable_id).values(**values))

    async def counts(self, votable_type: VotableType, votable_id: int) -> tuple[int, int]:
        """Cached (upvotes, downvotes) for a votable."""
        model = _MODELS[votable_type]
        result = await self.db.execute(
            select(model.upvotes, model.downvotes).where(model.id == votable_id)
        )
        row = result.one_or_none()
        if row is None:
            raise VotableNotFound()
        return row[0], row[1]

    async def _result(
        self,
        votable_type: VotableType,
        votable_id: int,
        user_vote: VoteType | None,
        changed: bool,
    ) -> VoteResult:
        upvotes, downvotes = await self.counts(votable_type, votable_id)
        return VoteResult(
            votable_type=votable_type,
            votable_id=votable_id,
            upvotes=upvotes,
            downvotes=downvotes,
            user_vote=user_vote,
            changed=changed,
        )

    async def cast_vote(
        self,
        votable_type: VotableType,
        votable_id: int,
        voter_id: int,
        vote_type: VoteType,
    ) -> VoteResult:
        """
        Cast or switch a vote.

        An identical repeat vote is a no-op. A switch overwrites the row and
        moves one count between buckets in one statement.

        Raises:
            VotableNotFound: target missing or deleted
            ConflictError: a concurrent first vote won twice in a row
        """
        await self._ensure_votable(votable_type, votable_id)

        async def _apply() -> bool:
            existing = await self._find_vote(votable_type, votable_id, voter_id)
            if existing is not None and existing.vote_type == vote_type:
                return False

            if existing is None:
                self.db.add(
                    Vote(
                        votable_type=votable_type,
                        votable_id=votable_id,
                        voter_id=voter_id,
                        vote_type=vote_type,
                    )
                )
                await self.db.flush()
                await self._adjust(votable_type, votable_id, **{_BUCKETS[vote_type]: 1})
                return True

            previous = existing.vote_type
            existing.vote_type = vote_type
            await self.db.flush()
            await self._adjust(
                votable_type,
                votable_id,
                **{_BUCKETS[previous]: -1, _BUCKETS[vote_type]: 1},
            )
            return True

        changed = await retry_on_conflict(self.db, _apply, detail="Vote state changed, try again")
        return await self._result(votable_type, votable_id, vote_type, changed)

    async def retract_vote(
        self,
        votable_type: VotableType,
        votable_id: int,
        voter_id: int,
    ) -> VoteResult:
        """Delete the voter's vote and decrement its bucket. No-op without a vote."""
        existing = await self._find_vote(votable_type, votable_id, voter_id)
        if existing is None:
            return await self._result(votable_type, votable_id, None, False)

        bucket = _BUCKETS[existing.vote_type]
        await self.db.delete(existing)
        await self.db.flush()
        await self._adjust(votable_type, votable_id, **{bucket: -1})
        return await self._result(votable_type, votable_id, None, True)

    async def user_vote(
        self,
        votable_type: VotableType,
        votable_id: int,
        voter_id: int,
    ) -> VoteType | None:
        vote = await self._find_vote(votable_type, votable_id, voter_id)
        return vote.vote_type if vote else None

    # ==================== Consistency ====================

    async def tally(self, votable_type: VotableType, votable_id: int) -> tuple[int, int]:
        """Recompute (upvotes, downvotes) from raw vote rows."""
        result = await self.db.execute(
            select(Vote.vote_type, func.count(Vote.id))
            .where(Vote.votable_type == votable_type, Vote.votable_id == votable_id)
            .group_by(Vote.vote_type)
        )
        counts = dict(result.all())
        return counts.get(VoteType.UPVOTE, 0), counts.get(VoteType.DOWNVOTE, 0)

    async def verify(self, votable_type: VotableType, votable_id: int) -> bool:
        """True when the cached tallies match the vote rows. Mismatches are logged."""
        cached = await self.counts(votable_type, votable_id)
        actual = await self.tally(votable_type, votable_id)
        if cached == actual:
            return True
        logger.error(
            f"Vote tally drift on {votable_type.value} {votable_id}: "
            f"cached={cached} actual={actual}"
        )
        return False

    async def reconcile(self, fix: bool = True) -> list[dict[str, Any]]:
        """
        Check every votable's cached tallies against vote rows.

        The only code path allowed to overwrite cached tallies. Returns one
        entry per mismatch.
        """
        rows = await self.db.execute(
            select(Vote.votable_type, Vote.votable_id, Vote.vote_type, func.count(Vote.id))
            .group_by(Vote.votable_type, Vote.votable_id, Vote.vote_type)
        )
        actual: dict[tuple[VotableType, int], dict[str, int]] = {}
        for votable_type, votable_id, vote_type, count in rows.all():
            buckets = actual.setdefault((votable_type, votable_id), {"upvotes": 0, "downvotes": 0})
            buckets[_BUCKETS[vote_type]] = count

        mismatches: list[dict[str, Any]] = []
        for votable_type, model in _MODELS.items():
            cached_rows = await self.db.execute(select(model.id, model.upvotes, model.downvotes))
            for votable_id, upvotes, downvotes in cached_rows.all():
                wanted = actual.get((votable_type, votable_id), {"upvotes": 0, "downvotes": 0})
                cached = {"upvotes": upvotes, "downvotes": downvotes}
                if cached == wanted:
                    continue

                logger.error(
                    f"Vote tally drift on {votable_type.value} {votable_id}: "
                    f"cached={cached} actual={wanted}"
                )
                mismatches.append(
                    {
                        "votable_type": votable_type.value,
                        "votable_id": votable_id,
                        "cached": cached,
                        "expected": wanted,
                    }
                )
                if fix:
                    await self.db.execute(
                        update(model).where(model.id == votable_id).values(**wanted)
                    )

        return mismatches
