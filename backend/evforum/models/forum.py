"""
Forum models for community discussions.

Includes:
- Categories (sections) with denormalized counters
- Threads
- Replies (parent-referencing forest per thread)
- Votes on threads and replies
- Moderation log (append-only audit trail)
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from evforum.core.database import Base

if TYPE_CHECKING:
    from evforum.models.user import User


def _str_enum(enum_cls: type[PyEnum]) -> Enum:
    """Store enum values (not names) in a plain VARCHAR column."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda e: [m.value for m in e],
    )


class VotableType(str, PyEnum):
    THREAD = "thread"
    REPLY = "reply"


class VoteType(str, PyEnum):
    UPVOTE = "upvote"
    DOWNVOTE = "downvote"


class ModerationFlag(str, PyEnum):
    """Independent moderation booleans."""

    PINNED = "pinned"
    LOCKED = "locked"
    DELETED = "deleted"


class ModerationOutcome(str, PyEnum):
    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"


class Category(Base):
    """Forum category/section."""

    __tablename__ = "forum_categories"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100))
    slug: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text)
    icon: Mapped[str | None] = mapped_column(String(50))  # Icon class name
    color: Mapped[str | None] = mapped_column(String(20))  # Hex color
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Stats (derived from thread/reply writes only)
    thread_count: Mapped[int] = mapped_column(Integer, default=0)
    post_count: Mapped[int] = mapped_column(Integer, default=0)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    threads: Mapped[list["Thread"]] = relationship(back_populates="category")

    def __repr__(self) -> str:
        return f"<Category {self.slug}>"


class Thread(Base):
    """Top-level discussion post within a category."""

    __tablename__ = "forum_threads"
    __table_args__ = (
        UniqueConstraint("category_id", "slug", name="uq_forum_threads_category_slug"),
        Index("ix_forum_threads_category_created", "category_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("forum_categories.id"))
    author_id: Mapped[int] = mapped_column(ForeignKey("users.id"))

    title: Mapped[str] = mapped_column(String(255))
    slug: Mapped[str] = mapped_column(String(255), index=True)
    content: Mapped[str] = mapped_column(Text)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)

    # Moderation flags (independent)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)

    # Stats
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    reply_count: Mapped[int] = mapped_column(Integer, default=0)
    upvotes: Mapped[int] = mapped_column(Integer, default=0)
    downvotes: Mapped[int] = mapped_column(Integer, default=0)

    # Last activity
    last_reply_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_reply_by: Mapped[int | None] = mapped_column(Integer)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    # Content edits only; counter updates leave it alone
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    category: Mapped["Category"] = relationship(back_populates="threads")
    author: Mapped["User"] = relationship(back_populates="threads")

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes

    def __repr__(self) -> str:
        return f"<Thread {self.title[:30]}>"


class Reply(Base):
    """
    Reply to a thread or to another reply.

    ``parent_id`` points into the same thread's replies. There is no ORM
    relationship for it: trees are rebuilt from ids on each read.
    """

    __tablename__ = "forum_replies"
    __table_args__ = (
        Index("ix_forum_replies_thread_created", "thread_id", "created_at", "id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    thread_id: Mapped[int] = mapped_column(ForeignKey("forum_threads.id"), index=True)
    author_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("forum_replies.id"))

    content: Mapped[str] = mapped_column(Text)
    deleted_content: Mapped[str | None] = mapped_column(Text)  # Kept for restore

    # Status
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Stats
    upvotes: Mapped[int] = mapped_column(Integer, default=0)
    downvotes: Mapped[int] = mapped_column(Integer, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    author: Mapped["User"] = relationship(back_populates="replies")

    @property
    def like_count(self) -> int:
        return self.upvotes

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes

    def __repr__(self) -> str:
        return f"<Reply {self.id} in thread {self.thread_id}>"


class Vote(Base):
    """One vote per (voter, votable). Switching type overwrites the row."""

    __tablename__ = "forum_votes"
    __table_args__ = (
        UniqueConstraint(
            "voter_id", "votable_type", "votable_id", name="uq_forum_votes_voter_target"
        ),
        Index("ix_forum_votes_target", "votable_type", "votable_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    votable_type: Mapped[VotableType] = mapped_column(_str_enum(VotableType))
    votable_id: Mapped[int] = mapped_column(Integer)
    voter_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    vote_type: Mapped[VoteType] = mapped_column(_str_enum(VoteType))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class ModerationLogEntry(Base):
    """Append-only audit record, written for every moderation attempt."""

    __tablename__ = "forum_moderation_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    admin_id: Mapped[int | None] = mapped_column(Integer, index=True)
    action_type: Mapped[str] = mapped_column(String(30))  # pin, unlock, delete...
    target_type: Mapped[str] = mapped_column(String(20))
    target_id: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str | None] = mapped_column(Text)
    outcome: Mapped[ModerationOutcome] = mapped_column(_str_enum(ModerationOutcome))
    detail: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<ModerationLogEntry {self.action_type} {self.target_type}:{self.target_id}>"
