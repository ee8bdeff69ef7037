"""
User model.

Accounts are owned by the identity provider; the forum engine only reads
them for author summaries and role checks.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from evforum.core.database import Base

if TYPE_CHECKING:
    from evforum.models.forum import Reply, Thread


class UserRole(str, PyEnum):
    """Forum role resolved by the identity provider."""

    MEMBER = "member"
    MODERATOR = "moderator"
    ADMIN = "admin"


class User(Base):
    """User account model."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, index=True)

    # Profile
    full_name: Mapped[str | None] = mapped_column(String(255))
    avatar_url: Mapped[str | None] = mapped_column(String(500))

    role: Mapped[UserRole] = mapped_column(
        Enum(
            UserRole,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        default=UserRole.MEMBER,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    threads: Mapped[list["Thread"]] = relationship(back_populates="author")
    replies: Mapped[list["Reply"]] = relationship(back_populates="author")

    def __repr__(self) -> str:
        return f"<User {self.username}>"
