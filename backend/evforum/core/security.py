"""
Identity and access collaborators.

Authentication itself happens upstream; the gateway forwards the resolved
user id in the ``X-User-Id`` header. This module turns that id into an
``Actor`` and answers the one access question the engine asks: may this
actor moderate?
"""

from dataclasses import dataclass

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from evforum.core.database import get_db
from evforum.core.errors import ForbiddenError
from evforum.models.user import User, UserRole

MODERATOR_ROLES = frozenset({UserRole.MODERATOR, UserRole.ADMIN})


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as resolved by the identity provider."""

    id: int
    username: str
    role: UserRole = UserRole.MEMBER
    avatar_url: str | None = None

    @property
    def is_moderator(self) -> bool:
        return self.role in MODERATOR_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def can_moderate(actor: Actor | None) -> bool:
    """Access check for moderation privileges."""
    return actor is not None and actor.is_moderator


async def resolve_actor(db: AsyncSession, user_id: int) -> Actor | None:
    """Look up a user and build an Actor from it."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        return None
    return Actor(
        id=user.id,
        username=user.username,
        role=user.role,
        avatar_url=user.avatar_url,
    )


async def get_optional_actor(
    x_user_id: int | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Actor | None:
    """Resolve the caller if the request is authenticated."""
    if x_user_id is None:
        return None
    return await resolve_actor(db, x_user_id)


async def get_current_actor(
    actor: Actor | None = Depends(get_optional_actor),
) -> Actor:
    """Resolve the caller, rejecting anonymous requests."""
    if actor is None:
        raise ForbiddenError("Authentication required")
    return actor
