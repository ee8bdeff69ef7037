"""
What's New feed items.

Feed entries from different sections of the site are one tagged union,
discriminated by ``kind``. The forum engine produces ``forum`` items;
``marketplace`` and ``garage`` items come from their own services and are
only parsed and merged here.
"""

from datetime import datetime
from typing import Annotated, Iterable, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from evforum.models.forum import Thread


class _FeedItemBase(BaseModel):
    id: str
    title: str
    url: str
    occurred_at: datetime


class ForumFeedItem(_FeedItemBase):
    kind: Literal["forum"] = "forum"
    thread_id: int
    category_slug: str | None = None
    author: str | None = None
    reply_count: int = 0


class MarketplaceFeedItem(_FeedItemBase):
    kind: Literal["marketplace"] = "marketplace"
    price: float | None = None
    currency: str = "USD"


class GarageFeedItem(_FeedItemBase):
    kind: Literal["garage"] = "garage"
    owner: str | None = None
    vehicle: str | None = None


FeedItem = Annotated[
    Union[ForumFeedItem, MarketplaceFeedItem, GarageFeedItem],
    Field(discriminator="kind"),
]

feed_adapter = TypeAdapter(list[FeedItem])


def parse_feed_items(raw: list[dict]) -> list[FeedItem]:
    """Validate external feed payloads into their concrete variants."""
    return feed_adapter.validate_python(raw)


def merge_feeds(*sources: Iterable[FeedItem], limit: int = 20) -> list[FeedItem]:
    """Interleave feeds newest first."""
    items = [item for source in sources for item in source]
    items.sort(key=lambda item: item.occurred_at, reverse=True)
    return items[:limit]


async def recent_activity(db: AsyncSession, limit: int = 20) -> list[ForumFeedItem]:
    """Most recently active public threads as feed items."""
    activity = func.coalesce(Thread.last_reply_at, Thread.created_at)
    query = (
        select(Thread)
        .options(selectinload(Thread.author), selectinload(Thread.category))
        .where(Thread.is_deleted == False)
        .order_by(activity.desc(), Thread.id.desc())
        .limit(limit)
    )
    result = await db.execute(query)

    return [
        ForumFeedItem(
            id=f"forum-{thread.id}",
            title=thread.title,
            url=f"/forums/{thread.id}",
            occurred_at=thread.last_reply_at or thread.created_at,
            thread_id=thread.id,
            category_slug=thread.category.slug if thread.category else None,
            author=thread.author.username if thread.author else None,
            reply_count=thread.reply_count,
        )
        for thread in result.scalars().all()
    ]
