"""
Thread Query Layer - filtered, sorted, paginated thread listings.

Pure read composition over threads joined with author and category.
Deleted threads never appear here.
"""

import math
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import Select, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from evforum.core.config import settings
from evforum.models.forum import Thread


class ThreadSort(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    MOST_VIEWS = "most_views"
    MOST_REPLIES = "most_replies"


class ThreadStatus(str, Enum):
    ALL = "all"
    PINNED = "pinned"
    LOCKED = "locked"
    UNANSWERED = "unanswered"


def escape_like(term: str) -> str:
    """Make LIKE wildcards in user input match literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# Statuses listed without pin priority
_NO_PIN_PRIORITY = {ThreadStatus.LOCKED, ThreadStatus.UNANSWERED}


@dataclass
class ThreadFilters:
    category_id: int | None = None
    author_id: int | None = None
    sort: ThreadSort = ThreadSort.NEWEST
    status: ThreadStatus = ThreadStatus.ALL
    search: str | None = None
    page: int = 1
    limit: int = settings.forum_threads_per_page


@dataclass
class ThreadPage:
    items: list[Thread] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class ThreadQuery:
    """
    Read-side thread listing.

    Usage:
        query = ThreadQuery(db_session)
        page = await query.list_threads(ThreadFilters(category_id=1, sort=ThreadSort.MOST_VIEWS))
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    def _filtered(self, filters: ThreadFilters) -> Select:
        query = select(Thread).where(Thread.is_deleted == False)

        if filters.category_id is not None:
            query = query.where(Thread.category_id == filters.category_id)
        if filters.author_id is not None:
            query = query.where(Thread.author_id == filters.author_id)
        if filters.search:
            pattern = f"%{escape_like(filters.search.strip())}%"
            query = query.where(
                or_(
                    Thread.title.ilike(pattern, escape="\\"),
                    Thread.content.ilike(pattern, escape="\\"),
                )
            )

        if filters.status == ThreadStatus.PINNED:
            query = query.where(Thread.is_pinned == True)
        elif filters.status == ThreadStatus.LOCKED:
            query = query.where(Thread.is_locked == True)
        elif filters.status == ThreadStatus.UNANSWERED:
            query = query.where(Thread.reply_count == 0)

        return query

    @staticmethod
    def _ordering(filters: ThreadFilters) -> list:
        order = []
        if filters.status not in _NO_PIN_PRIORITY:
            order.append(Thread.is_pinned.desc())

        if filters.sort == ThreadSort.OLDEST:
            order.append(Thread.created_at.asc())
        elif filters.sort == ThreadSort.MOST_VIEWS:
            order.append(Thread.view_count.desc())
        elif filters.sort == ThreadSort.MOST_REPLIES:
            order.append(Thread.reply_count.desc())
        else:
            order.append(Thread.created_at.desc())

        order.append(Thread.id.desc())
        return order

    async def list_threads(self, filters: ThreadFilters) -> ThreadPage:
        """
        Get one page of threads.

        Args:
            filters: Category/author/search/status filters, sort, page and limit

        Returns:
            ThreadPage with author and category loaded on each thread
        """
        limit = max(1, min(filters.limit, settings.forum_max_page_size))
        page = max(1, filters.page)
        base = self._filtered(filters)

        total_result = await self.db.execute(select(func.count()).select_from(base.subquery()))
        total = total_result.scalar_one()

        query = (
            base.options(selectinload(Thread.author), selectinload(Thread.category))
            .order_by(*self._ordering(filters))
            .limit(limit)
            .offset((page - 1) * limit)
        )
        result = await self.db.execute(query)

        return ThreadPage(items=list(result.scalars().all()), total=total, page=page, limit=limit)
