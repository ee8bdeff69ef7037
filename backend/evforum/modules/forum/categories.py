"""
Category Registry - category metadata and denormalized counters.

Counters are never authored by clients. They move only through the
``on_*`` rollup hooks called by thread and reply writes, or through
``reconcile_counters``.
"""

from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from evforum.core.errors import CategoryNotFound, ConflictError
from evforum.models.forum import Category, Reply, Thread


class CategoryRegistry:
    """
    Reads categories and applies counter rollups.

    Usage:
        registry = CategoryRegistry(db_session)
        categories = await registry.list_categories()
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def list_categories(self) -> list[Category]:
        """Get all active categories."""
        query = (
            select(Category)
            .where(Category.is_active == True)
            .order_by(Category.sort_order, Category.id)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_category(self, slug: str) -> Category:
        """Get category by slug."""
        result = await self.db.execute(select(Category).where(Category.slug == slug))
        category = result.scalar_one_or_none()
        if category is None:
            raise CategoryNotFound()
        return category

    async def get_category_by_id(self, category_id: int) -> Category:
        category = await self.db.get(Category, category_id)
        if category is None or not category.is_active:
            raise CategoryNotFound()
        return category

    async def create_category(
        self,
        name: str,
        slug: str,
        description: str | None = None,
        icon: str | None = None,
        color: str | None = None,
        sort_order: int = 0,
    ) -> Category:
        """Create new forum category. Slugs are unique."""
        existing = await self.db.execute(select(Category.id).where(Category.slug == slug))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"Category slug '{slug}' already exists")

        category = Category(
            name=name,
            slug=slug,
            description=description,
            icon=icon,
            color=color,
            sort_order=sort_order,
        )
        self.db.add(category)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise ConflictError(f"Category slug '{slug}' already exists") from e

        logger.info(f"Category created: {slug}")
        return category

    # ==================== Rollups ====================

    async def on_thread_created(self, category_id: int, at: datetime) -> None:
        await self.db.execute(
            update(Category)
            .where(Category.id == category_id)
            .values(thread_count=Category.thread_count + 1, last_activity_at=at)
        )

    async def on_thread_hidden(self, category_id: int) -> None:
        await self.db.execute(
            update(Category)
            .where(Category.id == category_id, Category.thread_count > 0)
            .values(thread_count=Category.thread_count - 1)
        )

    async def on_thread_restored(self, category_id: int) -> None:
        await self.db.execute(
            update(Category)
            .where(Category.id == category_id)
            .values(thread_count=Category.thread_count + 1)
        )

    async def on_reply_created(self, category_id: int, at: datetime) -> None:
        await self.db.execute(
            update(Category)
            .where(Category.id == category_id)
            .values(post_count=Category.post_count + 1, last_activity_at=at)
        )

    async def on_reply_removed(self, category_id: int) -> None:
        await self.db.execute(
            update(Category)
            .where(Category.id == category_id, Category.post_count > 0)
            .values(post_count=Category.post_count - 1)
        )

    async def on_reply_restored(self, category_id: int) -> None:
        await self.db.execute(
            update(Category)
            .where(Category.id == category_id)
            .values(post_count=Category.post_count + 1)
        )

    # ==================== Reconciliation ====================

    async def expected_counters(self) -> dict[int, dict[str, int]]:
        """Recompute counters from source rows, keyed by category id."""
        threads = await self.db.execute(
            select(Thread.category_id, func.count(Thread.id))
            .where(Thread.is_deleted == False)
            .group_by(Thread.category_id)
        )
        posts = await self.db.execute(
            select(Thread.category_id, func.count(Reply.id))
            .join(Thread, Thread.id == Reply.thread_id)
            .where(Reply.is_active == True)
            .group_by(Thread.category_id)
        )
        thread_counts = dict(threads.all())
        post_counts = dict(posts.all())

        categories = await self.db.execute(select(Category.id))
        return {
            category_id: {
                "thread_count": thread_counts.get(category_id, 0),
                "post_count": post_counts.get(category_id, 0),
            }
            for category_id in categories.scalars().all()
        }

    async def reconcile_counters(self, fix: bool = True) -> list[dict[str, Any]]:
        """
        Compare cached category counters against source rows.

        Every mismatch is logged as an invariant failure. With ``fix`` the
        cached values are overwritten from the recomputed ones.

        Returns:
            One entry per mismatching category
        """
        expected = await self.expected_counters()
        result = await self.db.execute(
            select(Category).execution_options(populate_existing=True)
        )
        mismatches: list[dict[str, Any]] = []

        for category in result.scalars().all():
            wanted = expected[category.id]
            cached = {"thread_count": category.thread_count, "post_count": category.post_count}
            if cached == wanted:
                continue

            logger.error(
                f"Category counter drift on {category.slug}: cached={cached} expected={wanted}"
            )
            mismatches.append({"category_id": category.id, "cached": cached, "expected": wanted})
            if fix:
                category.thread_count = wanted["thread_count"]
                category.post_count = wanted["post_count"]

        await self.db.flush()
        return mismatches
