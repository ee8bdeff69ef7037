"""
Thread Service - thread creation, author edits and view counting.
"""

from datetime import datetime

from loguru import logger
from slugify import slugify
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from evforum.core.config import settings
from evforum.core.errors import ForbiddenError, ThreadNotFound, ValidationError
from evforum.core.retry import retry_on_conflict
from evforum.core.security import Actor
from evforum.models.forum import Thread
from evforum.modules.forum.categories import CategoryRegistry

MAX_TAGS = 10
MAX_TAG_LENGTH = 30


def normalize_tags(tags: list[str] | None) -> list[str]:
    """Lowercase, strip and de-duplicate tags, keeping first-seen order."""
    cleaned: list[str] = []
    for tag in tags or []:
        tag = tag.strip().lower()
        if not tag or tag in cleaned:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f"Tag '{tag[:20]}...' is too long", fields={"tags": "too_long"})
        cleaned.append(tag)
    if len(cleaned) > MAX_TAGS:
        raise ValidationError(f"At most {MAX_TAGS} tags allowed", fields={"tags": "too_many"})
    return cleaned


def validate_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required", fields={"title": "empty"})
    if len(title) > settings.forum_title_max_length:
        raise ValidationError(
            f"Title exceeds {settings.forum_title_max_length} characters",
            fields={"title": "too_long"},
        )
    return title


def validate_body(content: str) -> str:
    if content is None or not content.strip():
        raise ValidationError("Content is required", fields={"content": "empty"})
    if len(content) > settings.forum_reply_max_length:
        raise ValidationError(
            f"Content exceeds {settings.forum_reply_max_length} characters",
            fields={"content": "too_long"},
        )
    return content


class ThreadService:
    """
    Service for creating and editing threads.

    Usage:
        threads = ThreadService(db_session)
        thread = await threads.create_thread(category_id, author_id, "Range test", "...")
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.categories = CategoryRegistry(db)

    async def _unique_slug(self, category_id: int, title: str) -> str:
        """Slug from title, suffixed until unique within the category."""
        base_slug = slugify(title)[:200] or "thread"
        slug = base_slug

        counter = 1
        while True:
            existing = await self.db.execute(
                select(Thread.id).where(Thread.category_id == category_id, Thread.slug == slug)
            )
            if existing.scalar_one_or_none() is None:
                return slug
            slug = f"{base_slug}-{counter}"
            counter += 1

    async def create_thread(
        self,
        category_id: int,
        author_id: int,
        title: str,
        content: str,
        tags: list[str] | None = None,
    ) -> Thread:
        """
        Create new forum thread.

        Args:
            category_id: Category ID
            author_id: Author user ID
            title: Thread title
            content: Opening post content
            tags: Optional free-form tags

        Returns:
            Created thread
        """
        title = validate_title(title)
        content = validate_body(content)
        tags = normalize_tags(tags)
        await self.categories.get_category_by_id(category_id)

        async def _insert() -> Thread:
            thread = Thread(
                category_id=category_id,
                author_id=author_id,
                title=title,
                slug=await self._unique_slug(category_id, title),
                content=content,
                tags=tags,
            )
            self.db.add(thread)
            await self.db.flush()
            return thread

        thread = await retry_on_conflict(
            self.db, _insert, detail="Thread with this title already exists in this category"
        )
        await self.categories.on_thread_created(category_id, thread.created_at)

        logger.info(f"Thread {thread.id} created in category {category_id}: {thread.slug}")
        return thread

    async def get_thread(self, thread_id: int, include_deleted: bool = False) -> Thread:
        """Get thread by ID with author and category loaded."""
        query = (
            select(Thread)
            .options(selectinload(Thread.author), selectinload(Thread.category))
            .where(Thread.id == thread_id)
        )
        result = await self.db.execute(query)
        thread = result.scalar_one_or_none()
        if thread is None or (thread.is_deleted and not include_deleted):
            raise ThreadNotFound()
        return thread

    async def edit_thread(
        self,
        thread_id: int,
        actor: Actor,
        title: str | None = None,
        content: str | None = None,
        tags: list[str] | None = None,
    ) -> Thread:
        """Author content edit. The slug stays stable across title changes."""
        thread = await self.get_thread(thread_id)
        if actor.id != thread.author_id:
            raise ForbiddenError("Only the author can edit this thread")

        if title is not None:
            thread.title = validate_title(title)
        if content is not None:
            thread.content = validate_body(content)
        if tags is not None:
            thread.tags = normalize_tags(tags)
        thread.updated_at = datetime.utcnow()

        await self.db.flush()
        return thread

    async def increment_view_count(self, thread_id: int) -> None:
        """Increment thread view count."""
        await self.db.execute(
            update(Thread)
            .where(Thread.id == thread_id)
            .values(view_count=Thread.view_count + 1)
        )
