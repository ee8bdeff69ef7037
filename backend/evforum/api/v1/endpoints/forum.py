"""
Forum API Endpoints.

Categories, threads, replies and the What's New feed.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from evforum.core.database import get_db
from evforum.core.errors import ForbiddenError
from evforum.core.retry import with_store_retry
from evforum.core.security import Actor, can_moderate, get_current_actor, get_optional_actor
from evforum.models.forum import Category, Thread
from evforum.modules.forum import (
    CategoryRegistry,
    ReplyTreeEngine,
    ThreadFilters,
    ThreadQuery,
    ThreadService,
    quality_of,
)
from evforum.modules.forum.feed import recent_activity
from evforum.modules.forum.query import ThreadSort, ThreadStatus

router = APIRouter()


# ==================== Schemas ====================


class CreateCategoryRequest(BaseModel):
    """Create new category (admin)."""

    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9-]+$")
    description: str | None = None
    icon: str | None = None
    color: str | None = None
    sort_order: int = 0


class CreateThreadRequest(BaseModel):
    """Create new thread."""

    category_id: int
    title: str
    content: str
    tags: list[str] = []


class UpdateThreadRequest(BaseModel):
    """Edit thread content."""

    title: str | None = None
    content: str | None = None
    tags: list[str] | None = None


class CreateReplyRequest(BaseModel):
    """Create new reply."""

    content: str
    parent_id: int | None = None


class UpdateReplyRequest(BaseModel):
    """Update reply content."""

    content: str


# ==================== Serializers ====================


def _author(user: Any) -> dict[str, Any] | None:
    if user is None:
        return None
    return {"id": user.id, "username": user.username, "avatar_url": user.avatar_url}


def _category(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "slug": category.slug,
        "description": category.description,
        "icon": category.icon,
        "color": category.color,
        "thread_count": category.thread_count,
        "post_count": category.post_count,
        "last_activity_at": (
            category.last_activity_at.isoformat() if category.last_activity_at else None
        ),
    }


def _thread_summary(thread: Thread) -> dict[str, Any]:
    return {
        "id": thread.id,
        "title": thread.title,
        "slug": thread.slug,
        "author": _author(thread.author),
        "category": {
            "id": thread.category.id,
            "name": thread.category.name,
            "slug": thread.category.slug,
        } if thread.category else None,
        "tags": thread.tags or [],
        "view_count": thread.view_count,
        "reply_count": thread.reply_count,
        "upvotes": thread.upvotes,
        "downvotes": thread.downvotes,
        "score": thread.score,
        "is_pinned": thread.is_pinned,
        "is_locked": thread.is_locked,
        "created_at": thread.created_at.isoformat(),
        "last_reply_at": thread.last_reply_at.isoformat() if thread.last_reply_at else None,
    }


# ==================== Categories ====================


@router.get("/categories")
async def get_categories(
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    """Get all forum categories."""
    registry = CategoryRegistry(db)
    categories = await with_store_retry(registry.list_categories, db=db)

    return [_category(cat) for cat in categories]


@router.get("/categories/{slug}")
async def get_category(
    slug: str,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Get category by slug."""
    registry = CategoryRegistry(db)
    category = await with_store_retry(lambda: registry.get_category(slug), db=db)

    return _category(category)


@router.post("/categories")
async def create_category(
    request: CreateCategoryRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Create new category (admin only)."""
    if not actor.is_admin:
        raise ForbiddenError("Admin role required")

    registry = CategoryRegistry(db)
    category = await registry.create_category(
        name=request.name,
        slug=request.slug,
        description=request.description,
        icon=request.icon,
        color=request.color,
        sort_order=request.sort_order,
    )

    return _category(category)


# ==================== Threads ====================


@router.get("/threads")
async def get_threads(
    category_id: int | None = Query(None),
    category: str | None = Query(None, description="Category slug"),
    author_id: int | None = Query(None),
    sort: ThreadSort = Query(ThreadSort.NEWEST),
    filter: ThreadStatus = Query(ThreadStatus.ALL),
    search: str | None = Query(None, max_length=200),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """List threads with filters, sorting and pagination."""
    if category_id is None and category:
        category_id = (await CategoryRegistry(db).get_category(category)).id

    filters = ThreadFilters(
        category_id=category_id,
        author_id=author_id,
        sort=sort,
        status=filter,
        search=search,
        page=page,
        limit=limit,
    )
    query = ThreadQuery(db)
    result = await with_store_retry(lambda: query.list_threads(filters), db=db)

    return {
        "items": [_thread_summary(t) for t in result.items],
        "total": result.total,
        "page": result.page,
        "limit": result.limit,
        "pages": result.pages,
    }


@router.get("/threads/{thread_id}")
async def get_thread(
    thread_id: int,
    depth_limit: int | None = Query(None, ge=0, le=50),
    actor: Actor | None = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """
    Get thread details with nested replies.

    Deleted threads are only visible to moderators.
    """
    threads = ThreadService(db)
    include_deleted = can_moderate(actor)

    thread = await with_store_retry(
        lambda: threads.get_thread(thread_id, include_deleted=include_deleted), db=db
    )
    await threads.increment_view_count(thread_id)

    engine = ReplyTreeEngine(db)
    listing = await engine.list_replies(
        thread_id, depth_limit=depth_limit, include_deleted_thread=include_deleted
    )

    quality = quality_of(thread.upvotes, thread.downvotes)
    return {
        **_thread_summary(thread),
        "content": thread.content,
        "is_deleted": thread.is_deleted,
        "updated_at": thread.updated_at.isoformat(),
        "quality": quality.quality,
        "replies": listing.nest(),
    }


@router.post("/threads")
async def create_thread(
    request: CreateThreadRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Create new thread."""
    threads = ThreadService(db)

    thread = await threads.create_thread(
        category_id=request.category_id,
        author_id=actor.id,
        title=request.title,
        content=request.content,
        tags=request.tags,
    )

    return {
        "id": thread.id,
        "title": thread.title,
        "slug": thread.slug,
        "category_id": thread.category_id,
        "tags": thread.tags,
        "created_at": thread.created_at.isoformat(),
    }


@router.put("/threads/{thread_id}")
async def update_thread(
    thread_id: int,
    request: UpdateThreadRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Edit thread title, content or tags."""
    threads = ThreadService(db)
    thread = await threads.edit_thread(
        thread_id,
        actor,
        title=request.title,
        content=request.content,
        tags=request.tags,
    )

    return {
        "id": thread.id,
        "title": thread.title,
        "slug": thread.slug,
        "content": thread.content,
        "tags": thread.tags,
        "updated_at": thread.updated_at.isoformat(),
    }


# ==================== Replies ====================


@router.get("/threads/{thread_id}/replies")
async def get_replies(
    thread_id: int,
    depth_limit: int | None = Query(None, ge=0, le=50),
    actor: Actor | None = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Flat reply listing in display order, with depth positions."""
    engine = ReplyTreeEngine(db)
    listing = await with_store_retry(
        lambda: engine.list_replies(
            thread_id,
            depth_limit=depth_limit,
            include_deleted_thread=can_moderate(actor),
        ),
        db=db,
    )

    return {
        "items": [item.to_dict() for item in listing],
        "total": len(listing),
        "depth_limit": listing.depth_limit,
    }


@router.post("/threads/{thread_id}/replies")
async def create_reply(
    thread_id: int,
    request: CreateReplyRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Reply to a thread, optionally under another reply."""
    engine = ReplyTreeEngine(db)

    reply = await engine.create_reply(
        thread_id=thread_id,
        author_id=actor.id,
        content=request.content,
        parent_id=request.parent_id,
    )

    return {
        "id": reply.id,
        "thread_id": reply.thread_id,
        "parent_id": reply.parent_id,
        "content": reply.content,
        "created_at": reply.created_at.isoformat(),
    }


@router.put("/replies/{reply_id}")
async def update_reply(
    reply_id: int,
    request: UpdateReplyRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Update reply content."""
    engine = ReplyTreeEngine(db)
    reply = await engine.edit_reply(reply_id, actor, request.content)

    return {
        "id": reply.id,
        "content": reply.content,
        "is_edited": reply.is_edited,
        "updated_at": reply.updated_at.isoformat(),
    }


@router.delete("/replies/{reply_id}")
async def delete_reply(
    reply_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Soft-delete a reply. Its children stay in place under a tombstone."""
    engine = ReplyTreeEngine(db)
    reply = await engine.soft_delete_reply(reply_id, actor)

    return {
        "id": reply.id,
        "content": reply.content,
        "is_active": reply.is_active,
    }


# ==================== Feed ====================


@router.get("/feed")
async def get_feed(
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    """Recent forum activity as What's New feed items."""
    items = await with_store_retry(lambda: recent_activity(db, limit=limit), db=db)

    return [item.model_dump(mode="json") for item in items]
