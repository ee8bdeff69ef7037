from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from evforum.core.errors import (
    ForbiddenError,
    ParentNotFound,
    ThreadLocked,
    ThreadNotFound,
    ValidationError,
)
from evforum.core.security import Actor
from evforum.models.forum import Category, Reply
from evforum.models.user import UserRole
from evforum.modules.forum.replies import (
    ReplyListing,
    ReplyTreeEngine,
    build_arena,
    check_forest,
    compute_depths,
    display_parent,
)
from evforum.modules.forum.threads import ThreadService

T0 = datetime(2024, 5, 1, 12, 0, 0)


def _reply(reply_id, parent_id=None, thread_id=1, minutes=None):
    return Reply(
        id=reply_id,
        thread_id=thread_id,
        author_id=1,
        parent_id=parent_id,
        content=f"reply {reply_id}",
        is_active=True,
        is_edited=False,
        upvotes=0,
        downvotes=0,
        created_at=T0 + timedelta(minutes=reply_id if minutes is None else minutes),
        updated_at=T0,
    )


def _chain(length):
    """r1 <- r2 <- ... each replying to the previous one."""
    return [_reply(1)] + [_reply(i, parent_id=i - 1) for i in range(2, length + 1)]


async def _thread(db, seeded, title="Winter range on the Model Y"):
    return await ThreadService(db).create_thread(
        seeded["tesla"], seeded["alice"], title, "Lost 30% at -10C, normal?"
    )


# ==================== Arena helpers ====================


def test_depths_follow_parent_chain():
    arena = build_arena(_chain(5) + [_reply(6)])
    depths = compute_depths(arena)

    assert [depths[i] for i in range(1, 6)] == [0, 1, 2, 3, 4]
    assert depths[6] == 0


def test_missing_parent_is_treated_as_root():
    arena = build_arena([_reply(2, parent_id=99)])
    assert compute_depths(arena) == {2: 0}


def test_compute_depths_handles_long_chains():
    arena = build_arena(_chain(3000))
    depths = compute_depths(arena)
    assert depths[3000] == 2999


def test_display_parent_flattens_past_depth_limit():
    arena = build_arena(_chain(6))
    depths = compute_depths(arena)

    assert display_parent(1, arena, depths, 3) is None
    assert display_parent(3, arena, depths, 3) == 2
    # depth 3, 4 and 5 all hang off the depth-2 ancestor
    assert display_parent(4, arena, depths, 3) == 3
    assert display_parent(5, arena, depths, 3) == 3
    assert display_parent(6, arena, depths, 3) == 3
    assert display_parent(6, arena, depths, None) == 5


def test_display_parent_with_zero_limit_renders_flat():
    arena = build_arena(_chain(3))
    depths = compute_depths(arena)
    assert [display_parent(i, arena, depths, 0) for i in (1, 2, 3)] == [None, None, None]


def test_check_forest_reports_violations():
    good = _chain(3)
    assert check_forest(good) == []

    cross_thread = _reply(10, parent_id=1, thread_id=2)
    orphan = _reply(11, parent_id=404)
    older_child = _reply(12, parent_id=3, minutes=0)
    problems = check_forest(good + [cross_thread, orphan, older_child])

    assert len(problems) == 3
    assert any("another thread" in p for p in problems)
    assert any("missing" in p for p in problems)
    assert any("not earlier" in p for p in problems)


def test_listing_is_restartable_and_ordered():
    replies = [_reply(3, minutes=1), _reply(1), _reply(2, parent_id=1, minutes=1)]
    listing = ReplyListing(replies, depth_limit=3)

    first = [item.id for item in listing]
    second = [item.id for item in listing]

    assert first == second
    # created_at ascending, id breaks the tie
    assert first == [1, 2, 3]
    assert len(listing) == 3


def test_nest_builds_children_under_display_parent():
    listing = ReplyListing(_chain(5), depth_limit=3)
    tree = listing.nest()

    assert len(tree) == 1
    level = tree[0]
    for expected_id in (2, 3, 4):
        assert len(level["replies"]) >= 1
        level = level["replies"][0]
        assert level["id"] == expected_id
    # r5 is flattened next to r4 under r3
    siblings = tree[0]["replies"][0]["replies"][0]["replies"]
    assert [node["id"] for node in siblings] == [4, 5]
    assert siblings[1]["display_depth"] == 3
    assert siblings[1]["depth"] == 4


# ==================== Engine ====================


@pytest.mark.asyncio
async def test_create_reply_updates_thread_and_category(db, seeded):
    thread = await _thread(db, seeded)
    engine = ReplyTreeEngine(db)

    reply = await engine.create_reply(thread.id, seeded["bob"], "Preconditioning helps a lot")

    await db.refresh(thread)
    category = await db.get(Category, seeded["tesla"])
    await db.refresh(category)
    assert thread.reply_count == 1
    assert thread.last_reply_by == seeded["bob"]
    assert thread.last_reply_at == reply.created_at
    assert category.post_count == 1
    assert category.thread_count == 1


@pytest.mark.asyncio
async def test_reply_parent_must_be_in_same_thread(db, seeded):
    first = await _thread(db, seeded)
    second = await _thread(db, seeded, title="Supercharger etiquette")
    engine = ReplyTreeEngine(db)
    other = await engine.create_reply(second.id, seeded["bob"], "Don't idle at 80%+")

    with pytest.raises(ParentNotFound):
        await engine.create_reply(first.id, seeded["bob"], "wrong thread", parent_id=other.id)
    with pytest.raises(ParentNotFound):
        await engine.create_reply(first.id, seeded["bob"], "no parent", parent_id=9999)


@pytest.mark.asyncio
async def test_reply_to_locked_thread_writes_nothing(db, seeded):
    thread = await _thread(db, seeded)
    thread.is_locked = True
    await db.flush()
    engine = ReplyTreeEngine(db)

    with pytest.raises(ThreadLocked):
        await engine.create_reply(thread.id, seeded["bob"], "Let me in")

    rows = await db.execute(select(func.count(Reply.id)).where(Reply.thread_id == thread.id))
    await db.refresh(thread)
    assert rows.scalar_one() == 0
    assert thread.reply_count == 0


@pytest.mark.asyncio
async def test_reply_to_deleted_thread_is_not_found(db, seeded):
    thread = await _thread(db, seeded)
    thread.is_deleted = True
    await db.flush()

    with pytest.raises(ThreadNotFound):
        await ReplyTreeEngine(db).create_reply(thread.id, seeded["bob"], "hello?")


@pytest.mark.asyncio
async def test_reply_content_is_validated(db, seeded):
    thread = await _thread(db, seeded)
    engine = ReplyTreeEngine(db)

    with pytest.raises(ValidationError) as exc:
        await engine.create_reply(thread.id, seeded["bob"], "   ")
    assert exc.value.fields == {"content": "empty"}

    with pytest.raises(ValidationError):
        await engine.create_reply(thread.id, seeded["bob"], "x" * 10_001)


@pytest.mark.asyncio
async def test_deleted_parent_keeps_children_visible(db, seeded):
    thread = await _thread(db, seeded)
    engine = ReplyTreeEngine(db)
    alice = Actor(id=seeded["alice"], username="alice")

    r1 = await engine.create_reply(thread.id, seeded["alice"], "Which tires are you on?")
    r2 = await engine.create_reply(thread.id, seeded["bob"], "Stock all-seasons", parent_id=r1.id)
    await engine.soft_delete_reply(r1.id, alice)

    listing = await engine.list_replies(thread.id)
    items = {item.id: item for item in listing}

    assert set(items) == {r1.id, r2.id}
    assert items[r1.id].is_tombstone
    assert items[r1.id].content == "[deleted]"
    assert items[r2.id].display_parent_id == r1.id
    assert items[r2.id].content == "Stock all-seasons"

    await db.refresh(thread)
    assert thread.reply_count == 1
    assert await engine.reconcile_reply_count(thread.id)


@pytest.mark.asyncio
async def test_soft_delete_is_idempotent(db, seeded):
    thread = await _thread(db, seeded)
    engine = ReplyTreeEngine(db)
    mod = Actor(id=seeded["mod"], username="mod", role=UserRole.MODERATOR)
    reply = await engine.create_reply(thread.id, seeded["bob"], "spam link")

    await engine.soft_delete_reply(reply.id, mod)
    await engine.soft_delete_reply(reply.id, mod)

    await db.refresh(thread)
    assert thread.reply_count == 0


@pytest.mark.asyncio
async def test_only_author_or_moderator_may_change_reply(db, seeded):
    thread = await _thread(db, seeded)
    engine = ReplyTreeEngine(db)
    reply = await engine.create_reply(thread.id, seeded["bob"], "original")
    alice = Actor(id=seeded["alice"], username="alice")
    mod = Actor(id=seeded["mod"], username="mod", role=UserRole.MODERATOR)

    with pytest.raises(ForbiddenError):
        await engine.edit_reply(reply.id, alice, "hijacked")
    with pytest.raises(ForbiddenError):
        await engine.soft_delete_reply(reply.id, alice)

    edited = await engine.edit_reply(reply.id, mod, "cleaned up")
    assert edited.content == "cleaned up"
    assert edited.is_edited


@pytest.mark.asyncio
async def test_reply_to_tombstone_is_rejected(db, seeded):
    thread = await _thread(db, seeded)
    engine = ReplyTreeEngine(db)
    bob = Actor(id=seeded["bob"], username="bob")
    reply = await engine.create_reply(thread.id, seeded["bob"], "oops")
    await engine.soft_delete_reply(reply.id, bob)

    with pytest.raises(ParentNotFound):
        await engine.create_reply(thread.id, seeded["alice"], "replying anyway", parent_id=reply.id)


@pytest.mark.asyncio
async def test_reply_count_matches_active_rows_after_mixed_operations(db, seeded):
    thread = await _thread(db, seeded)
    engine = ReplyTreeEngine(db)
    mod = Actor(id=seeded["mod"], username="mod", role=UserRole.MODERATOR)

    created = []
    for i in range(8):
        parent = created[i // 2].id if i and i % 3 == 0 else None
        reply = await engine.create_reply(thread.id, seeded["bob"], f"reply {i}", parent_id=parent)
        created.append(reply)
        if i % 4 == 1:
            await engine.soft_delete_reply(created[i - 1].id, mod)

    await engine.restore_reply(created[0])
    await engine.soft_delete_reply(created[-1].id, mod)

    await db.refresh(thread)
    assert thread.reply_count == await engine.count_active(thread.id)
    assert await engine.reconcile_reply_count(thread.id)

    rows = await db.execute(select(Reply).where(Reply.thread_id == thread.id))
    assert check_forest(rows.scalars().all()) == []


@pytest.mark.asyncio
async def test_reconcile_reports_and_fixes_drift(db, seeded):
    thread = await _thread(db, seeded)
    engine = ReplyTreeEngine(db)
    await engine.create_reply(thread.id, seeded["bob"], "one")
    thread.reply_count = 7
    await db.flush()

    assert await engine.reconcile_reply_count(thread.id) is False
    await db.refresh(thread)
    assert thread.reply_count == 7

    assert await engine.reconcile_reply_count(thread.id, fix=True) is False
    await db.refresh(thread)
    assert thread.reply_count == 1


@pytest.mark.asyncio
async def test_list_replies_hides_deleted_thread_unless_moderator_view(db, seeded):
    thread = await _thread(db, seeded)
    engine = ReplyTreeEngine(db)
    await engine.create_reply(thread.id, seeded["bob"], "still here")
    thread.is_deleted = True
    await db.flush()

    with pytest.raises(ThreadNotFound):
        await engine.list_replies(thread.id)

    listing = await engine.list_replies(thread.id, include_deleted_thread=True)
    assert len(listing) == 1
