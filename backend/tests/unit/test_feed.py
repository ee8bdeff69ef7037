from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from evforum.modules.forum.feed import (
    ForumFeedItem,
    GarageFeedItem,
    MarketplaceFeedItem,
    merge_feeds,
    parse_feed_items,
    recent_activity,
)
from evforum.modules.forum.replies import ReplyTreeEngine
from evforum.modules.forum.threads import ThreadService


def test_parse_feed_items_picks_variant_by_kind():
    items = parse_feed_items(
        [
            {
                "kind": "marketplace",
                "id": "mp-7",
                "title": "Used Wall Connector",
                "url": "/marketplace/7",
                "occurred_at": "2024-04-02T10:00:00",
                "price": 250,
            },
            {
                "kind": "garage",
                "id": "g-3",
                "title": "My Ioniq 5 build",
                "url": "/garage/3",
                "occurred_at": "2024-04-01T08:30:00",
                "vehicle": "Ioniq 5",
            },
        ]
    )

    assert isinstance(items[0], MarketplaceFeedItem)
    assert items[0].price == 250.0
    assert isinstance(items[1], GarageFeedItem)
    assert items[1].vehicle == "Ioniq 5"


def test_unknown_kind_is_rejected():
    with pytest.raises(PydanticValidationError):
        parse_feed_items(
            [{"kind": "blog", "id": "b", "title": "x", "url": "/", "occurred_at": "2024-01-01T00:00:00"}]
        )


def test_merge_feeds_newest_first():
    forum = [
        ForumFeedItem(id="forum-1", title="a", url="/forums/1", occurred_at=datetime(2024, 4, 3), thread_id=1)
    ]
    external = parse_feed_items(
        [
            {"kind": "garage", "id": "g", "title": "b", "url": "/g", "occurred_at": "2024-04-05T00:00:00"},
            {"kind": "marketplace", "id": "m", "title": "c", "url": "/m", "occurred_at": "2024-04-01T00:00:00"},
        ]
    )

    merged = merge_feeds(forum, external, limit=2)

    assert [item.kind for item in merged] == ["garage", "forum"]


@pytest.mark.asyncio
async def test_recent_activity_orders_by_last_reply(db, seeded):
    service = ThreadService(db)
    quiet = await service.create_thread(seeded["tesla"], seeded["alice"], "Quiet thread", "...")
    busy = await service.create_thread(seeded["tesla"], seeded["alice"], "Busy thread", "...")
    hidden = await service.create_thread(seeded["rivian"], seeded["bob"], "Hidden thread", "...")
    hidden.is_deleted = True
    await db.flush()
    await ReplyTreeEngine(db).create_reply(quiet.id, seeded["bob"], "bump")

    items = await recent_activity(db)

    assert [item.thread_id for item in items] == [quiet.id, busy.id]
    assert items[0].kind == "forum"
    assert items[0].reply_count == 1
    assert items[0].category_slug == "tesla"
    assert items[0].author == "alice"
