import asyncio

import pytest

from evforum.api.v1.endpoints.presence import handle_presence_message
from evforum.core.errors import ValidationError
from evforum.core.security import Actor
from evforum.modules.presence.tracker import (
    PresenceStatus,
    PresenceTracker,
    channel_name,
    typing_summary,
)

PAGE = "/forums/tesla"


@pytest.fixture
def tracker(clock):
    return PresenceTracker(
        ttl_seconds=45, typing_debounce_seconds=4, sweep_interval=15, clock=clock
    )


def _ids(users):
    return [u["user_id"] for u in users]


def test_expired_user_disappears_without_sweep(tracker, clock):
    tracker.heartbeat(1, PAGE, username="alice")
    assert _ids(tracker.list_online()) == [1]

    clock.advance(45)
    assert _ids(tracker.list_online(PAGE)) == [1]

    clock.advance(1)
    assert tracker.list_online() == []
    assert tracker.list_online(PAGE) == []
    assert tracker.get(1) is None
    assert tracker.count_online() == 0


def test_heartbeat_refreshes_ttl_and_moves_page(tracker, clock):
    tracker.heartbeat(1, PAGE, username="alice")
    clock.advance(30)
    tracker.heartbeat(1, "/forums/rivian")
    clock.advance(30)

    assert tracker.list_online(PAGE) == []
    online = tracker.list_online("/forums/rivian")
    assert _ids(online) == [1]
    assert online[0]["username"] == "alice"


def test_duplicate_and_out_of_order_heartbeats(tracker, clock):
    tracker.heartbeat(1, PAGE, sent_at=100.0)
    tracker.heartbeat(1, PAGE, sent_at=100.0)
    tracker.heartbeat(1, "/forums/old-page", status=PresenceStatus.AWAY, sent_at=90.0)

    record = tracker.get(1)
    assert record["current_page"] == PAGE
    assert record["status"] == "online"
    assert len(tracker.list_online()) == 1


def test_offline_heartbeat_hides_user(tracker):
    tracker.heartbeat(1, PAGE)
    tracker.heartbeat(1, PAGE, status=PresenceStatus.OFFLINE)

    assert tracker.list_online() == []


def test_typing_auto_clears_after_debounce(tracker, clock):
    tracker.heartbeat(1, PAGE, username="alice")
    assert tracker.set_typing(1, "thread:42", True)
    assert _ids(tracker.list_typing("thread:42")) == [1]

    clock.advance(4.5)
    assert tracker.list_typing("thread:42") == []
    assert tracker.get(1)["is_typing"] is False


def test_lapsed_typing_context_is_not_presence(tracker, clock):
    tracker.heartbeat(1, PAGE, username="alice")
    tracker.set_typing(1, "thread:42", True)
    assert _ids(tracker.list_online("thread:42")) == [1]

    clock.advance(10)
    tracker.heartbeat(1, "/forums/rivian")
    clock.advance(20)
    tracker.heartbeat(1, "/forums/rivian")

    assert tracker.list_online("thread:42") == []
    assert _ids(tracker.list_online("/forums/rivian")) == [1]


def test_typing_stop_only_clears_matching_context(tracker):
    tracker.set_typing(1, "thread:42", True)
    tracker.set_typing(1, "thread:7", False)
    assert _ids(tracker.list_typing("thread:42")) == [1]

    tracker.set_typing(1, "thread:42", False)
    assert tracker.list_typing("thread:42") == []


def test_sweep_evicts_and_publishes_leave(tracker, clock):
    queue = tracker.subscribe(PAGE)
    tracker.heartbeat(1, PAGE)
    tracker.heartbeat(2, PAGE)
    snapshot = queue.get_nowait()
    assert snapshot["channel"] == channel_name(PAGE)
    assert snapshot["event"] == "snapshot"
    queue.get_nowait()

    clock.advance(30)
    tracker.heartbeat(2, PAGE)
    queue.get_nowait()
    clock.advance(20)

    assert tracker.sweep() == [1]
    leave = queue.get_nowait()
    assert leave == {
        "channel": "presence:/forums/tesla",
        "event": "leave",
        "user_id": 1,
        "status": "offline",
    }
    assert _ids(tracker.list_online()) == [2]


def test_unsubscribe_stops_delivery(tracker):
    queue = tracker.subscribe(PAGE)
    tracker.unsubscribe(PAGE, queue)
    tracker.heartbeat(1, PAGE)

    assert queue.empty()


def test_disconnect_removes_record(tracker):
    everything = tracker.subscribe("*")
    tracker.heartbeat(1, PAGE)
    everything.get_nowait()

    tracker.disconnect(1)

    assert tracker.list_online() == []
    assert everything.get_nowait()["event"] == "leave"


@pytest.mark.asyncio
async def test_sweep_loop_runs_in_background(clock):
    tracker = PresenceTracker(ttl_seconds=1, sweep_interval=0.01, clock=clock)
    tracker.heartbeat(1, PAGE)
    clock.advance(5)

    await tracker.start()
    try:
        await asyncio.sleep(0.05)
    finally:
        await tracker.stop()

    assert tracker._records == {}


@pytest.mark.parametrize(
    ("names", "expected"),
    [
        ([], ""),
        (["ann"], "ann is typing"),
        (["ann", "bo"], "ann and bo are typing"),
        (["ann", "bo", "cy"], "ann, bo, and cy are typing"),
        (["ann", "bo", "cy", "di"], "ann, bo, cy and 1 other are typing"),
        (["ann", "bo", "cy", "di", "ed"], "ann, bo, cy and 2 others are typing"),
    ],
)
def test_typing_summary(names, expected):
    assert typing_summary(names) == expected


# ==================== Socket messages ====================


def test_socket_messages_drive_tracker(tracker):
    actor = Actor(id=5, username="erin")
    subscriptions = {}

    ack = handle_presence_message(tracker, actor, {"type": "heartbeat", "page": PAGE}, subscriptions)
    assert ack["event"] == "heartbeat_ack"
    assert _ids(ack["users"]) == [5]

    snapshot = handle_presence_message(
        tracker, actor, {"type": "subscribe", "context_id": "thread:1"}, subscriptions
    )
    assert snapshot["event"] == "snapshot"
    assert "thread:1" in subscriptions

    typing = handle_presence_message(
        tracker, actor, {"type": "typing", "context_id": "thread:1"}, subscriptions
    )
    assert typing["is_typing"] is True
    pushed = subscriptions["thread:1"].get_nowait()
    assert pushed["users"][0]["is_typing"] is True

    assert handle_presence_message(
        tracker, actor, {"type": "unsubscribe", "context_id": "thread:1"}, subscriptions
    ) is None
    assert subscriptions == {}


def test_socket_rejects_bad_messages(tracker):
    actor = Actor(id=5, username="erin")

    with pytest.raises(ValidationError):
        handle_presence_message(tracker, actor, {"type": "dance"}, {})
    with pytest.raises(ValidationError):
        handle_presence_message(tracker, actor, {"type": "typing"}, {})
    with pytest.raises(ValidationError):
        handle_presence_message(tracker, actor, {"type": "heartbeat", "status": "busy"}, {})


def test_socket_rejects_malformed_fields(tracker):
    actor = Actor(id=5, username="erin")
    handle_presence_message(tracker, actor, {"type": "heartbeat", "page": PAGE, "sent_at": 5}, {})

    with pytest.raises(ValidationError) as exc:
        handle_presence_message(tracker, actor, {"type": "heartbeat", "sent_at": "6"}, {})
    assert exc.value.fields == {"sent_at": "invalid"}
    with pytest.raises(ValidationError):
        handle_presence_message(tracker, actor, ["heartbeat"], {})
    with pytest.raises(ValidationError):
        handle_presence_message(tracker, actor, {"type": "heartbeat", "page": 7}, {})

    assert tracker.get(5)["current_page"] == PAGE


def test_last_connection_close_is_a_leave(tracker):
    tracker.heartbeat(1, PAGE)
    tracker.open_connection(1)
    tracker.open_connection(1)

    assert tracker.close_connection(1) == 1
    assert _ids(tracker.list_online()) == [1]

    assert tracker.close_connection(1) == 0
    assert tracker.list_online() == []
