import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from evforum.core.errors import ConflictError, StoreUnavailable
from evforum.core.retry import retry_on_conflict, with_store_retry


def _operational_error():
    return OperationalError("SELECT 1", {}, Exception("connection reset"))


@pytest.mark.asyncio
async def test_store_retry_recovers_from_transient_errors():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise _operational_error()
        return "ok"

    assert await with_store_retry(flaky, attempts=3, backoff=0) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_store_retry_gives_up_with_store_unavailable():
    async def down():
        raise _operational_error()

    with pytest.raises(StoreUnavailable) as exc:
        await with_store_retry(down, attempts=2, backoff=0)
    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_store_retry_does_not_mask_other_errors():
    async def broken():
        raise KeyError("boom")

    with pytest.raises(KeyError):
        await with_store_retry(broken, attempts=3, backoff=0)


@pytest.mark.asyncio
async def test_conflict_retried_once_then_raised(db):
    calls = []

    async def always_conflicts():
        calls.append(1)
        raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    with pytest.raises(ConflictError) as exc:
        await retry_on_conflict(db, always_conflicts, detail="Slug taken")

    assert len(calls) == 2
    assert exc.value.detail == "Slug taken"


@pytest.mark.asyncio
async def test_conflict_retry_succeeds_on_second_attempt(db):
    calls = []

    async def conflicts_once():
        calls.append(1)
        if len(calls) == 1:
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        return "inserted"

    assert await retry_on_conflict(db, conflicts_once) == "inserted"
