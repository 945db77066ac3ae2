"""
Failure Injection Tests.

Validates the retry policy and the translation of store failures into the
application error taxonomy.
"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from courier_backend.app.core.exceptions import StateConflictError, TransientStoreError, ValidationError
from courier_backend.app.core.reliability import run_with_retry
from courier_backend.app.db.session import atomic


@pytest.mark.asyncio
async def test_transient_errors_are_retried(mocker):
    sleep = mocker.patch("courier_backend.app.core.reliability.asyncio.sleep")
    calls = {"count": 0}

    async def flaky():
        calls["count"] += 1
        if calls["count"] < 3:
            raise TransientStoreError("lock timeout")
        return "done"

    assert await run_with_retry(flaky, attempts=3, backoff_base=0.5) == "done"
    assert calls["count"] == 3
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retry_budget_is_bounded(mocker):
    mocker.patch("courier_backend.app.core.reliability.asyncio.sleep")
    calls = {"count": 0}

    async def always_down():
        calls["count"] += 1
        raise TransientStoreError()

    with pytest.raises(TransientStoreError):
        await run_with_retry(always_down, attempts=2, backoff_base=0)
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_non_transient_errors_fail_fast(mocker):
    sleep = mocker.patch("courier_backend.app.core.reliability.asyncio.sleep")
    calls = {"count": 0}

    async def conflict():
        calls["count"] += 1
        raise StateConflictError("Illegal transition")

    with pytest.raises(StateConflictError):
        await run_with_retry(conflict)
    assert calls["count"] == 1
    sleep.assert_not_called()

    async def invalid():
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        await run_with_retry(invalid)


@pytest.mark.asyncio
async def test_atomic_translates_store_errors(db_session):
    with pytest.raises(StateConflictError):
        async with atomic(db_session):
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    with pytest.raises(TransientStoreError):
        async with atomic(db_session):
            raise OperationalError("SELECT", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_error_response_shape(client):
    """Domain errors surface as a stable code plus message, never a traceback."""
    from conftest import auth_headers

    response = await client.post(
        "/v1/hub/parcels/12345/receive",
        headers=auth_headers("HUB_MANAGER", 10, hub_id=1),
    )
    assert response.status_code == 404
    body = response.json()
    assert body["error_code"] == "ERR_NOT_FOUND_001"
    assert "message" in body
    assert "details" in body
