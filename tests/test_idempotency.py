import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy.exc import OperationalError

from checkin import reconcile
from checkin.main import get_redis
from tests.helpers import create_event, list_tickets, register

pytestmark = pytest.mark.asyncio

async def test_retried_batch_is_answered_from_cache(app, client):
    cache = FakeAsyncRedis()
    app.dependency_overrides[get_redis] = lambda: cache

    event_id = await create_event(client, title="Idem Event", ticket_count=2)
    await register(client, event_id)
    credential = (await list_tickets(client, event_id))[0]["credential"]

    batch = {"stationId": "station_1", "checkIns": [{
        "ticketCredentialOrId": credential, "stationId": "station_1", "isOfflineSync": True,
        "clientTimestamp": "2024-05-01T09:00:00Z", "localId": "l1",
    }]}
    key = "idem-demo-123"
    r1 = await client.post("/check-in/sync", json=batch, headers={"Idempotency-Key": key})
    r2 = await client.post("/check-in/sync", json=batch, headers={"Idempotency-Key": key})

    j1, j2 = r1.json(), r2.json()
    assert j1 == j2, f"Expected exact cached response, got diff: {j1} vs {j2}"
    assert await cache.get(f"idem:station_1:{key}") is not None

    # the second delivery never reached reconciliation
    audit = (await client.get("/admin/audit", params={"event_id": event_id})).json()
    assert [x["reason_code"] for x in audit] == ["OK_SYNCED"]

async def test_without_cache_replay_is_still_safe(client):
    event_id = await create_event(client, title="No Cache", ticket_count=1)
    await register(client, event_id)
    credential = (await list_tickets(client, event_id))[0]["credential"]

    batch = {"stationId": "station_1", "checkIns": [{
        "ticketCredentialOrId": credential, "stationId": "station_1", "isOfflineSync": True,
        "clientTimestamp": "2024-05-01T09:00:00Z", "localId": "l1",
    }]}
    r1 = (await client.post("/check-in/sync", json=batch, headers={"Idempotency-Key": "k"})).json()
    r2 = (await client.post("/check-in/sync", json=batch, headers={"Idempotency-Key": "k"})).json()

    assert r1["results"][0]["checkInLogId"] == r2["results"][0]["checkInLogId"]
    logs = (await client.get(f"/admin/events/{event_id}/check-in/logs")).json()
    assert len(logs) == 1

async def test_retryable_failures_are_not_cached(app, client, monkeypatch):
    cache = FakeAsyncRedis()
    app.dependency_overrides[get_redis] = lambda: cache

    event_id = await create_event(client, title="Flaky Store", ticket_count=1)
    await register(client, event_id)
    credential = (await list_tickets(client, event_id))[0]["credential"]

    real = reconcile._check_in
    calls = []

    def flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE tickets", {}, Exception("database is locked"))
        return real(*args, **kwargs)

    monkeypatch.setattr(reconcile, "_check_in", flaky)

    batch = {"stationId": "station_1", "checkIns": [{
        "ticketCredentialOrId": credential, "stationId": "station_1", "isOfflineSync": True,
        "clientTimestamp": "2024-05-01T09:00:00Z", "localId": "l1",
    }]}
    key = "idem-flaky"
    first = (await client.post("/check-in/sync", json=batch, headers={"Idempotency-Key": key})).json()
    assert first["results"][0]["success"] is False
    assert first["results"][0]["code"] == "INTERNAL"
    assert await cache.get(f"idem:station_1:{key}") is None

    retry = (await client.post("/check-in/sync", json=batch, headers={"Idempotency-Key": key})).json()
    assert retry["results"][0]["success"] is True
    assert retry["results"][0]["checkInLogId"]
    assert len(calls) == 2
    assert await cache.get(f"idem:station_1:{key}") is not None
