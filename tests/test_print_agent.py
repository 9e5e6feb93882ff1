import pytest

from checkin import badges, worker
from checkin.schemas import BadgePayload
from checkin.worker import LogPrinter, PrinterFailure
from tests.helpers import create_event, list_tickets, register, seed

pytestmark = pytest.mark.asyncio

class JammedPrinter:
    async def print_badge(self, job):
        raise PrinterFailure("Printer jam")

class UnpluggedPrinter:
    async def print_badge(self, job):
        raise OSError("device not found")

def queue_one(session_factory) -> int:
    db = session_factory()
    try:
        seed(db)
        job = badges.enqueue(db, "abc", "station_1", 0, BadgePayload(
            attendee_name="Attendee abc", attendee_email="abc@example.com", ticket_tier="VIP",
            event_title="Test Event", credential="TICKET-abc-evt1-1700000000000-X"))
        return job.id
    finally:
        db.close()


async def test_worker_prints_next_job(session_factory):
    job_id = queue_one(session_factory)

    done = await worker.process_one(LogPrinter(), "printer_1", session_factory=session_factory)
    assert done.id == job_id
    assert done.status == "completed"

    assert await worker.process_one(LogPrinter(), session_factory=session_factory) is None

async def test_printer_failure_fails_the_job(session_factory):
    queue_one(session_factory)

    failed = await worker.process_one(JammedPrinter(), session_factory=session_factory)
    assert failed.status == "failed"
    assert failed.error_message == "Printer jam"
    # stays failed until an operator retries it
    assert await worker.process_one(LogPrinter(), session_factory=session_factory) is None

async def test_unexpected_printer_error_fails_the_job(session_factory):
    job_id = queue_one(session_factory)

    failed = await worker.process_one(UnpluggedPrinter(), session_factory=session_factory)
    assert failed.id == job_id
    assert failed.status == "failed"
    assert failed.error_message == "device not found"

    db = session_factory()
    try:
        assert badges.retry(db, job_id).status == "pending"
    finally:
        db.close()


async def test_badge_endpoints(client):
    event_id = await create_event(client, title="Badges", ticket_count=2, tier_name="Speaker", badge_priority=3)
    await register(client, event_id)
    tickets = await list_tickets(client, event_id)
    r = await client.post("/check-in/scan", json={"ticketCredentialOrId": tickets[0]["credential"],
                                                  "stationId": "station_1"})
    assert r.status_code == 200

    q = (await client.get("/admin/badges/queue")).json()
    assert q["totalPending"] == 1
    assert q["queue"][0]["priority"] == 3
    assert q["queue"][0]["badgeData"]["ticketTier"] == "Speaker"

    job = (await client.post("/badges/claim", json={"printerId": "printer_1"})).json()
    assert job["status"] == "printing"
    assert (await client.post("/badges/claim", json={})).status_code == 204

    r = await client.post(f"/badges/{job['id']}/complete")
    assert r.status_code == 200 and r.json()["status"] == "completed"
    status = (await client.get(f"/check-in/status/{tickets[0]['ticket_id']}")).json()
    assert status["badgePrinted"] is True

    r = await client.post(f"/badges/{job['id']}/fail", json={"errorMessage": "late"})
    assert r.status_code == 409
    assert r.json()["error"] == "INVALID_TRANSITION"

async def test_manual_reprint_and_retry(client):
    event_id = await create_event(client, title="Reprint", ticket_count=1, badge_required=False)
    await register(client, event_id)
    ticket_id = (await list_tickets(client, event_id))[0]["ticket_id"]

    r = await client.post("/badges/print", json={"ticketId": ticket_id, "stationId": "station_1", "priority": 9})
    assert r.status_code == 200
    job = r.json()
    assert job["priority"] == 9 and job["status"] == "pending"

    await client.post("/badges/claim", json={})
    r = await client.post(f"/badges/{job['id']}/fail", json={"errorMessage": "Out of paper"})
    assert r.json()["status"] == "failed"

    r = await client.post(f"/admin/badges/{job['id']}/retry")
    assert r.json()["status"] == "pending"
    assert r.json()["retryCount"] == 1

    assert (await client.post("/badges/print", json={"ticketId": "nope"})).status_code == 404
    assert (await client.get("/admin/badges/queue", params={"status": "lost"})).status_code == 400
