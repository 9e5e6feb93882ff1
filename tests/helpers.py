import httpx

from checkin.credentials import encode
from checkin.models import Attendee, Event, Ticket, TicketTier
from checkin.stations import register_station

ISSUED_AT = 1700000000000


def seed(db, event_id="evt1", ticket_ids=("abc",), station_id="station_1", badge_required=True,
         badge_priority=None) -> dict:
    """Event, tier, one attendee per ticket, and one station."""
    db.add(Event(id=event_id, title="Test Event"))
    db.add(TicketTier(id=f"{event_id}_tier", event_id=event_id, name="VIP",
                      badge_required=badge_required, badge_priority=badge_priority))
    credentials = {}
    for tid in ticket_ids:
        owner = f"owner_{tid}"
        db.add(Attendee(id=owner, full_name=f"Attendee {tid}", email=f"{tid}@example.com", company="Acme"))
        credentials[tid] = encode(tid, event_id, owner, ISSUED_AT)
        db.add(Ticket(id=tid, event_id=event_id, tier_id=f"{event_id}_tier", attendee_id=owner,
                      credential=credentials[tid]))
    db.commit()
    if station_id:
        register_station(db, station_id, event_id, name="Front Door")
    return {"event_id": event_id, "station_id": station_id, "credentials": credentials}


async def create_event(client: httpx.AsyncClient, title="Test Event", ticket_count=10, **extra) -> str:
    r = await client.post("/admin/events", json={"title": title, "ticket_count": ticket_count, **extra})
    r.raise_for_status()
    data = r.json()
    assert data.get("ok") is True, data
    return data["event_id"]

async def list_tickets(client: httpx.AsyncClient, event_id: str, limit: int = 500):
    r = await client.get(f"/admin/events/{event_id}/tickets", params={"limit": limit})
    r.raise_for_status()
    data = r.json()
    assert isinstance(data, list)
    return data

async def register(client: httpx.AsyncClient, event_id: str, station_id: str = "station_1") -> str:
    r = await client.post("/admin/stations", json={"station_id": station_id, "event_id": event_id, "name": "Gate A"})
    r.raise_for_status()
    return station_id
