import csv
import io
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import badges, stations
from .config import HEARTBEAT_STALE_SECONDS
from .credentials import encode
from .db import get_db
from .models import Attendee, AuditLog, CheckInLog, Event, Station, Ticket, TicketTier
from .schemas import BadgeJobOut, QueueStatus, StationOut

router = APIRouter(prefix="/admin", tags=["admin"])

WORDS = [
  "alpha","beta","gamma","delta","omega",
  "llama","panda","tiger","eagle","otter",
  "nova","comet","orbit","pixel","spark",
  "jade","ember","cobalt","onyx","ivory",
]


# -------------------------
# Helpers
# -------------------------
def _gen_event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:8]}"

def _gen_ticket_id(event_id: str, i: int) -> str:
    # evt_ab12cd34 -> ab12
    short = event_id.split("_")[-1][:4]
    word = WORDS[(i - 1) % len(WORDS)]
    # tkt_ab12_ivory_001 (no '-', it is the credential delimiter)
    return f"tkt_{short}_{word}_{i:03d}"


# -------------------------
# Seeding (events and tickets are owned elsewhere; this is for demos and tests)
# -------------------------
class CreateEventReq(BaseModel):
    title: str
    ticket_count: int
    tier_name: str = "General"
    badge_required: bool = True
    badge_priority: Optional[int] = None

@router.post("/events")
def create_event(req: CreateEventReq, db: Session = Depends(get_db)):
    if req.ticket_count < 1 or req.ticket_count > 5000:
        return {"ok": False, "error": "ticket_count must be between 1 and 5000"}

    event_id = _gen_event_id()
    tier_id = f"tier_{uuid.uuid4().hex[:8]}"

    db.add(Event(id=event_id, title=req.title))
    db.add(TicketTier(id=tier_id, event_id=event_id, name=req.tier_name,
                      badge_required=req.badge_required, badge_priority=req.badge_priority))

    for i in range(1, req.ticket_count + 1):
        ticket_id = _gen_ticket_id(event_id, i)
        attendee_id = f"usr_{uuid.uuid4().hex[:12]}"
        db.add(Attendee(id=attendee_id, full_name=f"Guest {WORDS[(i - 1) % len(WORDS)].title()} {i}",
                        email=f"{ticket_id}@example.com"))
        db.add(Ticket(id=ticket_id, event_id=event_id, tier_id=tier_id, attendee_id=attendee_id,
                      credential=encode(ticket_id, event_id, attendee_id)))
    db.commit()

    return {
        "ok": True,
        "event_id": event_id,
        "tier_id": tier_id,
        "title": req.title,
        "ticket_count": req.ticket_count,
    }

@router.get("/events/{event_id}/tickets")
def list_tickets(event_id: str, limit: int = 500, db: Session = Depends(get_db)):
    tickets = db.execute(
        select(Ticket).where(Ticket.event_id == event_id).order_by(Ticket.id).limit(limit)
    ).scalars().all()
    return [
        {
            "ticket_id": t.id,
            "event_id": t.event_id,
            "credential": t.credential,
            "status": "CHECKED_IN" if t.checked_in else "UNUSED",
            "checked_in_at": str(t.checked_in_at) if t.checked_in_at else None,
            "badge_printed": t.badge_printed,
        }
        for t in tickets
    ]


# -------------------------
# Check-in reporting
# -------------------------
@router.get("/events/{event_id}/check-in/stats")
def check_in_stats(event_id: str, db: Session = Depends(get_db)):
    def count(*where):
        return db.execute(select(func.count()).select_from(Ticket).where(Ticket.event_id == event_id, *where)).scalar_one()

    total = count()
    checked = count(Ticket.checked_in.is_(True))
    return {
        "event_id": event_id,
        "total_tickets": total,
        "checked_in": checked,
        "pending": total - checked,
        "check_in_rate": (checked / total) * 100 if total else 0.0,
        "badges_printed": count(Ticket.badge_printed.is_(True)),
    }

def _log_rows(db: Session, event_id: str, limit: int | None):
    q = (
        select(CheckInLog, Ticket, Attendee, Station)
        .join(Ticket, Ticket.id == CheckInLog.ticket_id)
        .join(Attendee, Attendee.id == Ticket.attendee_id, isouter=True)
        .join(Station, Station.id == CheckInLog.station_id, isouter=True)
        .where(Ticket.event_id == event_id)
        .order_by(CheckInLog.checked_in_at.desc())
    )
    if limit:
        q = q.limit(limit)
    out = []
    for log, ticket, attendee, station in db.execute(q).all():
        out.append({
            "id": log.id,
            "ticket_id": log.ticket_id,
            "checked_in_at": str(log.checked_in_at),
            "method": log.method,
            "is_offline_sync": log.is_offline_sync,
            "station_name": station.name if station else "Unknown",
            "attendee_name": (attendee.full_name if attendee else None) or "Unknown",
            "attendee_email": attendee.email if attendee else "N/A",
        })
    return out

@router.get("/events/{event_id}/check-in/logs")
def check_in_logs(event_id: str, limit: int = 10, db: Session = Depends(get_db)):
    return _log_rows(db, event_id, limit)

@router.get("/events/{event_id}/check-in/export")
def export_check_in_logs(event_id: str, db: Session = Depends(get_db)):
    rows = _log_rows(db, event_id, None)
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=[
        "id", "ticket_id", "checked_in_at", "method", "is_offline_sync",
        "station_name", "attendee_name", "attendee_email",
    ])
    writer.writeheader()
    writer.writerows(rows)
    return StreamingResponse(
        iter([buf.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="check-ins-{event_id}.csv"'},
    )


# -------------------------
# Stations
# -------------------------
class RegisterStationReq(BaseModel):
    station_id: str
    event_id: str
    name: str
    location: Optional[str] = None
    device_type: str = "kiosk"

@router.post("/stations", response_model=StationOut)
def register_station(req: RegisterStationReq, db: Session = Depends(get_db)):
    return stations.register_station(db, req.station_id, req.event_id, req.name, req.location, req.device_type)

@router.get("/stations", response_model=list[StationOut])
def list_stations(event_id: Optional[str] = None, db: Session = Depends(get_db)):
    return stations.list_stations(db, event_id)

@router.post("/stations/{station_id}/retire", response_model=StationOut)
def retire_station(station_id: str, db: Session = Depends(get_db)):
    return stations.retire(db, station_id)

@router.post("/stations/sweep")
def sweep_stations(threshold_seconds: int = HEARTBEAT_STALE_SECONDS, db: Session = Depends(get_db)):
    return {"marked_offline": stations.mark_stale(db, threshold_seconds)}


# -------------------------
# Badge queue (operations view)
# -------------------------
@router.get("/badges/queue", response_model=QueueStatus)
def badge_queue(station_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50,
                db: Session = Depends(get_db)):
    try:
        return badges.queue_status(db, station_id=station_id, status=status, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.post("/badges/{job_id}/retry", response_model=BadgeJobOut)
def retry_badge(job_id: int, db: Session = Depends(get_db)):
    # privileged role enforced upstream
    return badges.retry(db, job_id)


# -------------------------
# Logs
# -------------------------
@router.get("/audit")
def get_audit(limit: int = 80, event_id: Optional[str] = None, db: Session = Depends(get_db)):
    q = db.query(AuditLog, Event).join(Event, Event.id == AuditLog.event_id, isouter=True)
    if event_id:
        q = q.filter(AuditLog.event_id == event_id)
    rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()

    out = []
    for log, ev in rows:
        out.append({
            "created_at": str(log.created_at),
            "ticket_id": log.ticket_id,
            "station_id": log.station_id,
            "event_id": log.event_id,
            "event_title": ev.title if ev else None,
            "status": log.status,
            "reason_code": log.reason_code,
            "detail": log.detail,
            "decision_id": log.decision_id,
        })
    return out
