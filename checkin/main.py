import logging
import sys

from fastapi import Depends, FastAPI, Header, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import badges, reconcile, stations
from .admin import router as admin_router
from .config import DEFAULT_BADGE_PRIORITY, LOG_LEVEL, REDIS_URL
from .credentials import validate_format
from .db import Base, as_utc, engine, get_db
from .errors import CheckInError, InternalError, TicketNotFound
from .idempotency import get_cached_response, set_cached_response
from .models import Attendee, Event, Ticket, TicketTier
from .schemas import (
    BadgeJobOut,
    CheckInRequest,
    CheckInResult,
    ClaimRequest,
    FailRequest,
    PrintRequest,
    StationOut,
    SyncBatchRequest,
    SyncBatchResponse,
    SyncReport,
    TicketStatus,
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Check-in Gate", version="1.0.0")

# Redis is optional: without it retried batches are still safe, just recomputed
redis = Redis.from_url(REDIS_URL, decode_responses=False) if REDIS_URL else None


def get_redis():
    return redis


app.include_router(admin_router)

# Create DB tables (fine to do at import-time; migrations own production schemas)
Base.metadata.create_all(bind=engine)


@app.exception_handler(CheckInError)
async def check_in_error_handler(request, exc: CheckInError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.get("/health")
def health():
    return {"status": "healthy", "service": "checkin-gate"}


# -------------------------
# Check-in
# -------------------------
@app.post("/check-in/scan", response_model=CheckInResult)
def scan(req: CheckInRequest, db: Session = Depends(get_db)):
    return reconcile.check_in(db, req)


@app.get("/check-in/scan")
def validate_credential(credential: str, db: Session = Depends(get_db)):
    """Look a credential up without checking it in."""
    if not validate_format(credential):
        return {"valid": False, "message": "Invalid QR code format"}
    ticket = db.execute(select(Ticket).where(Ticket.credential == credential)).scalar_one_or_none()
    if ticket is None:
        return {"valid": False, "message": "Ticket not found"}
    status = _ticket_status(db, ticket)
    return {"valid": True, **status.model_dump(by_alias=True, mode="json")}


@app.post("/check-in/sync", response_model=SyncBatchResponse)
async def sync(
    batch: SyncBatchRequest,
    db: Session = Depends(get_db),
    cache=Depends(get_redis),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    if cache is not None and idempotency_key:
        cached = await get_cached_response(cache, batch.station_id, idempotency_key)
        if cached:
            logger.info(f"sync batch replayed from cache station_id={batch.station_id}")
            return cached

    resp = await run_in_threadpool(reconcile.sync_batch, db, batch)

    # INTERNAL items must reach reconciliation again on retry
    retryable = any(r.code == InternalError.code for r in resp.results)
    if cache is not None and idempotency_key and not retryable:
        await set_cached_response(cache, batch.station_id, idempotency_key, resp.model_dump(by_alias=True, mode="json"))
    return resp


@app.get("/check-in/sync")
def sync_status(station_id: str, db: Session = Depends(get_db)):
    station = stations.get_active_station(db, station_id)
    return {
        "stationId": station.id,
        "pendingSyncCount": station.pending_sync_count,
        "lastSyncAt": station.last_sync_at.isoformat() if station.last_sync_at else None,
        "online": station.online,
    }


@app.get("/check-in/status/{ticket_id}", response_model=TicketStatus)
def ticket_status(ticket_id: str, db: Session = Depends(get_db)):
    ticket = db.get(Ticket, ticket_id)
    if ticket is None:
        raise TicketNotFound(f"ticket {ticket_id} not found")
    return _ticket_status(db, ticket)


def _ticket_status(db: Session, ticket: Ticket) -> TicketStatus:
    attendee = db.get(Attendee, ticket.attendee_id)
    tier = db.get(TicketTier, ticket.tier_id)
    event = db.get(Event, ticket.event_id)
    return TicketStatus(
        ticket_id=ticket.id,
        checked_in=ticket.checked_in,
        checked_in_at=as_utc(ticket.checked_in_at),
        check_in_count=ticket.check_in_count,
        badge_printed=ticket.badge_printed,
        attendee_name=attendee.full_name if attendee else None,
        attendee_email=attendee.email if attendee else None,
        event_title=event.title if event else None,
        ticket_tier=tier.name if tier else None,
    )


# -------------------------
# Stations
# -------------------------
@app.post("/stations/{station_id}/heartbeat", response_model=StationOut)
def heartbeat(station_id: str, db: Session = Depends(get_db)):
    return stations.heartbeat(db, station_id)


@app.post("/stations/{station_id}/sync-report", response_model=StationOut)
def sync_report(station_id: str, report: SyncReport, db: Session = Depends(get_db)):
    return stations.record_sync(db, station_id, report.pending_count, report.timestamp)


# -------------------------
# Badge printing (print agents)
# -------------------------
@app.post("/badges/print", response_model=BadgeJobOut)
def print_badge(req: PrintRequest, db: Session = Depends(get_db)):
    ticket = db.get(Ticket, req.ticket_id)
    if ticket is None:
        raise TicketNotFound(f"ticket {req.ticket_id} not found")
    if req.station_id:
        stations.get_active_station(db, req.station_id)
    attendee = db.get(Attendee, ticket.attendee_id)
    tier = db.get(TicketTier, ticket.tier_id)
    payload = reconcile.badge_payload(db, ticket, attendee, tier)
    priority = req.priority if req.priority is not None else DEFAULT_BADGE_PRIORITY
    return badges.enqueue(db, ticket.id, req.station_id, priority, payload, printer_id=req.printer_id)


@app.post("/badges/claim", response_model=BadgeJobOut | None)
def claim(req: ClaimRequest, db: Session = Depends(get_db)):
    job = badges.claim_next(db, req.printer_id)
    if job is None:
        return Response(status_code=204)
    return job


@app.post("/badges/{job_id}/complete", response_model=BadgeJobOut)
def complete(job_id: int, db: Session = Depends(get_db)):
    return badges.complete(db, job_id)


@app.post("/badges/{job_id}/fail", response_model=BadgeJobOut)
def fail(job_id: int, req: FailRequest, db: Session = Depends(get_db)):
    return badges.fail(db, job_id, req.error_message)
