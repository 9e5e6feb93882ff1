"""Decides check-ins against the shared ticket rows; earliest check-in wins."""
import logging
import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import badges, stations
from .config import DEFAULT_BADGE_PRIORITY, VERIFY_CREDENTIAL_CHECKSUM
from .credentials import DELIMITER, TAG, decode, validate_format, verify
from .db import as_utc, utcnow
from .errors import (
    AlreadyCheckedIn,
    CheckInError,
    InternalError,
    InvalidFormat,
    TicketNotFound,
)
from .models import Attendee, AuditLog, CheckInLog, Event, Ticket, TicketTier
from .schemas import (
    BadgePayload,
    CheckInRequest,
    CheckInResult,
    SyncBatchRequest,
    SyncBatchResponse,
    SyncItemResult,
)

logger = logging.getLogger(__name__)

MANUAL = "manual"


def check_in(db: Session, req: CheckInRequest, now: datetime | None = None) -> CheckInResult:
    decision_id = str(uuid.uuid4())
    ctx = {"ticket_id": None, "event_id": None}
    try:
        return _check_in(db, req, decision_id, ctx, now or utcnow())
    except CheckInError as e:
        db.rollback()
        _audit_rejection(db, decision_id, req, ctx, e.code, e.message)
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception(f"check-in failed decision_id={decision_id} station_id={req.station_id}")
        _audit_rejection(db, decision_id, req, ctx, InternalError.code, str(e))
        raise InternalError("storage error, retry later")


def _check_in(db: Session, req: CheckInRequest, decision_id: str, ctx: dict, now: datetime) -> CheckInResult:
    raw = req.ticket_credential_or_id.strip()
    by_id = req.method == MANUAL and not raw.startswith(TAG + DELIMITER)

    if not by_id and not validate_format(raw):
        raise InvalidFormat("not a valid ticket credential")

    stations.get_active_station(db, req.station_id)

    ticket = _resolve_ticket(db, raw, by_id)
    ctx["ticket_id"], ctx["event_id"] = ticket.id, ticket.event_id

    if req.local_id:
        seen = db.execute(select(CheckInLog).where(CheckInLog.local_id == req.local_id)).scalar_one_or_none()
        if seen is not None:
            # the very same offline record delivered again
            attendee = db.get(Attendee, ticket.attendee_id)
            return _result(ticket, attendee, as_utc(ticket.checked_in_at), seen.id,
                           duplicate=True, message="Check-in already synced")

    if not ticket.checked_in:
        accepted_at = now
        if req.is_offline_sync and req.client_timestamp is not None:
            accepted_at = min(as_utc(req.client_timestamp), now)

        res = db.execute(
            update(Ticket)
            .where(Ticket.id == ticket.id, Ticket.checked_in.is_(False))
            .values(checked_in=True, checked_in_at=accepted_at, check_in_count=Ticket.check_in_count + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            return _accept(db, req, decision_id, ticket, accepted_at)
        # another station won; fall through with its committed state
        ticket = db.get(Ticket, ticket.id, populate_existing=True)

    return _duplicate(db, req, decision_id, ticket, now)


def _resolve_ticket(db: Session, raw: str, by_id: bool) -> Ticket:
    if by_id:
        ticket = db.get(Ticket, raw)
    else:
        ticket = db.execute(select(Ticket).where(Ticket.credential == raw)).scalar_one_or_none()
    if ticket is None:
        raise TicketNotFound("no ticket matches this credential")

    if not by_id and VERIFY_CREDENTIAL_CHECKSUM:
        cred = decode(raw)
        if cred.ticket_id != ticket.id or not verify(raw, ticket.attendee_id):
            raise InvalidFormat("credential checksum does not match ticket")
    return ticket


def _accept(db: Session, req: CheckInRequest, decision_id: str, ticket: Ticket,
            accepted_at: datetime) -> CheckInResult:
    log = CheckInLog(
        ticket_id=ticket.id,
        station_id=req.station_id,
        operator_id=req.operator_id,
        method=req.method,
        is_offline_sync=req.is_offline_sync,
        local_id=req.local_id,
        client_timestamp=req.client_timestamp,
        checked_in_at=accepted_at,
    )
    db.add(log)
    stations.count_check_in(db, req.station_id)

    attendee = db.get(Attendee, ticket.attendee_id)
    tier = db.get(TicketTier, ticket.tier_id)
    if tier is None or tier.badge_required:
        priority = tier.badge_priority if tier is not None and tier.badge_priority is not None else DEFAULT_BADGE_PRIORITY
        badges.enqueue(db, ticket.id, req.station_id, priority, badge_payload(db, ticket, attendee, tier), commit=False)

    db.add(_audit_row(decision_id, req, ticket, "ACCEPTED", "OK_SYNCED" if req.is_offline_sync else "OK"))
    db.commit()

    logger.info(f"check-in accepted ticket_id={ticket.id} station_id={req.station_id} offline={req.is_offline_sync}")
    return _result(ticket, attendee, accepted_at, log.id,
                   message="Check-in synced successfully" if req.is_offline_sync else "Check-in successful")


def _duplicate(db: Session, req: CheckInRequest, decision_id: str, ticket: Ticket, now: datetime) -> CheckInResult:
    attendee = db.get(Attendee, ticket.attendee_id)
    stored = as_utc(ticket.checked_in_at)

    if not req.is_offline_sync:
        raise AlreadyCheckedIn(stored, data={
            "ticket_id": ticket.id,
            "attendee_name": attendee.full_name if attendee else None,
            "attendee_email": attendee.email if attendee else None,
            "previous_check_in_at": stored.isoformat(),
            "is_duplicate": True,
        })

    client_at = as_utc(req.client_timestamp) if req.client_timestamp is not None else now
    if stored <= client_at:
        reason, conflict, message = "DUPLICATE_REPLAY", False, "Ticket already checked in at an earlier time"
    else:
        reason, conflict, message = "OUT_OF_ORDER_REPLAY", True, "Earlier offline check-in kept as conflict"
        logger.warning(f"check-in conflict ticket_id={ticket.id} stored={stored.isoformat()} "
                       f"client={client_at.isoformat()} station_id={req.station_id}")

    db.add(_audit_row(decision_id, req, ticket, "ACCEPTED", reason,
                      f"stored={stored.isoformat()} client={client_at.isoformat()}"))
    db.commit()
    return _result(ticket, attendee, stored, None, duplicate=True, conflict=conflict, message=message)


def badge_payload(db: Session, ticket: Ticket, attendee: Attendee | None, tier: TicketTier | None) -> BadgePayload:
    event = db.get(Event, ticket.event_id)
    return BadgePayload(
        attendee_name=(attendee.full_name if attendee else None) or "Guest",
        attendee_email=attendee.email if attendee else "",
        company=attendee.company if attendee else None,
        title=attendee.title if attendee else None,
        ticket_tier=tier.name if tier else "",
        event_title=event.title if event else "",
        credential=ticket.credential,
    )


def _result(ticket: Ticket, attendee: Attendee | None, checked_in_at: datetime, log_id: str | None,
            duplicate: bool = False, conflict: bool = False, message: str = "") -> CheckInResult:
    return CheckInResult(
        check_in_log_id=log_id,
        ticket_id=ticket.id,
        attendee_name=attendee.full_name if attendee else None,
        attendee_email=attendee.email if attendee else None,
        checked_in_at=checked_in_at,
        duplicate=duplicate,
        conflict=conflict,
        message=message,
    )


def _audit_row(decision_id: str, req: CheckInRequest, ticket: Ticket | None, status: str,
               reason: str, detail: str | None = None) -> AuditLog:
    return AuditLog(
        decision_id=decision_id,
        station_id=req.station_id,
        event_id=ticket.event_id if ticket else None,
        ticket_id=ticket.id if ticket else None,
        status=status,
        reason_code=reason,
        detail=detail,
    )


def _audit_rejection(db: Session, decision_id: str, req: CheckInRequest, ctx: dict, reason: str, detail: str):
    try:
        db.add(AuditLog(
            decision_id=decision_id,
            station_id=req.station_id,
            event_id=ctx["event_id"],
            ticket_id=ctx["ticket_id"],
            status="REJECTED",
            reason_code=reason,
            detail=detail,
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"audit write failed decision_id={decision_id}")


def sync_batch(db: Session, batch: SyncBatchRequest) -> SyncBatchResponse:
    """Apply offline check-ins one by one, in request order."""
    stations.get_active_station(db, batch.station_id)

    results = []
    for item in batch.check_ins:
        item = item.model_copy(update={"is_offline_sync": True})
        try:
            r = check_in(db, item)
        except CheckInError as e:
            results.append(SyncItemResult(local_id=item.local_id, client_timestamp=item.client_timestamp,
                                          success=False, code=e.code, error=e.message))
            continue
        except Exception as e:
            db.rollback()
            logger.exception(f"offline item failed station_id={batch.station_id} local_id={item.local_id}")
            results.append(SyncItemResult(local_id=item.local_id, client_timestamp=item.client_timestamp,
                                          success=False, code=InternalError.code, error=str(e)))
            continue
        results.append(SyncItemResult(local_id=item.local_id, client_timestamp=item.client_timestamp,
                                      success=True, check_in_log_id=r.check_in_log_id, conflict=r.conflict))

    synced = sum(1 for r in results if r.success)
    logger.info(f"sync batch station_id={batch.station_id} synced={synced} failed={len(results) - synced}")
    return SyncBatchResponse(success=True, synced_count=synced, failed_count=len(results) - synced, results=results)
