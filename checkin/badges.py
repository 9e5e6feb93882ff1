"""Badge print queue; transitions are conditional updates on status."""
import logging

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from .db import utcnow
from .errors import InvalidJobTransition, JobNotFound
from .models import BADGE_STATUSES, COMPLETED, FAILED, PENDING, PRINTING, BadgeJob, Ticket
from .schemas import BadgePayload

logger = logging.getLogger(__name__)

CLAIM_SCAN = 20


def enqueue(db: Session, ticket_id: str, station_id: str | None, priority: int,
            badge_data: BadgePayload, printer_id: str | None = None, commit: bool = True) -> BadgeJob:
    job = BadgeJob(
        ticket_id=ticket_id,
        station_id=station_id,
        printer_id=printer_id,
        priority=priority,
        status=PENDING,
        retry_count=0,
        badge_data=badge_data.model_dump(),
    )
    db.add(job)
    if commit:
        db.commit()
    else:
        db.flush()
    logger.info(f"badge queued job_id={job.id} ticket_id={ticket_id} priority={priority}")
    return job


def _ordered(q):
    # priority band first, FIFO inside a band
    return q.order_by(BadgeJob.priority.desc(), BadgeJob.created_at.asc(), BadgeJob.id.asc())


def _transition(db: Session, job_id: int, allowed: tuple[str, ...], **values) -> bool:
    res = db.execute(
        update(BadgeJob)
        .where(BadgeJob.id == job_id, BadgeJob.status.in_(allowed))
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def _reload(db: Session, job_id: int) -> BadgeJob:
    job = db.get(BadgeJob, job_id, populate_existing=True)
    if job is None:
        raise JobNotFound(f"badge job {job_id} not found")
    return job


def claim_next(db: Session, printer_id: str | None = None) -> BadgeJob | None:
    """Move the most urgent pending job to ``printing`` and return it.

    With a ``printer_id`` only jobs addressed to that printer or to no printer
    are eligible.
    """
    q = select(BadgeJob.id).where(BadgeJob.status == PENDING)
    if printer_id:
        q = q.where(or_(BadgeJob.printer_id == printer_id, BadgeJob.printer_id.is_(None)))

    while True:
        candidates = db.execute(_ordered(q).limit(CLAIM_SCAN)).scalars().all()
        if not candidates:
            return None
        for job_id in candidates:
            values = {"status": PRINTING, "started_printing_at": utcnow()}
            if printer_id:
                values["claimed_by"] = printer_id
            if _transition(db, job_id, (PENDING,), **values):
                db.commit()
                job = _reload(db, job_id)
                logger.info(f"badge claimed job_id={job_id} printer_id={printer_id}")
                return job
            # lost the race for this one; try the next candidate
            db.rollback()


def complete(db: Session, job_id: int) -> BadgeJob:
    now = utcnow()
    if not _transition(db, job_id, (PRINTING,), status=COMPLETED, completed_at=now, error_message=None):
        db.rollback()
        _refuse(db, job_id, "complete")
    job = _reload(db, job_id)
    db.execute(
        update(Ticket)
        .where(Ticket.id == job.ticket_id)
        .values(badge_printed=True, badge_printed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info(f"badge printed job_id={job_id} ticket_id={job.ticket_id}")
    return _reload(db, job_id)


def fail(db: Session, job_id: int, error_message: str) -> BadgeJob:
    if not _transition(db, job_id, (PENDING, PRINTING), status=FAILED, error_message=error_message):
        db.rollback()
        _refuse(db, job_id, "fail")
    db.commit()
    logger.warning(f"badge failed job_id={job_id} error={error_message!r}")
    return _reload(db, job_id)


def retry(db: Session, job_id: int) -> BadgeJob:
    """Operator action: put a failed job back in line."""
    ok = _transition(db, job_id, (FAILED,), status=PENDING, error_message=None,
                     retry_count=BadgeJob.retry_count + 1, claimed_by=None, started_printing_at=None)
    if not ok:
        db.rollback()
        _refuse(db, job_id, "retry")
    db.commit()
    job = _reload(db, job_id)
    logger.info(f"badge retry job_id={job_id} retry_count={job.retry_count}")
    return job


def _refuse(db: Session, job_id: int, action: str):
    job = _reload(db, job_id)
    raise InvalidJobTransition(f"cannot {action} job {job_id} in status {job.status}")


def queue_status(db: Session, station_id: str | None = None, status: str | None = None,
                 limit: int = 50) -> dict:
    counts_q = select(BadgeJob.status, func.count()).group_by(BadgeJob.status)
    jobs_q = select(BadgeJob)
    if station_id:
        counts_q = counts_q.where(BadgeJob.station_id == station_id)
        jobs_q = jobs_q.where(BadgeJob.station_id == station_id)
    if status:
        if status not in BADGE_STATUSES:
            raise ValueError(f"unknown status {status}")
        jobs_q = jobs_q.where(BadgeJob.status == status)
    jobs_q = _ordered(jobs_q).limit(limit)

    counts = {s: 0 for s in BADGE_STATUSES}
    for s, n in db.execute(counts_q).all():
        counts[s] = n
    return {
        "total_pending": counts[PENDING],
        "total_printing": counts[PRINTING],
        "total_completed": counts[COMPLETED],
        "total_failed": counts[FAILED],
        "queue": list(db.execute(jobs_q).scalars().all()),
    }
