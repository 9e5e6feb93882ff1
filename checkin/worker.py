import asyncio
import logging
import sys

import httpx

from . import badges
from .config import LOG_LEVEL, PRINT_AGENT_URL, PRINTER_ID, WORKER_POLL_SECONDS
from .db import Base, SessionLocal, engine
from .models import BadgeJob

logger = logging.getLogger(__name__)


class PrinterFailure(Exception):
    code = "PRINTER_FAILURE"


class LogPrinter:
    """Stand-in printer for dry runs: writes the badge to the log."""

    async def print_badge(self, job: BadgeJob) -> None:
        data = job.badge_data
        logger.info(f"[printer] badge job_id={job.id} name={data.get('attendee_name')!r} "
                    f"tier={data.get('ticket_tier')!r} event={data.get('event_title')!r}")


class HttpPrinter:
    """Sends the badge payload to a print agent sitting next to the printer."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url
        self.timeout = timeout

    async def print_badge(self, job: BadgeJob) -> None:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
            try:
                r = await client.post("/print", json={"job_id": job.id, "badge": job.badge_data})
            except httpx.HTTPError as e:
                raise PrinterFailure(f"print agent unreachable: {e}")
        if r.status_code >= 400:
            raise PrinterFailure(r.text or f"print agent returned {r.status_code}")


async def process_one(printer, printer_id: str | None = None, session_factory=None) -> BadgeJob | None:
    """Claim one job, print it, report the outcome. Returns the job or None when idle."""
    db = (session_factory or SessionLocal)()
    try:
        job = badges.claim_next(db, printer_id)
        if job is None:
            return None

        logger.info(f"[worker] printing job_id={job.id} ticket_id={job.ticket_id}")
        try:
            await printer.print_badge(job)
        except PrinterFailure as e:
            # no automatic retry: jams and empty trays need a person
            return badges.fail(db, job.id, str(e))
        except Exception as e:
            logger.exception(f"[worker] printer error job_id={job.id}")
            return badges.fail(db, job.id, str(e) or type(e).__name__)
        return badges.complete(db, job.id)
    finally:
        db.close()


async def main():
    Base.metadata.create_all(bind=engine)
    printer = HttpPrinter(PRINT_AGENT_URL) if PRINT_AGENT_URL else LogPrinter()
    logger.info(f"[worker] print agent started printer_id={PRINTER_ID}")

    while True:
        job = await process_one(printer, PRINTER_ID)
        if job is None:
            await asyncio.sleep(WORKER_POLL_SECONDS)


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s",
                        handlers=[logging.StreamHandler(sys.stdout)])
    asyncio.run(main())
