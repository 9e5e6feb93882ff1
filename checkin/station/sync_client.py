"""Station sync client: live check-ins while online, queue and replay while offline."""
import asyncio
import hashlib
import logging
import sys
from dataclasses import dataclass
from datetime import datetime

import httpx
from pydantic import ValidationError

from ..config import (
    LOG_LEVEL,
    OPERATOR_ID,
    SERVER_URL,
    STATION_ID,
    SYNC_INTERVAL_SECONDS,
    SYNC_TIMEOUT_SECONDS,
)
from ..db import as_utc, utcnow
from ..errors import AlreadyCheckedIn, InvalidFormat, StationUnknown, TicketNotFound
from ..schemas import CheckInRequest, CheckInResult, SyncBatchRequest, SyncBatchResponse
from .local_queue import LocalQueue, OfflineCheckIn, make_record

logger = logging.getLogger(__name__)

OFFLINE = "offline"
ONLINE = "online"

# rejections the operator sees; anything else from the server is retried offline
_REJECTIONS = {cls.code: cls for cls in (InvalidFormat, TicketNotFound, StationUnknown)}


class TransportFailure(Exception):
    code = "TRANSPORT_FAILURE"


class Connectivity:
    """Publishes online/offline changes to subscribers."""

    def __init__(self, online: bool = False):
        self.online = online
        self._subscribers: list[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def set_online(self, online: bool) -> None:
        if online == self.online:
            return
        self.online = online
        for q in self._subscribers:
            q.put_nowait(online)


async def watch_connectivity(http: httpx.AsyncClient, connectivity: Connectivity,
                             interval: float = 5.0, timeout: float = 3.0):
    """Feed ``connectivity`` from a periodic health check."""
    while True:
        try:
            r = await http.get("/health", timeout=timeout)
            connectivity.set_online(r.status_code == 200)
        except httpx.HTTPError:
            connectivity.set_online(False)
        await asyncio.sleep(interval)


@dataclass
class SyncOutcome:
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    skipped: bool = False
    transport_error: str | None = None


def _raise_rejection(resp: httpx.Response) -> None:
    try:
        body = resp.json()
    except ValueError:
        return
    if not isinstance(body, dict):
        return
    code, data = body.get("error"), body.get("data") or {}
    if code == AlreadyCheckedIn.code and data.get("previous_check_in_at"):
        raise AlreadyCheckedIn(datetime.fromisoformat(data["previous_check_in_at"]), data=data)
    if code in _REJECTIONS:
        raise _REJECTIONS[code](body.get("message"), data=body.get("data"))


class SyncClient:
    def __init__(
        self,
        station_id: str,
        queue: LocalQueue,
        http: httpx.AsyncClient,
        connectivity: Connectivity | None = None,
        interval: float = SYNC_INTERVAL_SECONDS,
        timeout: float = SYNC_TIMEOUT_SECONDS,
        operator_id: str | None = None,
        clock=utcnow,
    ):
        self.station_id = station_id
        self.queue = queue
        self.http = http
        self.connectivity = connectivity or Connectivity(online=True)
        self.interval = interval
        self.timeout = timeout
        self.operator_id = operator_id
        self.clock = clock
        self.last_sync_at: datetime | None = None
        self._in_flight = False
        self._stopping = False
        self._events = self.connectivity.subscribe()

    @property
    def state(self) -> str:
        return ONLINE if self.connectivity.online else OFFLINE

    @property
    def is_syncing(self) -> bool:
        return self._in_flight

    # -------------------------
    # Scanning
    # -------------------------
    async def scan(self, credential_or_id: str, method: str = "qr_code",
                   operator_id: str | None = None) -> CheckInResult | OfflineCheckIn:
        """Check in live when online, otherwise queue for the next sync.

        Raises MalformedCredential before any I/O, and the server's rejections
        (AlreadyCheckedIn, InvalidFormat, TicketNotFound, StationUnknown) when
        the live call gets an answer.
        """
        record = make_record(self.station_id, credential_or_id, operator_id or self.operator_id,
                             method, self.clock())
        if self.state == ONLINE:
            try:
                return await self._live_check_in(record)
            except TransportFailure as e:
                logger.warning(f"live check-in failed, queued local_id={record.id} error={e}")
        return self.queue.enqueue(record)

    async def _live_check_in(self, record: OfflineCheckIn) -> CheckInResult:
        req = CheckInRequest(
            ticket_credential_or_id=record.credential_or_id,
            station_id=record.station_id,
            operator_id=record.operator_id,
            method=record.method,
            is_offline_sync=False,
            client_timestamp=as_utc(record.client_timestamp),
            # a lost response replays as this same record later
            local_id=record.id,
        )
        try:
            resp = await self.http.post("/check-in/scan", json=req.model_dump(by_alias=True, mode="json"),
                                        timeout=self.timeout)
        except httpx.HTTPError as e:
            raise TransportFailure(str(e) or type(e).__name__)

        if resp.status_code == 200:
            try:
                return CheckInResult.model_validate(resp.json())
            except (ValidationError, ValueError) as e:
                raise TransportFailure(str(e))
        _raise_rejection(resp)
        raise TransportFailure(f"server returned {resp.status_code}")

    # -------------------------
    # Sync
    # -------------------------
    async def sync_now(self) -> SyncOutcome:
        if self.state != ONLINE or self._in_flight:
            return SyncOutcome(skipped=True)
        self._in_flight = True
        try:
            return await self._sync()
        finally:
            self._in_flight = False

    async def _sync(self) -> SyncOutcome:
        records = self.queue.list_unsynced(self.station_id)
        if not records:
            return SyncOutcome()

        outcome = SyncOutcome(attempted=len(records))
        try:
            body = await self._submit(records)
        except TransportFailure as e:
            logger.warning(f"sync failed station_id={self.station_id} pending={len(records)} error={e}")
            outcome.transport_error = str(e)
            await self._record_sync()
            return outcome

        by_local_id = {r.local_id: r for r in body.results if r.local_id}
        for i, record in enumerate(records):
            result = by_local_id.get(record.id) if by_local_id else body.results[i]
            if result is None:
                continue
            if result.success:
                self.queue.mark_synced(record.id)
                outcome.synced += 1
                if result.conflict:
                    logger.warning(f"sync conflict local_id={record.id} ticket_id={record.ticket_id}")
            else:
                self.queue.mark_sync_error(record.id, result.error or result.code or "Unknown error")
                outcome.failed += 1

        logger.info(f"sync done station_id={self.station_id} synced={outcome.synced} failed={outcome.failed}")
        await self._record_sync()
        return outcome

    async def _submit(self, records: list[OfflineCheckIn]) -> SyncBatchResponse:
        batch = SyncBatchRequest(
            station_id=self.station_id,
            check_ins=[
                CheckInRequest(
                    ticket_credential_or_id=r.credential_or_id,
                    station_id=r.station_id,
                    operator_id=r.operator_id,
                    method=r.method,
                    is_offline_sync=True,
                    client_timestamp=as_utc(r.client_timestamp),
                    local_id=r.id,
                )
                for r in records
            ],
        )
        # same records -> same key, so a retried batch can be answered from cache
        key = hashlib.sha256("|".join(r.id for r in records).encode()).hexdigest()
        try:
            resp = await self.http.post(
                "/check-in/sync",
                json=batch.model_dump(by_alias=True, mode="json"),
                headers={"Idempotency-Key": key},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = SyncBatchResponse.model_validate(resp.json())
        except (httpx.HTTPError, ValidationError, ValueError) as e:
            raise TransportFailure(str(e) or type(e).__name__)

        if not body.success:
            raise TransportFailure("server rejected batch")
        has_ids = any(r.local_id for r in body.results)
        if not has_ids and len(body.results) != len(records):
            raise TransportFailure(f"expected {len(records)} results, got {len(body.results)}")
        return body

    async def _record_sync(self) -> None:
        now = self.clock()
        pending = self.queue.pending_count(self.station_id)
        self.last_sync_at = now
        self.queue.save_station_state(self.station_id, online=self.state == ONLINE,
                                      pending_sync_count=pending, last_sync_at=now)
        try:
            r = await self.http.post(
                f"/stations/{self.station_id}/sync-report",
                json={"pendingCount": pending, "timestamp": now.isoformat()},
                timeout=self.timeout,
            )
            r.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"sync report not delivered station_id={self.station_id} error={e}")

    async def heartbeat(self) -> bool:
        now = self.clock()
        self.queue.save_station_state(self.station_id, last_heartbeat=now, online=self.state == ONLINE)
        try:
            r = await self.http.post(f"/stations/{self.station_id}/heartbeat", timeout=self.timeout)
            r.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"heartbeat failed station_id={self.station_id} error={e}")
            return False

    # -------------------------
    # Loop
    # -------------------------
    async def run(self) -> None:
        """Timer + connectivity loop; returns after ``stop()``."""
        logger.info(f"sync client started station_id={self.station_id} state={self.state}")
        if self.state == ONLINE:
            await self.sync_now()

        while not self._stopping:
            try:
                event = await asyncio.wait_for(self._events.get(), timeout=self.interval)
            except asyncio.TimeoutError:
                if self.state == ONLINE:
                    await self.heartbeat()
                    await self.sync_now()
                continue

            if event is None:
                break
            logger.info(f"station {self.station_id} is now {ONLINE if event else OFFLINE}")
            if event:
                await self.sync_now()

        logger.info(f"sync client stopped station_id={self.station_id}")

    def stop(self) -> None:
        # an in-flight sync finishes before run() returns
        self._stopping = True
        self._events.put_nowait(None)


async def main():
    if not STATION_ID:
        raise SystemExit("STATION_ID is required")

    queue = LocalQueue()
    connectivity = Connectivity(online=False)
    async with httpx.AsyncClient(base_url=SERVER_URL) as http:
        client = SyncClient(STATION_ID, queue, http, connectivity, operator_id=OPERATOR_ID)
        watcher = asyncio.create_task(watch_connectivity(http, connectivity))
        try:
            await client.run()
        finally:
            watcher.cancel()


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s",
                        handlers=[logging.StreamHandler(sys.stdout)])
    asyncio.run(main())
