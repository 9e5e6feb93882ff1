"""Durable per-station queue of check-ins waiting for the server."""
import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import Boolean, DateTime, Integer, String, create_engine, delete, func, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from ..config import STATION_DB_URL
from ..credentials import DELIMITER, TAG, MalformedCredential, decode, validate_format
from ..db import as_utc, utcnow

logger = logging.getLogger(__name__)

MANUAL = "manual"


class LocalBase(DeclarativeBase):
    pass


class OfflineCheckIn(LocalBase):
    __tablename__ = "offline_check_ins"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    ticket_id: Mapped[str] = mapped_column(String, index=True)
    credential: Mapped[str | None] = mapped_column(String, nullable=True)
    station_id: Mapped[str] = mapped_column(String, index=True)
    operator_id: Mapped[str | None] = mapped_column(String, nullable=True)
    method: Mapped[str] = mapped_column(String, default="qr_code")
    client_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    synced: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_sync_attempt: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(String, nullable=True)

    @property
    def credential_or_id(self) -> str:
        return self.credential or self.ticket_id


class LocalStationState(LocalBase):
    __tablename__ = "station_state"

    station_id: Mapped[str] = mapped_column(String, primary_key=True)
    online: Mapped[bool] = mapped_column(Boolean, default=False)
    pending_sync_count: Mapped[int] = mapped_column(Integer, default=0)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def make_record(station_id: str, credential_or_id: str, operator_id: str | None = None,
                method: str = "qr_code", client_timestamp: datetime | None = None) -> OfflineCheckIn:
    """Build a record for a scan, rejecting malformed credentials up front."""
    raw = credential_or_id.strip()
    if method == MANUAL and not raw.startswith(TAG + DELIMITER):
        ticket_id, credential = raw, None
    else:
        if not validate_format(raw):
            raise MalformedCredential("MALFORMED")
        ticket_id, credential = decode(raw).ticket_id, raw
    return OfflineCheckIn(
        id=str(uuid.uuid4()),
        ticket_id=ticket_id,
        credential=credential,
        station_id=station_id,
        operator_id=operator_id,
        method=method,
        client_timestamp=client_timestamp or utcnow(),
    )


class LocalQueue:
    def __init__(self, url: str = STATION_DB_URL):
        self.engine = create_engine(url, connect_args={"check_same_thread": False})
        LocalBase.metadata.create_all(self.engine)
        self._session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def enqueue(self, record: OfflineCheckIn) -> OfflineCheckIn:
        if record.credential is not None and not validate_format(record.credential):
            raise MalformedCredential("MALFORMED")
        if record.credential is None and record.method != MANUAL:
            raise MalformedCredential("MALFORMED")
        record.id = record.id or str(uuid.uuid4())
        record.synced = False
        record.sync_attempts = 0
        record.error = None
        with self._session.begin() as s:
            s.add(record)
        logger.info(f"queued offline check-in local_id={record.id} ticket_id={record.ticket_id}")
        return record

    def list_unsynced(self, station_id: str) -> list[OfflineCheckIn]:
        """Oldest first."""
        with self._session() as s:
            rows = s.execute(
                select(OfflineCheckIn)
                .where(OfflineCheckIn.station_id == station_id, OfflineCheckIn.synced.is_(False))
                .order_by(OfflineCheckIn.client_timestamp, OfflineCheckIn.enqueued_at)
            ).scalars().all()
            return list(rows)

    def get(self, local_id: str) -> OfflineCheckIn | None:
        with self._session() as s:
            return s.get(OfflineCheckIn, local_id)

    def mark_synced(self, local_id: str) -> None:
        with self._session.begin() as s:
            s.execute(
                update(OfflineCheckIn)
                .where(OfflineCheckIn.id == local_id)
                .values(synced=True, synced_at=utcnow(), error=None)
            )

    def mark_sync_error(self, local_id: str, message: str) -> None:
        with self._session.begin() as s:
            s.execute(
                update(OfflineCheckIn)
                .where(OfflineCheckIn.id == local_id)
                .values(error=message, sync_attempts=OfflineCheckIn.sync_attempts + 1, last_sync_attempt=utcnow())
            )

    def pending_count(self, station_id: str) -> int:
        with self._session() as s:
            return s.execute(
                select(func.count())
                .select_from(OfflineCheckIn)
                .where(OfflineCheckIn.station_id == station_id, OfflineCheckIn.synced.is_(False))
            ).scalar_one()

    def purge_synced(self, older_than_days: int = 7) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        with self._session.begin() as s:
            res = s.execute(
                delete(OfflineCheckIn)
                .where(OfflineCheckIn.synced.is_(True), OfflineCheckIn.client_timestamp < cutoff)
            )
        if res.rowcount:
            logger.info(f"purged {res.rowcount} synced check-in(s)")
        return res.rowcount

    # --- station state ---
    def save_station_state(self, station_id: str, **values) -> LocalStationState:
        with self._session.begin() as s:
            state = s.get(LocalStationState, station_id) or LocalStationState(station_id=station_id)
            for k, v in values.items():
                setattr(state, k, v)
            s.add(state)
        return state

    def get_station_state(self, station_id: str) -> LocalStationState | None:
        with self._session() as s:
            return s.get(LocalStationState, station_id)

    # --- debugging ---
    def export(self) -> dict:
        with self._session() as s:
            records = s.execute(select(OfflineCheckIn).order_by(OfflineCheckIn.enqueued_at)).scalars().all()
            states = s.execute(select(LocalStationState)).scalars().all()
            return {
                "check_ins": [
                    {
                        "id": r.id,
                        "ticket_id": r.ticket_id,
                        "station_id": r.station_id,
                        "method": r.method,
                        "client_timestamp": as_utc(r.client_timestamp).isoformat(),
                        "synced": r.synced,
                        "sync_attempts": r.sync_attempts,
                        "error": r.error,
                    }
                    for r in records
                ],
                "stations": [
                    {
                        "station_id": st.station_id,
                        "online": st.online,
                        "pending_sync_count": st.pending_sync_count,
                        "last_sync_at": as_utc(st.last_sync_at).isoformat() if st.last_sync_at else None,
                    }
                    for st in states
                ],
            }

    def clear(self) -> None:
        with self._session.begin() as s:
            s.execute(delete(OfflineCheckIn))
            s.execute(delete(LocalStationState))
