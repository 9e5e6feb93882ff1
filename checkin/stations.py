"""Station registry: bookkeeping only, read by the operations view."""
import logging
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .db import utcnow
from .errors import StationUnknown
from .models import Station

logger = logging.getLogger(__name__)


def register_station(db: Session, station_id: str, event_id: str, name: str,
                     location: str | None = None, device_type: str = "kiosk") -> Station:
    station = Station(id=station_id, event_id=event_id, name=name, location=location, device_type=device_type)
    db.add(station)
    db.commit()
    return station


def get_active_station(db: Session, station_id: str) -> Station:
    station = db.get(Station, station_id)
    if station is None or station.retired_at is not None:
        raise StationUnknown(f"unknown station {station_id}")
    return station


def heartbeat(db: Session, station_id: str, now: datetime | None = None) -> Station:
    station = get_active_station(db, station_id)
    station.last_heartbeat = now or utcnow()
    station.online = True
    db.commit()
    return station


def record_sync(db: Session, station_id: str, pending_count: int, timestamp: datetime | None = None) -> Station:
    station = get_active_station(db, station_id)
    station.pending_sync_count = max(0, pending_count)
    station.last_sync_at = timestamp or utcnow()
    db.commit()
    logger.info(f"sync recorded station_id={station_id} pending={station.pending_sync_count}")
    return station


def count_check_in(db: Session, station_id: str) -> None:
    # caller commits; runs inside the check-in transaction
    db.execute(
        update(Station)
        .where(Station.id == station_id)
        .values(total_check_ins=Station.total_check_ins + 1)
        .execution_options(synchronize_session=False)
    )


def retire(db: Session, station_id: str) -> Station:
    station = get_active_station(db, station_id)
    station.retired_at = utcnow()
    station.online = False
    db.commit()
    return station


def mark_stale(db: Session, threshold_seconds: int, now: datetime | None = None) -> int:
    """Flip stations to offline when their heartbeat is older than the threshold."""
    cutoff = (now or utcnow()) - timedelta(seconds=threshold_seconds)
    res = db.execute(
        update(Station)
        .where(Station.online.is_(True))
        .where(or_(Station.last_heartbeat.is_(None), Station.last_heartbeat < cutoff))
        .values(online=False)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if res.rowcount:
        logger.info(f"marked {res.rowcount} station(s) offline")
    return res.rowcount


def list_stations(db: Session, event_id: str | None = None, include_retired: bool = False) -> list[Station]:
    q = select(Station).order_by(Station.name)
    if event_id:
        q = q.where(Station.event_id == event_id)
    if not include_retired:
        q = q.where(Station.retired_at.is_(None))
    return list(db.execute(q).scalars().all())
