from datetime import datetime, timedelta, timezone

import pytest

from checkin import stations
from checkin.db import as_utc
from checkin.errors import StationUnknown
from tests.helpers import seed

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_heartbeat_and_sync_report(db):
    seed(db)
    st = stations.heartbeat(db, "station_1", now=NOW)
    assert st.online is True
    assert as_utc(st.last_heartbeat) == NOW

    st = stations.record_sync(db, "station_1", 4, NOW)
    assert st.pending_sync_count == 4
    assert as_utc(st.last_sync_at) == NOW

    st = stations.record_sync(db, "station_1", -1)
    assert st.pending_sync_count == 0

def test_unknown_station(db):
    seed(db)
    with pytest.raises(StationUnknown):
        stations.heartbeat(db, "ghost")
    with pytest.raises(StationUnknown):
        stations.record_sync(db, "ghost", 0)

def test_stale_stations_go_offline(db):
    seed(db)
    stations.register_station(db, "station_2", "evt1", "Side Door")
    stations.heartbeat(db, "station_1", now=NOW - timedelta(minutes=10))
    stations.heartbeat(db, "station_2", now=NOW)

    assert stations.mark_stale(db, threshold_seconds=120, now=NOW) == 1
    by_id = {s.id: s for s in stations.list_stations(db, "evt1")}
    db.refresh(by_id["station_1"])
    db.refresh(by_id["station_2"])
    assert by_id["station_1"].online is False
    assert by_id["station_2"].online is True

def test_retired_station_is_unknown(db):
    seed(db)
    stations.retire(db, "station_1")
    with pytest.raises(StationUnknown):
        stations.get_active_station(db, "station_1")
    assert stations.list_stations(db, "evt1") == []
    assert len(stations.list_stations(db, "evt1", include_retired=True)) == 1
