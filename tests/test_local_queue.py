from datetime import datetime, timedelta, timezone

import pytest

from checkin.credentials import MalformedCredential, encode
from checkin.station.local_queue import OfflineCheckIn, make_record

CRED = encode("abc", "evt1", "owner_abc", 1700000000000)
T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def test_enqueue_and_list_oldest_first(local_queue):
    late = local_queue.enqueue(make_record("st1", CRED, "op1", client_timestamp=T0 + timedelta(minutes=5)))
    early = local_queue.enqueue(make_record("st1", CRED, "op1", client_timestamp=T0))
    local_queue.enqueue(make_record("st2", CRED, "op1", client_timestamp=T0))

    rows = local_queue.list_unsynced("st1")
    assert [r.id for r in rows] == [early.id, late.id]
    assert all(r.synced is False and r.sync_attempts == 0 for r in rows)
    assert rows[0].ticket_id == "abc"
    assert local_queue.pending_count("st1") == 2
    assert local_queue.pending_count("st2") == 1

def test_local_ids_are_unique(local_queue):
    a = local_queue.enqueue(make_record("st1", CRED))
    b = local_queue.enqueue(make_record("st1", CRED))
    assert a.id != b.id

def test_malformed_credential_never_stored(local_queue):
    with pytest.raises(MalformedCredential):
        local_queue.enqueue(make_record("st1", "TICKET-nope"))
    with pytest.raises(MalformedCredential):
        local_queue.enqueue(OfflineCheckIn(id="x", ticket_id="abc", credential="junk", station_id="st1",
                                           method="qr_code", client_timestamp=T0))
    assert local_queue.pending_count("st1") == 0

def test_manual_entry_by_ticket_id(local_queue):
    rec = local_queue.enqueue(make_record("st1", "abc", method="manual"))
    assert rec.credential is None
    assert rec.credential_or_id == "abc"

def test_mark_synced_and_error(local_queue):
    ok = local_queue.enqueue(make_record("st1", CRED))
    bad = local_queue.enqueue(make_record("st1", CRED))

    local_queue.mark_synced(ok.id)
    local_queue.mark_sync_error(bad.id, "Ticket not found")
    local_queue.mark_sync_error(bad.id, "Ticket not found")

    rows = local_queue.list_unsynced("st1")
    assert [r.id for r in rows] == [bad.id]
    assert rows[0].sync_attempts == 2
    assert rows[0].error == "Ticket not found"
    assert local_queue.get(ok.id).synced is True

def test_purge_only_synced(local_queue):
    old = local_queue.enqueue(make_record("st1", CRED, client_timestamp=T0 - timedelta(days=30)))
    keep = local_queue.enqueue(make_record("st1", CRED, client_timestamp=T0 - timedelta(days=30)))
    local_queue.mark_synced(old.id)

    assert local_queue.purge_synced(older_than_days=7) == 1
    assert local_queue.get(old.id) is None
    assert local_queue.get(keep.id) is not None

def test_station_state_roundtrip(local_queue):
    local_queue.save_station_state("st1", online=True, pending_sync_count=3, last_sync_at=T0)
    local_queue.save_station_state("st1", pending_sync_count=0)

    state = local_queue.get_station_state("st1")
    assert state.online is True
    assert state.pending_sync_count == 0

    dump = local_queue.export()
    assert dump["stations"][0]["station_id"] == "st1"

    local_queue.clear()
    assert local_queue.get_station_state("st1") is None
