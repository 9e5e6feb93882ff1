import pytest

from checkin import credentials
from checkin.credentials import MalformedCredential, decode, encode, validate_format, verify


def test_checksum_matches_rolling_hash():
    # "abc1" -> 97, 98, 99, 49 -> 2987023 -> base36
    assert credentials.checksum("a", "b", "c", 1) == "1S0SV"

def test_checksum_wraps_to_32_bits():
    cs = credentials.checksum("t" * 200, "e" * 200, "o" * 200, 1700000000000)
    assert cs.isalnum() and cs.upper() == cs
    assert int(cs, 36) <= 2 ** 31

def test_encode_shape_and_decode():
    raw = encode("abc", "evt1", "owner_1", 1700000000000)
    assert raw.startswith("TICKET-abc-evt1-1700000000000-")
    assert validate_format(raw)

    cred = decode(raw)
    assert cred.ticket_id == "abc"
    assert cred.event_id == "evt1"
    assert cred.issued_at_ms == 1700000000000
    assert cred.checksum == credentials.checksum("abc", "evt1", "owner_1", 1700000000000)

def test_encode_stamps_current_time():
    cred = decode(encode("abc", "evt1", "owner_1"))
    assert cred.issued_at_ms > 1700000000000

def test_encode_rejects_delimiter_in_ids():
    with pytest.raises(ValueError):
        encode("a-b", "evt1", "owner")
    with pytest.raises(ValueError):
        encode("abc", "", "owner")

@pytest.mark.parametrize("raw", [
    "TICKET-abc-evt1-1700000000000",
    "TICKET-abc-evt1-1700000000000-Q3F7-extra",
    "BADGE-abc-evt1-1700000000000-Q3F7",
    "TICKET-abc-evt1-notanumber-Q3F7",
    "",
])
def test_decode_malformed(raw):
    with pytest.raises(MalformedCredential):
        decode(raw)

def test_validate_format_is_structural_only():
    assert validate_format("TICKET-abc-evt1-1700000000000-Q3F7")
    assert not validate_format("TICKET-abc-evt1-1700000000000-q3f7")
    assert not validate_format("TICKET-abc-evt1-17000x-Q3F7")
    assert not validate_format("hello")
    assert not validate_format(None)

def test_verify_needs_the_owner():
    raw = encode("abc", "evt1", "owner_1", 1700000000000)
    assert verify(raw, "owner_1")
    assert not verify(raw, "owner_2")
    assert not verify("garbage", "owner_1")
