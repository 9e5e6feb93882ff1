"""Ticket credential codec.

A credential is the string printed in a ticket's QR code:

    TICKET-{ticket_id}-{event_id}-{issued_at_ms}-{checksum}

The checksum is a 32-bit rolling hash (``h = h * 31 + unit``) over the
concatenated ticket id, event id, owner id and issue time, rendered in upper
case base 36. The owner id is not carried in the string, so a full integrity
check needs the stored ticket row (see ``verify``).
"""
import re
import time
from dataclasses import dataclass

TAG = "TICKET"
DELIMITER = "-"

_ID = re.compile(r"^[A-Za-z0-9_]+$")
_FORMAT = re.compile(r"^TICKET-[A-Za-z0-9_]+-[A-Za-z0-9_]+-\d+-[A-Z0-9]+$")
_DIGITS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


class MalformedCredential(ValueError):
    code = "MALFORMED_CREDENTIAL"


@dataclass(frozen=True)
class Credential:
    ticket_id: str
    event_id: str
    issued_at_ms: int
    checksum: str


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(_DIGITS[rem])
    return "".join(reversed(out))


def checksum(ticket_id: str, event_id: str, owner_id: str, issued_at_ms: int) -> str:
    data = f"{ticket_id}{event_id}{owner_id}{issued_at_ms}".encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 1 << 32
    return _base36(abs(h))


def encode(ticket_id: str, event_id: str, owner_id: str, issued_at_ms: int | None = None) -> str:
    for name, value in (("ticket_id", ticket_id), ("event_id", event_id)):
        if not _ID.fullmatch(value or ""):
            raise ValueError(f"{name} must be non-empty and free of '{DELIMITER}': {value!r}")
    if issued_at_ms is None:
        issued_at_ms = int(time.time() * 1000)
    cs = checksum(ticket_id, event_id, owner_id, issued_at_ms)
    return DELIMITER.join([TAG, ticket_id, event_id, str(issued_at_ms), cs])


def decode(raw: str) -> Credential:
    parts = raw.split(DELIMITER) if isinstance(raw, str) else []
    if len(parts) != 5 or parts[0] != TAG:
        raise MalformedCredential("MALFORMED")
    _, ticket_id, event_id, issued, cs = parts
    if not ticket_id or not event_id or not cs:
        raise MalformedCredential("MALFORMED")
    try:
        issued_at_ms = int(issued)
    except ValueError:
        raise MalformedCredential("MALFORMED")
    return Credential(ticket_id=ticket_id, event_id=event_id, issued_at_ms=issued_at_ms, checksum=cs)


def validate_format(raw: str) -> bool:
    """Structural check only; no lookups."""
    return isinstance(raw, str) and _FORMAT.fullmatch(raw) is not None


def verify(raw: str, owner_id: str) -> bool:
    try:
        cred = decode(raw)
    except MalformedCredential:
        return False
    return cred.checksum == checksum(cred.ticket_id, cred.event_id, owner_id, cred.issued_at_ms)
