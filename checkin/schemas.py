from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Wire(BaseModel):
    """camelCase on the wire, snake_case in Python; both accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class CheckInRequest(Wire):
    ticket_credential_or_id: str
    station_id: str
    operator_id: str | None = None
    method: str = "qr_code"
    is_offline_sync: bool = False
    client_timestamp: datetime | None = None
    local_id: str | None = None


class CheckInResult(Wire):
    success: bool = True
    check_in_log_id: str | None = None
    ticket_id: str
    attendee_name: str | None = None
    attendee_email: str | None = None
    checked_in_at: datetime
    duplicate: bool = False
    conflict: bool = False
    message: str = "Check-in successful"


class SyncBatchRequest(Wire):
    station_id: str
    check_ins: list[CheckInRequest]


class SyncItemResult(Wire):
    local_id: str | None = None
    client_timestamp: datetime | None = None
    success: bool
    check_in_log_id: str | None = None
    code: str | None = None
    error: str | None = None
    conflict: bool = False


class SyncBatchResponse(Wire):
    success: bool
    synced_count: int = 0
    failed_count: int = 0
    results: list[SyncItemResult] = []


class BadgePayload(Wire):
    attendee_name: str
    attendee_email: str
    company: str | None = None
    title: str | None = None
    ticket_tier: str
    event_title: str
    credential: str


class BadgeJobOut(Wire):
    id: int
    ticket_id: str
    station_id: str | None = None
    printer_id: str | None = None
    priority: int
    status: str
    retry_count: int
    error_message: str | None = None
    badge_data: BadgePayload
    created_at: datetime
    started_printing_at: datetime | None = None
    claimed_by: str | None = None
    completed_at: datetime | None = None


class QueueStatus(Wire):
    total_pending: int = 0
    total_printing: int = 0
    total_completed: int = 0
    total_failed: int = 0
    queue: list[BadgeJobOut] = []


class PrintRequest(Wire):
    ticket_id: str
    station_id: str | None = None
    priority: int | None = None
    printer_id: str | None = None


class ClaimRequest(Wire):
    printer_id: str | None = None


class FailRequest(Wire):
    error_message: str


class SyncReport(Wire):
    pending_count: int
    timestamp: datetime | None = None


class StationOut(Wire):
    id: str
    event_id: str
    name: str
    location: str | None = None
    device_type: str
    online: bool
    pending_sync_count: int
    last_sync_at: datetime | None = None
    last_heartbeat: datetime | None = None
    total_check_ins: int
    retired_at: datetime | None = None


class TicketStatus(Wire):
    ticket_id: str
    checked_in: bool
    checked_in_at: datetime | None = None
    check_in_count: int
    badge_printed: bool
    attendee_name: str | None = None
    attendee_email: str | None = None
    event_title: str | None = None
    ticket_tier: str | None = None
