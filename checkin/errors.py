from datetime import datetime


class CheckInError(Exception):
    code = "INTERNAL"
    status_code = 500
    retryable = False

    def __init__(self, message: str | None = None, data: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.data = data

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.code, "message": self.message}
        if self.data is not None:
            body["data"] = self.data
        return body


class InvalidFormat(CheckInError):
    code = "INVALID_FORMAT"
    status_code = 400


class TicketNotFound(CheckInError):
    code = "NOT_FOUND"
    status_code = 404


class AlreadyCheckedIn(CheckInError):
    code = "ALREADY_CHECKED_IN"
    status_code = 409

    def __init__(self, checked_in_at: datetime, data: dict | None = None):
        super().__init__(f"already checked in at {checked_in_at.isoformat()}", data)
        self.checked_in_at = checked_in_at


class StationUnknown(CheckInError):
    code = "STATION_UNKNOWN"
    status_code = 404


class InternalError(CheckInError):
    code = "INTERNAL"
    status_code = 500
    retryable = True


class JobNotFound(CheckInError):
    code = "JOB_NOT_FOUND"
    status_code = 404


class InvalidJobTransition(CheckInError):
    code = "INVALID_TRANSITION"
    status_code = 409
