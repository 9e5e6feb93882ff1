import os

def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"

# --- Server ---
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./checkin.db")
REDIS_URL = os.environ.get("REDIS_URL")
IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", "300"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
VERIFY_CREDENTIAL_CHECKSUM = _flag("VERIFY_CREDENTIAL_CHECKSUM", "true")
DEFAULT_BADGE_PRIORITY = int(os.environ.get("DEFAULT_BADGE_PRIORITY", "0"))
HEARTBEAT_STALE_SECONDS = int(os.environ.get("HEARTBEAT_STALE_SECONDS", "90"))

# --- Station ---
STATION_DB_URL = os.environ.get("STATION_DB_URL", "sqlite:///./station.db")
SERVER_URL = os.environ.get("SERVER_URL", "http://127.0.0.1:8000")
SYNC_INTERVAL_SECONDS = float(os.environ.get("SYNC_INTERVAL_SECONDS", "30"))
SYNC_TIMEOUT_SECONDS = float(os.environ.get("SYNC_TIMEOUT_SECONDS", "30"))
STATION_ID = os.environ.get("STATION_ID")
OPERATOR_ID = os.environ.get("OPERATOR_ID")

# --- Print agent ---
PRINTER_ID = os.environ.get("PRINTER_ID")
PRINT_AGENT_URL = os.environ.get("PRINT_AGENT_URL")
WORKER_POLL_SECONDS = float(os.environ.get("WORKER_POLL_SECONDS", "1.0"))
