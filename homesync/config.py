import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./homesync.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Calendar credential encryption keys, comma separated. The first key encrypts,
# every key is tried on decrypt so old blobs stay readable after a key swap.
# Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
# When unset a key is derived from SECRET_KEY.
CALENDAR_ENCRYPTION_KEY = os.getenv("CALENDAR_ENCRYPTION_KEY")

# Google Calendar OAuth Configuration
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

# Microsoft Graph (Outlook) OAuth Configuration
MICROSOFT_CLIENT_ID = os.getenv("MICROSOFT_CLIENT_ID")
MICROSOFT_CLIENT_SECRET = os.getenv("MICROSOFT_CLIENT_SECRET")

# Every provider HTTP call gets this timeout so one slow provider cannot stall a sync cycle
PROVIDER_REQUEST_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_REQUEST_TIMEOUT_SECONDS", "30"))

# Retry coordinator - flat cooldown, no exponential backoff
SYNC_MAX_RETRIES = int(os.getenv("SYNC_MAX_RETRIES", "3"))
SYNC_RETRY_COOLDOWN_SECONDS = int(os.getenv("SYNC_RETRY_COOLDOWN_SECONDS", "300"))  # 5 minutes

# Reconciliation window around "now"
SYNC_WINDOW_PAST_DAYS = int(os.getenv("SYNC_WINDOW_PAST_DAYS", "7"))
SYNC_WINDOW_FUTURE_DAYS = int(os.getenv("SYNC_WINDOW_FUTURE_DAYS", "30"))

# Stored sync errors older than this are cleared by the daily cleanup job
SYNC_ERROR_RETENTION_DAYS = int(os.getenv("SYNC_ERROR_RETENTION_DAYS", "30"))

# Periodic job cadences (seconds)
SYNC_FULL_SYNC_INTERVAL = int(os.getenv("SYNC_FULL_SYNC_INTERVAL", "3600"))  # hourly
SYNC_RETRY_INTERVAL = int(os.getenv("SYNC_RETRY_INTERVAL", "300"))  # every 5 minutes
SYNC_TOKEN_VALIDATION_INTERVAL = int(os.getenv("SYNC_TOKEN_VALIDATION_INTERVAL", "21600"))  # 6 hours
SYNC_CLEANUP_INTERVAL = int(os.getenv("SYNC_CLEANUP_INTERVAL", "86400"))  # daily

# "embedded" runs the scheduler inside the API process, "worker" leaves it to
# the arq worker (homesync.worker), "disabled" runs neither from the API.
SYNC_SCHEDULER_MODE = os.getenv("SYNC_SCHEDULER_MODE", "embedded").lower()

# "memory" keeps retry items in process memory (lost on restart),
# "database" persists them in calendar_sync_retry_items.
SYNC_RETRY_STORE = os.getenv("SYNC_RETRY_STORE", "memory").lower()

# How long stop() waits for in-flight periodic jobs before shutting down
SYNC_SHUTDOWN_GRACE_SECONDS = float(os.getenv("SYNC_SHUTDOWN_GRACE_SECONDS", "30"))

# Bearer token for the /calendar-sync admin routes
SYNC_ADMIN_TOKEN = os.getenv("SYNC_ADMIN_TOKEN")

# Redis for the arq worker
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
