import os
from contextvars import ContextVar
from pathlib import Path
from typing import Optional

DB_PATH = os.environ.get("HEALTH_WALLET_DB", "health_wallet.db")
LOCAL_PRESCRIPTIONS_PATH = Path(os.environ.get("LOCAL_PRESCRIPTIONS_PATH", "prescriptions.json"))
CSRF_COOKIE_NAME = "csrf_token"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

LANGUAGE = os.environ.get("HEALTH_WALLET_LANG", "en")
NOTIFY_EMAIL = os.environ.get("NOTIFY_EMAIL", "").strip()

MAX_DOCTOR_LEN = 120
MAX_DRUG_NAME_LEN = 120
MAX_DOSAGE_LEN = 80
DEFAULT_REMINDER_TIME = "09:00"
MAX_ATTACHMENT_SIZE = 5 * 1024 * 1024

PUBLIC_PATHS = {"/health"}


def _load_owner_id() -> Optional[int]:
    """Owner whose prescriptions drive reminders; None means the local JSON cache."""
    raw = os.environ.get("HEALTH_WALLET_OWNER_ID", "1").strip()
    if not raw or raw.lower() == "local":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


OWNER_ID = _load_owner_id()
_current_user_id: ContextVar[Optional[int]] = ContextVar("_current_user_id", default=OWNER_ID)
