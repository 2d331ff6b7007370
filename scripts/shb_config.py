"""
Shared configuration for the Handelsbanken BankID automation.

URLs, backend endpoint paths, timeouts and the small helpers every script
needs (credential loading, debug dumps, timestamps).
"""

import os
import json
from datetime import datetime
from pathlib import Path

# --- URLs ---
URL_BASE = "https://secure.handelsbanken.se"
URL_LOGIN = f"{URL_BASE}/logon/se/priv/sv/mbidqr/"
URL_ACCOUNTS = f"{URL_BASE}/apps/dsb/mb/payments/toandfrommyaccounts.xhtml?CONTROL_ORIGIN=CONTROL_ORIGIN_NO"
URL_TRANSACTIONS_PAGE = f"{URL_BASE}/bb/seip/servlet/ipko?appName=ipko&appAction=ShowAccountTransactions"

# BankID backend traffic observed during login
ENDPOINT_INIT = "/mluri/aa/privmbidqrwebse/init/1.0"
ENDPOINT_POLL = "/mluri/aa/privmbidqrwebse/authenticate/1.0"

# Structured data endpoints (relative to URL_BASE)
API_ACCOUNTS = "/rseda/rykk/bu/accounts/v1/myAccounts"
API_ACCOUNTS_ALT = "/se/api/accountsummary/accounts?sort=+accountAlias&categoryFilter=ALL_PERSONAL"
API_TRANSACTIONS = "/bb/seip/servlet/ipko?appName=ipko&appAction=ShowAccountTransactions"
API_TRANSACTIONS_ALT = "/se/api/accountdetails/transactions"

# Fragments of the bank's own account calls, seen while the portal loads
ACCOUNTS_RESPONSE_MARKERS = ("/accounts/v1/myAccounts", "/accountsummary/accounts")

BANKID_APP_URL = "https://app.bankid.com/"
BANKID_SCHEME_URL = "bankid:///"

# --- Timeouts (seconds) ---
DEFAULT_LOGIN_TIMEOUT = 120
SUCCESS_POLL_INTERVAL = 5
NAVIGATION_SETTLE_DELAY = 2
MODE_SELECTOR_TIMEOUT = 10
CLICK_TIMEOUT = 5
AUTH_CONFIRM_TIMEOUT = 60
ACCOUNTS_PAGE_TIMEOUT = 30
HTTP_TIMEOUT = 30

# Marker the bank puts in front of pending transactions
PRELIMINARY_PREFIX = "Prel "

DEFAULT_SYSTEM_CODE = "INLÅ"
DEFAULT_STATUS_CODE = "N"

DEFAULT_OVERLAP_DAYS = 7

# Phone profile used for same-device logins
MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
)
MOBILE_VIEWPORT = {"width": 390, "height": 844}
DESKTOP_VIEWPORT = {"width": 1280, "height": 800}

# --- Paths ---
STATE_DIR = Path(os.environ.get("SHB_DIR", Path.home() / ".handelsbanken")).expanduser()
CREDENTIALS_FILE = STATE_DIR / ".env"
DEBUG_DIR = STATE_DIR / "debug"
DEFAULT_OUTPUT_DIR = STATE_DIR / "data"


def set_state_dir(path) -> None:
    """Re-point every state path at a different directory (used by --dir)."""
    global STATE_DIR, CREDENTIALS_FILE, DEBUG_DIR, DEFAULT_OUTPUT_DIR
    STATE_DIR = Path(path).expanduser()
    CREDENTIALS_FILE = STATE_DIR / ".env"
    DEBUG_DIR = STATE_DIR / "debug"
    DEFAULT_OUTPUT_DIR = STATE_DIR / "data"


def load_credentials(path: Path | None = None) -> dict:
    """Load SHB_* settings from the .env file; real environment variables win."""
    path = path or CREDENTIALS_FILE
    config = {}
    if path.exists():
        with open(path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#') or '=' not in line:
                    continue
                key, value = line.split('=', 1)
                config[key.strip()] = value.strip().strip("'").strip('"')

    for key in ("SHB_PERSONNUMMER", "SHB_ACCOUNT", "SHB_AUTH_MODE"):
        if os.environ.get(key):
            config[key] = os.environ[key]
    return config


def save_credentials(values: dict, path: Path | None = None) -> Path:
    path = path or CREDENTIALS_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        for key, value in values.items():
            if value:
                f.write(f"{key}={value}\n")
    return path


def now_iso_local() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


DEBUG_ENABLED: bool = False


def set_debug(enabled: bool) -> None:
    global DEBUG_ENABLED
    DEBUG_ENABLED = bool(enabled)


def write_debug_json(prefix: str, payload) -> Path | None:
    if not DEBUG_ENABLED:
        return None
    ensure_dir(DEBUG_DIR)
    ts = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
    out = DEBUG_DIR / f"{ts}-{prefix}.json"
    out.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    return out


def mask_token(token: str | None) -> str:
    if not token:
        return "<none>"
    if len(token) <= 16:
        return token[:4] + "..."
    return f"{token[:10]}...{token[-5:]}"
