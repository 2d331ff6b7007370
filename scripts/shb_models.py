"""
Value types, authentication state and errors for the Handelsbanken client.
"""

import re
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum

from shb_config import PRELIMINARY_PREFIX


# --- Errors ---

class BankClientError(Exception):
    """Base class for every failure surfaced to callers."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class AuthenticationError(BankClientError):
    def __init__(self, reason: str, controls: list[dict] | None = None):
        super().__init__(reason)
        self.controls = controls or []


class AuthTimeoutError(AuthenticationError, TimeoutError):
    pass


class RetrievalError(BankClientError):
    pass


class ReconciliationError(BankClientError):
    pass


class SessionStateError(BankClientError):
    pass


class AccountNotFoundError(BankClientError):
    def __init__(self, selector: str, available: list[str]):
        listing = ", ".join(available) if available else "(none)"
        super().__init__(f'Account "{selector}" not found. Available accounts: {listing}')
        self.selector = selector
        self.available = available


class OperationCancelled(BankClientError):
    def __init__(self, reason: str = "Operation cancelled"):
        super().__init__(reason)


# --- Authentication state ---

class AuthPhase(str, Enum):
    AWAITING_SCAN = "awaiting-scan"
    IN_PROGRESS = "in-progress"
    EXPIRED = "expired"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class AuthMode(str, Enum):
    SAME_DEVICE = "same-device"
    OTHER_DEVICE = "other-device"

    @classmethod
    def parse(cls, value) -> "AuthMode":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("_", "-")
        for mode in cls:
            if mode.value == text:
                return mode
        raise ValueError(f"Unknown authentication mode: {value!r}")


@dataclass
class AuthenticationState:
    """Token and phase of one login attempt.

    Only shb_auth.apply_update() writes to it; the lock makes the compare,
    write and notify sequence a single step even if a callback fires from
    another thread.
    """
    mode: AuthMode | None = None
    qr_token: str | None = None
    auto_start_token: str | None = None
    phase: AuthPhase = AuthPhase.AWAITING_SCAN
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


# --- Bank records ---

@dataclass(frozen=True)
class Account:
    account_number: str
    display_name: str
    official_name: str
    ledger_system_code: str
    ledger_status_code: str
    holder_name: str = ""

    def describe(self) -> str:
        name = self.display_name or self.official_name
        return f"{name} ({self.account_number})" if name else self.account_number

    def to_dict(self) -> dict:
        return {
            "accountNumber": self.account_number,
            "displayName": self.display_name,
            "officialName": self.official_name,
            "ledgerSystemCode": self.ledger_system_code,
            "ledgerStatusCode": self.ledger_status_code,
            "holderName": self.holder_name,
        }


@dataclass(frozen=True)
class Transaction:
    date: date
    amount: int
    payee_name: str
    notes: str
    imported_id: str

    @property
    def is_preliminary(self) -> bool:
        return is_preliminary_name(self.payee_name)

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "amount": self.amount,
            "payee_name": self.payee_name,
            "notes": self.notes,
            "imported_id": self.imported_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Transaction":
        return cls(
            date=parse_iso_date(d["date"]),
            amount=int(d["amount"]),
            payee_name=d.get("payee_name") or "",
            notes=d.get("notes") or "",
            imported_id=d.get("imported_id") or "",
        )


@dataclass(frozen=True)
class DeduplicationOutcome:
    transactions_to_import: tuple
    replaced_count: int = 0
    skipped_count: int = 0
    errors: tuple = ()

    def to_dict(self) -> dict:
        return {
            "imported": len(self.transactions_to_import),
            "replaced": self.replaced_count,
            "skipped": self.skipped_count,
            "errors": list(self.errors),
        }


# --- Helpers ---

def is_preliminary_name(name: str | None) -> bool:
    return bool(name) and name.startswith(PRELIMINARY_PREFIX)


def strip_preliminary(name: str | None) -> str:
    name = name or ""
    return name[len(PRELIMINARY_PREFIX):] if name.startswith(PRELIMINARY_PREFIX) else name


def parse_iso_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()


def to_minor_units(value) -> int:
    """Convert a bank amount (number or decimal string) to signed minor units.

    Half-way values round away from zero: "0.125" -> 13, "-0.125" -> -13.
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"Not an amount: {value!r}")
    try:
        # str() keeps floats like 1422.3 from picking up binary noise
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Not an amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Not an amount: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_amount_text(text: str | None) -> int | None:
    """Parse an amount as rendered on the page ("1 422,30", "−12,50 kr")."""
    if not text:
        return None
    cleaned = text.replace("−", "-").replace("–", "-")
    cleaned = re.sub(r"[^\d,.\-]", "", cleaned)
    if not cleaned or not re.search(r"\d", cleaned):
        return None
    negative = cleaned.startswith("-") or cleaned.endswith("-")
    cleaned = cleaned.replace("-", "")
    if "," in cleaned and "." in cleaned:
        # whichever separator comes last is the decimal one
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        minor = to_minor_units(cleaned)
    except ValueError:
        return None
    return -minor if negative else minor
