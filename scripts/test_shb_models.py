"""Unit tests for amounts, dates and value types"""

from datetime import date

import pytest

from shb_models import (
    Account,
    AccountNotFoundError,
    AuthMode,
    DeduplicationOutcome,
    Transaction,
    parse_amount_text,
    parse_iso_date,
    to_minor_units,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1422.30", 142230),
        ("-5.5", -550),
        ("0", 0),
        (1422.3, 142230),
        (-50, -5000),
        ("0.125", 13),
        ("-0.125", -13),
        (" 12.34 ", 1234),
    ],
)
def test_to_minor_units(raw, expected):
    assert to_minor_units(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "abc", "1,5", True, "NaN"])
def test_to_minor_units_rejects_non_amounts(raw):
    with pytest.raises(ValueError):
        to_minor_units(raw)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1 422,30", 142230),
        ("−12,50 kr", -1250),
        ("-5 000,00 SEK", -500000),
        ("1,234.56", 123456),
        ("1.234,56", 123456),
        ("350", 35000),
        ("", None),
        ("kr", None),
    ],
)
def test_parse_amount_text(text, expected):
    assert parse_amount_text(text) == expected


def test_preliminary_is_derived_from_payee_prefix():
    pending = Transaction(date(2024, 1, 5), -5000, "Prel ACME STORE", "", "a")
    booked = Transaction(date(2024, 1, 5), -5000, "ACME STORE AB", "", "b")
    lowercase = Transaction(date(2024, 1, 5), -5000, "prel ACME", "", "c")

    assert pending.is_preliminary
    assert not booked.is_preliminary
    assert not lowercase.is_preliminary


def test_transaction_dict_round_trip():
    tx = Transaction(date(2024, 2, 29), 142230, "LÖN", "februari", "2024-02-29-1-2")
    assert Transaction.from_dict(tx.to_dict()) == tx


def test_parse_iso_date_accepts_timestamps():
    assert parse_iso_date("2024-01-05") == date(2024, 1, 5)
    assert parse_iso_date("2024-01-05T10:15:00") == date(2024, 1, 5)
    with pytest.raises(ValueError):
        parse_iso_date("05/01/2024")


def test_auth_mode_parse():
    assert AuthMode.parse("same-device") is AuthMode.SAME_DEVICE
    assert AuthMode.parse("OTHER_DEVICE") is AuthMode.OTHER_DEVICE
    with pytest.raises(ValueError):
        AuthMode.parse("qr")


def test_account_not_found_lists_alternatives():
    accounts = [
        Account("840716451", "Lönekonto", "Lönekonto", "INLÅ", "N"),
        Account("123456789", "", "Sparkonto", "INLÅ", "N"),
    ]
    err = AccountNotFoundError("Checking", [a.describe() for a in accounts])

    assert err.reason == (
        'Account "Checking" not found. Available accounts: Lönekonto (840716451), Sparkonto (123456789)'
    )
    assert err.available == ["Lönekonto (840716451)", "Sparkonto (123456789)"]


def test_deduplication_outcome_is_immutable():
    outcome = DeduplicationOutcome(transactions_to_import=(), replaced_count=1)
    with pytest.raises(AttributeError):
        outcome.replaced_count = 2
    assert outcome.to_dict() == {"imported": 0, "replaced": 1, "skipped": 0, "errors": []}
