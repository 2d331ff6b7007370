#!/usr/bin/env python3
"""
Handelsbanken Banking Automation

Logs in with Mobile BankID (QR code or same-device app switch) and exports
account transactions, skipping anything a previous export already holds.
"""

import sys
sys.stdout.reconfigure(line_buffering=True)
sys.stderr.reconfigure(line_buffering=True)
import os
import csv
import json
import argparse
import signal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

import shb_config
from shb_auth import (
    AuthEvents,
    EVENT_AUTH_EXPIRED,
    EVENT_AUTH_STATUS,
    EVENT_QR_TOKEN,
    EVENT_SAME_DEVICE_TOKEN,
    build_same_device_link,
)
from shb_browser import CancelToken, launch_session
from shb_client import BankClient
from shb_models import AccountNotFoundError, AuthMode, BankClientError, Transaction, parse_iso_date

# Set from the command line in main()
HEADLESS = True
LOGIN_TIMEOUT = shb_config.DEFAULT_LOGIN_TIMEOUT
PERMISSIVE_TIMEOUT = False


def print_banner(*lines: str) -> None:
    print("\n" + "=" * 40)
    for line in lines:
        print(line)
    print("=" * 40 + "\n", flush=True)


def terminal_events() -> AuthEvents:
    """Show BankID progress on the terminal."""
    events = AuthEvents()

    def on_qr_token(token):
        print_banner(
            f"BANKID QR TOKEN: {token}",
            "Open the BankID app and scan the QR code shown on the login page",
            "(run with --visible to see the browser window).",
        )

    def on_same_device_token(token):
        print_banner(
            "OPEN BANKID ON THIS DEVICE:",
            build_same_device_link(token),
            build_same_device_link(token, scheme="bankid"),
        )

    events.subscribe(EVENT_QR_TOKEN, on_qr_token)
    events.subscribe(EVENT_SAME_DEVICE_TOKEN, on_same_device_token)
    events.subscribe(EVENT_AUTH_EXPIRED, lambda message: print(f"[bankid] {message}", flush=True))
    events.subscribe(EVENT_AUTH_STATUS, lambda phase: print(f"[bankid] status: {phase.value}", flush=True))
    return events


def session_factory(mode: AuthMode, cancel_token):
    return launch_session(headless=HEADLESS, mode=mode, cancel_token=cancel_token)


def load_existing_transactions(path: Path):
    """Provider for BankClient: transactions from an earlier JSON export."""
    def provider(date_from, date_to):
        payload = json.loads(path.read_text(encoding="utf-8"))
        rows = payload.get("transactions", []) if isinstance(payload, dict) else payload
        out = []
        for row in rows or []:
            try:
                tx = Transaction.from_dict(row)
            except (KeyError, TypeError, ValueError) as e:
                print(f"[transactions] Skipping unreadable existing row: {e}", flush=True)
                continue
            if date_from <= tx.date <= date_to:
                out.append(tx)
        print(f"[transactions] {len(out)} existing transactions from {path}", flush=True)
        return out
    return provider


def _settings(args) -> dict:
    config = shb_config.load_credentials()
    personnummer = getattr(args, "personnummer", None) or config.get("SHB_PERSONNUMMER")
    if not personnummer:
        print("Personnummer not found. Run 'setup' first or pass --personnummer.")
        sys.exit(1)
    mode = getattr(args, "mode", None) or config.get("SHB_AUTH_MODE") or AuthMode.OTHER_DEVICE.value
    try:
        mode = AuthMode.parse(mode)
    except ValueError as e:
        print(f"ERROR: {e}")
        sys.exit(1)
    return {
        "personnummer": personnummer,
        "account": getattr(args, "account", None) or config.get("SHB_ACCOUNT"),
        "mode": mode,
    }


def _client(**kwargs) -> BankClient:
    cancel_token = CancelToken()

    def on_sigterm(signum, frame):
        print("[client] Termination requested, aborting...", flush=True)
        cancel_token.cancel()

    # raises OperationCancelled at the next browser wait, which closes the browser
    signal.signal(signal.SIGTERM, on_sigterm)
    return BankClient(
        session_factory,
        events=terminal_events(),
        login_timeout=LOGIN_TIMEOUT,
        permissive_timeout=PERMISSIVE_TIMEOUT,
        cancel_token=cancel_token,
        **kwargs,
    )


def _report_error(e: BankClientError) -> None:
    print(f"ERROR: {e.reason}")
    if isinstance(e, AccountNotFoundError) and e.available:
        print("Available accounts:")
        for name in e.available:
            print(f"- {name}")


def cmd_setup():
    """Interactive setup wizard."""
    print("Handelsbanken Setup")
    print("-------------------")
    shb_config.ensure_dir(shb_config.STATE_DIR)

    personnummer = input("Enter personnummer (YYYYMMDDNNNN): ").strip()
    account = input("Default account (name or number, optional): ").strip()
    mode = input("BankID mode [other-device/same-device] (default other-device): ").strip() or "other-device"

    if not personnummer:
        print("Error: personnummer is required.")
        return
    try:
        AuthMode.parse(mode)
    except ValueError as e:
        print(f"Error: {e}")
        return

    path = shb_config.save_credentials({
        "SHB_PERSONNUMMER": personnummer,
        "SHB_ACCOUNT": account,
        "SHB_AUTH_MODE": mode,
    })
    print(f"Settings saved to {path}")

    print("Verifying Playwright installation...")
    os.system("playwright install chromium")


def cmd_login(args):
    """Log in once to check personnummer and BankID."""
    settings = _settings(args)
    client = _client()
    try:
        client.initialize(settings["personnummer"], settings["account"], settings["mode"])
        if not client.authenticate():
            print("Login failed.")
            sys.exit(1)
        print("Login successful.")
    except BankClientError as e:
        _report_error(e)
        sys.exit(1)
    finally:
        client.cleanup()


def cmd_accounts(args):
    """List all accounts."""
    settings = _settings(args)
    client = _client()
    try:
        client.initialize(settings["personnummer"], settings["account"], settings["mode"])
        if not client.authenticate():
            print("[accounts] Login failed.")
            sys.exit(1)
        accounts = client.fetch_accounts()
    except BankClientError as e:
        _report_error(e)
        sys.exit(1)
    finally:
        client.cleanup()

    if args.json:
        wrapper = {
            "institution": "handelsbanken",
            "fetchedAt": shb_config.now_iso_local(),
            "accounts": [a.to_dict() for a in accounts],
        }
        print(json.dumps(wrapper, ensure_ascii=False, indent=2))
    else:
        print(f"[accounts] {len(accounts)} account(s):")
        for a in accounts:
            print(f"- {a.describe()} [{a.ledger_system_code}/{a.ledger_status_code}]")


def _output_base(output: str | None, account: str, date_from: str, date_to: str) -> Path:
    acc_clean = "".join(ch for ch in account if ch.isalnum()) or "account"
    base_name = f"transactions_{acc_clean}_{date_from}_{date_to}"
    if output:
        out_path = Path(output)
        if out_path.is_dir() or str(output).endswith(os.sep):
            out_path.mkdir(parents=True, exist_ok=True)
            return out_path / base_name
        out_path.parent.mkdir(parents=True, exist_ok=True)
        return out_path
    shb_config.ensure_dir(shb_config.DEFAULT_OUTPUT_DIR)
    return shb_config.DEFAULT_OUTPUT_DIR / base_name


def write_transactions(file_base: Path, fmt: str, wrapper: dict) -> Path:
    if fmt == "json":
        out_file = file_base.with_suffix(".json")
        out_file.write_text(json.dumps(wrapper, ensure_ascii=False, indent=2))
        return out_file

    out_file = file_base.with_suffix(".csv")
    out_file.parent.mkdir(parents=True, exist_ok=True)
    fieldnames = ["date", "amount", "payee_name", "notes", "imported_id"]
    with out_file.open("w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=fieldnames)
        w.writeheader()
        for tx in wrapper["transactions"]:
            w.writerow({k: tx.get(k) for k in fieldnames})
    return out_file


def cmd_transactions(args):
    """Download transactions for an account."""
    try:
        parse_iso_date(args.date_from)
        parse_iso_date(args.date_to)
    except ValueError:
        print("ERROR: Dates must be in YYYY-MM-DD format.")
        sys.exit(1)

    settings = _settings(args)
    if not settings["account"]:
        print("No account given. Pass --account or set SHB_ACCOUNT in setup.")
        sys.exit(1)

    existing_provider = None
    if args.existing:
        existing_path = Path(args.existing).expanduser()
        if not existing_path.exists():
            print(f"ERROR: {existing_path} does not exist")
            sys.exit(1)
        existing_provider = load_existing_transactions(existing_path)

    client = _client(
        existing_provider=existing_provider,
        dedup_enabled=not args.no_dedup,
        overlap_days=args.overlap_days,
    )
    try:
        client.initialize(settings["personnummer"], settings["account"], settings["mode"])
        if not client.authenticate():
            print("[transactions] Login failed.")
            sys.exit(1)
        account = client.select_account(settings["account"])
        transactions = client.fetch_transactions(args.date_from, args.date_to)
    except BankClientError as e:
        _report_error(e)
        sys.exit(1)
    finally:
        client.cleanup()

    outcome = client.last_outcome
    if not transactions:
        print("[transactions] No new transactions in date range", flush=True)

    wrapper = {
        "institution": "handelsbanken",
        "account": account.to_dict(),
        "range": {"from": args.date_from, "until": args.date_to},
        "fetchedAt": shb_config.now_iso_local(),
        "transactions": [tx.to_dict() for tx in transactions],
        "deduplication": outcome.to_dict() if outcome else None,
    }
    if shb_config.DEBUG_ENABLED:
        wrapper["debugDir"] = str(shb_config.DEBUG_DIR)

    file_base = _output_base(args.output, account.account_number, args.date_from, args.date_to)
    out_file = write_transactions(file_base, args.fmt, wrapper)
    print(f"[transactions] Saved {args.fmt.upper()}: {out_file}")
    if outcome and outcome.errors:
        print(f"[transactions] {len(outcome.errors)} transaction(s) could not be reconciled:")
        for err in outcome.errors:
            print(f"- {err}")


def main():
    parser = argparse.ArgumentParser(description="Handelsbanken Automation")
    parser.add_argument("--visible", action="store_true", help="Show browser")
    parser.add_argument("--login-timeout", type=int, default=shb_config.DEFAULT_LOGIN_TIMEOUT,
                        help="Seconds to wait for BankID approval (default: 120)")
    parser.add_argument("--permissive-timeout", action="store_true",
                        help="Continue as if logged in when BankID approval is not detected in time")
    parser.add_argument("--debug", action="store_true", help="Save bank-native payloads to <dir>/debug (default: off)")
    parser.add_argument("--dir", help="State directory (default: ~/.handelsbanken or $SHB_DIR)")
    parser.add_argument("--personnummer", help="Override SHB_PERSONNUMMER")
    parser.add_argument("--mode", choices=[m.value for m in AuthMode], help="BankID mode (default: other-device)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("setup", help="Store personnummer and defaults")
    subparsers.add_parser("login", help="Test login")

    accounts_parser = subparsers.add_parser("accounts", help="List accounts")
    accounts_parser.add_argument("--json", action="store_true", help="Output as JSON")

    transactions_parser = subparsers.add_parser("transactions", help="Download transactions")
    transactions_parser.add_argument("--account", help="Account name or number (default: SHB_ACCOUNT)")
    transactions_parser.add_argument("--from", dest="date_from", required=True, help="Start date (YYYY-MM-DD)")
    transactions_parser.add_argument("--until", dest="date_to", required=True, help="End date (YYYY-MM-DD)")
    transactions_parser.add_argument("--format", dest="fmt", choices=["csv", "json"], default="json", help="Output format")
    transactions_parser.add_argument("--out", dest="output", help="Output file base or directory")
    transactions_parser.add_argument("--existing", help="Earlier JSON export to deduplicate against")
    transactions_parser.add_argument("--overlap-days", type=int, default=shb_config.DEFAULT_OVERLAP_DAYS,
                                     help="Days before --from to compare against (default: 7)")
    transactions_parser.add_argument("--no-dedup", action="store_true", help="Import everything that was fetched")

    args = parser.parse_args()

    if args.dir:
        shb_config.set_state_dir(args.dir)
    shb_config.set_debug(args.debug)

    global HEADLESS, LOGIN_TIMEOUT, PERMISSIVE_TIMEOUT
    HEADLESS = not args.visible
    LOGIN_TIMEOUT = max(int(args.login_timeout), 1)
    PERMISSIVE_TIMEOUT = args.permissive_timeout

    if args.command == "setup":
        cmd_setup()
    elif args.command == "login":
        cmd_login(args)
    elif args.command == "accounts":
        cmd_accounts(args)
    elif args.command == "transactions":
        cmd_transactions(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
