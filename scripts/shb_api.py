"""
Accounts and transactions through Handelsbanken's internal JSON endpoints.

Calls go out with requests, carrying the cookies of the logged-in browser
context. Each endpoint has an alternate that is tried when the primary
answers 401/403.
"""

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import date
from urllib.parse import unquote, urlsplit

import requests

import shb_config
from shb_auth import read_json_body
from shb_models import Account, OperationCancelled, RetrievalError, Transaction, parse_iso_date, to_minor_units

TRACE_URL_MARKERS = ("/api/", "/json", "/rest", "/servlet")
AUTHENTICATED_URL_SEGMENTS = ("/private/", "/dashboard", "/overview")


@dataclass
class ApiResponse:
    status: int
    content_type: str
    text: str
    data: dict | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def unauthorized(self) -> bool:
        return self.status in (401, 403)


def classify_response(status: int, content_type: str, text: str) -> ApiResponse:
    """Only a JSON content type with an object body counts as data."""
    data = None
    if "application/json" in (content_type or "") and (text or "").strip().startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            data = parsed
    return ApiResponse(status=status, content_type=content_type or "", text=text or "", data=data)


# --- Parsers ---

def _system_and_status(links: dict) -> tuple[str, str]:
    system, status = shb_config.DEFAULT_SYSTEM_CODE, shb_config.DEFAULT_STATUS_CODE
    if not isinstance(links, dict):
        return system, status

    href = _link_href(links, "athena_transactions")
    m = re.search(r"account=([^&]+)", href)
    if m:
        parts = unquote(m.group(1)).split("~")
        if len(parts) >= 3:
            return parts[1], parts[2]

    href = _link_href(links, "transactions")
    m = re.search(r"Konto=([^&]+)", href)
    if m:
        raw = m.group(1)
        decoded = unquote(raw, errors="strict") if _is_utf8_escaped(raw) else unquote(raw, encoding="latin-1")
        parts = decoded.split("~")
        if len(parts) >= 3:
            return parts[1], parts[2]
    return system, status


def _link_href(links: dict, key: str) -> str:
    link = links.get(key)
    href = link.get("href") if isinstance(link, dict) else None
    return href if isinstance(href, str) else ""


def _is_utf8_escaped(raw: str) -> bool:
    # the servlet links escape Å as %C5 (latin-1), which is not valid UTF-8
    try:
        unquote(raw, errors="strict")
        return True
    except UnicodeDecodeError:
        return False


def parse_accounts(data: dict | None) -> list[Account]:
    if not isinstance(data, dict):
        return []

    agreements = data.get("agreements")
    if isinstance(agreements, list) and agreements:
        accounts = []
        for agreement in agreements:
            if not isinstance(agreement, dict):
                print(f"[api] Skipping unreadable agreement {agreement!r}", flush=True)
                continue
            identifier = agreement.get("identifier")
            name = agreement.get("name")
            number = identifier.get("valueRaw") if isinstance(identifier, dict) else None
            if not isinstance(number, (str, int)) or not number or not isinstance(name, str) or not name:
                print(f"[api] Skipping agreement without number or name: {agreement!r}", flush=True)
                continue
            system, status = _system_and_status(agreement.get("_links"))
            accounts.append(Account(
                account_number=str(number),
                display_name=name,
                official_name=name,
                ledger_system_code=system,
                ledger_status_code=status,
                holder_name="",
            ))
        return accounts

    items = data.get("accounts")
    if isinstance(items, list):
        accounts = []
        for item in items:
            if not isinstance(item, dict) or not item.get("accountNumber"):
                continue
            number = str(item["accountNumber"])
            alias, name = _text(item.get("accountAlias")), _text(item.get("accountName"))
            accounts.append(Account(
                account_number=number,
                display_name=alias or name or number,
                official_name=name or alias or number,
                ledger_system_code=shb_config.DEFAULT_SYSTEM_CODE,
                ledger_status_code=shb_config.DEFAULT_STATUS_CODE,
                holder_name=_text(item.get("ownerName")),
            ))
        return accounts
    return []


def _text(value) -> str:
    return value if isinstance(value, str) else ""


def _first(*vals):
    for v in vals:
        if v is not None and v != "":
            return v
    return None


def stable_id(*parts) -> str:
    digest = hashlib.sha1("|".join(str(p) for p in parts).encode("utf-8")).hexdigest()
    return digest[:12]


def parse_transactions(data: dict | None) -> list[Transaction]:
    if not isinstance(data, dict):
        return []

    out = []
    if isinstance(data.get("inlaAccountTransactions"), list):
        for tx in data["inlaAccountTransactions"]:
            try:
                out.append(Transaction(
                    date=parse_iso_date(tx["transactionDate"]),
                    amount=to_minor_units(tx["transactionAmount"]),
                    payee_name=tx.get("transactionText") or "",
                    notes="",
                    imported_id=f"{tx['transactionDate']}-{tx.get('serialNumber')}-{tx.get('eventTime')}",
                ))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                print(f"[api] Skipping unreadable transaction {tx!r}: {e}", flush=True)
        return out

    if isinstance(data.get("transactions"), list):
        for tx in data["transactions"]:
            try:
                raw_date = _first(tx.get("bookingDate"), tx.get("transactionDate"), tx.get("dateTime"))
                amount = to_minor_units(_first(tx.get("amount"), tx.get("transactionAmount"), "0"))
                payee = _first(tx.get("message"), tx.get("description"), tx.get("transactionText")) or ""
                notes = _first(tx.get("details"), tx.get("text")) or ""
                ref = _first(tx.get("id"), tx.get("reference")) or stable_id(raw_date, amount, payee, notes)
                out.append(Transaction(
                    date=parse_iso_date(raw_date),
                    amount=amount,
                    payee_name=payee,
                    notes=notes,
                    imported_id=f"{raw_date}-{ref}",
                ))
            except (AttributeError, TypeError, ValueError) as e:
                print(f"[api] Skipping unreadable transaction {tx!r}: {e}", flush=True)
    return out


def _read_accounts(data) -> list[Account]:
    try:
        return parse_accounts(data)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise RetrievalError(f"Unreadable accounts payload: {e}") from e


# --- Retriever ---

class StructuredDataRetriever:
    """Uses the browser session only for cookies and for the accounts call
    the portal makes on its own after login."""

    def __init__(self, session, http=None):
        self.session = session
        self.http = http or requests
        self.authentication_confirmed = False
        self.captured_accounts = None
        self._user_agent = None

    def attach(self):
        return self.session.on_response(self._on_response)

    def _on_response(self, response) -> None:
        url = response.url
        try:
            if any(marker in url for marker in shb_config.ACCOUNTS_RESPONSE_MARKERS):
                print(f"[api] Portal loaded accounts: {response.status} {url}", flush=True)
                self.authentication_confirmed = True
                data = read_json_body(response)
                if data is not None:
                    self.captured_accounts = data
            elif shb_config.DEBUG_ENABLED and any(m in url for m in TRACE_URL_MARKERS):
                print(f"[network] {response.status} {url}", flush=True)
        except OperationCancelled:
            raise
        except Exception as e:
            print(f"[api] Could not capture response from {url}: {e}", flush=True)

    def wait_for_authentication(self, timeout: float = shb_config.AUTH_CONFIRM_TIMEOUT) -> bool:
        """Wait until the portal proves we are logged in. Never raises on timeout."""
        if self.authentication_confirmed:
            return True
        print(f"[api] Waiting up to {int(timeout)}s for the portal to load...", flush=True)
        deadline = self.session.now() + timeout
        while self.session.now() < deadline:
            if self.authentication_confirmed:
                return True
            self.session.wait(0.5)
            url = self.session.url or ""
            if any(segment in url for segment in AUTHENTICATED_URL_SEGMENTS):
                print(f"[api] Authenticated URL: {url}", flush=True)
                self.authentication_confirmed = True
                return True
        print("[api] WARNING: Portal did not confirm login in time, continuing anyway", flush=True)
        return False

    def _base_url(self) -> str:
        parts = urlsplit(self.session.url or "")
        if parts.scheme == "https" and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}"
        return shb_config.URL_BASE

    def _headers(self, extra: dict) -> dict:
        if self._user_agent is None:
            try:
                self._user_agent = self.session.evaluate("() => navigator.userAgent") or ""
            except OperationCancelled:
                raise
            except Exception:
                self._user_agent = ""
        headers = dict(extra)
        if self._user_agent:
            headers["User-Agent"] = self._user_agent
        return headers

    def _request(self, method: str, path: str, headers: dict, payload=None) -> ApiResponse:
        self.session.check_cancelled()
        url = self._base_url() + path
        cookies = {c['name']: c['value'] for c in self.session.cookies()}
        print(f"[api] {method} {url}", flush=True)
        try:
            if method == "GET":
                r = self.http.get(url, headers=self._headers(headers), cookies=cookies,
                                  timeout=shb_config.HTTP_TIMEOUT)
            else:
                r = self.http.post(url, headers=self._headers(headers), cookies=cookies, json=payload,
                                   timeout=shb_config.HTTP_TIMEOUT)
        except requests.RequestException as e:
            print(f"[api] Request failed: {e}", flush=True)
            return ApiResponse(status=0, content_type="", text=str(e))
        result = classify_response(r.status_code, r.headers.get("content-type", ""), r.text)
        print(f"[api] -> {result.status} ({result.content_type or 'no content type'})", flush=True)
        return result

    def fetch_accounts(self) -> list[Account]:
        self.wait_for_authentication()

        if self.captured_accounts is not None:
            try:
                accounts = _read_accounts(self.captured_accounts)
            except RetrievalError as e:
                print(f"[api] {e.reason}; asking the endpoint instead", flush=True)
                accounts = []
            if accounts:
                print(f"[api] Using accounts loaded by the portal ({len(accounts)})", flush=True)
                shb_config.write_debug_json("accounts-raw", self.captured_accounts)
                return accounts

        headers = {"Accept": "application/json, application/problem+json", "X-Requested-With": "fetch"}
        response = self._request("GET", shb_config.API_ACCOUNTS, headers)
        if response.unauthorized:
            print(f"[api] Accounts endpoint answered {response.status}, trying alternate", flush=True)
            response = self._request("GET", shb_config.API_ACCOUNTS_ALT, headers)

        if response.data is None:
            raise RetrievalError(f"Accounts endpoint returned no JSON (status {response.status})")
        shb_config.write_debug_json("accounts-raw", response.data)
        accounts = _read_accounts(response.data)
        print(f"[api] Parsed {len(accounts)} accounts", flush=True)
        return accounts

    def fetch_transactions(self, account: Account, date_from: date, date_to: date) -> list[Transaction]:
        payload = {
            "account": f"{account.account_number}~{account.ledger_system_code}~{account.ledger_status_code}"
                       f"~{account.display_name}~J",
            "dateFrom": date_from.isoformat(),
            "dateTo": date_to.isoformat(),
            "transactionType": "A",
            "amountFrom": "",
            "amountTo": "",
        }
        headers = {
            "Content-Type": "application/json;charset=UTF-8",
            "X-Requested-With": "XMLHttpRequest",
            "Accept": "application/json",
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
        }
        response = self._request("POST", shb_config.API_TRANSACTIONS, headers, payload)
        if response.unauthorized:
            print(f"[api] Transactions endpoint answered {response.status}, trying alternate", flush=True)
            alt_payload = {
                "accountId": account.account_number,
                "fromDate": date_from.isoformat(),
                "toDate": date_to.isoformat(),
            }
            alt_headers = {"Content-Type": "application/json", "Accept": "application/json",
                           "X-Requested-With": "fetch"}
            response = self._request("POST", shb_config.API_TRANSACTIONS_ALT, alt_headers, alt_payload)

        if response.data is None:
            raise RetrievalError(f"Transactions endpoint returned no JSON (status {response.status})")
        shb_config.write_debug_json("transactions-raw", response.data)
        transactions = parse_transactions(response.data)
        print(f"[api] Parsed {len(transactions)} transactions", flush=True)
        return transactions
