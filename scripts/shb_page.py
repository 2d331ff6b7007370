"""
Last-resort extraction of accounts and transactions from the rendered portal.

The browser is only used to get to the right page and take a snapshot of it;
everything else works on the HTML with BeautifulSoup. Each strategy returns a
StrategyResult and the first one that finds something wins.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import date
from urllib.parse import unquote

from bs4 import BeautifulSoup

import shb_config
from shb_api import parse_accounts, stable_id
from shb_models import Account, OperationCancelled, Transaction, parse_amount_text, to_minor_units

ACCOUNT_LINK_SELECTOR = 'a[href*="account_transactions"]'
PREFERRED_TABLES = 'table.transactions, table.account-transactions, table.statement, table[id*="transaction"]'
LIST_ITEM_SELECTOR = '[class*="transaction-item"], [class*="account-transaction"], li[class*="transaction"]'
DATE_FROM_INPUTS = ('input[name="dateFrom"]', 'input[name="fromDate"]')
DATE_TO_INPUTS = ('input[name="dateTo"]', 'input[name="toDate"]')
SEARCH_BUTTON = 'button[type="submit"], input[type="submit"], button:has-text("Search"), button:has-text("Sök")'

WINDOW_DATA_SCRIPT = "() => ({appData: window.appData || null, accountData: window.accountData || null})"
SUBMIT_FORM_SCRIPT = "() => { const form = document.querySelector('form'); if (form) form.submit(); }"

DATE_HEADERS = ("date", "datum")
DESCRIPTION_HEADERS = ("description", "text", "beskrivning", "information")
AMOUNT_HEADERS = ("amount", "belopp", "sum", "kr", "sek")


@dataclass
class PageSnapshot:
    html: str
    globals: dict = field(default_factory=dict)
    url: str = ""

    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html or "", "html.parser")


@dataclass(frozen=True)
class StrategyResult:
    name: str
    items: tuple = ()

    @property
    def found(self) -> bool:
        return len(self.items) > 0


def run_strategies(strategies, snapshot: PageSnapshot) -> StrategyResult:
    soup = snapshot.soup()
    for name, strategy in strategies:
        items = strategy(soup, snapshot)
        result = StrategyResult(name, tuple(items))
        if result.found:
            print(f"[page] {name}: found {len(result.items)}", flush=True)
            return result
        print(f"[page] {name}: nothing found", flush=True)
    return StrategyResult("none")


def normalize_date(text: str | None) -> date | None:
    """YYYY-MM-DD or DD-MM-YYYY with '-', '/' or '.' separators."""
    m = re.search(r"(\d{1,4})[/.-](\d{1,2})[/.-](\d{1,4})", text or "")
    if not m:
        return None
    first, month, last = m.groups()
    if len(first) == 4:
        year, day = first, last
    elif len(last) == 4:
        year, day = last, first
    else:
        return None
    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


# --- Account strategies ---

def accounts_from_links(soup, snapshot) -> list[Account]:
    accounts = {}
    for link in soup.select(ACCOUNT_LINK_SELECTOR):
        m = re.search(r"account=([^&]+)", link.get("href") or "")
        if not m:
            continue
        parts = unquote(m.group(1)).split("~")
        number = parts[0].strip()
        if not number or number in accounts:
            continue
        accounts[number] = Account(
            account_number=number,
            display_name=link.get_text(" ", strip=True),
            official_name="",
            ledger_system_code=parts[1] if len(parts) > 1 and parts[1] else shb_config.DEFAULT_SYSTEM_CODE,
            ledger_status_code=parts[2] if len(parts) > 2 and parts[2] else shb_config.DEFAULT_STATUS_CODE,
            holder_name="",
        )
    return list(accounts.values())


def accounts_from_embedded_json(soup, snapshot) -> list[Account]:
    for data in _embedded_objects(soup, snapshot, keys=("agreements", "accounts")):
        accounts = parse_accounts(data)
        if accounts:
            return accounts
    return []


ACCOUNT_STRATEGIES = (
    ("account links", accounts_from_links),
    ("embedded account data", accounts_from_embedded_json),
)


# --- Transaction strategies ---

def _infer_columns(header_row) -> tuple[int, int, int]:
    date_col, desc_col, amount_col = 0, 1, 2
    if header_row is None:
        return date_col, desc_col, amount_col
    for i, th in enumerate(header_row.find_all("th")):
        header = th.get_text(" ", strip=True).lower()
        if any(h in header for h in DATE_HEADERS):
            date_col = i
        elif any(h in header for h in DESCRIPTION_HEADERS):
            desc_col = i
        elif any(h in header for h in AMOUNT_HEADERS):
            amount_col = i
    return date_col, desc_col, amount_col


def _cell_is_negative(cell) -> bool:
    classes = " ".join(cell.get("class") or [])
    style = (cell.get("style") or "").replace(" ", "").lower()
    return "negative" in classes or "color:red" in style


def _scraped_transaction(date_text, description, amount_text, negative_hint=False) -> Transaction | None:
    if not date_text or not (description or amount_text):
        return None
    day = normalize_date(date_text)
    if day is None:
        print(f"[page] Dropping row with unreadable date: {date_text!r}", flush=True)
        return None
    amount = parse_amount_text(amount_text)
    if amount is None:
        amount = 0
    if negative_hint and amount > 0:
        amount = -amount
    return Transaction(
        date=day,
        amount=amount,
        payee_name=description,
        notes="",
        imported_id=f"{date_text}-{description}-{amount_text}",
    )


def transactions_from_tables(soup, snapshot) -> list[Transaction]:
    tables = []
    for table in soup.select(PREFERRED_TABLES) + soup.find_all("table"):
        if not any(t is table for t in tables):
            tables.append(table)

    for table in tables:
        rows = table.find_all("tr")
        if len(rows) <= 1:
            continue
        header_row = rows[0] if rows[0].find("th") else None
        date_col, desc_col, amount_col = _infer_columns(header_row)

        results = []
        for row in rows:
            if row.find("th"):
                continue
            cells = row.find_all("td")
            if len(cells) < 3:
                continue

            def text(i):
                return cells[i].get_text(" ", strip=True) if i < len(cells) else ""

            negative = amount_col < len(cells) and _cell_is_negative(cells[amount_col])
            tx = _scraped_transaction(text(date_col), text(desc_col), text(amount_col), negative)
            if tx is not None:
                results.append(tx)
        if results:
            return results
    return []


def transactions_from_list_items(soup, snapshot) -> list[Transaction]:
    results = []
    for item in soup.select(LIST_ITEM_SELECTOR):
        date_el = item.select_one('[class*="date"], [data-label*="date"], [data-label*="datum"]')
        desc_el = item.select_one('[class*="description"], [class*="text"], [data-label*="beskrivning"]')
        amount_el = item.select_one('[class*="amount"], [class*="sum"], [data-label*="belopp"]')
        tx = _scraped_transaction(
            date_el.get_text(" ", strip=True) if date_el else "",
            desc_el.get_text(" ", strip=True) if desc_el else "",
            amount_el.get_text(" ", strip=True) if amount_el else "",
            amount_el is not None and _cell_is_negative(amount_el),
        )
        if tx is not None:
            results.append(tx)
    return results


def _json_objects_in(text: str):
    decoder = json.JSONDecoder()
    pos = text.find("{")
    while pos != -1:
        try:
            obj, end = decoder.raw_decode(text, pos)
        except ValueError:
            pos = text.find("{", pos + 1)
            continue
        if isinstance(obj, dict):
            yield obj
        pos = text.find("{", end)


def _embedded_objects(soup, snapshot, keys):
    for script in soup.find_all("script"):
        content = script.string or script.get_text() or ""
        if "transaction" not in content and "account" not in content:
            continue
        for obj in _json_objects_in(content):
            if any(obj.get(k) for k in keys):
                yield obj

    for el in soup.select("[data-transactions], [data-account-data]"):
        raw = el.get("data-transactions") or el.get("data-account-data")
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError):
            continue
        if isinstance(obj, list):
            obj = {"transactions": obj}
        if isinstance(obj, dict) and any(obj.get(k) for k in keys):
            yield obj

    for name in ("appData", "accountData"):
        obj = (snapshot.globals or {}).get(name)
        if isinstance(obj, dict) and any(obj.get(k) for k in keys):
            yield obj


def transactions_from_embedded_json(soup, snapshot) -> list[Transaction]:
    for data in _embedded_objects(soup, snapshot, keys=("transactions", "accountTransactions", "items")):
        items = data.get("transactions") or data.get("accountTransactions") or data.get("items")
        if not isinstance(items, list):
            continue
        results = []
        for tx in items:
            if not isinstance(tx, dict):
                continue
            raw_date = tx.get("date") or tx.get("transactionDate") or tx.get("bookingDate") or ""
            day = normalize_date(str(raw_date))
            if day is None:
                continue
            try:
                amount = to_minor_units(tx.get("amount") if tx.get("amount") is not None else "0")
            except ValueError:
                amount = parse_amount_text(str(tx.get("amount"))) or 0
            payee = tx.get("text") or tx.get("description") or tx.get("payee") or ""
            results.append(Transaction(
                date=day,
                amount=amount,
                payee_name=payee,
                notes=tx.get("additionalInfo") or tx.get("note") or "",
                imported_id=str(tx.get("id") or f"{raw_date}-{stable_id(raw_date, amount, payee)}"),
            ))
        if results:
            return results
    return []


TRANSACTION_STRATEGIES = (
    ("transaction table", transactions_from_tables),
    ("transaction list", transactions_from_list_items),
    ("embedded transaction data", transactions_from_embedded_json),
)


class PageScrapeFallback:
    def __init__(self, session):
        self.session = session

    def snapshot(self) -> PageSnapshot:
        html = self.session.content()
        try:
            page_globals = self.session.evaluate(WINDOW_DATA_SCRIPT) or {}
        except OperationCancelled:
            raise
        except Exception as e:
            print(f"[page] Could not read window data: {e}", flush=True)
            page_globals = {}
        return PageSnapshot(html=html, globals=page_globals if isinstance(page_globals, dict) else {},
                            url=self.session.url)

    def extract_accounts(self) -> list[Account]:
        if not self.session.wait_for(ACCOUNT_LINK_SELECTOR, timeout=1, state="attached"):
            print(f"[page] Opening accounts page {shb_config.URL_ACCOUNTS}", flush=True)
            self.session.navigate(shb_config.URL_ACCOUNTS)
            if not self.session.wait_for(ACCOUNT_LINK_SELECTOR, timeout=shb_config.ACCOUNTS_PAGE_TIMEOUT,
                                         state="attached"):
                print("[page] WARNING: No account links appeared", flush=True)
        result = run_strategies(ACCOUNT_STRATEGIES, self.snapshot())
        return list(result.items)

    def prepare_transactions_page(self, date_from: date, date_to: date) -> None:
        session = self.session
        if "ShowAccountTransactions" not in (session.url or ""):
            print(f"[page] Opening transactions page {shb_config.URL_TRANSACTIONS_PAGE}", flush=True)
            session.navigate(shb_config.URL_TRANSACTIONS_PAGE)
            session.wait(3)

        from_sel = _first_present(session, DATE_FROM_INPUTS, timeout=2.5)
        if from_sel is None:
            print("[page] No date fields, reading the current view", flush=True)
            return
        to_sel = _first_present(session, DATE_TO_INPUTS)
        print(f"[page] Setting date range {date_from} - {date_to}", flush=True)
        session.fill(from_sel, date_from.isoformat())
        if to_sel:
            session.fill(to_sel, date_to.isoformat())

        if session.wait_for(SEARCH_BUTTON, timeout=1, state="attached"):
            session.click(SEARCH_BUTTON)
        else:
            print("[page] No search button, submitting the form", flush=True)
            session.evaluate(SUBMIT_FORM_SCRIPT)
        session.wait(3)

    def extract_transactions(self, date_from: date, date_to: date) -> list[Transaction]:
        try:
            self.prepare_transactions_page(date_from, date_to)
        except OperationCancelled:
            raise
        except Exception as e:
            print(f"[page] Could not set up the transactions page: {e}", flush=True)
        result = run_strategies(TRANSACTION_STRATEGIES, self.snapshot())
        return [tx for tx in result.items if date_from <= tx.date <= date_to] if result.found else []


def _first_present(session, selectors, timeout: float = 0.5) -> str | None:
    for selector in selectors:
        if session.wait_for(selector, timeout=timeout, state="attached"):
            return selector
    return None
