"""
BankClient: one login, one account, one date range per instance.

    client = BankClient(launch_session)
    client.initialize(personnummer, "Lönekonto", "other-device")
    try:
        client.authenticate()
        transactions = client.fetch_transactions("2024-01-01", "2024-01-31")
    finally:
        client.cleanup()
"""

from datetime import timedelta
from enum import Enum

import shb_config
from shb_api import StructuredDataRetriever
from shb_auth import AuthController, AuthEvents
from shb_dedup import reconcile
from shb_models import (
    Account,
    AccountNotFoundError,
    AuthMode,
    BankClientError,
    RetrievalError,
    SessionStateError,
    parse_iso_date,
)
from shb_page import PageScrapeFallback


class ClientState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    RETRIEVING = "retrieving"
    DONE = "done"
    FAILED = "failed"


def match_account(accounts: list[Account], criteria: str) -> Account:
    """Exact display/official name (case-insensitive) or literal account number."""
    wanted = (criteria or "").strip()
    for account in accounts:
        if account.account_number == wanted:
            return account
    folded = wanted.casefold()
    for account in accounts:
        if folded and folded in (account.display_name.casefold(), account.official_name.casefold()):
            return account
    raise AccountNotFoundError(wanted, [a.describe() for a in accounts])


class BankClient:
    """Owns the browser session from initialize() until cleanup().

    session_factory(mode, cancel_token) must return a BrowserSession.
    existing_provider(date_from, date_to) returns ledger transactions to
    reconcile against; without one every fetched transaction is new.
    """

    def __init__(self, session_factory, events: AuthEvents | None = None, existing_provider=None,
                 login_timeout: float = shb_config.DEFAULT_LOGIN_TIMEOUT, permissive_timeout: bool = False,
                 dedup_enabled: bool = True, overlap_days: int = shb_config.DEFAULT_OVERLAP_DAYS,
                 http=None, cancel_token=None):
        self.session_factory = session_factory
        self.events = events or AuthEvents()
        self.existing_provider = existing_provider
        self.login_timeout = login_timeout
        self.permissive_timeout = permissive_timeout
        self.dedup_enabled = dedup_enabled
        self.overlap_days = overlap_days
        self.http = http
        self.cancel_token = cancel_token

        self.state = ClientState.IDLE
        self.session = None
        self.identity = None
        self.account_selector = None
        self.mode = None
        self.accounts = []
        self.selected_account = None
        self.last_outcome = None
        self._retriever = None
        self._detach = []

    def _require(self, *states: ClientState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise SessionStateError(f"Client is {self.state.value}; expected {allowed}")

    def _fail(self) -> None:
        self.state = ClientState.FAILED
        self._close_session()

    def initialize(self, identity: str, account_selector: str | None = None, mode=AuthMode.OTHER_DEVICE) -> None:
        self._require(ClientState.IDLE)
        if self.session is not None:
            raise SessionStateError("Client already initialized")
        if not identity:
            raise BankClientError("Personnummer is required")
        self.identity = identity
        self.account_selector = account_selector
        self.mode = AuthMode.parse(mode) if mode else AuthMode.OTHER_DEVICE

        self.session = self.session_factory(self.mode, self.cancel_token)
        # The portal fetches the account list on its own right after login
        self._retriever = StructuredDataRetriever(self.session, http=self.http)
        self._detach.append(self._retriever.attach())
        print(f"[client] Session ready (mode={self.mode.value})", flush=True)

    def authenticate(self) -> bool:
        self._require(ClientState.IDLE)
        if self.session is None:
            raise SessionStateError("initialize() must be called first")

        self.state = ClientState.AUTHENTICATING
        controller = AuthController(
            self.session,
            mode=self.mode,
            events=self.events,
            timeout=self.login_timeout,
            permissive_timeout=self.permissive_timeout,
        )
        try:
            ok = controller.login(self.identity)
        except BaseException:
            self._fail()
            raise
        if not ok:
            self._fail()
            return False
        self.state = ClientState.AUTHENTICATED
        return True

    def fetch_accounts(self) -> list[Account]:
        self._require(ClientState.AUTHENTICATED)
        try:
            accounts = []
            try:
                accounts = self._retriever.fetch_accounts()
            except RetrievalError as e:
                print(f"[client] {e.reason}; falling back to the accounts page", flush=True)
            if not accounts:
                accounts = PageScrapeFallback(self.session).extract_accounts()
            if not accounts:
                raise RetrievalError("No accounts found")
        except BaseException:
            self._fail()
            raise
        self.accounts = accounts
        return accounts

    def select_account(self, criteria: str | None = None) -> Account:
        self._require(ClientState.AUTHENTICATED)
        criteria = criteria if criteria is not None else self.account_selector
        if not criteria:
            raise BankClientError("No account selected")
        if not self.accounts:
            self.fetch_accounts()
        try:
            account = match_account(self.accounts, criteria)
        except AccountNotFoundError:
            self._fail()
            raise
        print(f"[client] Selected account: {account.describe()}", flush=True)
        self.selected_account = account
        return account

    def fetch_transactions(self, from_date: str, to_date: str) -> list:
        """Transactions to import for [from_date, to_date] (ISO dates).

        The full reconciliation result stays available as last_outcome.
        """
        self._require(ClientState.AUTHENTICATED)
        try:
            start = parse_iso_date(from_date)
            end = parse_iso_date(to_date)
        except (TypeError, ValueError):
            raise BankClientError(f"Invalid date range {from_date!r} - {to_date!r}; expected YYYY-MM-DD")
        if start > end:
            raise BankClientError(f"Start date {from_date} is after end date {to_date}")
        if self.selected_account is None:
            self.select_account()

        self.state = ClientState.RETRIEVING
        try:
            fetched = self._retrieve(self.selected_account, start, end)
            outcome = self._deduplicate(fetched, start, end)
        except BaseException:
            self._fail()
            raise
        self.last_outcome = outcome
        self.state = ClientState.DONE
        return list(outcome.transactions_to_import)

    def _retrieve(self, account: Account, start, end) -> list:
        fetched = []
        try:
            fetched = self._retriever.fetch_transactions(account, start, end)
        except RetrievalError as e:
            print(f"[client] {e.reason}; falling back to the transactions page", flush=True)
        if not fetched:
            print("[client] No transactions from the API, checking the page", flush=True)
            fetched = PageScrapeFallback(self.session).extract_transactions(start, end)
        print(f"[client] Fetched {len(fetched)} transactions", flush=True)
        return fetched

    def _deduplicate(self, fetched, start, end):
        existing = []
        if self.dedup_enabled and self.existing_provider is not None:
            window_start = start - timedelta(days=self.overlap_days)
            try:
                existing = list(self.existing_provider(window_start, end))
            except Exception as e:
                print(f"[client] WARNING: Could not load existing transactions: {e}", flush=True)
                existing = []
        return reconcile(fetched, existing)

    def cleanup(self) -> None:
        self._close_session()
        if self.state == ClientState.AUTHENTICATED:
            self.state = ClientState.DONE
        elif self.state in (ClientState.AUTHENTICATING, ClientState.RETRIEVING):
            self.state = ClientState.FAILED

    def _close_session(self) -> None:
        for detach in self._detach:
            try:
                detach()
            except Exception as e:
                print(f"[client] WARNING: could not remove listener: {e}", flush=True)
        self._detach = []
        if self.session is not None:
            print("[client] Closing browser...", flush=True)
            try:
                self.session.close()
            finally:
                self.session = None
