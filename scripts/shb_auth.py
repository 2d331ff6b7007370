"""
Mobile BankID login for Handelsbanken.

The bank's login page polls its own backend while the user approves in the
BankID app. We never call those endpoints ourselves: TokenStateExtractor
listens to the responses the page receives, and SessionSuccessDetector
watches navigations and the DOM until the portal shows up.
"""

import json
import re
from urllib.parse import quote

import shb_config
from shb_config import mask_token
from shb_models import (
    AuthMode,
    AuthPhase,
    AuthTimeoutError,
    AuthenticationError,
    AuthenticationState,
    OperationCancelled,
)

EVENT_QR_TOKEN = "qr-token-updated"
EVENT_SAME_DEVICE_TOKEN = "same-device-token-available"
EVENT_AUTH_EXPIRED = "auth-expired"
EVENT_AUTH_STATUS = "auth-status"

QR_EXPIRED_MESSAGE = "QR code expired - please try again"

RESULT_PHASES = {
    "NO_CLIENT_STARTED": AuthPhase.AWAITING_SCAN,
    "IN_PROGRESS": AuthPhase.IN_PROGRESS,
    "QR_EXPIRED": AuthPhase.EXPIRED,
}

IDENTITY_INPUT_SELECTORS = (
    '[data-testid="PersonalIdTypeInput__input"]',
    'input#userId',
)
IDENTITY_INPUT_TIMEOUT = 15

MODE_TRIGGER_SELECTORS = {
    AuthMode.SAME_DEVICE: (
        'button[data-test-id="MBIDStartStage__loginButtonSameDevice"]',
        'button[data-testid="MBIDStartStage__loginButtonSameDevice"]',
    ),
    AuthMode.OTHER_DEVICE: (
        'button[data-test-id="MBIDStartStage__otherDeviceButton"]',
        'button[data-testid="MBIDStartStage__otherDeviceButton"]',
    ),
}

COOKIE_TITLE = 'h1:has-text("Cookies på Handelsbanken")'
COOKIE_TITLE_TEXT = 'text="Cookies på Handelsbanken"'
COOKIE_ACCEPT_NECESSARY = 'button:has-text("Godkänn nödvändiga")'

COOKIE_JS_CLICK = """() => {
    const buttons = Array.from(document.querySelectorAll('button'));
    const necessary = buttons.find(b => (b.textContent || '').includes('Godkänn nödvändiga'));
    if (necessary) { necessary.click(); return true; }
    const any = buttons.find(b => (b.textContent || '').includes('Godkänn'));
    if (any) { any.click(); return true; }
    return false;
}"""

LIST_BUTTONS_SCRIPT = """() => Array.from(document.querySelectorAll('button')).map((btn, idx) => ({
    index: idx,
    text: (btn.textContent || '').trim(),
    dataTestId: btn.getAttribute('data-testid') || 'none',
    dataTestIdAlt: btn.getAttribute('data-test-id') || 'none',
    visible: btn.offsetParent !== null
}))"""

# Elements that only exist once the portal is loaded
LOGGED_IN_PROBE = """() => {
    const logout = document.querySelectorAll('a[href*="logout"]');
    const accounts = document.querySelectorAll('[class*="account"],[class*="balance"],[class*="overview"]');
    const greeting = document.querySelectorAll('[class*="welcome"],[class*="greeting"]');
    return logout.length > 0 || accounts.length > 0 || greeting.length > 0;
}"""

AUTHENTICATED_URL_SEGMENTS = ("/privat", "/dashboard", "/overview", "/account", "/welcome")
LOGIN_URL_MARKERS = ("/login", "/logon", "mbidqr")


class AuthEvents:
    """Subscription point for login progress.

    Callbacks receive a single payload (a token, a message or an AuthPhase).
    A failing callback is logged and never reaches the login flow.
    """

    KINDS = (EVENT_QR_TOKEN, EVENT_SAME_DEVICE_TOKEN, EVENT_AUTH_EXPIRED, EVENT_AUTH_STATUS)

    def __init__(self):
        self._subscribers = {kind: [] for kind in self.KINDS}

    def subscribe(self, kind: str, callback):
        if kind not in self._subscribers:
            raise ValueError(f"Unknown event kind: {kind}")
        self._subscribers[kind].append(callback)

        def unsubscribe():
            if callback in self._subscribers[kind]:
                self._subscribers[kind].remove(callback)

        return unsubscribe

    def publish(self, kind: str, payload) -> None:
        for callback in list(self._subscribers[kind]):
            try:
                callback(payload)
            except Exception as e:
                print(f"[auth] WARNING: {kind} observer failed: {e}", flush=True)


def apply_update(state: AuthenticationState, events: AuthEvents, *, qr_token=None,
                 auto_start_token=None, phase=None, expired_message=None) -> list[str]:
    """The only writer of AuthenticationState. Returns the events published.

    A QR token equal to the stored one is ignored; the auto-start token is
    kept from the first response that carries one.
    """
    published = []
    with state.lock:
        if phase is not None and phase != state.phase:
            state.phase = phase
            events.publish(EVENT_AUTH_STATUS, phase)
            published.append(EVENT_AUTH_STATUS)

        if expired_message:
            print(f"[auth] {expired_message}", flush=True)
            events.publish(EVENT_AUTH_EXPIRED, expired_message)
            published.append(EVENT_AUTH_EXPIRED)

        if qr_token and qr_token != state.qr_token:
            state.qr_token = qr_token
            print(f"[auth] QR token updated: {mask_token(qr_token)}", flush=True)
            events.publish(EVENT_QR_TOKEN, qr_token)
            published.append(EVENT_QR_TOKEN)

        if auto_start_token and not state.auto_start_token:
            state.auto_start_token = auto_start_token
            print(f"[auth] Found autoStartToken: {mask_token(auto_start_token)}", flush=True)
            events.publish(EVENT_SAME_DEVICE_TOKEN, auto_start_token)
            published.append(EVENT_SAME_DEVICE_TOKEN)
    return published


def build_same_device_link(token: str, callback_url: str | None = None, scheme: str = "https") -> str:
    """Deep link that hands the login over to the BankID app on this device."""
    base = shb_config.BANKID_APP_URL if scheme == "https" else shb_config.BANKID_SCHEME_URL
    redirect = _encode_uri_component(callback_url) if callback_url else "null"
    return f"{base}?autostarttoken={_encode_uri_component(token)}&redirect={redirect}"


def _encode_uri_component(value: str) -> str:
    return quote(value, safe="-_.!~*'()")


def read_json_body(response) -> dict | None:
    """JSON object from a captured response, or None if it is anything else."""
    if "json" not in (response.content_type or "").lower():
        return None
    try:
        data = json.loads(response.text())
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class TokenStateExtractor:
    """Feeds the BankID init/authenticate responses into AuthenticationState."""

    def __init__(self, state: AuthenticationState, events: AuthEvents):
        self.state = state
        self.events = events
        self.session_id = None

    def attach(self, session):
        return session.on_response(self.handle_response)

    def handle_response(self, response) -> None:
        url = response.url
        try:
            if shb_config.ENDPOINT_INIT in url:
                self._handle_init(response)
            elif shb_config.ENDPOINT_POLL in url:
                self._handle_poll(response)
        except OperationCancelled:
            raise
        except Exception as e:
            print(f"[network] Error processing {url}: {e}", flush=True)

    def _handle_init(self, response) -> None:
        data = read_json_body(response)
        if data is None:
            if shb_config.DEBUG_ENABLED:
                print(f"[network] init response is not JSON ({response.content_type})", flush=True)
            return

        links = data.get("_links") or {}
        href = (links.get("authenticate") or {}).get("href") if isinstance(links, dict) else None
        if isinstance(href, str):
            m = re.search(r"sessionId=([^&]+)", href)
            if m:
                self.session_id = m.group(1)
                print(f"[network] BankID session: {mask_token(self.session_id)}", flush=True)

        qr_token = _token(data, "qrStartToken")
        auto_start = _token(data, "autoStartToken")
        if not qr_token and not auto_start:
            print(f"[network] WARNING: init response without tokens (keys: {', '.join(data.keys())})", flush=True)
        apply_update(self.state, self.events, qr_token=qr_token, auto_start_token=auto_start)

    def _handle_poll(self, response) -> None:
        data = read_json_body(response)
        if data is None:
            return

        result = data.get("result")
        phase = RESULT_PHASES.get(result)
        if result == "IN_PROGRESS" and self.state.phase != AuthPhase.IN_PROGRESS:
            print("[auth] Authentication in progress - waiting for approval in the BankID app", flush=True)
        elif phase is None and shb_config.DEBUG_ENABLED:
            print(f"[network] Unknown poll result: {result}", flush=True)
        if shb_config.DEBUG_ENABLED and data.get("iterationSleepTime"):
            print(f"[network] Iteration sleep time: {data['iterationSleepTime']}ms", flush=True)

        apply_update(
            self.state,
            self.events,
            phase=phase,
            expired_message=QR_EXPIRED_MESSAGE if result == "QR_EXPIRED" else None,
            qr_token=_token(data, "qrStartToken"),
            auto_start_token=_token(data, "autoStartToken"),
        )


def _token(data: dict, key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def looks_like_login_url(url: str) -> bool:
    if not url or url == "about:blank":
        return True
    return any(marker in url for marker in LOGIN_URL_MARKERS)


def is_candidate_url(url: str) -> bool:
    """True when a navigation target may be the logged-in portal."""
    if any(segment in url for segment in AUTHENTICATED_URL_SEGMENTS):
        return True
    return not looks_like_login_url(url)


class SessionSuccessDetector:
    """Decides when the BankID login has gone through.

    await_success() returns "navigation", "poll" or "timeout" and only ever
    runs once; later calls return the first answer.
    """

    def __init__(self, session, timeout: float = shb_config.DEFAULT_LOGIN_TIMEOUT,
                 poll_interval: float = shb_config.SUCCESS_POLL_INTERVAL,
                 settle_delay: float = shb_config.NAVIGATION_SETTLE_DELAY, tick: float = 0.5):
        self.session = session
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.tick = tick
        self.result = None
        self._pending = []

    def _on_navigation(self, url: str) -> None:
        print(f"[detector] Main frame navigated to: {url}", flush=True)
        if is_candidate_url(url):
            self._pending.append((self.session.now() + self.settle_delay, url))

    def probe(self) -> bool:
        try:
            return bool(self.session.evaluate(LOGGED_IN_PROBE))
        except OperationCancelled:
            raise
        except Exception as e:
            # page is mid-navigation
            if shb_config.DEBUG_ENABLED:
                print(f"[detector] probe failed: {e}", flush=True)
            return False

    def await_success(self) -> str:
        if self.result is not None:
            return self.result

        session = self.session
        start = session.now()
        deadline = start + self.timeout
        next_poll = start + self.poll_interval
        unsubscribe = session.on_navigation(self._on_navigation)
        try:
            while True:
                session.check_cancelled()
                now = session.now()

                due = [p for p in self._pending if p[0] <= now]
                if due:
                    self._pending = [p for p in self._pending if p[0] > now]
                    for _, url in due:
                        if self.probe():
                            print(f"[detector] Logged in (navigation to {url})", flush=True)
                            self.result = "navigation"
                            return self.result

                if now >= next_poll:
                    next_poll = now + self.poll_interval
                    if self.probe():
                        print("[detector] Logged in (periodic check)", flush=True)
                        self.result = "poll"
                        return self.result

                if now >= deadline:
                    print(f"[detector] No login detected within {int(self.timeout)}s", flush=True)
                    self.result = "timeout"
                    return self.result

                session.wait(min(self.tick, max(deadline - now, 0)))
        finally:
            unsubscribe()
            self._pending = []


def dismiss_cookie_consent(session) -> bool:
    """Accept only the necessary cookies if the consent dialog is showing."""
    try:
        if not session.wait_for(COOKIE_TITLE, timeout=5):
            if not session.wait_for(COOKIE_TITLE_TEXT, timeout=2):
                print("[login] No cookie dialog", flush=True)
                return False
        print("[login] Cookie dialog found, accepting necessary cookies...", flush=True)
        try:
            session.wait_for(COOKIE_ACCEPT_NECESSARY, timeout=3)
            session.click(COOKIE_ACCEPT_NECESSARY, timeout=3, force=True)
        except OperationCancelled:
            raise
        except Exception as e:
            print(f"[login] Cookie button click failed: {e}", flush=True)
        session.wait(2)

        if session.wait_for(COOKIE_TITLE, timeout=1):
            print("[login] Cookie dialog still visible, clicking via JavaScript", flush=True)
            session.evaluate(COOKIE_JS_CLICK)
            session.wait(2)
        return True
    except OperationCancelled:
        raise
    except Exception as e:
        print(f"[login] Error handling cookie consent: {e}", flush=True)
        return False


class AuthController:
    """Drives the login page for one attempt.

    login() returns False when the page never offers the personal id field;
    a missing device-mode button raises AuthenticationError. When no login is
    detected in time, AuthTimeoutError is raised unless permissive_timeout is
    set, in which case the attempt is assumed to have worked.
    """

    def __init__(self, session, mode: AuthMode | None = None, events: AuthEvents | None = None,
                 timeout: float = shb_config.DEFAULT_LOGIN_TIMEOUT, permissive_timeout: bool = False,
                 poll_interval: float = shb_config.SUCCESS_POLL_INTERVAL):
        self.session = session
        self.events = events or AuthEvents()
        self.state = AuthenticationState(mode=AuthMode.parse(mode) if mode else AuthMode.OTHER_DEVICE)
        self.timeout = timeout
        self.permissive_timeout = permissive_timeout
        self.poll_interval = poll_interval
        self.extractor = TokenStateExtractor(self.state, self.events)

    @property
    def mode(self) -> AuthMode:
        return self.state.mode

    def login(self, identity: str) -> bool:
        session = self.session
        if "logon/se/priv/sv/mbidqr" not in (session.url or ""):
            print(f"[login] Navigating to {shb_config.URL_LOGIN}...", flush=True)
            session.navigate(shb_config.URL_LOGIN)
        else:
            print("[login] Already on login page", flush=True)

        dismiss_cookie_consent(session)

        id_selector = None
        for selector in IDENTITY_INPUT_SELECTORS:
            if session.wait_for(selector, timeout=IDENTITY_INPUT_TIMEOUT):
                id_selector = selector
                break
        if id_selector is None:
            print("[login] ERROR: Personal id field not found on login page", flush=True)
            self._set_phase(AuthPhase.FAILED)
            return False

        print("[login] Filling in personnummer...", flush=True)
        session.fill(id_selector, identity)
        session.wait(0.1)

        # Listen before clicking; the click itself triggers the init call
        detach = self.extractor.attach(session)
        try:
            trigger = self._find_mode_trigger()
            print(f"[login] Auth mode: {self.mode.value}, clicking {trigger}", flush=True)
            try:
                session.click(trigger, timeout=shb_config.CLICK_TIMEOUT)
            except OperationCancelled:
                raise
            except Exception as e:
                self._set_phase(AuthPhase.FAILED)
                raise AuthenticationError(f"Failed to click {self.mode.value} button: {e}")
            session.wait(2 if self.mode == AuthMode.SAME_DEVICE else 1)

            print("[login] Waiting for BankID approval...", flush=True)
            detector = SessionSuccessDetector(session, timeout=self.timeout, poll_interval=self.poll_interval)
            signal = detector.await_success()
        finally:
            detach()

        if signal == "timeout":
            if not self.permissive_timeout:
                self._set_phase(AuthPhase.FAILED)
                raise AuthTimeoutError(f"BankID login not completed within {int(self.timeout)}s")
            print("[login] WARNING: Login detection timed out; assuming authenticated", flush=True)

        self._set_phase(AuthPhase.AUTHENTICATED)
        print("[login] BankID authentication completed", flush=True)
        return True

    def _find_mode_trigger(self) -> str:
        selectors = MODE_TRIGGER_SELECTORS[self.mode]
        # one overall budget shared by the selector variants
        per_selector = shb_config.MODE_SELECTOR_TIMEOUT / len(selectors)
        for selector in selectors:
            if self.session.wait_for(selector, timeout=per_selector, state="visible"):
                return selector

        controls = self._list_buttons()
        print(f"[login] [diagnostic] {self.mode.value} button not found, {len(controls)} buttons on page:", flush=True)
        for btn in controls:
            print(f"[login] [diagnostic] Button {btn.get('index')}: text=\"{btn.get('text')}\", "
                  f"data-testid=\"{btn.get('dataTestId')}\", data-test-id=\"{btn.get('dataTestIdAlt')}\", "
                  f"visible={btn.get('visible')}", flush=True)
        self._set_phase(AuthPhase.FAILED)
        raise AuthenticationError(
            f"{self.mode.value} button not found with selectors: {', '.join(selectors)}",
            controls=controls,
        )

    def _list_buttons(self) -> list[dict]:
        try:
            found = self.session.evaluate(LIST_BUTTONS_SCRIPT)
        except OperationCancelled:
            raise
        except Exception as e:
            print(f"[login] [diagnostic] Could not list buttons: {e}", flush=True)
            return []
        return [b for b in found or [] if isinstance(b, dict)]

    def _set_phase(self, phase: AuthPhase) -> None:
        apply_update(self.state, self.events, phase=phase)
