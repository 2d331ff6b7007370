"""Pytest fixtures: an in-memory browser session and HTTP client"""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from shb_auth import IDENTITY_INPUT_SELECTORS, MODE_TRIGGER_SELECTORS
from shb_browser import BrowserSession, NetworkResponse
from shb_models import AuthMode


class FakeSession(BrowserSession):
    """BrowserSession with a virtual clock.

    wait() and failed wait_for() calls advance the clock and run whatever
    was scheduled in between, so timeouts cost no real time.
    """

    def __init__(self, url="about:blank", present=(), html="", logged_in_at=None):
        self._url = url
        self.clock = 0.0
        self.present = set(present)
        self.html = html
        self.logged_in_at = logged_in_at
        self.buttons = []
        self.window_data = {}
        self.cookie_jar = [{"name": "SHBSESSION", "value": "cookie-1"}]
        self.on_click = {}
        self.click_errors = {}
        self.clicks = []
        self.fills = {}
        self.navigations = []
        self.evaluated = []
        self.probes = 0
        self.closed = False
        self.cancel_token = None
        self._scheduled = []
        self._response_listeners = []
        self._navigation_listeners = []

    # --- scripting helpers ---

    def schedule(self, at: float, fn) -> None:
        self._scheduled.append((at, fn))
        self._scheduled.sort(key=lambda item: item[0])

    def emit_response(self, url, data=None, status=200, content_type="application/json", text=None):
        body = text if text is not None else json.dumps(data)
        response = NetworkResponse(url, status, content_type, lambda: body)
        for callback in list(self._response_listeners):
            callback(response)

    def emit_navigation(self, url):
        self._url = url
        for callback in list(self._navigation_listeners):
            callback(url)

    def _advance(self, seconds):
        target = self.clock + max(seconds, 0)
        while self._scheduled and self._scheduled[0][0] <= target:
            at, fn = self._scheduled.pop(0)
            self.clock = max(self.clock, at)
            fn()
        self.clock = target

    # --- BrowserSession ---

    @property
    def url(self):
        return self._url

    def navigate(self, url, timeout=30):
        self.check_cancelled()
        self.navigations.append(url)
        self.emit_navigation(url)

    def wait_for(self, selector, timeout, state="visible"):
        self.check_cancelled()
        if selector in self.present:
            return True
        self._advance(timeout)
        return selector in self.present

    def click(self, selector, timeout=5, force=False):
        self.check_cancelled()
        if selector in self.click_errors:
            raise self.click_errors[selector]
        self.clicks.append(selector)
        hook = self.on_click.get(selector)
        if hook:
            hook()

    def fill(self, selector, value):
        self.fills[selector] = value

    def evaluate(self, script, arg=None):
        self.check_cancelled()
        self.evaluated.append(script)
        if 'a[href*="logout"]' in script:
            self.probes += 1
            return self.logged_in_at is not None and self.clock >= self.logged_in_at
        if "querySelectorAll('button')).map" in script:
            return self.buttons
        if "navigator.userAgent" in script:
            return "FakeBrowser/1.0"
        if "window.appData" in script:
            return self.window_data
        return None

    def content(self):
        return self.html

    def cookies(self):
        return list(self.cookie_jar)

    def on_response(self, callback):
        self._response_listeners.append(callback)
        return lambda: self._response_listeners.remove(callback)

    def on_navigation(self, callback):
        self._navigation_listeners.append(callback)
        return lambda: self._navigation_listeners.remove(callback)

    def wait(self, seconds):
        self.check_cancelled()
        self._advance(seconds)
        self.check_cancelled()

    def now(self):
        return self.clock

    def close(self):
        self.closed = True


class FakeHttpResponse:
    def __init__(self, status_code=200, data=None, text=None, content_type="application/json; charset=utf-8"):
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(data)
        self.headers = {"content-type": content_type}


class FakeHttp:
    """Stands in for the requests module; routes match on URL substrings."""

    def __init__(self):
        self.routes = []
        self.calls = []

    def route(self, method, fragment, response):
        self.routes.append((method, fragment, response))

    def _dispatch(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        for m, fragment, response in self.routes:
            if m == method and fragment in url:
                return response
        return FakeHttpResponse(404, text="not found", content_type="text/html")

    def get(self, url, **kwargs):
        return self._dispatch("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._dispatch("POST", url, **kwargs)


def login_page_session(mode=AuthMode.OTHER_DEVICE, logged_in_at=8.0, qr_token="qr-token-1"):
    """Login page that shows the id field and mode button; clicking the
    button makes the page call the BankID init endpoint."""
    session = FakeSession(
        url="https://secure.handelsbanken.se/logon/se/priv/sv/mbidqr/",
        present={IDENTITY_INPUT_SELECTORS[0], MODE_TRIGGER_SELECTORS[mode][0]},
        logged_in_at=logged_in_at,
    )

    def start_bankid():
        session.emit_response(
            "https://secure.handelsbanken.se/mluri/aa/privmbidqrwebse/init/1.0",
            {
                "qrStartToken": qr_token,
                "autoStartToken": "auto-token-1",
                "_links": {"authenticate": {"href": "/mluri/aa/privmbidqrwebse/authenticate/1.0?sessionId=sess-42"}},
            },
        )
        if logged_in_at is not None:
            session.schedule(logged_in_at, lambda: session.emit_navigation(
                "https://secure.handelsbanken.se/se/private/sv/overview"))

    session.on_click[MODE_TRIGGER_SELECTORS[mode][0]] = start_bankid
    return session


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def accounts_payload():
    return {
        "agreements": [
            {
                "_links": {
                    "athena_transactions": {
                        "href": "/accounts_and_cards/account_transactions?account=840716451~INLÅ~N&from=startPage",
                    },
                },
                "identifier": {"value": "840 716 451", "valueRaw": "840716451"},
                "name": "Lönekonto",
                "isoCurrencyCode": "SEK",
            },
            {
                "_links": {
                    "transactions": {
                        "href": "#!/modules/x?url=/bb/seip/servlet/UASipko?appName=ipko&Konto=123456789%7EINL%C5%7EA&spiNav=1",
                    },
                },
                "identifier": {"value": "123 456 789", "valueRaw": "123456789"},
                "name": "Sparkonto",
            },
        ]
    }


@pytest.fixture
def transactions_payload():
    return {
        "inlaAccountTransactions": [
            {
                "transactionDate": "2024-01-05",
                "transactionAmount": "-50.00",
                "transactionText": "ACME STORE AB",
                "serialNumber": "17",
                "eventTime": "101500",
            },
            {
                "transactionDate": "2024-01-06",
                "transactionAmount": 1422.3,
                "transactionText": "Prel LÖN",
                "serialNumber": "18",
                "eventTime": "080000",
            },
        ]
    }
