"""
Browser capability used by the login and retrieval code.

Everything above this module talks to a BrowserSession; PlaywrightSession is
the real implementation, tests substitute an in-memory one.
"""

import threading
import time

from playwright.sync_api import sync_playwright, Error as PlaywrightError, TimeoutError as PlaywrightTimeout

import shb_config
from shb_models import AuthMode, OperationCancelled


class CancelToken:
    """Lets another thread abort a running login or fetch."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()


class NetworkResponse:
    """The parts of an intercepted response the parsers look at."""

    def __init__(self, url: str, status: int, content_type: str = "", body_reader=None):
        self.url = url
        self.status = status
        self.content_type = content_type or ""
        self._body_reader = body_reader
        self._body = None

    def text(self) -> str:
        if self._body is None:
            self._body = self._body_reader() if self._body_reader else ""
        return self._body

    def __repr__(self):
        return f"NetworkResponse({self.status} {self.url})"


class BrowserSession:
    """Interface of one controllable browser tab.

    on_response/on_navigation return a callable that removes the listener.
    wait() is the only place time passes; implementations must keep
    delivering events while waiting.
    """

    cancel_token: CancelToken | None = None

    @property
    def url(self) -> str:
        raise NotImplementedError

    def navigate(self, url: str, timeout: float = 30) -> None:
        raise NotImplementedError

    def wait_for(self, selector: str, timeout: float, state: str = "visible") -> bool:
        raise NotImplementedError

    def click(self, selector: str, timeout: float = shb_config.CLICK_TIMEOUT, force: bool = False) -> None:
        raise NotImplementedError

    def fill(self, selector: str, value: str) -> None:
        raise NotImplementedError

    def evaluate(self, script: str, arg=None):
        raise NotImplementedError

    def content(self) -> str:
        raise NotImplementedError

    def cookies(self) -> list[dict]:
        raise NotImplementedError

    def on_response(self, callback):
        raise NotImplementedError

    def on_navigation(self, callback):
        raise NotImplementedError

    def wait(self, seconds: float) -> None:
        raise NotImplementedError

    def now(self) -> float:
        return time.monotonic()

    def close(self) -> None:
        raise NotImplementedError

    def check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.check()


class PlaywrightSession(BrowserSession):
    def __init__(self, playwright, browser, context, page, cancel_token: CancelToken | None = None):
        self._playwright = playwright
        self._browser = browser
        self._context = context
        self._page = page
        self.cancel_token = cancel_token
        self._closed = False

    @property
    def url(self) -> str:
        return self._page.url

    def navigate(self, url: str, timeout: float = 30) -> None:
        self.check_cancelled()
        try:
            self._page.goto(url, wait_until="domcontentloaded", timeout=int(timeout * 1000))
        except PlaywrightError as e:
            # SPA redirects sometimes abort the initial document load
            print(f"[browser] WARNING: navigation to {url} reported: {e}", flush=True)
        self.check_cancelled()

    def wait_for(self, selector: str, timeout: float, state: str = "visible") -> bool:
        self.check_cancelled()
        try:
            self._page.locator(selector).first.wait_for(timeout=int(timeout * 1000), state=state)
            return True
        except PlaywrightTimeout:
            return False
        finally:
            self.check_cancelled()

    def click(self, selector: str, timeout: float = shb_config.CLICK_TIMEOUT, force: bool = False) -> None:
        self.check_cancelled()
        self._page.locator(selector).first.click(timeout=int(timeout * 1000), force=force)

    def fill(self, selector: str, value: str) -> None:
        self.check_cancelled()
        self._page.locator(selector).first.fill(value)

    def evaluate(self, script: str, arg=None):
        self.check_cancelled()
        if arg is None:
            return self._page.evaluate(script)
        return self._page.evaluate(script, arg)

    def content(self) -> str:
        self.check_cancelled()
        return self._page.content()

    def cookies(self) -> list[dict]:
        return self._context.cookies()

    def on_response(self, callback):
        def handler(response):
            content_type = response.headers.get("content-type", "")
            callback(NetworkResponse(response.url, response.status, content_type, response.text))

        self._page.on("response", handler)
        return lambda: self._page.remove_listener("response", handler)

    def on_navigation(self, callback):
        def handler(frame):
            if frame == self._page.main_frame:
                callback(frame.url)

        self._page.on("framenavigated", handler)
        return lambda: self._page.remove_listener("framenavigated", handler)

    def wait(self, seconds: float) -> None:
        # wait_for_timeout keeps dispatching page events; slice it so a
        # cancel request is noticed within half a second
        deadline = time.monotonic() + max(seconds, 0)
        while True:
            self.check_cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._page.wait_for_timeout(int(min(remaining, 0.5) * 1000))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for step in (self._context.close, self._browser.close, self._playwright.stop):
            try:
                step()
            except Exception as e:
                print(f"[browser] WARNING: teardown step failed: {e}", flush=True)


def launch_session(headless: bool = True, mode: AuthMode | None = None,
                   cancel_token: CancelToken | None = None) -> PlaywrightSession:
    """Start Chromium with a fresh context. Same-device logins get a phone profile."""
    playwright = sync_playwright().start()
    try:
        browser = playwright.chromium.launch(headless=headless)
        options = {"locale": "sv-SE", "viewport": shb_config.DESKTOP_VIEWPORT}
        if mode == AuthMode.SAME_DEVICE:
            options.update(
                viewport=shb_config.MOBILE_VIEWPORT,
                user_agent=shb_config.MOBILE_USER_AGENT,
                is_mobile=True,
                has_touch=True,
            )
        context = browser.new_context(**options)
        page = context.new_page()
    except Exception:
        playwright.stop()
        raise
    print(f"[browser] Started Chromium (headless={headless}, mode={mode.value if mode else 'unset'})", flush=True)
    return PlaywrightSession(playwright, browser, context, page, cancel_token)
