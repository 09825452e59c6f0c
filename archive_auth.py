"""Archive login: one interface, browser and plain-HTTP implementations.

The archive resists automation, so logging in is a layered sequence rather
than a single POST. ``AuthSessionManager`` tries each ``LoginStrategy`` in
order and falls through to the next one only when a strategy reports that it
cannot run in this environment (``BrowserUnavailableError``). Both
strategies share ``classify_login_outcome`` so success and failure mean the
same thing regardless of how the form was submitted.
"""

from __future__ import annotations

import logging
import os
import random
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol, Sequence
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from errors import (
    AmbiguousTimeoutError,
    AuthError,
    BrowserUnavailableError,
    InvalidCredentialsError,
    LoginFormNotFoundError,
    SessionNotFoundError,
    SubmissionFailedError,
)
from models import AuthSession

ARCHIVE_BASE_URL = os.getenv("ARCHIVE_BASE_URL", "https://archiveofourown.org").rstrip("/")
NAV_TIMEOUT_MS = int(os.getenv("ARCHIVE_NAV_TIMEOUT_MS", "45000"))
REQUEST_TIMEOUT_SECONDS = int(os.getenv("ARCHIVE_REQUEST_TIMEOUT_SECONDS", "30"))
LOGIN_ATTEMPTS = int(os.getenv("ARCHIVE_LOGIN_ATTEMPTS", "2"))
BROWSER_LOGIN_ENABLED = os.getenv("ARCHIVE_BROWSER_LOGIN", "1") != "0"

LOGIN_PATH = "/users/login"
SESSION_COOKIE_NAME = "_otwarchive_session"
AUTHENTICATED_SENTINEL = "authenticated"
SUBMIT_DELAY_RANGE_SECONDS = (0.5, 1.5)
CLICK_TIMEOUT_MS = 5000
BUTTON_SCAN_TIMEOUT_MS = 5000
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--no-first-run",
    "--disable-gpu",
]

LOGIN_FIELD_SELECTORS = ("#user_login", 'input[name="user[login]"]', 'input[type="text"]')
SECRET_FIELD_SELECTORS = ("#user_password", 'input[name="user[password]"]', 'input[type="password"]')
SUBMIT_SELECTORS = (
    'input[name="commit"]',
    'button[name="commit"]',
    'input[type="submit"]',
    'button[type="submit"]',
    'input[value*="Log"]',
    'input[value*="Sign"]',
    ".submit",
    ".btn-primary",
)
ERROR_BANNER_SELECTORS = (".flash.error", ".notice.error", ".alert-error", ".message.error", ".error")
LOGOUT_SELECTORS = ('a[href*="logout"]', 'a[href*="signout"]', 'form[action*="logout"]')

_NATIVE_SUBMIT_JS = """() => {
  const secret = document.querySelector('input[type="password"]');
  const form = (secret && secret.form)
    || document.querySelector('form[action*="login"]')
    || document.querySelector('form');
  if (!form) return false;
  form.submit();
  return true;
}"""

LOGGER = logging.getLogger(__name__)


class LoginStrategy(Protocol):
    name: str

    def login(self, identity: str, secret: str) -> AuthSession:
        ...


@dataclass(frozen=True, slots=True)
class LoginForm:
    action: str
    login_field: str
    secret_field: str
    hidden_fields: dict[str, str] = field(default_factory=dict)

    @property
    def authenticity_token(self) -> str:
        return self.hidden_fields.get("authenticity_token", "")


# ---------------------------------------------------------------------------
# Shared page analysis
# ---------------------------------------------------------------------------

def classify_login_outcome(
    identity: str,
    url: str,
    html: str,
    cookies: dict[str, str],
    *,
    transitioned: bool = True,
) -> str:
    """Return the session token for a successful login or raise AuthError.

    Failure: still on the login path with an error banner or the login form.
    Success: redirected to the identity's profile, a session cookie is set,
    or a logout affordance is on the page. Without a transition and without
    any success signal the outcome is ambiguous, which is retryable.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    path = urlparse(url).path

    if "/login" in path:
        banner = _first_text(soup, ERROR_BANNER_SELECTORS)
        if banner:
            raise InvalidCredentialsError(banner)
        if _find_first(soup, SECRET_FIELD_SELECTORS) is not None:
            if not transitioned:
                raise AmbiguousTimeoutError("Login form still present and the page never moved on")
            raise InvalidCredentialsError("Still on login page - authentication failed")

    profile_redirect = path.lower().startswith(f"/users/{identity.lower()}")
    logout_affordance = _find_first(soup, LOGOUT_SELECTORS) is not None
    session_cookie = cookies.get(SESSION_COOKIE_NAME, "")

    if session_cookie or profile_redirect or logout_affordance:
        LOGGER.info(
            "Login outcome: success (cookie=%s profile_redirect=%s logout_link=%s)",
            bool(session_cookie),
            profile_redirect,
            logout_affordance,
        )
        return session_cookie or AUTHENTICATED_SENTINEL

    if not transitioned:
        raise AmbiguousTimeoutError("No page transition and no success signal before timeout")
    raise SessionNotFoundError(f"No session signal found after login (url={url})")


def parse_login_form(html: str, page_url: str) -> LoginForm:
    """Locate the credential form, its field names and hidden inputs."""
    soup = BeautifulSoup(html or "", "html.parser")
    secret_input = _find_first(soup, SECRET_FIELD_SELECTORS)
    form = secret_input.find_parent("form") if secret_input is not None else None
    if form is None:
        raise LoginFormNotFoundError("Login form not found")

    login_input = _find_first(form, LOGIN_FIELD_SELECTORS)
    if login_input is None or not login_input.get("name") or not secret_input.get("name"):
        raise LoginFormNotFoundError("Login form is missing credential fields")

    hidden = {
        inp["name"]: inp.get("value", "")
        for inp in form.select('input[type="hidden"][name]')
    }
    if not hidden.get("authenticity_token"):
        token = extract_authenticity_token(html)
        if token:
            hidden["authenticity_token"] = token
    submit = form.select_one('input[type="submit"][name], button[type="submit"][name]')
    if submit is not None:
        hidden.setdefault(submit["name"], submit.get("value", ""))

    return LoginForm(
        action=urljoin(page_url, form.get("action") or LOGIN_PATH),
        login_field=login_input["name"],
        secret_field=secret_input["name"],
        hidden_fields=hidden,
    )


def extract_authenticity_token(html: str) -> str:
    soup = BeautifulSoup(html or "", "html.parser")
    field_el = soup.select_one('input[name="authenticity_token"]')
    if field_el is not None and field_el.get("value"):
        return field_el["value"]
    meta = soup.select_one('meta[name="csrf-token"]')
    return meta.get("content", "") if meta is not None else ""


def _find_first(root: Any, selectors: Sequence[str]) -> Any:
    for selector in selectors:
        found = root.select_one(selector)
        if found is not None:
            return found
    return None


def _first_text(root: Any, selectors: Sequence[str]) -> str:
    for selector in selectors:
        for el in root.select(selector):
            text = el.get_text(" ", strip=True)
            if text:
                return text
    return ""


def _pause_before_submit() -> None:
    """Randomized human-ish pause; instant submissions trip bot checks."""
    time.sleep(random.uniform(*SUBMIT_DELAY_RANGE_SECONDS))


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class BrowserLoginStrategy:
    """Drive a headless Chromium through the login page with Playwright."""

    name = "browser"

    def __init__(
        self,
        base_url: str = ARCHIVE_BASE_URL,
        nav_timeout_ms: int = NAV_TIMEOUT_MS,
        headless: bool = True,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.nav_timeout_ms = nav_timeout_ms
        self.headless = headless

    def login(self, identity: str, secret: str) -> AuthSession:
        with _launch_browser(self.headless) as browser:
            try:
                context = browser.new_context(user_agent=USER_AGENT)
            except PlaywrightError as exc:
                raise BrowserUnavailableError(f"Could not open a browser context: {exc}") from exc
            try:
                return self.login_on_page(context.new_page(), identity, secret)
            finally:
                context.close()

    def login_on_page(self, page: Any, identity: str, secret: str) -> AuthSession:
        """Log in on an already-open page, mapping every Playwright failure to an AuthError."""
        try:
            return self._login_on_page(page, identity, secret)
        except PlaywrightTimeoutError as exc:
            raise AmbiguousTimeoutError(f"Browser login timed out: {exc}") from exc
        except PlaywrightError as exc:
            raise SubmissionFailedError(f"Browser login failed: {exc}") from exc

    def _login_on_page(self, page: Any, identity: str, secret: str) -> AuthSession:
        login_url = f"{self.base_url}{LOGIN_PATH}"
        try:
            page.goto(login_url, wait_until="networkidle", timeout=self.nav_timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise AmbiguousTimeoutError(f"Login page did not load within {self.nav_timeout_ms}ms") from exc

        token = extract_authenticity_token(page.content())
        LOGGER.info("Browser login: loaded login page (authenticity_token=%s)", "present" if token else "absent")

        login_field = _query_first(page, LOGIN_FIELD_SELECTORS)
        secret_field = _query_first(page, SECRET_FIELD_SELECTORS)
        if login_field is None or secret_field is None:
            raise LoginFormNotFoundError("Login form not found")

        login_field.fill(identity)
        secret_field.fill(secret)
        _pause_before_submit()

        start_url = page.url
        method = self._submit(page, secret_field, start_url)
        if method is None:
            raise SubmissionFailedError("Could not submit login form")
        LOGGER.info("Browser login: submitted via %s", method)

        transitioned = method == "button-scan" or self._wait_for_transition(page, start_url, self.nav_timeout_ms)
        if not transitioned:
            LOGGER.warning("Browser login: no page transition within %sms", self.nav_timeout_ms)

        cookies = {c["name"]: c["value"] for c in page.context.cookies()}
        token_or_cookie = classify_login_outcome(
            identity, page.url, page.content(), cookies, transitioned=transitioned
        )
        return AuthSession(
            identity=identity,
            token_or_cookie=token_or_cookie,
            strategy=self.name,
            cookies=cookies,
        )

    def _submit(self, page: Any, secret_field: Any, start_url: str) -> str | None:
        """Return the name of the first submission method that worked."""
        for selector in SUBMIT_SELECTORS:
            handle = page.query_selector(selector)
            if handle is None:
                continue
            try:
                handle.click(timeout=CLICK_TIMEOUT_MS)
            except PlaywrightError as exc:
                LOGGER.debug("Browser login: click failed for selector=%s: %s", selector, exc)
                continue
            return f"click:{selector}"

        try:
            secret_field.press("Enter")
            return "enter"
        except PlaywrightError as exc:
            LOGGER.debug("Browser login: Enter key failed: %s", exc)

        try:
            if page.evaluate(_NATIVE_SUBMIT_JS):
                return "form-submit"
        except PlaywrightError as exc:
            LOGGER.debug("Browser login: native form submit failed: %s", exc)

        for handle in page.query_selector_all('button, input[type="submit"], input[type="button"]'):
            try:
                handle.click(timeout=CLICK_TIMEOUT_MS)
            except PlaywrightError:
                continue
            if self._wait_for_transition(page, start_url, BUTTON_SCAN_TIMEOUT_MS):
                return "button-scan"
        return None

    @staticmethod
    def _wait_for_transition(page: Any, start_url: str, timeout_ms: int) -> bool:
        try:
            page.wait_for_url(lambda url: url != start_url, timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return False
        return True


@contextmanager
def _launch_browser(headless: bool) -> Iterator[Any]:
    try:
        playwright = sync_playwright().start()
    except PlaywrightError as exc:
        raise BrowserUnavailableError(f"Playwright could not start: {exc}") from exc
    try:
        try:
            browser = playwright.chromium.launch(headless=headless, args=BROWSER_ARGS)
        except PlaywrightError as exc:
            raise BrowserUnavailableError(f"Could not launch browser: {exc}") from exc
        try:
            yield browser
        finally:
            browser.close()
    finally:
        playwright.stop()


def _query_first(page: Any, selectors: Sequence[str]) -> Any:
    for selector in selectors:
        handle = page.query_selector(selector)
        if handle is not None:
            return handle
    return None


class HttpLoginStrategy:
    """Three-request login without a browser: home, login page, POST."""

    name = "http"

    def __init__(
        self,
        base_url: str = ARCHIVE_BASE_URL,
        timeout_seconds: int = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def login(self, identity: str, secret: str) -> AuthSession:
        with requests.Session() as http:
            http.headers.update({"User-Agent": USER_AGENT})
            login_page = self._load_login_page(http)
            form = parse_login_form(login_page.text, login_page.url)
            LOGGER.info(
                "HTTP login: loaded login page (authenticity_token=%s)",
                "present" if form.authenticity_token else "absent",
            )

            data = {**form.hidden_fields, form.login_field: identity, form.secret_field: secret}
            _pause_before_submit()
            try:
                response = http.post(
                    form.action,
                    data=data,
                    headers={"Referer": login_page.url},
                    timeout=self.timeout_seconds,
                    allow_redirects=True,
                )
            except requests.Timeout as exc:
                raise AmbiguousTimeoutError(f"Login submission timed out: {exc}") from exc
            except requests.RequestException as exc:
                raise SubmissionFailedError(f"Login submission failed: {exc}") from exc

            if response.status_code >= 500:
                raise SubmissionFailedError(f"Login submission returned status={response.status_code}")

            cookies = http.cookies.get_dict()
            token_or_cookie = classify_login_outcome(identity, response.url, response.text, cookies)
            return AuthSession(
                identity=identity,
                token_or_cookie=token_or_cookie,
                strategy=self.name,
                cookies=cookies,
            )

    def _load_login_page(self, http: requests.Session) -> requests.Response:
        try:
            http.get(f"{self.base_url}/", timeout=self.timeout_seconds).raise_for_status()
            response = http.get(f"{self.base_url}{LOGIN_PATH}", timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.Timeout as exc:
            raise AmbiguousTimeoutError(f"Login page timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise LoginFormNotFoundError(f"Could not load login page: {exc}") from exc
        return response


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

def default_strategies() -> list[LoginStrategy]:
    strategies: list[LoginStrategy] = []
    if BROWSER_LOGIN_ENABLED:
        strategies.append(BrowserLoginStrategy())
    strategies.append(HttpLoginStrategy())
    return strategies


class AuthSessionManager:
    """Obtain an AuthSession using the first strategy that can run here."""

    def __init__(
        self,
        strategies: Sequence[LoginStrategy] | None = None,
        max_attempts: int = LOGIN_ATTEMPTS,
    ) -> None:
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.max_attempts = max(1, max_attempts)

    def authenticate(self, identity: str, secret: str) -> AuthSession:
        if not identity or not secret:
            raise InvalidCredentialsError("Both identity and secret are required")

        last_error: AuthError | None = None
        for strategy in self.strategies:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    session = strategy.login(identity, secret)
                except BrowserUnavailableError as exc:
                    last_error = exc
                    LOGGER.warning("Auth: strategy=%s unavailable, falling back: %s", strategy.name, exc)
                    break
                except AuthError as exc:
                    last_error = exc
                    if exc.retryable and attempt < self.max_attempts:
                        LOGGER.warning(
                            "Auth: strategy=%s attempt %s/%s inconclusive, retrying: %s",
                            strategy.name,
                            attempt,
                            self.max_attempts,
                            exc,
                        )
                        continue
                    LOGGER.warning(
                        "Auth: identity=%s failed via strategy=%s: %s: %s",
                        identity,
                        strategy.name,
                        type(exc).__name__,
                        exc,
                    )
                    raise

                LOGGER.info("Auth: identity=%s authenticated via strategy=%s", identity, strategy.name)
                return session

        raise last_error or SubmissionFailedError("No login strategy is available")


@contextmanager
def open_session(
    identity: str,
    secret: str,
    manager: AuthSessionManager | None = None,
) -> Iterator[AuthSession]:
    """Authenticate and guarantee the session is invalidated on exit."""
    session = (manager or AuthSessionManager()).authenticate(identity, secret)
    try:
        yield session
    finally:
        session.invalidate()
        LOGGER.info("Auth: released session for identity=%s", identity)
