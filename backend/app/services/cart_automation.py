# Overview: Stateful browser session that logs into a retailer and adds products to its cart.

"""
Cart Automation Session

One session object per process, owned by the app (see cart_jobs.py) and
shared by every cart job. A single browser context cannot multiplex
independent navigations, so every public method runs under one RLock.

STATES:
    uninitialized --initialize()--> initialized --login()--> logged in
    close() returns to uninitialized from anywhere.

SITE ADAPTER SPLIT:
- BrowserDriver: the primitive page operations (navigate, fill, click, ...).
  PlaywrightDriver drives Chromium; tests inject an in-process fake.
- RetailerProfile: the retailer's markup contract (login URL, field
  selectors, ordered add-to-cart candidates, ordered success markers).

DETECTION IS HEURISTIC:
Login success is "the post-login marker appeared". Add-to-cart success is
"a candidate button was clicked", confirmed by a success marker when one
shows up. In optimistic mode an unconfirmed click still counts as success
(reported with confirmed=False); strict mode raises instead.

TIMEOUTS:
Each operation gets a budget derived from timeout_seconds (login 2x,
add-to-cart 1.5x). Every driver call is bounded by what is left of that
budget. Exceeding it raises AutomationTimeout but leaves the session usable.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from app.time_utils import utcnow, to_utc_z



CONFIRMATION_OPTIMISTIC = "optimistic"
CONFIRMATION_STRICT = "strict"
CONFIRMATION_MODES = (CONFIRMATION_OPTIMISTIC, CONFIRMATION_STRICT)

LOGIN_BUDGET_FACTOR = 2.0
ADD_TO_CART_BUDGET_FACTOR = 1.5

# Short probe used when checking for optional elements
PROBE_TIMEOUT_MS = 1000

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

ANTI_DETECTION_ARGS = (
    "--disable-gpu",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
)


# =============================================================================
# Errors
# =============================================================================

class AutomationError(Exception):
    """Base for cart automation failures. Recorded on the request, never fatal to it."""
    kind = "AutomationError"


class NotInitialized(AutomationError):
    kind = "NotInitialized"


class NotLoggedIn(AutomationError):
    kind = "NotLoggedIn"


class CredentialsMissing(AutomationError):
    kind = "CredentialsMissing"


class LoginFailed(AutomationError):
    kind = "LoginFailed"


class ElementNotFound(AutomationError):
    kind = "ElementNotFound"


class AutomationTimeout(AutomationError):
    kind = "Timeout"


class BrowserLaunchFailed(AutomationError):
    kind = "BrowserLaunchFailed"


# =============================================================================
# Site adapter contracts
# =============================================================================

class BrowserDriver(Protocol):
    """
    Primitive page operations. Timeouts are milliseconds.

    Implementations raise AutomationTimeout when a bounded wait expires and
    AutomationError for any other driver failure.
    """

    def launch(self, *, headless: bool, user_agent: str, args: tuple[str, ...]) -> None: ...

    def close(self) -> None: ...

    def navigate(self, url: str, timeout_ms: int) -> None: ...

    def wait_for(self, selector: str, timeout_ms: int) -> None: ...

    def fill(self, selector: str, value: str, timeout_ms: int) -> None: ...

    def click(self, selector: str, timeout_ms: int) -> None: ...

    def exists(self, selector: str) -> bool: ...

    def select_option(self, selector: str, value: str, timeout_ms: int) -> None: ...

    def pause(self, ms: int) -> None: ...


@dataclass(frozen=True)
class RetailerProfile:
    """Markup contract for one retailer. Candidate lists are tried in order, first match wins."""
    name: str
    login_path: str
    identity_field: str
    continue_button: str
    secret_field: str
    submit_button: str
    post_login_marker: str
    login_error_marker: str
    page_ready: str
    quantity_selector: str
    add_to_cart_candidates: tuple[str, ...]
    success_markers: tuple[str, ...]

    def login_url(self, base_url: str) -> str:
        return base_url.rstrip("/") + self.login_path.format(base_url=base_url.rstrip("/"))


AMAZON_PROFILE = RetailerProfile(
    name="amazon",
    login_path=(
        "/ap/signin?openid.pape.max_auth_age=0"
        "&openid.return_to={base_url}%2F"
        "&openid.identity=http%3A%2F%2Fspecs.openid.net%2Fauth%2F2.0%2Fidentifier_select"
        "&openid.assoc_handle=mx_flex"
        "&openid.mode=checkid_setup"
        "&openid.claimed_id=http%3A%2F%2Fspecs.openid.net%2Fauth%2F2.0%2Fidentifier_select"
        "&openid.ns=http%3A%2F%2Fspecs.openid.net%2Fauth%2F2.0"
    ),
    identity_field="#ap_email",
    continue_button="#continue",
    secret_field="#ap_password",
    submit_button="#signInSubmit",
    post_login_marker="#nav-logo-sprites, #nav-link-accountList",
    login_error_marker="#auth-error-message-box",
    page_ready="body",
    quantity_selector='#quantity, select[name="quantity"]',
    add_to_cart_candidates=(
        "#add-to-cart-button",
        "#add-to-cart-button-ubb",
        'input[name="submit.add-to-cart"]',
        "#turbo-checkout-pyo-button",
        "#one-click-button",
    ),
    success_markers=(
        "#huc-v2-order-row-confirm-text",
        "#NATC_SMART_WAGON_CONF_MSG_SUCCESS",
        "#sw-atc-confirmation",
        "#hlb-ptc-btn",
    ),
)


@dataclass(frozen=True)
class AddToCartResult:
    clicked_selector: str
    confirmed: bool
    confirmation_selector: str | None = None

    def to_dict(self) -> dict:
        return {
            "clicked_selector": self.clicked_selector,
            "confirmed": self.confirmed,
            "confirmation_selector": self.confirmation_selector,
        }


# =============================================================================
# Playwright driver
# =============================================================================

class PlaywrightDriver:
    """
    BrowserDriver backed by playwright.sync_api (Chromium).

    The sync API is bound to the thread that started it, so a driver must
    only ever be used from one thread (the cart job worker).
    """

    def __init__(self):
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    def _translate(self, exc: Exception, what: str) -> AutomationError:
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        if isinstance(exc, PlaywrightTimeoutError):
            return AutomationTimeout(f"{what}: timed out")
        return AutomationError(f"{what}: {exc}")

    def _require_page(self):
        if self._page is None:
            raise NotInitialized("browser not initialized")
        return self._page

    def launch(self, *, headless: bool, user_agent: str, args: tuple[str, ...]) -> None:
        from playwright.sync_api import Error as PlaywrightError, sync_playwright

        try:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(headless=headless, args=list(args))
            self._context = self._browser.new_context(
                user_agent=user_agent,
                viewport={"width": 1366, "height": 768},
                extra_http_headers={"Accept-Language": "es-MX,es;q=0.9,en;q=0.8"},
            )
            self._page = self._context.new_page()
        except PlaywrightError as exc:
            cleanup = ""
            try:
                self.close()
            except AutomationError as close_exc:
                cleanup = f" ({close_exc})"
            raise BrowserLaunchFailed(f"failed to launch browser: {exc}{cleanup}")

    def close(self) -> None:
        """Release context, browser and the Playwright driver. Raises AutomationError after a partial close."""
        from playwright.sync_api import Error as PlaywrightError

        steps = ((self._context, "close"), (self._browser, "close"), (self._playwright, "stop"))
        self._playwright = self._browser = self._context = self._page = None

        failures = []
        for target, method in steps:
            if target is None:
                continue
            try:
                getattr(target, method)()
            except PlaywrightError as exc:
                failures.append(f"{method}: {exc}")
        if failures:
            raise AutomationError("close failed: " + "; ".join(failures))

    def navigate(self, url: str, timeout_ms: int) -> None:
        from playwright.sync_api import Error as PlaywrightError

        page = self._require_page()
        try:
            page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
        except PlaywrightError as exc:
            raise self._translate(exc, f"navigate {url}")

    def wait_for(self, selector: str, timeout_ms: int) -> None:
        from playwright.sync_api import Error as PlaywrightError

        page = self._require_page()
        try:
            page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
        except PlaywrightError as exc:
            raise self._translate(exc, f"wait for {selector}")

    def fill(self, selector: str, value: str, timeout_ms: int) -> None:
        from playwright.sync_api import Error as PlaywrightError

        page = self._require_page()
        try:
            page.fill(selector, value, timeout=timeout_ms)
        except PlaywrightError as exc:
            # The value may be a secret; only the selector goes into the message
            raise self._translate(exc, f"fill {selector}")

    def click(self, selector: str, timeout_ms: int) -> None:
        from playwright.sync_api import Error as PlaywrightError

        page = self._require_page()
        try:
            page.click(selector, timeout=timeout_ms)
        except PlaywrightError as exc:
            raise self._translate(exc, f"click {selector}")

    def exists(self, selector: str) -> bool:
        from playwright.sync_api import Error as PlaywrightError

        page = self._require_page()
        try:
            return page.query_selector(selector) is not None
        except PlaywrightError:
            return False

    def select_option(self, selector: str, value: str, timeout_ms: int) -> None:
        from playwright.sync_api import Error as PlaywrightError

        page = self._require_page()
        try:
            page.select_option(selector, value, timeout=timeout_ms)
        except PlaywrightError as exc:
            raise self._translate(exc, f"select {selector}")

    def pause(self, ms: int) -> None:
        from playwright.sync_api import Error as PlaywrightError

        page = self._require_page()
        try:
            page.wait_for_timeout(ms)
        except PlaywrightError as exc:
            raise self._translate(exc, "pause")


# =============================================================================
# Session
# =============================================================================

@dataclass
class _Budget:
    """Remaining time for one multi-step operation."""
    label: str
    seconds: float
    started: float = field(default_factory=time.monotonic)

    def remaining_ms(self) -> int:
        left = self.seconds - (time.monotonic() - self.started)
        if left <= 0:
            raise AutomationTimeout(f"{self.label} timeout: exceeded {self.seconds:g}s budget")
        return max(1, int(left * 1000))


class CartAutomationSession:
    def __init__(
        self,
        driver_factory: Callable[[], BrowserDriver] = PlaywrightDriver,
        profile: RetailerProfile = AMAZON_PROFILE,
        *,
        timeout_seconds: float = 30.0,
        confirmation_mode: str = CONFIRMATION_OPTIMISTIC,
        headless: bool = True,
        base_url: str = "https://www.amazon.com.mx",
        page_settle_ms: int = 2000,
        cart_settle_ms: int = 3000,
        user_agent: str = DEFAULT_USER_AGENT,
        logger: logging.Logger | None = None,
    ):
        if confirmation_mode not in CONFIRMATION_MODES:
            raise ValueError(f"confirmation_mode must be one of: {', '.join(CONFIRMATION_MODES)}")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self._driver_factory = driver_factory
        self.profile = profile
        self.timeout_seconds = float(timeout_seconds)
        self.confirmation_mode = confirmation_mode
        self.headless = headless
        self.page_settle_ms = page_settle_ms
        self.cart_settle_ms = cart_settle_ms
        self.user_agent = user_agent
        # create_app passes app.logger; standalone sessions log under the module name
        self.log = logger or logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._driver: BrowserDriver | None = None
        self._logged_in = False
        self._identity = ""
        self._secret = ""
        self._base_url = base_url.rstrip("/")
        self._last_activity = None
        self._last_error: str | None = None

    # -- state -----------------------------------------------------------------

    def is_initialized(self) -> bool:
        with self._lock:
            return self._driver is not None

    def is_logged_in(self) -> bool:
        with self._lock:
            return self._logged_in

    @property
    def base_url(self) -> str:
        with self._lock:
            return self._base_url

    def session_status(self) -> dict:
        with self._lock:
            return {
                "initialized": self._driver is not None,
                "logged_in": self._logged_in,
                "identity": self._identity,
                "base_url": self._base_url,
                "retailer": self.profile.name,
                "confirmation_mode": self.confirmation_mode,
                "timeout_seconds": self.timeout_seconds,
                "last_activity": to_utc_z(self._last_activity),
                "last_error": self._last_error,
            }

    def _step_ms(self, budget: _Budget) -> int:
        return min(int(self.timeout_seconds * 1000), budget.remaining_ms())

    # -- lifecycle -------------------------------------------------------------

    def initialize(self) -> None:
        """Launch the browser and load the home page. No-op if already initialized."""
        with self._lock:
            if self._driver is not None:
                return

            driver = self._driver_factory()
            budget = _Budget("initialize", self.timeout_seconds)
            try:
                driver.launch(
                    headless=self.headless,
                    user_agent=self.user_agent,
                    args=ANTI_DETECTION_ARGS,
                )
                driver.navigate(self._base_url, self._step_ms(budget))
                driver.wait_for(self.profile.page_ready, self._step_ms(budget))
            except AutomationError as exc:
                self._safe_close(driver)
                self._last_error = str(exc)
                if isinstance(exc, BrowserLaunchFailed):
                    raise
                raise BrowserLaunchFailed(f"failed to initialize browser: {exc}") from exc

            self._driver = driver
            self._logged_in = False
            self._last_error = None
            self.log.info("Browser session initialized for %s", self._base_url)

    def set_credentials(self, identity: str, secret: str, marketplace: str | None = None) -> None:
        """Store credentials for the next login(). Changing the account logs the session out."""
        with self._lock:
            base_url = f"https://{marketplace}".rstrip("/") if marketplace else self._base_url
            if identity != self._identity or base_url != self._base_url:
                self._logged_in = False
            self._identity = identity or ""
            self._secret = secret or ""
            self._base_url = base_url

    def login(self) -> None:
        with self._lock:
            if not self._identity or not self._secret:
                raise CredentialsMissing("credentials not configured")
            if self._driver is None:
                raise NotInitialized("browser not initialized")

            driver = self._driver
            profile = self.profile
            budget = _Budget("login", self.timeout_seconds * LOGIN_BUDGET_FACTOR)
            self._logged_in = False
            self._last_activity = utcnow()

            try:
                step = "load login page"
                driver.navigate(profile.login_url(self._base_url), self._step_ms(budget))
                driver.wait_for(profile.identity_field, self._step_ms(budget))

                step = "enter identity"
                driver.fill(profile.identity_field, self._identity, self._step_ms(budget))
                driver.click(profile.continue_button, self._step_ms(budget))
                driver.wait_for(profile.secret_field, self._step_ms(budget))

                step = "enter secret"
                driver.fill(profile.secret_field, self._secret, self._step_ms(budget))
                driver.click(profile.submit_button, self._step_ms(budget))

                step = "verify login"
                driver.wait_for(profile.post_login_marker, self._step_ms(budget))
            except AutomationTimeout as exc:
                if step == "verify login" and driver.exists(profile.login_error_marker):
                    self._last_error = "login failed: retailer rejected the credentials"
                    raise LoginFailed(self._last_error) from exc
                self._last_error = f"login timeout during {step}: {exc}"
                raise AutomationTimeout(self._last_error) from exc
            except AutomationError as exc:
                self._last_error = f"login failed during {step}: {exc}"
                raise LoginFailed(self._last_error) from exc

            self._logged_in = True
            self._last_error = None
            self.log.info("Logged in to %s as %s", self._base_url, self._identity)

    def add_to_cart(self, product_url: str, quantity: int = 1) -> AddToCartResult:
        with self._lock:
            try:
                if not self._logged_in:
                    raise NotLoggedIn("not logged in to retailer")
                if self._driver is None:
                    raise NotInitialized("browser not initialized")
                result = self._add_to_cart(product_url, quantity)
            except AutomationError as exc:
                self._last_error = str(exc)
                raise
            finally:
                self._last_activity = utcnow()
            self._last_error = None
            return result

    def _add_to_cart(self, product_url: str, quantity: int) -> AddToCartResult:
        driver = self._driver
        profile = self.profile
        budget = _Budget("add to cart", self.timeout_seconds * ADD_TO_CART_BUDGET_FACTOR)

        driver.navigate(product_url, self._step_ms(budget))
        driver.wait_for(profile.page_ready, self._step_ms(budget))
        driver.pause(min(self.page_settle_ms, budget.remaining_ms()))

        if quantity > 1 and driver.exists(profile.quantity_selector):
            try:
                driver.select_option(profile.quantity_selector, str(quantity), min(PROBE_TIMEOUT_MS, budget.remaining_ms()))
            except AutomationError as exc:
                self.log.warning("Could not set quantity %s on %s: %s", quantity, product_url, exc)

        clicked = None
        for selector in profile.add_to_cart_candidates:
            if not driver.exists(selector):
                continue
            try:
                driver.click(selector, self._step_ms(budget))
            except AutomationTimeout:
                raise
            except AutomationError as exc:
                self.log.warning("Add-to-cart candidate %s failed: %s", selector, exc)
                continue
            clicked = selector
            break

        if clicked is None:
            raise ElementNotFound("could not find add-to-cart button")

        driver.pause(min(self.cart_settle_ms, budget.remaining_ms()))

        for marker in profile.success_markers:
            if driver.exists(marker):
                self.log.info("Product added to cart (%s confirmed by %s)", product_url, marker)
                return AddToCartResult(clicked_selector=clicked, confirmed=True, confirmation_selector=marker)

        if self.confirmation_mode == CONFIRMATION_STRICT:
            raise ElementNotFound("add-to-cart not confirmed")

        self.log.warning("Add-to-cart click on %s not confirmed by any success marker", product_url)
        return AddToCartResult(clicked_selector=clicked, confirmed=False)

    def close(self) -> None:
        with self._lock:
            if self._driver is not None:
                self._safe_close(self._driver)
                self.log.info("Browser session closed")
            self._driver = None
            self._logged_in = False

    def _safe_close(self, driver: BrowserDriver) -> None:
        try:
            driver.close()
        except Exception as exc:
            # Teardown must not mask the error that triggered it
            self.log.warning("Error while closing browser: %s", exc)
