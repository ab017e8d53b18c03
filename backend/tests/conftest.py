"""
Pytest fixtures for the purchase request backend.

Provides the test app (in-memory SQLite, inline cart worker, fake browser),
a threaded-worker app on a file-backed database,
per-test table wipe, user fixtures for every role, and auth helpers.
"""

import threading
import time

import pytest

from app import create_app
from app.extensions import db
from app.models.auth import ROLE_ADMIN, ROLE_EMPLOYEE, ROLE_GENERAL_MANAGER, ROLE_SUPPLY_CHAIN_MANAGER
from app.services import automation_config_service
from app.services.auth_service import create_user
from app.services.cart_automation import AMAZON_PROFILE, AutomationTimeout


PASSWORD = "Password123!"


# =============================================================================
# FAKE BROWSER
# =============================================================================


class FakeSite:
    """
    Scriptable stand-in for the retailer site.

    Knobs (reset per test):
    - launch_error: AutomationError raised by launch()
    - accept_login / reject_login: what happens after the sign-in submit
    - buttons: add-to-cart candidates present on product pages
    - markers: success markers that appear after an add-to-cart click
    - timeouts: selectors whose wait_for/click time out
    - missing_button_urls: product pages with no add-to-cart button at all
- pause_error: exception raised by pause(), e.g. a page closed under the driver
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.launch_error = None
        self.accept_login = True
        self.reject_login = False
        self.buttons = {"#add-to-cart-button"}
        self.markers = {"#sw-atc-confirmation"}
        self.timeouts = set()
        self.missing_button_urls = set()
        self.has_quantity = True
        self.pause_error = None
        self.calls = []
        self.cart = []
        self.drivers_created = 0

    def driver(self):
        self.drivers_created += 1
        return FakeDriver(self)

    def ops(self, name):
        return [arg for op, arg in self.calls if op == name]


class FakeDriver:
    def __init__(self, site: FakeSite):
        self.site = site
        self.url = None
        self.submitted = False
        self.clicked_cart = False
        self.quantity = 1

    def _on_login_page(self) -> bool:
        return "/ap/signin" in (self.url or "")

    def _present(self, selector: str) -> bool:
        site = self.site
        if selector == AMAZON_PROFILE.page_ready:
            return True
        if selector == AMAZON_PROFILE.post_login_marker:
            return self.submitted and site.accept_login and not site.reject_login
        if selector == AMAZON_PROFILE.login_error_marker:
            return self.submitted and site.reject_login
        if self._on_login_page():
            return selector in (
                AMAZON_PROFILE.identity_field,
                AMAZON_PROFILE.continue_button,
                AMAZON_PROFILE.secret_field,
                AMAZON_PROFILE.submit_button,
            )
        if selector == AMAZON_PROFILE.quantity_selector:
            return site.has_quantity
        if selector in AMAZON_PROFILE.add_to_cart_candidates:
            return selector in site.buttons and self.url not in site.missing_button_urls
        if selector in AMAZON_PROFILE.success_markers:
            return self.clicked_cart and selector in site.markers
        return False

    def launch(self, *, headless, user_agent, args):
        self.site.calls.append(("launch", headless))
        if self.site.launch_error is not None:
            raise self.site.launch_error

    def close(self):
        self.site.calls.append(("close", None))

    def navigate(self, url, timeout_ms):
        self.site.calls.append(("navigate", url))
        self.url = url
        self.clicked_cart = False
        self.quantity = 1

    def wait_for(self, selector, timeout_ms):
        self.site.calls.append(("wait_for", selector))
        if selector in self.site.timeouts or not self._present(selector):
            raise AutomationTimeout(f"timed out waiting for {selector}")

    def fill(self, selector, value, timeout_ms):
        self.site.calls.append(("fill", selector))

    def click(self, selector, timeout_ms):
        self.site.calls.append(("click", selector))
        if selector in self.site.timeouts:
            raise AutomationTimeout(f"timed out clicking {selector}")
        if selector == AMAZON_PROFILE.submit_button:
            self.submitted = True
        if selector in AMAZON_PROFILE.add_to_cart_candidates:
            self.clicked_cart = True
            self.site.cart.append((self.url, self.quantity))

    def exists(self, selector):
        return self._present(selector)

    def select_option(self, selector, value, timeout_ms):
        self.site.calls.append(("select_option", value))
        self.quantity = int(value)

    def pause(self, ms):
        self.site.calls.append(("pause", ms))
        if self.site.pause_error is not None:
            raise self.site.pause_error


FAKE_SITE = FakeSite()


# =============================================================================
# APP / DB
# =============================================================================


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(
        {
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'SQLALCHEMY_TRACK_MODIFICATIONS': False,
            'BCRYPT_ROUNDS': 4,
            'AUTOMATION_WORKER_MODE': 'inline',
            'AUTOMATION_ENABLED': True,
            'AUTOMATION_PAGE_SETTLE_MS': 10,
            'AUTOMATION_CART_SETTLE_MS': 10,
            'CART_CONFIRMATION_MODE': 'optimistic',
        },
        driver_factory=FAKE_SITE.driver,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def fake_site(app):
    """Reset the fake retailer and close the shared browser session."""
    queue = app.extensions["cart_jobs"]
    queue.session.close()
    FAKE_SITE.reset()
    yield FAKE_SITE
    queue.session.close()
    FAKE_SITE.reset()


@pytest.fixture(scope='function')
def cart_jobs(app, fake_site):
    return app.extensions["cart_jobs"]


# =============================================================================
# THREADED WORKER
# =============================================================================


class GatedSite(FakeSite):
    """
    FakeSite for the threaded worker.

    Product pages block until `gate` is set. Records the worker threads that
    drove the browser, how many product pages were open at once, and the
    thread that closed each driver.
    """

    def reset(self):
        super().reset()
        self.gate = threading.Event()
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.threads = set()
        self.close_threads = []

    def driver(self):
        self.drivers_created += 1
        return GatedDriver(self)


class GatedDriver(FakeDriver):
    def navigate(self, url, timeout_ms):
        site = self.site
        site.threads.add(threading.current_thread().name)
        if "/dp/" not in url:
            return super().navigate(url, timeout_ms)

        with site.lock:
            site.active += 1
            site.max_active = max(site.max_active, site.active)
        try:
            site.gate.wait(timeout=10)
            time.sleep(0.01)
            super().navigate(url, timeout_ms)
        finally:
            with site.lock:
                site.active -= 1

    def close(self):
        self.site.close_threads.append(threading.current_thread().name)
        super().close()


@pytest.fixture(scope='function')
def gated_site():
    site = GatedSite()
    yield site
    site.gate.set()


@pytest.fixture(scope='function')
def thread_app(tmp_path, gated_site):
    """App with the real cart worker thread on a file-backed SQLite database."""
    app = create_app(
        {
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'cart.db'}",
            'SQLALCHEMY_TRACK_MODIFICATIONS': False,
            'BCRYPT_ROUNDS': 4,
            'AUTOMATION_WORKER_MODE': 'thread',
            'AUTOMATION_ENABLED': True,
            'AUTOMATION_PAGE_SETTLE_MS': 10,
            'AUTOMATION_CART_SETTLE_MS': 10,
            'AUTOMATION_RESULT_TIMEOUT_SECONDS': 10,
            'CART_CONFIRMATION_MODE': 'optimistic',
        },
        driver_factory=gated_site.driver,
    )

    with app.app_context():
        db.create_all()
        yield app
        gated_site.gate.set()
        app.extensions["cart_jobs"].shutdown()
        db.session.remove()
        db.drop_all()


# =============================================================================
# USERS
# =============================================================================


def _make_user(email, name, role, **kwargs):
    return create_user(email=email, name=name, password=PASSWORD, role=role, **kwargs)


@pytest.fixture(scope='function')
def employee(db_session):
    return _make_user("ana@vista.local", "Ana Employee", ROLE_EMPLOYEE, department="Ops")


@pytest.fixture(scope='function')
def other_employee(db_session):
    return _make_user("luis@vista.local", "Luis Employee", ROLE_EMPLOYEE)


@pytest.fixture(scope='function')
def gm(db_session):
    return _make_user("gm@vista.local", "General Manager", ROLE_GENERAL_MANAGER)


@pytest.fixture(scope='function')
def scm(db_session):
    return _make_user("scm@vista.local", "Supply Chain", ROLE_SUPPLY_CHAIN_MANAGER)


@pytest.fixture(scope='function')
def admin(db_session):
    return _make_user("admin@vista.local", "Admin", ROLE_ADMIN)


@pytest.fixture(scope='function')
def automation_account(admin, fake_site):
    """Stored, active retailer account."""
    return automation_config_service.save_config(
        admin,
        identity="buyer@example.com",
        secret="retailer-pass",
        marketplace="www.amazon.com.mx",
    )


# =============================================================================
# HELPERS
# =============================================================================


def get_auth_token(client, email: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/v1/auth/login', json={
        'email': email,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def employee_headers(client, employee):
    return auth_headers(get_auth_token(client, employee.email))


@pytest.fixture(scope='function')
def other_employee_headers(client, other_employee):
    return auth_headers(get_auth_token(client, other_employee.email))


@pytest.fixture(scope='function')
def gm_headers(client, gm):
    return auth_headers(get_auth_token(client, gm.email))


@pytest.fixture(scope='function')
def scm_headers(client, scm):
    return auth_headers(get_auth_token(client, scm.email))


@pytest.fixture(scope='function')
def admin_headers(client, admin):
    return auth_headers(get_auth_token(client, admin.email))


@pytest.fixture(scope='function')
def site():
    """A private fake retailer for session-level tests."""
    return FakeSite()
