# Overview: Cart automation job queue; the only path from the workflow to the browser session.

"""
Cart Job Queue

WHY: Approving a request must not wait on (or fail because of) a browser
driving a third-party site. Approval enqueues a job and returns; a single
worker consumes jobs one at a time against the shared CartAutomationSession.

DESIGN NOTES:
- One worker thread. The browser context is single-flight, and the
  Playwright sync API is bound to the thread that started it, so every
  session call (including close) runs on that thread.
- Jobs run inside an application context and use their own DB session.
- A job's outcome is written with a narrow UPDATE of the cart fields only
  (added_to_cart, added_to_cart_at, cart_error, cart_attempts). It never
  touches status or decision metadata, so it cannot re-open or roll back
  the approval that triggered it.
- Automation, crypto and unexpected browser failures are caught at the job
  boundary, stored as cart_error text, and logged. They never propagate to
  the approval.
- Itemized requests stamp each item once it is in the cart; retries skip
  stamped items so a partial failure never adds the same product twice.
- Inline mode runs jobs on the calling thread (tests, single-process CLI).
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout

from flask import Flask, current_app, has_app_context
from sqlalchemy import update

from ..extensions import db
from ..models import PurchaseRequest, RequestItem
from ..models.automation import DEFAULT_ACCOUNT_KEY
from ..models.requests import KIND_ITEMIZED, STATUS_APPROVED
from ..validation import InvalidStateError, NotFoundError, ValidationError
from . import automation_config_service, url_classifier
from .cart_automation import AutomationError, AutomationTimeout, CartAutomationSession
from .concurrency import run_with_retry
from .credential_vault import CryptoError
from app.time_utils import utcnow


WORKER_MODE_THREAD = "thread"
WORKER_MODE_INLINE = "inline"


class _InlineExecutor:
    """Executor look-alike that runs the callable immediately."""

    def submit(self, fn, *args, **kwargs) -> Future:
        future: Future = Future()
        future.set_running_or_notify_cancel()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True) -> None:
        return None


# =============================================================================
# Job bodies (run on the worker, inside an app context)
# =============================================================================

def cart_targets(req: PurchaseRequest, base_url: str) -> list[tuple[str, int, str, int | None]]:
    """
    (product_url, quantity, label, item_id) for every product still to push.

    URL requests push their own URL (item_id None). Itemized requests push
    each automatable item not yet in the cart, using its Amazon URL when
    present and <base_url>/dp/<ASIN> otherwise.
    """
    if req.kind != KIND_ITEMIZED:
        if req.is_automatable and req.url:
            return [(req.url, req.quantity or 1, req.request_number, None)]
        return []

    targets = []
    for item in req.items:
        if not item.is_automatable or item.added_to_cart_at is not None:
            continue
        if item.product_url and url_classifier.is_amazon_url(item.product_url):
            target = item.product_url
        elif item.amazon_asin:
            target = url_classifier.product_url_for(base_url, item.amazon_asin)
        else:
            continue
        targets.append((target, item.quantity or 1, item.name, item.id))
    return targets


def _items_in_cart(req: PurchaseRequest) -> int:
    if req.kind != KIND_ITEMIZED:
        return 0
    return sum(1 for item in req.items if item.added_to_cart_at is not None)


def mark_item_added(item_id: int) -> None:
    """Stamp one item as pushed so a retry of a partial failure skips it."""
    def _op():
        db.session.execute(
            update(RequestItem)
            .where(RequestItem.id == item_id, RequestItem.added_to_cart_at.is_(None))
            .values(added_to_cart_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

    run_with_retry(_op)


def record_cart_outcome(request_id: int, *, error: str | None) -> None:
    """Narrow, idempotent write of the cart fields for one job run."""
    values = {
        "cart_attempts": PurchaseRequest.cart_attempts + 1,
        "cart_error": error,
    }
    if error is None:
        values["added_to_cart"] = True
        values["added_to_cart_at"] = utcnow()
    else:
        values["added_to_cart"] = False

    def _op():
        db.session.execute(
            update(PurchaseRequest)
            .where(PurchaseRequest.id == request_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

    run_with_retry(_op)


def run_cart_job(session: CartAutomationSession, request_id: int, account_key: str = DEFAULT_ACCOUNT_KEY) -> str | None:
    """
    Push one approved request into the retailer cart.

    Itemized requests stamp each item as it lands in the cart. A job that
    fails part way records the request as not added, and the next run only
    pushes the items that are still unstamped. Any other exception from the
    browser layer is recorded as an unexpected automation failure.

    Returns the recorded cart error (None on success, or when the job was
    skipped without recording anything).
    """
    logger = current_app.logger
    req = db.session.get(PurchaseRequest, request_id)
    if req is None or req.deleted_at is not None:
        logger.info("Cart job skipped: request %s no longer exists", request_id)
        return None
    if not req.is_automatable:
        logger.info("Cart job skipped: request %s is not automatable", req.request_number)
        return None
    if req.status != STATUS_APPROVED:
        logger.info("Cart job skipped: request %s is %s, not approved", req.request_number, req.status)
        return None

    number = req.request_number
    logger.info("Cart job started for %s", number)

    config = automation_config_service.get_config(account_key)
    error = None
    targets = []
    if config is None or not config.can_connect:
        error = "automation account not configured or inactive"
    else:
        targets = cart_targets(req, config.base_url)
        already_added = _items_in_cart(req)
        if not targets and not already_added:
            error = "no automatable product URL or ASIN on request"
        elif already_added:
            logger.info("Cart job for %s skips %s item(s) already in the cart", number, already_added)

    if error is None and targets:
        try:
            secret = automation_config_service.decrypt_secret(config)
        except CryptoError as exc:
            error = f"credential decryption failed: {exc}"

    if error is None and targets:
        label = None
        try:
            session.initialize()
            session.set_credentials(config.identity, secret, config.marketplace)
            if not session.is_logged_in():
                session.login()
                automation_config_service.record_login(config.id)
            for product_url, quantity, label, item_id in targets:
                result = session.add_to_cart(product_url, quantity)
                if not result.confirmed:
                    logger.info("Cart add for %s (%s) not confirmed; recorded as success", number, label)
                if item_id is not None:
                    mark_item_added(item_id)
        except AutomationError as exc:
            error = str(exc)
            if label and len(targets) > 1:
                error = f"{label}: {error}"
        except Exception as exc:
            db.session.rollback()
            logger.exception("Cart job for %s crashed", number)
            # The page may be gone; the next job starts a fresh browser
            session.close()
            error = f"unexpected automation failure: {exc}"
            if label and len(targets) > 1:
                error = f"{label}: {error}"

    record_cart_outcome(request_id, error=error)
    if error:
        logger.warning("Cart job failed for %s: %s", number, error)
    else:
        logger.info("Cart job succeeded for %s", number)
    return error


def retry_add_to_cart(session: CartAutomationSession, request_id: int) -> dict:
    req = db.session.get(PurchaseRequest, request_id)
    if req is None or req.deleted_at is not None:
        raise NotFoundError("Request not found")
    if not req.is_automatable:
        raise ValidationError("Request has no automatable product")
    if req.status != STATUS_APPROVED:
        raise InvalidStateError(f"Cannot retry cart for a request in status {req.status}")

    run_cart_job(session, request_id)

    db.session.expire_all()
    return db.session.get(PurchaseRequest, request_id).to_dict()


def run_connection_test(session: CartAutomationSession, account_key: str = DEFAULT_ACCOUNT_KEY) -> dict:
    """Initialize + login with the stored account, then record the outcome on the config row."""
    config = automation_config_service.require_config(account_key)
    logger = current_app.logger

    if not config.is_configured:
        success, message = False, "credentials not configured"
    else:
        try:
            secret = automation_config_service.decrypt_secret(config)
            session.initialize()
            session.set_credentials(config.identity, secret, config.marketplace)
            session.login()
            success, message = True, f"logged in as {config.identity}"
        except (AutomationError, CryptoError) as exc:
            success, message = False, str(exc)

    config = automation_config_service.record_test_result(config.id, success=success, message=message)
    if success:
        logger.info("Automation connection test succeeded for %s", account_key)
    else:
        logger.warning("Automation connection test failed for %s: %s", account_key, message)

    return {
        "success": success,
        "message": message,
        "config": config.to_dict(),
        "session": session.session_status(),
    }


# =============================================================================
# Queue
# =============================================================================

class CartJobQueue:
    def __init__(
        self,
        app: Flask,
        session: CartAutomationSession,
        *,
        mode: str = WORKER_MODE_THREAD,
        result_timeout: float = 180.0,
        enabled: bool = True,
    ):
        if mode not in (WORKER_MODE_THREAD, WORKER_MODE_INLINE):
            raise ValueError(f"unknown worker mode: {mode}")
        self._app = app
        self.session = session
        self.mode = mode
        self.enabled = enabled
        self.result_timeout = result_timeout
        self._pending = 0
        self._pending_lock = threading.Lock()
        self._closed = False
        if mode == WORKER_MODE_THREAD:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cart-worker")
        else:
            self._executor = _InlineExecutor()

    @property
    def depth(self) -> int:
        with self._pending_lock:
            return self._pending

    def _in_context(self, fn, *args):
        # Inline jobs reuse the caller's context when it belongs to this app
        if has_app_context() and current_app._get_current_object() is self._app:
            return fn(self.session, *args)
        with self._app.app_context():
            return fn(self.session, *args)

    def _done(self, job: str, future: Future) -> None:
        with self._pending_lock:
            self._pending -= 1
        exc = future.exception()
        if exc is not None and not isinstance(exc, (AutomationError, ValidationError, NotFoundError, InvalidStateError)):
            self._app.logger.error("Cart job %s crashed: %r", job, exc, exc_info=exc)

    def submit(self, job: str, fn, *args) -> Future:
        if self._closed:
            raise RuntimeError("cart job queue is shut down")
        with self._pending_lock:
            self._pending += 1
        try:
            future = self._executor.submit(self._in_context, fn, *args)
        except RuntimeError:
            with self._pending_lock:
                self._pending -= 1
            raise
        future.add_done_callback(lambda f: self._done(job, f))
        return future

    def _wait(self, future: Future, what: str):
        try:
            return future.result(timeout=self.result_timeout)
        except FutureTimeout:
            raise AutomationTimeout(f"{what} did not finish within {self.result_timeout:g}s")

    # -- jobs ------------------------------------------------------------------

    def enqueue_add_to_cart(self, request_id: int) -> Future | None:
        """Fire-and-forget cart push after approval. None when automation is disabled."""
        if not self.enabled:
            return None
        return self.submit(f"add_to_cart:{request_id}", run_cart_job, request_id)

    def run_retry(self, request_id: int) -> dict:
        """Admin retry; waits for the worker and returns the refreshed request."""
        if not self.enabled:
            raise ValidationError("Cart automation is disabled")
        return self._wait(self.submit(f"retry_add_to_cart:{request_id}", retry_add_to_cart, request_id), "cart retry")

    def run_test_connection(self, account_key: str = DEFAULT_ACCOUNT_KEY) -> dict:
        return self._wait(self.submit(f"test_connection:{account_key}", run_connection_test, account_key), "connection test")

    def status(self) -> dict:
        # Reads only take the session lock, safe off the worker thread
        return {
            **self.session.session_status(),
            "enabled": self.enabled,
            "worker_mode": self.mode,
            "queue_depth": self.depth,
        }

    def shutdown(self) -> None:
        """Close the browser on the worker thread, then stop the worker."""
        if self._closed:
            return
        self._closed = True
        try:
            self._executor.submit(self.session.close).result(timeout=self.result_timeout)
        except (FutureTimeout, AutomationError, RuntimeError) as exc:
            self._app.logger.warning("Cart session did not close cleanly: %s", exc)
        self._executor.shutdown(wait=False)


def dispatch_add_to_cart(request_id: int) -> None:
    """
    Called by the approval transition after its commit.

    Never raises: a missing or stopped queue only produces a log line.
    """
    queue: CartJobQueue | None = current_app.extensions.get("cart_jobs")
    if queue is None:
        current_app.logger.info("No cart job queue; request %s not pushed to cart", request_id)
        return
    try:
        queue.enqueue_add_to_cart(request_id)
    except RuntimeError as exc:
        current_app.logger.warning("Could not enqueue cart job for request %s: %s", request_id, exc)
