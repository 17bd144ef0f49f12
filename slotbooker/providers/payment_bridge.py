import asyncio
import logging
import os
import threading
import time as time_module
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.support.ui import WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from slotbooker.config import settings

logger = logging.getLogger(__name__)

CONFIRM_PAGE_PATH = "/payment/confirm"

# Runs inside the confirmation page; the last argument is Selenium's callback.
CONFIRM_SCRIPT = """
const done = arguments[arguments.length - 1];
window.confirmPayment(arguments[0], arguments[1], arguments[2], arguments[3])
    .then((result) => done(result))
    .catch((err) => done({error: {message: String((err && err.message) || err)}}));
"""


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PaymentOutcome:
    status: PaymentStatus
    detail: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED

    @classmethod
    def failed(cls, detail: str) -> "PaymentOutcome":
        return cls(status=PaymentStatus.FAILED, detail=detail)


def map_confirmation_result(result: Any) -> PaymentOutcome:
    """
    Map the payment SDK's confirmation result to a PaymentOutcome.

    An SDK error fails with its message, a payment intent in any state other
    than "succeeded" fails with that state, and everything else succeeds.
    """
    if not isinstance(result, dict):
        return PaymentOutcome.failed(f"Unexpected confirmation result: {result!r}")

    error = result.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        return PaymentOutcome.failed(message or "Unknown payment error")

    status = (result.get("paymentIntent") or {}).get("status")
    if status != PaymentStatus.SUCCEEDED.value:
        return PaymentOutcome.failed(f"Payment not succeeded: {status}")

    return PaymentOutcome(status=PaymentStatus.SUCCEEDED, detail=status)


class PaymentBridge(ABC):
    """Completes card authentication for a payment reference."""

    @abstractmethod
    async def confirm(self, payment_reference: str) -> PaymentOutcome:
        """Confirm a pending payment. Never raises; failures are returned."""
        pass


class SeleniumPaymentBridge(PaymentBridge):
    """
    Confirms payments with Stripe.js running in a headless Chrome session.

    The platform's mobile client authenticates 3-D Secure payments
    frictionlessly from a real browser context, which plain HTTP cannot do.
    Each confirmation:
    1. Starts a fresh headless Chrome (never reused between calls)
    2. Opens the app's confirmation page, which loads Stripe.js
    3. Waits for the page to report `window.paymentReady`
    4. Calls `window.confirmPayment(...)` and reads the result
    5. Quits the browser, whatever happened

    Selenium is blocking, so the work runs in a worker thread. Overlapping
    calls queue on an asyncio.Lock so at most one browser runs at a time.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._sessions_lock = threading.Lock()
        self.active_sessions = 0

    def _create_driver(self) -> webdriver.Chrome:
        """Create a headless Chrome WebDriver instance."""
        options = Options()
        options.add_argument("--headless=new")
        options.add_argument("--no-sandbox")
        options.add_argument("--disable-dev-shm-usage")
        options.add_argument("--disable-gpu")
        options.add_argument("--incognito")
        options.add_argument("--disable-blink-features=AutomationControlled")
        options.add_experimental_option("excludeSwitches", ["enable-automation"])

        chromedriver_path = os.environ.get("CHROMEDRIVER_PATH")
        if chromedriver_path and os.path.exists(chromedriver_path):
            service = Service(chromedriver_path)
        else:
            service = Service(ChromeDriverManager().install())
        return webdriver.Chrome(service=service, options=options)

    def _track_session(self, delta: int) -> None:
        with self._sessions_lock:
            self.active_sessions += delta

    async def confirm(self, payment_reference: str) -> PaymentOutcome:
        if not settings.stripe_pk or not settings.stripe_account or not settings.stripe_source_id:
            return PaymentOutcome.failed(
                "Missing Stripe settings (STRIPE_PK, STRIPE_ACCOUNT, STRIPE_SOURCE_ID)"
            )

        async with self._lock:
            try:
                return await asyncio.to_thread(self._confirm_sync, payment_reference)
            except Exception as e:
                logger.exception("Payment bridge failed unexpectedly")
                return PaymentOutcome.failed(f"Payment bridge error: {e}")

    def _confirm_sync(self, payment_reference: str) -> PaymentOutcome:
        """Synchronous confirmation with full driver lifecycle."""
        confirm_timeout = settings.payment_confirm_timeout_seconds
        timed_out = f"Payment confirmation timed out after {confirm_timeout:g}s"
        started = time_module.monotonic()

        driver = self._create_driver()
        self._track_session(1)
        try:
            driver.set_page_load_timeout(confirm_timeout)
            driver.get(f"{settings.public_base_url.rstrip('/')}{CONFIRM_PAGE_PATH}")

            try:
                WebDriverWait(driver, settings.payment_ready_timeout_seconds).until(
                    lambda d: d.execute_script("return window.paymentReady === true")
                )
            except TimeoutException:
                logger.error("Payment page did not become ready")
                return PaymentOutcome.failed(
                    f"Payment page not ready after {settings.payment_ready_timeout_seconds:g}s"
                )

            remaining = confirm_timeout - (time_module.monotonic() - started)
            if remaining <= 0:
                return PaymentOutcome.failed(timed_out)
            driver.set_script_timeout(remaining)

            result = driver.execute_async_script(
                CONFIRM_SCRIPT,
                settings.stripe_pk,
                settings.stripe_account,
                payment_reference,
                settings.stripe_source_id,
            )
            outcome = map_confirmation_result(result)
            if outcome.succeeded:
                logger.info("Payment confirmed via Stripe.js, status: succeeded")
            else:
                logger.warning(f"Payment confirmation failed: {outcome.detail}")
            return outcome

        except TimeoutException:
            logger.error(timed_out)
            return PaymentOutcome.failed(timed_out)
        except WebDriverException as e:
            logger.error(f"Browser error during payment confirmation: {e.msg}")
            return PaymentOutcome.failed(f"Browser error: {e.msg}")
        finally:
            try:
                driver.quit()
            except WebDriverException as e:
                logger.warning(f"Error closing payment browser: {e.msg}")
            self._track_session(-1)


class MockPaymentBridge(PaymentBridge):
    """Payment bridge returning scripted outcomes, for tests and development."""

    def __init__(self, outcomes: list[PaymentOutcome] | None = None) -> None:
        self._outcomes = list(outcomes or [])
        self.confirmed_references: list[str] = []

    async def confirm(self, payment_reference: str) -> PaymentOutcome:
        self.confirmed_references.append(payment_reference)
        if self._outcomes:
            return self._outcomes.pop(0)
        return PaymentOutcome(status=PaymentStatus.SUCCEEDED, detail="succeeded")
