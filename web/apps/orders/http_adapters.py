"""Paystack HTTP client with retries, a circuit breaker and context headers.

This module implements ``PaymentGatewayPort`` over the Paystack REST API
using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
    by the gateway middleware.
- A circuit breaker for the gateway so an unhealthy Paystack is not
    hammered, with HALF_OPEN probing after a timeout.
- A retry policy with exponential backoff for transport errors and 5xx.
- Webhook helpers: HMAC-SHA512 signature validation and event parsing.
"""

import hashlib
import hmac
import logging
import threading
import time
from typing import Optional
from urllib.parse import quote

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import PaymentGatewayPort, PaymentOutcome, PaymentSession, PaymentVerification
from .errors import ExternalServiceError, NotFound, PaymentFailed, ValidationFailed

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

logger = logging.getLogger("orders.paystack")

MIN_AMOUNT_MINOR = 100
DEFAULT_CHANNELS = ["card", "bank", "ussd", "bank_transfer"]

_VERIFY_OUTCOMES = {
    "success": PaymentOutcome.SUCCESS,
    "failed": PaymentOutcome.FAILED,
    "abandoned": PaymentOutcome.ABANDONED,
    "reversed": PaymentOutcome.FAILED,
}

WEBHOOK_OUTCOMES = {
    "charge.success": PaymentOutcome.SUCCESS,
    "charge.failed": PaymentOutcome.FAILED,
}


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful trial call; only one trial may be in
      flight; a failed trial opens the circuit again.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_trial_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Raises:
            RuntimeError: If the circuit is OPEN or a HALF_OPEN trial is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._half_open_trial_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_trial_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_trial_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_trial_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_trial_in_flight = False


_paystack_cb = CircuitBreaker(
    "paystack",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds, max_sleep)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    # Retry only on transport errors or 5xx
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _message(resp: httpx.Response, default: str) -> str:
    try:
        return resp.json().get("message") or default
    except ValueError:
        return default


def validate_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """Check the ``x-paystack-signature`` header against the raw request body.

    Paystack signs the body with HMAC-SHA512 using the secret key.
    """
    secret = secret if secret is not None else getattr(settings, "PAYSTACK_SECRET_KEY", "")
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)


def parse_webhook_event(payload: dict) -> Optional[PaymentVerification]:
    """Map a Paystack webhook payload to a ``PaymentVerification``.

    Returns:
        None for events the engine does not act on.
    """
    outcome = WEBHOOK_OUTCOMES.get(payload.get("event", ""))
    data = payload.get("data") or {}
    if outcome is None or not data.get("reference"):
        return None
    amount = data.get("amount")
    return PaymentVerification(
        reference=str(data["reference"]),
        outcome=outcome,
        amount_minor=int(amount) if amount is not None else None,
        gateway_response=data.get("gateway_response") or "",
    )


# ---------------- Paystack Adapter ---------------- #

class PaystackClient(PaymentGatewayPort):
    """HTTP client for Paystack transactions with retry and circuit breaker."""

    def __init__(self, secret_key: str | None = None, base_url: str | None = None, timeout: float | None = None):
        self.secret_key = secret_key if secret_key is not None else settings.PAYSTACK_SECRET_KEY
        self.base_url = (base_url or getattr(settings, "PAYSTACK_BASE_URL", "https://api.paystack.co")).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _send(self, method: str, path: str, json: Optional[dict] = None) -> httpx.Response:
        """Send a request with circuit-breaker precheck and retries.

        Any response below 500 is handed back to the caller and counts as a
        healthy gateway; transport errors and 5xx are retried.

        Raises:
            RuntimeError: The circuit is open.
            httpx.RequestError: Transport error after the last retry.
            httpx.HTTPStatusError: 5xx after the last retry.
        """
        max_retries, backoff, cap = _retry_policy()
        tries = 0
        state = _paystack_cb.before_call()
        headers = _request_headers(
            {
                "Authorization": f"Bearer {self.secret_key}",
                "X-Circuit-State": state,
                "X-Retry-Count": "0",
            }
        )

        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        if method == "POST":
                            resp = client.post(f"{self.base_url}{path}", json=json, headers=headers)
                        else:
                            resp = client.get(f"{self.base_url}{path}", headers=headers)
                        if not _should_retry(resp, None):
                            _paystack_cb.on_success()
                            return resp
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= max_retries:
                        _paystack_cb.on_failure()
                        logger.error(
                            "paystack request failed",
                            extra={"path": path, "tries": tries, "status": resp.status_code if resp else None},
                        )
                        if exc:
                            raise exc
                        resp.raise_for_status()

                    sleep_s = backoff * (2 ** (tries - 1))
                    if sleep_s > 0:
                        time.sleep(min(sleep_s, cap))
        finally:
            _paystack_cb.on_finish()

    def initialize_payment(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        currency: str = "NGN",
        callback_url: str = "",
        metadata: Optional[dict] = None,
    ) -> PaymentSession:
        """Open a Paystack hosted checkout for ``reference``.

        Returns:
            PaymentSession: Authorization URL, reference and access code.

        Raises:
            ValidationFailed: Amount below the 100 kobo minimum.
            PaymentFailed: Paystack refused to initialize the transaction.
            ExternalServiceError: Unexpected response from Paystack.
        """
        if amount_minor < MIN_AMOUNT_MINOR:
            raise ValidationFailed("Minimum payment amount is ₦1", details={"amount_minor": amount_minor})

        payload = {
            "email": email,
            "amount": int(amount_minor),
            "reference": reference,
            "currency": currency or "NGN",
            "channels": DEFAULT_CHANNELS,
            "callback_url": callback_url,
            "metadata": {
                "custom_fields": [
                    {"display_name": "Order Reference", "variable_name": "order_reference", "value": reference},
                ],
                **(metadata or {}),
            },
        }
        resp = self._send("POST", "/transaction/initialize", json=payload)
        if resp.status_code >= 400:
            raise PaymentFailed(_message(resp, "Payment initialization failed"), details={"reference": reference})
        body = resp.json()
        data = body.get("data") or {}
        if not body.get("status") or not data.get("authorization_url"):
            raise ExternalServiceError(body.get("message") or "Payment initialization failed")
        logger.info("paystack transaction initialized", extra={"reference": reference, "amount_minor": amount_minor})
        return PaymentSession(
            authorization_url=data["authorization_url"],
            reference=data.get("reference") or reference,
            access_code=data.get("access_code") or "",
        )

    def verify_payment(self, reference: str) -> PaymentVerification:
        """Ask Paystack for the current outcome of ``reference``.

        Raises:
            ValidationFailed: Empty reference.
            NotFound: Paystack does not know the reference.
            ExternalServiceError: Unexpected response from Paystack.
        """
        if not reference:
            raise ValidationFailed("Payment reference is required")
        resp = self._send("GET", f"/transaction/verify/{quote(reference, safe='')}")
        if resp.status_code in (400, 404):
            raise NotFound(_message(resp, "Transaction not found"), details={"reference": reference})
        if resp.status_code >= 400:
            raise ExternalServiceError(_message(resp, "Payment verification failed"))
        body = resp.json()
        data = body.get("data") or {}
        if not body.get("status"):
            raise ExternalServiceError(body.get("message") or "Payment verification failed")
        amount = data.get("amount")
        return PaymentVerification(
            reference=str(data.get("reference") or reference),
            outcome=_VERIFY_OUTCOMES.get(str(data.get("status", "")).lower(), PaymentOutcome.PENDING),
            amount_minor=int(amount) if amount is not None else None,
            gateway_response=data.get("gateway_response") or "",
        )
