"""
core/mailer.py -- Outbound email through the Resend HTTP API.

Only the delivery contract matters here: one send() per message through the
email circuit breaker, and send_with_retry() for the auth flows (fixed number
of attempts with exponential backoff, blocking between attempts). Template
rendering is intentionally minimal -- a subject line and a single link.

When RESEND_API_KEY is not configured the message is logged instead of sent
so local development works without an email account.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from html import escape

import requests
from tenacity import RetryError, Retrying, before_sleep_log, stop_after_attempt, wait_exponential

from core.breaker import CircuitBreaker
from core.errors import ExternalServiceError

logger = logging.getLogger("portcullis.mailer")

RESEND_API = "https://api.resend.com/emails"

# kind -> (subject, call to action, expiry note)
_TEMPLATES: dict[str, tuple[str, str, str]] = {
    "signin": ("Sign in to Portcullis", "Sign in", "This link will expire in 24 hours."),
    "verify": ("Verify your email address", "Verify email", "This link will expire in 24 hours."),
    "password-reset": ("Reset your password", "Reset password", "This link will expire in 1 hour."),
}

# Module-level session shared across all sends for connection pooling.
_session = requests.Session()
_session.max_redirects = 3


def render(kind: str, url: str) -> tuple[str, str]:
    """Return (subject, html) for an auth email of the given kind."""
    subject, action, expiry = _TEMPLATES[kind]
    html = (
        f"<h2>{escape(subject)}</h2>"
        f'<p><a href="{escape(url, quote=True)}">{escape(action)}</a></p>'
        f"<p>If you didn't request this email, you can safely ignore it.</p>"
        f"<p>{escape(expiry)}</p>"
    )
    return subject, html


class Mailer:
    """Sends auth emails with a breaker around every attempt.

    Usage:
        mailer = Mailer(api_key, "noreply@example.com", CircuitBreaker("email", 3, 30.0))
        mailer.send_with_retry("a@b.com", verify_url, kind="verify")
    """

    def __init__(
        self,
        api_key: str,
        from_address: str,
        breaker: CircuitBreaker,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.from_address = from_address
        self.breaker = breaker
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def send(self, to: str, subject: str, html: str) -> None:
        """Deliver one message. Raises on any failure (breaker-open included)."""
        self.breaker.call(self._post, to, subject, html)

    def _post(self, to: str, subject: str, html: str) -> None:
        if not self.configured:
            logger.info("Email transport not configured; would send %r to %s", subject, to)
            return
        resp = _session.post(
            RESEND_API,
            json={"from": self.from_address, "to": [to], "subject": subject, "html": html},
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=10,
        )
        resp.raise_for_status()

    def send_with_retry(self, to: str, url: str, kind: str) -> None:
        """Send an auth email, retrying with exponential backoff.

        Attempt n (1-based) is followed by a wait of base_delay_ms * 2**(n-1)
        before the next one. After the last attempt fails, raises
        ExternalServiceError; the caller decides whether that is fatal.
        """
        subject, html = render(kind, url)
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay_ms / 1000),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=False,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self.send(to, subject, html)
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            logger.error("Email %r failed after %d attempts: %s", kind, self.max_attempts, last_error)
            raise ExternalServiceError(f"Failed to send {kind} email", details=str(last_error)) from last_error
        if attempt.retry_state.attempt_number > 1:
            logger.info("Email %r delivered on attempt %d", kind, attempt.retry_state.attempt_number)
