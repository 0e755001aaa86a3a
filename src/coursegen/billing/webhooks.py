"""Signed checkout webhooks converted into one-time provisioning tasks."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from coursegen.billing.models import PaymentDetails, RegistrationStatus
from coursegen.billing.provisioning import PROVISION_MAX_RETRIES, enqueue_provisioning
from coursegen.billing.repository import RegistrationRepository
from coursegen.jobs.errors import CoursegenError, ValidationError
from coursegen.jobs.queue import TaskQueue

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"
MAX_TIMESTAMP_SKEW_SECONDS = 300


class SignatureVerificationError(CoursegenError):
    """Webhook signature header is missing, malformed, stale or wrong."""


class TriggerOutcome(str, Enum):
    PROVISIONING_ENQUEUED = "provisioning_enqueued"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNKNOWN_SESSION = "unknown_session"
    ENQUEUE_FAILED = "enqueue_failed"


@dataclass(slots=True)
class TriggerResult:
    outcome: TriggerOutcome
    event_type: str
    checkout_session_id: str | None = None


def compute_signature(payload: bytes, *, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def signature_header(payload: bytes, *, secret: str, timestamp: int) -> str:
    """Build a ``t=<unix>,v1=<hex>`` header for ``payload``."""

    return f"t={timestamp},v1={compute_signature(payload, secret=secret, timestamp=timestamp)}"


def verify_signature(
    payload: bytes,
    header: str,
    *,
    secret: str,
    tolerance_seconds: int = MAX_TIMESTAMP_SKEW_SECONDS,
    now: Callable[[], float] = time.time,
) -> None:
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    timestamp: int | None = None
    candidates: list[str] = []
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as error:
                raise SignatureVerificationError("Invalid signature timestamp") from error
        elif key == "v1" and value:
            candidates.append(value)
    if timestamp is None or not candidates:
        raise SignatureVerificationError("Malformed signature header")
    if abs(int(now()) - timestamp) > tolerance_seconds:
        raise SignatureVerificationError("Signature timestamp outside tolerance")

    expected = compute_signature(payload, secret=secret, timestamp=timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise SignatureVerificationError("Signature mismatch")


class CheckoutEventTrigger:
    """Verifies a checkout event and fires provisioning at most once per session."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        registrations: RegistrationRepository,
        queue: TaskQueue,
        secret: str,
        tolerance_seconds: int = MAX_TIMESTAMP_SKEW_SECONDS,
        provision_max_retries: int = PROVISION_MAX_RETRIES,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.registrations = registrations
        self.queue = queue
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.provision_max_retries = provision_max_retries
        self.now = now

    def handle(self, payload: bytes, signature: str) -> TriggerResult:
        verify_signature(
            payload,
            signature,
            secret=self.secret,
            tolerance_seconds=self.tolerance_seconds,
            now=self.now,
        )
        event = _parse_event(payload)
        event_type = str(event.get("type") or "")
        if event_type != CHECKOUT_COMPLETED_EVENT:
            return TriggerResult(TriggerOutcome.IGNORED, event_type)

        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(session, dict):
            raise ValidationError("Checkout event has no session object")
        metadata = session.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        if metadata.get("company_id"):
            # Subscription change for an existing tenant.
            return TriggerResult(TriggerOutcome.IGNORED, event_type)
        session_id = session.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise ValidationError("Checkout event has no session id")

        registration = self.registrations.get_by_session(session_id)
        if registration is None:
            if self.registrations.get_tenant_by_session(session_id) is not None:
                return TriggerResult(TriggerOutcome.DUPLICATE, event_type, session_id)
            logger.warning("Checkout completed for unknown session %s", session_id)
            return TriggerResult(TriggerOutcome.UNKNOWN_SESSION, event_type, session_id)
        if registration.status != RegistrationStatus.PENDING:
            logger.info(
                "Duplicate checkout event for %s (status=%s)",
                session_id,
                registration.status.value,
            )
            return TriggerResult(TriggerOutcome.DUPLICATE, event_type, session_id)

        details = PaymentDetails(
            stripe_customer_id=_optional_str(session.get("customer")),
            stripe_subscription_id=_optional_str(session.get("subscription")),
            seat_count=_optional_int(metadata.get("seat_count")),
        )
        if not self.registrations.mark_paid_if_pending(session_id, details):
            return TriggerResult(TriggerOutcome.DUPLICATE, event_type, session_id)

        try:
            enqueue_provisioning(
                self.queue,
                session_id,
                max_retries=self.provision_max_retries,
            )
        except SQLAlchemyError:
            logger.exception(
                "Registration %s is paid but provisioning was not enqueued",
                session_id,
            )
            return TriggerResult(TriggerOutcome.ENQUEUE_FAILED, event_type, session_id)
        logger.info("Provisioning enqueued for session %s", session_id)
        return TriggerResult(TriggerOutcome.PROVISIONING_ENQUEUED, event_type, session_id)


def _parse_event(payload: bytes) -> dict[str, Any]:
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise ValidationError(f"Webhook payload is not valid JSON: {error}") from error
    if not isinstance(event, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    return event


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _optional_int(value: object) -> int | None:
    try:
        return int(value) if value is not None else None  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
