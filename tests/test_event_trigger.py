from __future__ import annotations

import json

import allure
import pytest

from coursegen.billing.models import RegistrationCreate, RegistrationStatus
from coursegen.billing.provisioning import PROVISION_TASK_TYPE
from coursegen.billing.repository import RegistrationRepository
from coursegen.billing.webhooks import (
    CheckoutEventTrigger,
    SignatureVerificationError,
    TriggerOutcome,
    signature_header,
    verify_signature,
)
from coursegen.jobs.errors import ValidationError
from coursegen.jobs.queue import CRITICAL_QUEUE, TaskQueue

pytestmark = [
    allure.epic("Billing"),
    allure.feature("Checkout Webhooks"),
]

SECRET = "whsec_test"
NOW = 1_790_000_000


@pytest.fixture()
def registrations(db_path, clock):
    repository = RegistrationRepository(db_path, clock=clock)
    yield repository
    repository.close()


@pytest.fixture()
def trigger(registrations: RegistrationRepository, task_queue: TaskQueue) -> CheckoutEventTrigger:
    return CheckoutEventTrigger(
        registrations=registrations,
        queue=task_queue,
        secret=SECRET,
        now=lambda: float(NOW),
    )


def _event(session_id: str = "cs_1", *, event_type: str = "checkout.session.completed", **metadata):
    return json.dumps(
        {
            "type": event_type,
            "data": {
                "object": {
                    "id": session_id,
                    "customer": "cus_1",
                    "subscription": "sub_1",
                    "metadata": metadata,
                },
            },
        },
    ).encode("utf-8")


def _signed(payload: bytes, *, timestamp: int = NOW, secret: str = SECRET) -> str:
    return signature_header(payload, secret=secret, timestamp=timestamp)


def _register(registrations: RegistrationRepository, session_id: str = "cs_1") -> None:
    registrations.create_pending(
        RegistrationCreate(
            checkout_session_id=session_id,
            company_name="Acme Learning",
            admin_email="admin@acme.test",
        ),
    )


def test_verify_signature_accepts_valid_header() -> None:
    payload = b'{"type": "ping"}'

    verify_signature(payload, _signed(payload), secret=SECRET, now=lambda: float(NOW + 10))


@pytest.mark.parametrize(
    "header",
    [
        "",
        "t=abc,v1=deadbeef",
        f"t={NOW}",
        f"t={NOW},v1=deadbeef",
        f"t={NOW - 301},v1=deadbeef",
    ],
)
def test_verify_signature_rejects_bad_headers(header: str) -> None:
    with pytest.raises(SignatureVerificationError):
        verify_signature(b"{}", header, secret=SECRET, now=lambda: float(NOW))


def test_verify_signature_rejects_stale_and_foreign_signatures() -> None:
    payload = b"{}"

    with pytest.raises(SignatureVerificationError):
        verify_signature(
            payload,
            _signed(payload, timestamp=NOW - 600),
            secret=SECRET,
            now=lambda: float(NOW),
        )
    with pytest.raises(SignatureVerificationError):
        verify_signature(
            payload,
            _signed(payload, secret="other"),
            secret=SECRET,
            now=lambda: float(NOW),
        )
    with pytest.raises(SignatureVerificationError):
        verify_signature(payload, _signed(payload), secret="", now=lambda: float(NOW))


def test_checkout_completed_marks_paid_and_enqueues_once(
    trigger: CheckoutEventTrigger,
    registrations: RegistrationRepository,
    task_queue: TaskQueue,
) -> None:
    _register(registrations)
    payload = _event(seat_count="12")

    first = trigger.handle(payload, _signed(payload))
    second = trigger.handle(payload, _signed(payload))

    assert first.outcome == TriggerOutcome.PROVISIONING_ENQUEUED
    assert first.checkout_session_id == "cs_1"
    assert second.outcome == TriggerOutcome.DUPLICATE
    registration = registrations.get_by_session("cs_1")
    assert registration is not None
    assert registration.status == RegistrationStatus.PAID
    assert registration.stripe_customer_id == "cus_1"
    assert registration.stripe_subscription_id == "sub_1"
    assert registration.seat_count == 12
    assert registration.paid_at is not None
    tasks = task_queue.list_tasks(task_type=PROVISION_TASK_TYPE)
    assert len(tasks) == 1
    assert tasks[0].queue == CRITICAL_QUEUE
    assert tasks[0].payload == {"checkout_session_id": "cs_1"}


def test_unknown_session_is_reported(trigger: CheckoutEventTrigger, task_queue: TaskQueue) -> None:
    payload = _event("cs_missing")

    result = trigger.handle(payload, _signed(payload))

    assert result.outcome == TriggerOutcome.UNKNOWN_SESSION
    assert task_queue.stats()["ready"] == 0


def test_other_events_and_existing_tenants_are_ignored(
    trigger: CheckoutEventTrigger,
    registrations: RegistrationRepository,
) -> None:
    _register(registrations)
    other = _event(event_type="invoice.paid")
    renewal = _event(company_id="tenant-a")

    assert trigger.handle(other, _signed(other)).outcome == TriggerOutcome.IGNORED
    assert trigger.handle(renewal, _signed(renewal)).outcome == TriggerOutcome.IGNORED
    registration = registrations.get_by_session("cs_1")
    assert registration is not None and registration.status == RegistrationStatus.PENDING


def test_invalid_signature_changes_nothing(
    trigger: CheckoutEventTrigger,
    registrations: RegistrationRepository,
) -> None:
    _register(registrations)
    payload = _event()

    with pytest.raises(SignatureVerificationError):
        trigger.handle(payload, _signed(payload, secret="attacker"))

    registration = registrations.get_by_session("cs_1")
    assert registration is not None and registration.status == RegistrationStatus.PENDING


def test_malformed_payload_is_rejected(trigger: CheckoutEventTrigger) -> None:
    payload = b"not json"

    with pytest.raises(ValidationError):
        trigger.handle(payload, _signed(payload))
