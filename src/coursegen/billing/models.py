"""Domain models for pending registrations and provisioned tenants."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROVISIONING = "provisioning"
    FAILED = "failed"


@dataclass(slots=True)
class RegistrationCreate:
    checkout_session_id: str
    company_name: str
    admin_email: str
    admin_name: str = ""
    plan: str = "standard"
    seat_count: int = 1


@dataclass(slots=True)
class PaymentDetails:
    """Values captured from the checkout event by the paid transition."""

    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    seat_count: int | None = None


@dataclass(slots=True)
class RegistrationView:
    registration_id: str
    checkout_session_id: str
    company_name: str
    admin_email: str
    admin_name: str
    plan: str
    seat_count: int
    status: RegistrationStatus
    stripe_customer_id: str | None
    stripe_subscription_id: str | None
    error_message: str | None
    expires_at: datetime
    paid_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TenantView:
    tenant_id: str
    checkout_session_id: str
    company_name: str
    admin_email: str
    plan: str
    seat_count: int
    stripe_customer_id: str | None
    stripe_subscription_id: str | None
    created_at: datetime
