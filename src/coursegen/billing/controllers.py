"""Controllers for registration and checkout webhook CLI commands."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path

from coursegen.billing.models import RegistrationCreate, RegistrationStatus
from coursegen.billing.webhooks import signature_header
from coursegen.config import Settings
from coursegen.jobs.errors import NotFoundError, ValidationError
from coursegen.runtime import open_runtime


@dataclass(slots=True)
class RegisterCommand:
    db_path: Path | None
    checkout_session_id: str
    company_name: str
    admin_email: str
    admin_name: str = ""
    plan: str = "standard"
    seat_count: int = 1


@dataclass(slots=True)
class WebhookCommand:
    """CLI input for delivering a checkout event from a file."""

    db_path: Path | None
    payload_path: Path
    signature: str | None = None


@dataclass(slots=True)
class ListRegistrationsCommand:
    db_path: Path | None
    status: str | None = None
    limit: int = 50


@dataclass(slots=True)
class SessionCommand:
    db_path: Path | None
    checkout_session_id: str


class BillingCliController:
    """Coordinates pending registrations and webhook delivery from the CLI."""

    def register(self, command: RegisterCommand) -> list[str]:
        with open_runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            registration = runtime.registrations.create_pending(
                RegistrationCreate(
                    checkout_session_id=command.checkout_session_id,
                    company_name=command.company_name,
                    admin_email=command.admin_email,
                    admin_name=command.admin_name,
                    plan=command.plan,
                    seat_count=command.seat_count,
                ),
            )
        return [
            "Registration pending: "
            f"session={registration.checkout_session_id} company={registration.company_name} "
            f"expires_at={registration.expires_at.isoformat()}",
        ]

    def deliver_webhook(self, command: WebhookCommand) -> list[str]:
        """Feed a checkout event through signature verification and the trigger.

        Without an explicit signature the payload is signed with the configured
        secret, which is how local deliveries are replayed.
        """

        settings = Settings.from_env(db_path=command.db_path)
        if not settings.billing.webhook_secret:
            raise ValidationError("COURSEGEN_BILLING_WEBHOOK_SECRET is not configured.")
        payload = command.payload_path.read_bytes()
        signature = command.signature or signature_header(
            payload,
            secret=settings.billing.webhook_secret,
            timestamp=int(time.time()),
        )
        with open_runtime(settings) as runtime:
            result = runtime.event_trigger().handle(payload, signature)
        return [
            "Webhook processed: "
            f"event={result.event_type or '-'} outcome={result.outcome.value} "
            f"session={result.checkout_session_id or '-'}",
        ]

    def list_registrations(self, command: ListRegistrationsCommand) -> list[str]:
        status = RegistrationStatus(command.status.strip().lower()) if command.status else None
        with open_runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            registrations = runtime.registrations.list_registrations(
                status=status,
                limit=command.limit,
            )
        lines = [f"Registrations: {len(registrations)}"]
        for item in registrations:
            lines.append(
                f"  {item.checkout_session_id} status={item.status.value} "
                f"company={item.company_name} error={item.error_message or '-'}",
            )
        return lines

    def show_session(self, command: SessionCommand) -> list[str]:
        with open_runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            tenant = runtime.registrations.get_tenant_by_session(command.checkout_session_id)
            registration = runtime.registrations.get_by_session(command.checkout_session_id)
        if tenant is not None:
            return [
                f"Tenant provisioned: tenant_id={tenant.tenant_id} company={tenant.company_name} "
                f"plan={tenant.plan} seats={tenant.seat_count}",
            ]
        if registration is None:
            raise NotFoundError(f"Checkout session not found: {command.checkout_session_id}")
        return [
            f"Registration {registration.status.value}: company={registration.company_name} "
            f"error={registration.error_message or '-'}",
        ]
