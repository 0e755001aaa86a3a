"""Registration persistence with compare-and-set status transitions."""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from coursegen.billing.models import (
    PaymentDetails,
    RegistrationCreate,
    RegistrationStatus,
    RegistrationView,
    TenantView,
)
from coursegen.jobs.errors import InvalidStateError, NotFoundError, ValidationError
from coursegen.storage.common import (
    Clock,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from coursegen.storage.sqlmodel_models import PendingRegistration, ProvisionedTenant

logger = logging.getLogger(__name__)

DEFAULT_REGISTRATION_TTL = timedelta(hours=24)


class RegistrationRepository:
    """Pending registrations keyed by checkout session.

    Every status change is a conditional update on the expected prior
    status, so duplicate webhook deliveries or concurrent provisioning
    attempts observe ``False`` instead of repeating a side effect.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Clock = utc_now,
        sqlite_busy_timeout_ms: int = 5000,
        registration_ttl: timedelta = DEFAULT_REGISTRATION_TTL,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.registration_ttl = registration_ttl
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def create_pending(self, registration: RegistrationCreate) -> RegistrationView:
        if not registration.checkout_session_id.strip():
            raise ValidationError("checkout_session_id is required.")
        if not registration.company_name.strip() or not registration.admin_email.strip():
            raise ValidationError("company_name and admin_email are required.")
        if registration.seat_count < 1:
            raise ValidationError("seat_count must be >= 1.")
        now = self.clock()
        with Session(self.engine) as session:
            existing = session.exec(
                select(PendingRegistration).where(
                    PendingRegistration.checkout_session_id == registration.checkout_session_id,
                ),
            ).one_or_none()
            if existing is not None:
                raise ValidationError(
                    f"Registration already exists for session {registration.checkout_session_id}",
                )
            row = PendingRegistration(
                registration_id=str(uuid4()),
                checkout_session_id=registration.checkout_session_id,
                company_name=registration.company_name,
                admin_email=registration.admin_email,
                admin_name=registration.admin_name,
                plan=registration.plan,
                seat_count=registration.seat_count,
                status=RegistrationStatus.PENDING.value,
                expires_at=to_db_datetime(now + self.registration_ttl),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_registration_view(row)

    def get_by_session(self, checkout_session_id: str) -> RegistrationView | None:
        with Session(self.engine) as session:
            row = self._find(session=session, checkout_session_id=checkout_session_id)
        return _to_registration_view(row) if row is not None else None

    def mark_paid_if_pending(
        self,
        checkout_session_id: str,
        details: PaymentDetails | None = None,
    ) -> bool:
        """The single ``pending -> paid`` transition; False for any other prior status."""

        details = details or PaymentDetails()
        now = self.clock()
        values: dict[str, object] = {
            "status": RegistrationStatus.PAID.value,
            "stripe_customer_id": details.stripe_customer_id,
            "stripe_subscription_id": details.stripe_subscription_id,
            "paid_at": to_db_datetime(now),
            "updated_at": to_db_datetime(now),
        }
        if details.seat_count is not None and details.seat_count > 0:
            values["seat_count"] = details.seat_count
        return self._transition(
            checkout_session_id=checkout_session_id,
            expected=RegistrationStatus.PENDING,
            values=values,
        )

    def mark_provisioning(self, checkout_session_id: str) -> bool:
        return self._transition(
            checkout_session_id=checkout_session_id,
            expected=RegistrationStatus.PAID,
            values={
                "status": RegistrationStatus.PROVISIONING.value,
                "updated_at": to_db_datetime(self.clock()),
            },
        )

    def revert_to_paid(self, checkout_session_id: str, *, error_message: str | None = None) -> bool:
        return self._transition(
            checkout_session_id=checkout_session_id,
            expected=RegistrationStatus.PROVISIONING,
            values={
                "status": RegistrationStatus.PAID.value,
                "error_message": error_message,
                "updated_at": to_db_datetime(self.clock()),
            },
        )

    def mark_failed(self, checkout_session_id: str, *, error_message: str) -> bool:
        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PendingRegistration)
                .where(
                    col(PendingRegistration.checkout_session_id) == checkout_session_id,
                    col(PendingRegistration.status).in_(
                        [RegistrationStatus.PAID.value, RegistrationStatus.PROVISIONING.value],
                    ),
                )
                .values(
                    status=RegistrationStatus.FAILED.value,
                    error_message=error_message,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.error("Registration %s failed: %s", checkout_session_id, error_message)
        return True

    def complete_provisioning(self, checkout_session_id: str) -> TenantView:
        """Create the tenant and drop the registration in one transaction.

        Replays for an already-provisioned session return the existing tenant.
        """

        now = self.clock()
        with Session(self.engine) as session:
            tenant = session.exec(
                select(ProvisionedTenant).where(
                    ProvisionedTenant.checkout_session_id == checkout_session_id,
                ),
            ).one_or_none()
            if tenant is not None:
                return _to_tenant_view(tenant)

            row = self._find(session=session, checkout_session_id=checkout_session_id)
            if row is None:
                raise NotFoundError(f"Registration not found: {checkout_session_id}")
            if row.status != RegistrationStatus.PROVISIONING.value:
                raise InvalidStateError(
                    f"Registration {checkout_session_id} is {row.status}, expected provisioning",
                )
            tenant = ProvisionedTenant(
                tenant_id=str(uuid4()),
                checkout_session_id=checkout_session_id,
                company_name=row.company_name,
                admin_email=row.admin_email,
                plan=row.plan,
                seat_count=row.seat_count,
                stripe_customer_id=row.stripe_customer_id,
                stripe_subscription_id=row.stripe_subscription_id,
                created_at=to_db_datetime(now),
            )
            session.add(tenant)
            session.exec(
                sa_delete(PendingRegistration).where(
                    col(PendingRegistration.registration_id) == row.registration_id,
                ),
            )
            session.commit()
            session.refresh(tenant)
            logger.info(
                "Provisioned tenant %s for session %s",
                tenant.tenant_id,
                checkout_session_id,
            )
            return _to_tenant_view(tenant)

    def list_stuck(
        self,
        *,
        status: RegistrationStatus,
        older_than: timedelta,
    ) -> list[RegistrationView]:
        """Registrations sitting in ``status`` since before ``now - older_than``."""

        cutoff = to_db_datetime(self.clock() - older_than)
        since = (
            PendingRegistration.paid_at
            if status == RegistrationStatus.PAID
            else PendingRegistration.updated_at
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(PendingRegistration)
                .where(
                    PendingRegistration.status == status.value,
                    col(since) <= cutoff,
                )
                .order_by(col(since).asc()),
            ).all()
        return [_to_registration_view(row) for row in rows]

    def list_registrations(
        self,
        *,
        status: RegistrationStatus | None = None,
        limit: int = 50,
    ) -> list[RegistrationView]:
        statement = select(PendingRegistration)
        if status is not None:
            statement = statement.where(PendingRegistration.status == status.value)
        with Session(self.engine) as session:
            rows = session.exec(
                statement.order_by(col(PendingRegistration.created_at).desc()).limit(limit),
            ).all()
        return [_to_registration_view(row) for row in rows]

    def delete_expired(self) -> int:
        now = to_db_datetime(self.clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(PendingRegistration).where(
                    col(PendingRegistration.status) == RegistrationStatus.PENDING.value,
                    col(PendingRegistration.expires_at) <= now,
                ),
            )
            session.commit()
        deleted = int(result.rowcount or 0)
        if deleted:
            logger.info("Deleted %d expired pending registrations", deleted)
        return deleted

    def get_tenant_by_session(self, checkout_session_id: str) -> TenantView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProvisionedTenant).where(
                    ProvisionedTenant.checkout_session_id == checkout_session_id,
                ),
            ).one_or_none()
        return _to_tenant_view(row) if row is not None else None

    def _transition(
        self,
        *,
        checkout_session_id: str,
        expected: RegistrationStatus,
        values: dict[str, object],
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(PendingRegistration)
                .where(
                    col(PendingRegistration.checkout_session_id) == checkout_session_id,
                    col(PendingRegistration.status) == expected.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.info(
            "Registration %s: %s -> %s",
            checkout_session_id,
            expected.value,
            values["status"],
        )
        return True

    def _find(self, *, session: Session, checkout_session_id: str) -> PendingRegistration | None:
        return session.exec(
            select(PendingRegistration).where(
                PendingRegistration.checkout_session_id == checkout_session_id,
            ),
        ).one_or_none()


def _to_registration_view(row: PendingRegistration) -> RegistrationView:
    return RegistrationView(
        registration_id=row.registration_id,
        checkout_session_id=row.checkout_session_id,
        company_name=row.company_name,
        admin_email=row.admin_email,
        admin_name=row.admin_name,
        plan=row.plan,
        seat_count=row.seat_count,
        status=RegistrationStatus(row.status),
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        error_message=row.error_message,
        expires_at=to_utc_aware_datetime(row.expires_at),
        paid_at=optional_utc(row.paid_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_tenant_view(row: ProvisionedTenant) -> TenantView:
    return TenantView(
        tenant_id=row.tenant_id,
        checkout_session_id=row.checkout_session_id,
        company_name=row.company_name,
        admin_email=row.admin_email,
        plan=row.plan,
        seat_count=row.seat_count,
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )
