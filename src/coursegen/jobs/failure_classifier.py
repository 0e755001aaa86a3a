"""Deterministic failure classification for job retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.exc import OperationalError

from coursegen.jobs.errors import (
    NotFoundError,
    OutputValidationError,
    PermanentProviderError,
    StorageError,
    TransientProviderError,
    ValidationError,
)
from coursegen.jobs.models import RETRYABLE_FAILURE_CLASSES, FailureClass

JOB_FAILURE_CLASSIFIER_VERSION = 1

_PERMANENT_PATTERNS: tuple[str, ...] = (
    "quota",
    "insufficient",
    "billing",
    "credits",
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "model not found",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "network error",
)
_STORAGE_PATTERNS: tuple[str, ...] = (
    "database is locked",
    "disk i/o error",
    "no space left",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": JOB_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


_TYPED_RULES: tuple[tuple[type[BaseException], FailureClass, str], ...] = (
    (ValidationError, FailureClass.VALIDATION, "validation_error"),
    (NotFoundError, FailureClass.NOT_FOUND, "not_found"),
    (PermanentProviderError, FailureClass.PERMANENT_PROVIDER, "permanent_provider"),
    (OutputValidationError, FailureClass.OUTPUT_INVALID, "output_invalid"),
    (TransientProviderError, FailureClass.TRANSIENT_PROVIDER, "transient_provider"),
    (StorageError, FailureClass.STORAGE, "storage_error"),
    (TimeoutError, FailureClass.TRANSIENT_PROVIDER, "timeout"),
    (ConnectionError, FailureClass.TRANSIENT_PROVIDER, "connection_error"),
    (OperationalError, FailureClass.STORAGE, "storage_operational"),
    (OSError, FailureClass.STORAGE, "os_error"),
)


def classify_job_failure(error: BaseException) -> FailureClassification:
    """Classify a handler error into a deterministic retry class."""

    for error_type, failure_class, rule in _TYPED_RULES:
        if isinstance(error, error_type):
            return FailureClassification(
                failure_class=failure_class,
                reason_code=f"{type(error).__name__}",
                matched_rule=rule,
                matched_pattern=None,
            )

    haystack = str(error).lower()

    pattern = _first_match(haystack, _PERMANENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.PERMANENT_PROVIDER,
            reason_code="provider_permanent",
            matched_rule="permanent_message",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT_PROVIDER,
            reason_code="provider_rate_limit",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT_PROVIDER,
            reason_code="provider_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _STORAGE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.STORAGE,
            reason_code="storage_transient",
            matched_rule="storage_message",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        reason_code=f"{type(error).__name__}",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
