from __future__ import annotations

import allure
import pytest
from sqlalchemy.exc import OperationalError

from coursegen.jobs.errors import (
    NotFoundError,
    OutputValidationError,
    PermanentProviderError,
    StorageError,
    TransientProviderError,
    ValidationError,
)
from coursegen.jobs.failure_classifier import (
    JOB_FAILURE_CLASSIFIER_VERSION,
    classify_job_failure,
)
from coursegen.jobs.models import FailureClass

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Execution & Retry"),
]


def test_classifier_version_is_stable() -> None:
    assert JOB_FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("error", "failure_class", "retryable"),
    [
        (ValidationError("lesson_count must be between 1 and 50."), FailureClass.VALIDATION, False),
        (NotFoundError("Outline lesson not found"), FailureClass.NOT_FOUND, False),
        (PermanentProviderError("bad key"), FailureClass.PERMANENT_PROVIDER, False),
        (OutputValidationError("no lessons"), FailureClass.OUTPUT_INVALID, True),
        (TransientProviderError("upstream 503"), FailureClass.TRANSIENT_PROVIDER, True),
        (StorageError("write failed"), FailureClass.STORAGE, True),
        (TimeoutError("read timed out"), FailureClass.TRANSIENT_PROVIDER, True),
        (ConnectionResetError("peer reset"), FailureClass.TRANSIENT_PROVIDER, True),
    ],
)
def test_typed_errors_map_to_classes(
    error: Exception,
    failure_class: FailureClass,
    retryable: bool,
) -> None:
    classified = classify_job_failure(error)

    assert classified.failure_class == failure_class
    assert classified.retryable is retryable
    assert classified.matched_pattern is None
    assert classified.reason_code == type(error).__name__


def test_sqlite_operational_error_is_storage() -> None:
    error = OperationalError("UPDATE generation_jobs", {}, Exception("database is locked"))

    classified = classify_job_failure(error)

    assert classified.failure_class == FailureClass.STORAGE
    assert classified.matched_rule == "storage_operational"


def test_classifier_prefers_permanent_over_rate_limit_message() -> None:
    classified = classify_job_failure(RuntimeError("429: quota exceeded for this project"))

    assert classified.failure_class == FailureClass.PERMANENT_PROVIDER
    assert classified.matched_rule == "permanent_message"
    assert classified.matched_pattern == "quota"


def test_classifier_maps_rate_limit_message_to_transient() -> None:
    classified = classify_job_failure(RuntimeError("HTTP 429 too many requests, please retry"))

    assert classified.failure_class == FailureClass.TRANSIENT_PROVIDER
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.matched_pattern == "too many requests"


def test_classifier_maps_storage_message() -> None:
    classified = classify_job_failure(RuntimeError("No space left on device"))

    assert classified.failure_class == FailureClass.STORAGE
    assert classified.matched_pattern == "no space left"


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_job_failure(KeyError("lessons"))

    assert classified.failure_class == FailureClass.NON_RETRYABLE
    assert classified.retryable is False
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "failure_class": "non_retryable",
        "reason_code": "KeyError",
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }
