from __future__ import annotations

import allure

from batchmesh.worker.failure_classifier import (
    TASK_FAILURE_CLASSIFIER_VERSION,
    FailureClass,
    classify_task_failure,
)

pytestmark = [
    allure.epic("Job Distribution"),
    allure.feature("Retries & Failure Policy"),
]


def test_classifier_version_is_stable() -> None:
    assert TASK_FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_maps_timeouts_before_other_rules() -> None:
    classified = classify_task_failure("TASK_TIMEOUT", "proxy tunnel stalled")

    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.matched_rule == "timeout"
    assert classified.matched_pattern == "task_timeout"
    assert classified.retryable


def test_classifier_maps_lease_expiry_to_timeout() -> None:
    assert classify_task_failure("LEASE_EXPIRED").failure_class == FailureClass.TIMEOUT


def test_classifier_maps_invalid_input_to_non_retryable() -> None:
    classified = classify_task_failure("INVALID_INPUT", "username is empty")

    assert classified.failure_class == FailureClass.NON_RETRYABLE
    assert classified.reason_code == "task_non_retryable"
    assert not classified.retryable


def test_classifier_maps_proxy_failures_to_transient() -> None:
    classified = classify_task_failure("CONNECT_FAILED", "HTTP 407 Proxy Authentication Required")

    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == "proxy_transient"


def test_classifier_maps_rate_limit_to_transient() -> None:
    classified = classify_task_failure("HTTP_ERROR", "HTTP 429 too many requests, please retry")

    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.matched_pattern == "too many requests"


def test_classifier_falls_back_to_transient() -> None:
    classified = classify_task_failure("SOMETHING_ODD", None)

    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == "fallback_transient"
    assert classified.matched_pattern is None


def test_classifier_details_are_serializable() -> None:
    details = classify_task_failure("NETWORK_ERROR", "connection reset by peer").to_details()

    assert details == {
        "classifier_version": 1,
        "failure_class": "transient",
        "reason_code": "task_transient",
        "matched_rule": "generic_transient",
        "matched_pattern": "network",
    }
