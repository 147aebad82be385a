"""Deterministic task failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

TASK_FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"


_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "task_timeout",
    "lease_expired",
    "timed out",
    "timeout",
)
_NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "invalid_input",
    "malformed",
    "unsupported",
    "not implemented",
    "configuration",
)
_PROXY_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "proxy",
    "tunnel",
    "407",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "rate_limited",
    "rate limit",
    "too many requests",
    "429",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "network",
    "connection reset",
    "connection refused",
    "temporarily unavailable",
    "dns",
)


@dataclass(slots=True)
class TaskFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class != FailureClass.NON_RETRYABLE

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": TASK_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_task_failure(error_code: str | None, detail: str | None = None) -> TaskFailureClassification:
    """Classify a processor failure. Unknown failures are treated as transient."""

    haystack = _normalize_text(error_code=error_code, detail=detail)

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return TaskFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="task_timeout",
            matched_rule="timeout",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NON_RETRYABLE_PATTERNS)
    if pattern is not None:
        return TaskFailureClassification(
            failure_class=FailureClass.NON_RETRYABLE,
            reason_code="task_non_retryable",
            matched_rule="non_retryable",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _PROXY_TRANSIENT_PATTERNS)
    if pattern is not None:
        return TaskFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="proxy_transient",
            matched_rule="proxy_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return TaskFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    return TaskFailureClassification(
        failure_class=FailureClass.TRANSIENT,
        reason_code="task_transient",
        matched_rule="generic_transient" if pattern is not None else "fallback_transient",
        matched_pattern=pattern,
    )


def _normalize_text(*, error_code: str | None, detail: str | None) -> str:
    return f"{error_code or ''}\n{detail or ''}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
