"""Deterministic backend failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from prompt_fanout.orchestrator.models import RETRYABLE_FAILURE_CLASSES, FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)

_PERMANENT_RULES: tuple[tuple[FailureClass, str, tuple[str, ...]], ...] = (
    (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
    (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
    (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
)


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES


def classify_backend_failure(
    *,
    exit_status: int | None,
    stdout: str = "",
    stderr: str = "",
    timed_out: bool = False,
) -> FailureClassification:
    """Classify one failed invocation.

    Timeouts and unrecognized nonzero exits are presumed recoverable.
    Rate-limit wording is checked before the permanent rules so that a
    "429 ... quota" message still counts as transient.
    """

    if timed_out:
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timeout",
            matched_pattern=None,
        )

    haystack = f"{stderr}\n{stdout}".lower()

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    for failure_class, rule, patterns in _PERMANENT_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return FailureClassification(
        failure_class=FailureClass.BACKEND_TRANSIENT,
        matched_rule=f"nonzero_exit_{exit_status}" if exit_status is not None else "backend_error",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
