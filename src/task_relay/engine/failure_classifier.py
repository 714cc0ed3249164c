"""Deterministic collaborator failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from task_relay.engine.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "restricted token",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_TRANSPORT_PATTERNS: tuple[str, ...] = (
    "transport error",
    "error sending request for url",
    "connection reset",
    "connection refused",
    "timed out",
    "temporarily unavailable",
    "temporary failure",
    "network error",
    "could not resolve host",
    "dns",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def is_transport(self) -> bool:
        return self.failure_class is FailureClass.TRANSPORT_TRANSIENT

    def to_event_payload(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(
    *,
    exit_code: int | None,
    stdout: str = "",
    stderr: str = "",
    transient_exit_codes: tuple[int, ...] = (),
) -> FailureClassification:
    """Classify a collaborator failure into transport vs. non-retryable."""

    haystack = f"{stderr}\n{stdout}".lower()

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code="access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TRANSPORT_TRANSIENT,
            reason_code="rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSPORT_PATTERNS)
    transient_exit = exit_code is not None and exit_code in transient_exit_codes
    if pattern is not None or transient_exit:
        return FailureClassification(
            failure_class=FailureClass.TRANSPORT_TRANSIENT,
            reason_code="transport_transient",
            matched_rule=(
                "transient_exit_code" if transient_exit and pattern is None else "transport_pattern"
            ),
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        reason_code="non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def classify_error_message(message: str) -> FailureClassification:
    """Classify an exception message raised by an in-process collaborator."""

    return classify_failure(exit_code=None, stderr=message)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
