from __future__ import annotations

import allure

from task_relay.engine.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_error_message,
    classify_failure,
)
from task_relay.engine.models import FailureClass

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Provider Retries"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_auth_failure_wins_over_transient_exit_code() -> None:
    classified = classify_failure(
        exit_code=137,
        stderr="Unauthorized: invalid API key",
        transient_exit_codes=(137, 143),
    )

    assert classified.failure_class == FailureClass.ACCESS_OR_AUTH
    assert classified.matched_pattern == "unauthorized"
    assert not classified.is_transport


def test_transport_patterns_are_retryable() -> None:
    classified = classify_failure(
        exit_code=1,
        stderr="error sending request for url (https://api.example.com/v1/chat)",
    )

    assert classified.is_transport
    assert classified.matched_rule == "transport_pattern"
    assert classified.matched_pattern == "error sending request for url"


def test_rate_limit_is_transport_transient() -> None:
    classified = classify_failure(exit_code=1, stdout="429 Too Many Requests")

    assert classified.failure_class == FailureClass.TRANSPORT_TRANSIENT
    assert classified.reason_code == "rate_limit_transient"


def test_transient_exit_code_without_pattern() -> None:
    classified = classify_failure(exit_code=143, stderr="", transient_exit_codes=(137, 143))

    assert classified.is_transport
    assert classified.matched_rule == "transient_exit_code"
    assert classified.matched_pattern is None


def test_unknown_failure_is_non_retryable() -> None:
    classified = classify_failure(exit_code=2, stderr="SyntaxError: unexpected token")

    assert classified.failure_class == FailureClass.NON_RETRYABLE
    assert classified.matched_rule == "fallback_non_retryable"


def test_error_message_classification_and_event_payload() -> None:
    classified = classify_error_message("Connection refused by upstream")

    assert classified.is_transport
    assert classified.to_event_payload() == {
        "classifier_version": 1,
        "failure_class": "transport_transient",
        "reason_code": "transport_transient",
        "matched_rule": "transport_pattern",
        "matched_pattern": "connection refused",
    }
