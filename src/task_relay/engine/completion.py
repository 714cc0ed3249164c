"""Claim-evidence completion evaluator."""

from __future__ import annotations

from task_relay.engine.claims import ClaimDetector, ClaimKind, PatternClaimDetector
from task_relay.engine.models import (
    Complete,
    CompletionDecision,
    ExecutionEvidence,
    NotComplete,
)

GUARDRAIL_NOTICE = "guardrail_notice"
WRITE_CLAIM_WITHOUT_VERIFICATION = "write_claim_without_post_write_verification"
IN_PROGRESS_UPDATE = "in_progress_update"

_DEFAULT_DETECTOR = PatternClaimDetector()


def evaluate_completion(
    response_text: str,
    evidence: ExecutionEvidence,
    *,
    claim_detector: ClaimDetector | None = None,
    detect_progress_updates: bool = True,
) -> CompletionDecision:
    """Decide whether a round's output may finalize the task.

    A write claim completes only with a successful write, a later read and at
    least one verified non-empty artifact. Missing evidence keeps the task
    running; this function never declares failure.
    """

    classification = (claim_detector or _DEFAULT_DETECTOR).classify(response_text)

    if classification.guardrail_notice:
        return NotComplete(GUARDRAIL_NOTICE)

    if classification.kind is ClaimKind.WRITE_CLAIM and not evidence.write_verified:
        return NotComplete(WRITE_CLAIM_WITHOUT_VERIFICATION)

    if detect_progress_updates and classification.kind is ClaimKind.PROGRESS_UPDATE:
        return NotComplete(IN_PROGRESS_UPDATE)

    return Complete()
