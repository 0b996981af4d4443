"""Deterministic classification of worker-reported and dispatch failures."""

from __future__ import annotations

from dataclasses import dataclass

from execution_orchestrator.orchestrator.errors import OrchestratorError, error_for_kind
from execution_orchestrator.orchestrator.models import DispatchOutcome, FailureKind

FAILURE_CLASSIFIER_VERSION = 2

_VALIDATION_KINDS: tuple[str, ...] = (
    "validation",
    "validation_error",
    "invalid_input",
    "bad_request",
)
# Worker-declared fatal errors stay per-execution; pausing dispatch is left to health checks.
_DECLARED_FATAL_KINDS: tuple[str, ...] = (
    "fatal",
    "fatal_system",
    "fatal_system_error",
)
_VALIDATION_PATTERNS: tuple[str, ...] = (
    "invalid context",
    "invalid payload",
    "malformed",
    "missing required",
    "schema validation",
    "unsupported workflow",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.kind is not FailureKind.VALIDATION

    def to_error(self, message: str) -> OrchestratorError:
        return error_for_kind(self.kind, message)

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for execution events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_kind": self.kind.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_callback_failure(
    *,
    error_kind: str | None,
    error_message: str | None,
) -> FailureClassification:
    """Classify the error block of a failure callback."""

    normalized_kind = (error_kind or "").strip().lower()
    if normalized_kind in _VALIDATION_KINDS:
        return FailureClassification(
            kind=FailureKind.VALIDATION,
            matched_rule="declared_validation",
            matched_pattern=normalized_kind,
        )
    if normalized_kind in _DECLARED_FATAL_KINDS:
        return FailureClassification(
            kind=FailureKind.WORKER,
            matched_rule="declared_fatal",
            matched_pattern=normalized_kind,
        )

    pattern = _first_match((error_message or "").lower(), _VALIDATION_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=FailureKind.VALIDATION,
            matched_rule="validation_message",
            matched_pattern=pattern,
        )

    return FailureClassification(
        kind=FailureKind.WORKER,
        matched_rule="fallback_worker",
        matched_pattern=None,
    )


def classify_dispatch_status(status_code: int) -> DispatchOutcome:
    """Map the worker's HTTP status on dispatch to a dispatch outcome."""

    if 200 <= status_code < 300:
        return DispatchOutcome.ACKNOWLEDGED
    if 400 <= status_code < 500 and status_code not in {408, 429}:
        return DispatchOutcome.REJECTED
    return DispatchOutcome.TRANSIENT_ERROR


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
