"""Deterministic classification of failed agent processes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from storyloop.orchestrator.exit_codes import ExitCode

FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    """Coarse cause of an agent transport failure."""

    NETWORK_TRANSIENT = "network_transient"
    RATE_LIMITED = "rate_limited"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    LAUNCH_FAILED = "launch_failed"
    AGENT_ERROR = "agent_error"


_NETWORK_CLASSES = frozenset({FailureClass.NETWORK_TRANSIENT, FailureClass.RATE_LIMITED})

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "insufficient",
    "billing",
    "payment",
    "credit balance",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "please run /login",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "overloaded",
    "529",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "econnreset",
    "econnrefused",
    "etimedout",
    "enotfound",
    "connection reset",
    "connection refused",
    "connection error",
    "network error",
    "socket hang up",
    "temporarily unavailable",
    "temporary failure",
    "could not resolve host",
    "fetch failed",
)


@dataclass(slots=True)
class TransportFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def exit_code(self) -> ExitCode:
        if self.failure_class in _NETWORK_CLASSES:
            return ExitCode.NETWORK_ERROR
        return ExitCode.AGENT_ERROR

    def to_details(self, *, tool: str) -> dict[str, object]:
        """Serialize classifier diagnostics for the error log."""

        return {
            "classifierVersion": FAILURE_CLASSIFIER_VERSION,
            "tool": tool,
            "failureClass": self.failure_class.value,
            "reasonCode": self.reason_code,
            "matchedRule": self.matched_rule,
            "matchedPattern": self.matched_pattern,
        }


def classify_transport_failure(
    *,
    tool: str,
    returncode: int | None,
    stdout: str,
    stderr: str,
) -> TransportFailureClassification:
    """Classify a failed agent process from its output streams.

    `returncode` is None when the process never started.
    """

    if returncode is None:
        return TransportFailureClassification(
            failure_class=FailureClass.LAUNCH_FAILED,
            reason_code=f"{tool}_launch_failed",
            matched_rule="launch_failed",
            matched_pattern=None,
        )

    haystack = f"{stderr}\n{stdout}".lower()
    rules: tuple[tuple[FailureClass, str, tuple[str, ...]], ...] = (
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.RATE_LIMITED, "rate_limited", _RATE_LIMIT_PATTERNS),
        (FailureClass.NETWORK_TRANSIENT, "network_transient", _NETWORK_PATTERNS),
    )
    for failure_class, rule, patterns in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return TransportFailureClassification(
                failure_class=failure_class,
                reason_code=f"{tool}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return TransportFailureClassification(
        failure_class=FailureClass.AGENT_ERROR,
        reason_code=f"{tool}_agent_error",
        matched_rule="fallback_agent_error",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
