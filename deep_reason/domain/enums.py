"""Controlled enumerations for the deep-reason domain.

Every categorical field in the domain MUST reference an enum defined here.
Free-form strings are not acceptable for classification fields.
"""

from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    """Lifecycle of an analysis session.

    INITIATED → ACTIVE → (AWAITING_RESPONSE ↔ ACTIVE)* → FINALIZING → COMPLETED
    Any non-terminal state may move to EXPIRED or FAILED.
    """

    INITIATED = "initiated"
    ACTIVE = "active"
    AWAITING_RESPONSE = "awaiting_response"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SESSION_STATES


TERMINAL_SESSION_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.EXPIRED, SessionState.FAILED}
)


class TurnRole(str, Enum):
    """Who produced a conversation turn."""

    REQUESTER = "requester"
    ANALYZER = "analyzer"


class AnalysisType(str, Enum):
    """Analysis-type tag carried on every dispatch."""

    EXECUTION_TRACE = "execution_trace"
    CROSS_SYSTEM = "cross_system"
    PERFORMANCE = "performance"
    HYPOTHESIS_TEST = "hypothesis_test"


class SummaryFormat(str, Enum):
    """Shape of the closing synthesis requested by finalize."""

    DETAILED = "detailed"
    CONCISE = "concise"
    ACTIONABLE = "actionable"


class TurnOutcome(str, Enum):
    """Result classification of a submitted turn."""

    RESPONDED = "responded"
    RETRYABLE = "retryable"


class HypothesisStatus(str, Enum):
    """PENDING → TESTING → {SUPPORTED, REFUTED, INCONCLUSIVE}."""

    PENDING = "pending"
    TESTING = "testing"
    SUPPORTED = "supported"
    REFUTED = "refuted"
    INCONCLUSIVE = "inconclusive"


class Verdict(str, Enum):
    """Verdict reported by the reasoning engine for a hypothesis test."""

    SUPPORTED = "supported"
    REFUTED = "refuted"
    INCONCLUSIVE = "inconclusive"


class TournamentState(str, Enum):
    SEEDING = "seeding"
    RUNNING = "running"
    CONCLUDED = "concluded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TournamentState.CONCLUDED,
            TournamentState.FAILED,
            TournamentState.CANCELLED,
        )


class ErrorKind(str, Enum):
    """Stable error identifiers surfaced to callers."""

    INVALID_CONTEXT = "InvalidContext"
    INVALID_TRANSITION = "InvalidTransition"
    SESSION_NOT_FOUND = "SessionNotFound"
    SESSION_BUSY = "SessionBusy"
    INVALID_TOURNAMENT_CONFIG = "InvalidTournamentConfig"
    TOURNAMENT_NOT_FOUND = "TournamentNotFound"
    NO_VIABLE_HYPOTHESIS = "NoViableHypothesis"
    RATE_LIMITED = "RateLimited"
    TIMEOUT = "Timeout"
    TRANSPORT_ERROR = "TransportError"
