"""Error taxonomy for deep-reason.

Usage errors (invalid transitions, unknown ids, bad input) are raised and
never retried.  Dispatch errors come from the reasoning client and are
recoverable at the caller's discretion; they carry a backoff hint when the
external layer provides one.
"""

from __future__ import annotations

from typing import Any

from deep_reason.domain.enums import ErrorKind, SessionState


class DeepReasonError(Exception):
    """Base class for every error the orchestration core reports.

    Attributes:
        kind: Stable error identifier.
        entity_id: Id of the failing session / tournament / hypothesis.
        retry_after: Suggested backoff in seconds, when known.
    """

    kind: ErrorKind
    retryable: bool = False

    def __init__(
        self,
        message: str,
        entity_id: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.message = message
        self.entity_id = entity_id
        self.retry_after = retry_after
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """User-visible failure payload."""
        payload: dict[str, Any] = {
            "error": self.kind.value,
            "entity_id": self.entity_id,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload


# ── Usage errors ─────────────────────────────────────────────────────────────


class InvalidContext(DeepReasonError):
    kind = ErrorKind.INVALID_CONTEXT


class InvalidTransition(DeepReasonError):
    """Raised when a compare-and-set on session state does not match."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(
        self,
        entity_id: str,
        expected: SessionState | None,
        actual: SessionState,
        target: SessionState | None = None,
        reason: str | None = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        self.target = target
        if reason is None:
            reason = (
                f"expected state {expected.value if expected else '?'}, "
                f"found {actual.value}"
            )
            if target is not None:
                reason += f" (requested {target.value})"
        super().__init__(f"Session {entity_id}: {reason}", entity_id=entity_id)


class SessionNotFound(DeepReasonError):
    kind = ErrorKind.SESSION_NOT_FOUND

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found", entity_id=session_id)


class SessionBusy(DeepReasonError):
    kind = ErrorKind.SESSION_BUSY
    retryable = True

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} already has a request in flight",
            entity_id=session_id,
        )


class InvalidTournamentConfig(DeepReasonError):
    kind = ErrorKind.INVALID_TOURNAMENT_CONFIG


class TournamentNotFound(DeepReasonError):
    kind = ErrorKind.TOURNAMENT_NOT_FOUND

    def __init__(self, tournament_id: str) -> None:
        super().__init__(
            f"Tournament {tournament_id} not found", entity_id=tournament_id,
        )


class NoViableHypothesis(DeepReasonError):
    kind = ErrorKind.NO_VIABLE_HYPOTHESIS

    def __init__(self, tournament_id: str, round_number: int) -> None:
        self.round_number = round_number
        super().__init__(
            f"Tournament {tournament_id}: every hypothesis was refuted "
            f"in round {round_number}",
            entity_id=tournament_id,
        )


# ── Dispatch errors (external, recoverable) ──────────────────────────────────


class DispatchError(DeepReasonError):
    """A failure reported by (or while talking to) the reasoning engine."""

    retryable = True


class RateLimited(DispatchError):
    kind = ErrorKind.RATE_LIMITED


class DispatchTimeout(DispatchError):
    kind = ErrorKind.TIMEOUT


class TransportError(DispatchError):
    kind = ErrorKind.TRANSPORT_ERROR
