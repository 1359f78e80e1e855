"""Typed, user-actionable errors raised by the roster core."""

from __future__ import annotations

from typing import Any, Optional


class RosterError(Exception):
    """Base class. ``retryable`` tells callers whether a retry can succeed."""

    code = "roster_error"
    retryable = False

    def __init__(self, message: str, *, workspace_id: Optional[str] = None, **detail: Any):
        super().__init__(message)
        self.message = message
        self.workspace_id = workspace_id
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.workspace_id:
            payload["workspace_id"] = self.workspace_id
        if self.detail:
            payload["detail"] = dict(self.detail)
        return payload


class RosterFull(RosterError):
    code = "roster_full"


class PinLimitExceeded(RosterError):
    code = "pin_limit_exceeded"


class WalletBanned(RosterError):
    code = "wallet_banned"


class InvalidTierTransition(RosterError):
    code = "invalid_tier_transition"


class WalletNotFound(RosterError):
    code = "wallet_not_found"


class WorkspaceNotFound(RosterError):
    code = "workspace_not_found"


class RotationEntryNotFound(RosterError):
    code = "rotation_entry_not_found"


class UndoNotAllowed(RosterError):
    code = "undo_not_allowed"


class PassAlreadyRunning(RosterError):
    code = "pass_already_running"
    retryable = True


class PassTimeout(RosterError):
    code = "pass_timeout"
    retryable = True


class PersistenceConflict(RosterError):
    code = "persistence_conflict"
    retryable = True


class RosterInvariantViolation(RosterError):
    code = "roster_invariant_violation"
    retryable = True


# Soft warning recorded on scores; never raised.
STALE_METRICS = "stale_metrics"
