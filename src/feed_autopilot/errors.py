from __future__ import annotations


class AutopilotError(Exception):
    """Base class for every error raised by the autopilot control system."""


class InvalidModeError(AutopilotError, ValueError):
    """Raised when a mode is not valid for the requested transition (e.g. ``grant(off)``)."""


class NotGrantedError(AutopilotError):
    """Raised when an operation needs autonomous access that has not been granted."""


class DuplicatePriorityError(AutopilotError, ValueError):
    """Raised when caller-supplied priorities collide with each other or the active queue."""


class ItemBusyError(AutopilotError):
    """Raised when an operation targets a queue item that is currently executing."""


class InvalidTransitionError(AutopilotError):
    """Raised when a queue item or ledger entry cannot move to the requested status."""


class UnknownItemError(AutopilotError, KeyError):
    """Raised when no active queue item or ledger entry matches the given key."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class AlreadyResolvedError(AutopilotError):
    """Raised when approve/reject targets an item whose approval was already decided."""


class NotRollbackableError(AutopilotError):
    """Raised when a ledger entry is not a completed, rollback-capable change."""


class ExecutionFailure(AutopilotError):
    """Transient failure while mutating the target feed catalog.

    This is the only error kind that is written to the action ledger.
    """
