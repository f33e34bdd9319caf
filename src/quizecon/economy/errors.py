"""Economy error taxonomy.

Every error carries the HTTP status and machine-readable code used by the
API error handler. Only ``TransientFailure`` is retryable.
"""

from __future__ import annotations


class EconomyError(Exception):
    """Base class for all economy rule violations."""

    status_code: int = 400
    code: str = "economy_error"
    retryable: bool = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self.args[0])


class InsufficientBalance(EconomyError):
    """Balance too low for this debit."""

    status_code = 402
    code = "insufficient_balance"

    def __init__(self, currency: str, balance: int, requested: int) -> None:
        super().__init__(f"Insufficient {currency}: balance {balance}, requested {requested}")
        self.currency = currency
        self.balance = balance
        self.requested = requested


class CooldownActive(EconomyError):
    """A power-up of this kind was already purchased in the current window."""

    status_code = 409
    code = "cooldown_active"

    def __init__(self, kind: str, available_at: object = None) -> None:
        super().__init__(f"{kind} already purchased within the cadence window")
        self.kind = kind
        self.available_at = available_at


class AlreadyConsumed(EconomyError):
    """Power-up instance has already been consumed."""

    status_code = 409
    code = "already_consumed"


class AlreadyTargeted(EconomyError):
    """Target already has an unresolved Sabotage against them."""

    status_code = 409
    code = "already_targeted"


class TargetUnavailable(EconomyError):
    """Target user cannot be sabotaged."""

    status_code = 404
    code = "target_unavailable"


class NoActiveSession(EconomyError):
    """No active purchase or activation record for this power-up."""

    status_code = 409
    code = "no_active_session"


class DuplicateSubmission(EconomyError):
    """This attempt id was already submitted."""

    status_code = 409
    code = "duplicate_submission"


class UnknownUser(EconomyError):
    """No such user."""

    status_code = 404
    code = "unknown_user"


class UnknownPowerUp(EconomyError):
    """No such power-up definition or instance."""

    status_code = 404
    code = "unknown_power_up"


class SubmissionCancelled(EconomyError):
    """Submission was cancelled before it committed."""

    status_code = 409
    code = "submission_cancelled"


class InvalidTransition(EconomyError):
    """Submission state machine transition not allowed."""

    status_code = 500
    code = "invalid_transition"


class TransientFailure(EconomyError):
    """Persistence timed out or lost its connection. Safe to retry."""

    status_code = 503
    code = "transient_failure"
    retryable = True
