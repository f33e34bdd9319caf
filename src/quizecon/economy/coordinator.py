"""Quiz result submission coordinator.

Per-attempt state machine:

    received -> validated -> resolved -> committed
    received -> rejected
    received | validated | resolved -> cancelled

Validation rejects a replayed attempt id before anything is written. The
resolved -> committed step is one database transaction covering the attempt
row, the topic completion, the ledger entries and the power-up consumption;
any failure rolls all of it back and the original error reaches the caller.
``TransientFailure`` is retried with bounded exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import select

from quizecon.db.models import QuizAttempt, TopicCompletion
from quizecon.economy import inventory, ledger, targeting
from quizecon.economy.errors import (
    DuplicateSubmission,
    EconomyError,
    InvalidTransition,
    SubmissionCancelled,
    TransientFailure,
    UnknownUser,
)
from quizecon.economy.resolver import Resolution, resolve

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from quizecon.economy.service import EconomyService

logger = logging.getLogger(__name__)

RECEIVED = "received"
VALIDATED = "validated"
RESOLVED = "resolved"
COMMITTED = "committed"
REJECTED = "rejected"
CANCELLED = "cancelled"

VALID_TRANSITIONS: dict[str, list[str]] = {
    RECEIVED: [VALIDATED, REJECTED, CANCELLED],
    VALIDATED: [RESOLVED, CANCELLED],
    RESOLVED: [COMMITTED, CANCELLED],
    COMMITTED: [],
    REJECTED: [],
    CANCELLED: [],
}


def validate_transition(current: str, target: str) -> None:
    """Raise InvalidTransition if current -> target is not allowed."""
    allowed = VALID_TRANSITIONS.get(current, [])
    if target not in allowed:
        raise InvalidTransition(f"Invalid transition: {current} -> {target}. Allowed: {allowed}")


@dataclass
class SubmissionResult:
    attempt_id: str
    topic_id: str
    raw_score: int
    is_first_attempt: bool
    final_score: int
    token_delta: int
    multiplier_applied: bool = False
    sabotage_outcome: str | None = None


@dataclass
class Submission:
    """One quiz completion moving through the state machine."""

    user_id: int
    topic_id: str
    raw_score: int
    attempt_id: str
    state: str = RECEIVED
    history: list[str] = field(default_factory=lambda: [RECEIVED])
    result: SubmissionResult | None = None
    error: EconomyError | None = None
    committing: bool = False

    def transition(self, target: str) -> None:
        if target != CANCELLED:
            self.check_not_cancelled()
        validate_transition(self.state, target)
        self.state = target
        self.history.append(target)

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.state]

    def cancel(self) -> bool:
        """Cancel unless terminal or already committing. Returns True if cancelled."""
        if self.is_terminal or self.committing:
            return False
        self.transition(CANCELLED)
        return True

    def check_not_cancelled(self) -> None:
        if self.state == CANCELLED:
            raise SubmissionCancelled(f"Submission {self.attempt_id} was cancelled")

    def reset_for_retry(self) -> None:
        """Back to received after a rolled-back transient failure."""
        self.state = RECEIVED
        self.committing = False
        self.history.append(RECEIVED)


class SubmissionCoordinator:
    """Runs submissions against the service's session factory and locks."""

    def __init__(self, service: EconomyService) -> None:
        self.service = service
        self.settings = service.settings

    async def submit(self, submission: Submission, *, now: datetime | None = None) -> SubmissionResult:
        """Submit with retry of transient failures. Other errors are terminal."""
        attempts = max(self.settings.submit_retry_attempts, 1)
        delay = self.settings.submit_retry_base_delay_seconds
        attempt = 1

        while True:
            try:
                return await self._submit_once(submission, now=now)
            except TransientFailure as exc:
                submission.error = exc
                if attempt >= attempts or submission.state == CANCELLED:
                    raise
                logger.warning(
                    "Transient failure submitting %s (attempt %d/%d), retrying in %.2fs",
                    submission.attempt_id, attempt, attempts, delay,
                )
                submission.reset_for_retry()
                await asyncio.sleep(delay)
                delay *= 2
                attempt += 1
            except EconomyError as exc:
                submission.error = exc
                raise

    async def _submit_once(self, submission: Submission, *, now: datetime | None) -> SubmissionResult:
        changes: list[ledger.BalanceChange] = []
        async with self.service.locks.hold(submission.user_id):
            try:
                result = await self.service.run_transaction(
                    lambda db: self._process(db, submission, changes, now),
                )
            except asyncio.CancelledError:
                if not submission.is_terminal:
                    submission.transition(CANCELLED)
                raise
            submission.transition(COMMITTED)

        logger.info(
            "Committed attempt %s for user %d: topic=%s first=%s final=%d tokens=%+d",
            submission.attempt_id, submission.user_id, submission.topic_id,
            result.is_first_attempt, result.final_score, result.token_delta,
        )
        await ledger.publish_balance_changes(self.service.redis, changes)
        return result

    async def _process(
        self,
        db: AsyncSession,
        submission: Submission,
        changes: list[ledger.BalanceChange],
        now: datetime | None,
    ) -> SubmissionResult:
        if now is None:
            now = datetime.now(timezone.utc)
        submission.check_not_cancelled()

        # received -> validated | rejected
        existing = await db.execute(
            select(QuizAttempt.id).where(QuizAttempt.attempt_id == submission.attempt_id)
        )
        if existing.scalar_one_or_none() is not None:
            submission.transition(REJECTED)
            raise DuplicateSubmission(f"Attempt {submission.attempt_id} was already submitted")

        try:
            await ledger.lock_wallet(db, submission.user_id)
        except UnknownUser:
            submission.transition(REJECTED)
            raise
        completed = await db.execute(
            select(TopicCompletion.id).where(
                TopicCompletion.user_id == submission.user_id,
                TopicCompletion.topic_id == submission.topic_id,
            )
        )
        is_first = completed.scalar_one_or_none() is None

        attempt = QuizAttempt(
            attempt_id=submission.attempt_id,
            user_id=submission.user_id,
            topic_id=submission.topic_id,
            raw_score=submission.raw_score,
            is_first_attempt=is_first,
            state=VALIDATED,
            created_at=now,
        )
        submission.transition(VALIDATED)

        # validated -> resolved
        if is_first:
            own = await inventory.active_effects_for(db, submission.user_id)
            incoming = await targeting.incoming_sabotages(db, submission.user_id)
        else:
            own, incoming = [], []
        resolution: Resolution = resolve(
            attempt, own, incoming, multiplier_factor=self.settings.multiplier_factor,
        )
        token_delta = resolution.final_delta * self.settings.tokens_per_point
        submission.transition(RESOLVED)

        # resolved -> committed
        attempt.final_score = resolution.final_delta
        attempt.token_delta = token_delta
        attempt.state = COMMITTED
        db.add(attempt)

        if is_first:
            db.add(TopicCompletion(
                user_id=submission.user_id,
                topic_id=submission.topic_id,
                attempt_id=submission.attempt_id,
                completed_at=now,
            ))
            reference = f"attempt:{submission.attempt_id}"
            await ledger.record_delta(
                db, submission.user_id, resolution.final_delta, "quiz_reward", ledger.POINTS,
                reference_id=reference, changes=changes, now=now,
            )
            await ledger.record_delta(
                db, submission.user_id, token_delta, "quiz_reward", ledger.TOKENS,
                reference_id=reference, changes=changes, now=now,
            )
            for effect in resolution.consumed:
                await inventory.consume(
                    db, effect.instance,  # type: ignore[arg-type]
                    resolution=effect.resolution,
                    attempt_id=submission.attempt_id,
                    now=now,
                )
        await db.flush()
        submission.check_not_cancelled()
        submission.committing = True

        submission.result = SubmissionResult(
            attempt_id=submission.attempt_id,
            topic_id=submission.topic_id,
            raw_score=submission.raw_score,
            is_first_attempt=is_first,
            final_score=resolution.final_delta,
            token_delta=token_delta,
            multiplier_applied=resolution.multiplier_applied,
            sabotage_outcome=resolution.sabotage_outcome,
        )
        # Committed only once the surrounding transaction commits.
        return submission.result
