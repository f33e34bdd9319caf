"""Quiz submission tests: first-attempt rewards, power-up effects and retries."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from quizecon.db.models import QuizAttempt, TopicCompletion, Wallet
from quizecon.economy import inventory, targeting
from quizecon.economy.coordinator import CANCELLED, COMMITTED, RECEIVED, REJECTED, RESOLVED, VALIDATED, Submission
from quizecon.economy.errors import (
    AlreadyConsumed,
    DuplicateSubmission,
    SubmissionCancelled,
    TransientFailure,
    UnknownUser,
)
from quizecon.economy.resolver import APPLIED, NEUTRALIZED

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
MISSING_USER_ID = 424242


async def count_attempts(db, user_id: int) -> int:
    result = await db.execute(
        select(func.count()).select_from(QuizAttempt).where(QuizAttempt.user_id == user_id)
    )
    return result.scalar_one()


class TestFirstAttemptRule:
    """Only the first attempt per topic earns anything."""

    @pytest.mark.asyncio
    async def test_first_attempt_credits_points_and_tokens(self, economy, make_user):
        """Points and tokens both equal the raw score."""
        user = await make_user("student")
        result = await economy.submit_quiz_attempt(user.id, "topic-1", 8, "att-1", now=NOW)
        assert result.is_first_attempt is True
        assert result.final_score == 8
        assert result.token_delta == 8

        balance = await economy.get_balance(user.id)
        assert (balance.points, balance.tokens) == (8, 8)

    @pytest.mark.asyncio
    async def test_repeat_attempt_earns_nothing(self, economy, make_user, db_session):
        """A second attempt is stored but appends no ledger entries."""
        user = await make_user("repeat")
        await economy.submit_quiz_attempt(user.id, "topic-1", 8, "att-1", now=NOW)
        _, total_before = await economy.get_ledger_history(user.id)

        result = await economy.submit_quiz_attempt(user.id, "topic-1", 10, "att-2", now=NOW)
        assert result.is_first_attempt is False
        assert result.final_score == 0
        assert result.token_delta == 0

        _, total_after = await economy.get_ledger_history(user.id)
        assert total_after == total_before
        assert await count_attempts(db_session, user.id) == 2

    @pytest.mark.asyncio
    async def test_topics_are_independent(self, economy, make_user):
        """Completing one topic does not close another."""
        user = await make_user("broad")
        await economy.submit_quiz_attempt(user.id, "topic-1", 5, "att-1", now=NOW)
        result = await economy.submit_quiz_attempt(user.id, "topic-2", 4, "att-2", now=NOW)
        assert result.is_first_attempt is True
        assert (await economy.get_balance(user.id)).points == 9

    @pytest.mark.asyncio
    async def test_zero_score_first_attempt_still_completes_topic(self, economy, make_user):
        """A blank first attempt still uses up the topic."""
        user = await make_user("blank")
        first = await economy.submit_quiz_attempt(user.id, "topic-1", 0, "att-1", now=NOW)
        assert first.is_first_attempt is True
        second = await economy.submit_quiz_attempt(user.id, "topic-1", 9, "att-2", now=NOW)
        assert second.is_first_attempt is False
        assert (await economy.get_balance(user.id)).points == 0


class TestMultiplierScenario:
    """Buy a multiplier, use it once, then it is gone."""

    @pytest.mark.asyncio
    async def test_multiplier_doubles_first_attempt(self, economy, make_user):
        """10 raw becomes 20 and the multiplier is spent."""
        user = await make_user("doubler", tokens=20)
        await economy.purchase_power_up(user.id, "101", now=NOW)
        assert (await economy.get_balance(user.id)).tokens == 15

        result = await economy.submit_quiz_attempt(user.id, "topic-1", 10, "att-1", now=NOW)
        assert result.final_score == 20
        assert result.multiplier_applied is True

        balance = await economy.get_balance(user.id)
        assert (balance.points, balance.tokens) == (20, 35)
        assert await economy.get_active_effects(user.id) == []

        repeat = await economy.submit_quiz_attempt(user.id, "topic-1", 10, "att-2", now=NOW)
        assert repeat.final_score == 0
        balance = await economy.get_balance(user.id)
        assert (balance.points, balance.tokens) == (20, 35)

    @pytest.mark.asyncio
    async def test_repeat_attempt_does_not_spend_multiplier(self, economy, make_user):
        """An unrewarded attempt leaves the multiplier for the next topic."""
        user = await make_user("saver", tokens=20)
        await economy.submit_quiz_attempt(user.id, "topic-1", 5, "att-1", now=NOW)
        await economy.purchase_power_up(user.id, "101", now=NOW)

        await economy.submit_quiz_attempt(user.id, "topic-1", 5, "att-2", now=NOW)
        effects = await economy.get_active_effects(user.id)
        assert [e.kind for e in effects] == ["multiplier"]

        result = await economy.submit_quiz_attempt(user.id, "topic-2", 5, "att-3", now=NOW)
        assert result.final_score == 10


class TestSabotageScenario:
    """Sabotage halves the victim's next first attempt unless shielded."""

    @pytest.mark.asyncio
    async def test_sabotage_halves_and_later_shield_stays(self, economy, make_user):
        """A shield bought after the hit stays active for the next one."""
        attacker = await make_user("attacker", tokens=20)
        victim = await make_user("victim", tokens=10)
        sabotage = await economy.purchase_power_up(attacker.id, "102", now=NOW)
        await economy.activate_sabotage(attacker.id, victim.id, sabotage.id, now=NOW)
        assert await economy.is_targetable(victim.id) is False

        result = await economy.submit_quiz_attempt(victim.id, "topic-1", 10, "att-1", now=NOW)
        assert result.final_score == 5
        assert result.sabotage_outcome == APPLIED
        assert await economy.is_targetable(victim.id) is True

        shield = await economy.purchase_power_up(victim.id, "103", now=NOW)
        effects = await economy.get_active_effects(victim.id)
        assert [e.id for e in effects] == [shield.id]

        balance = await economy.get_balance(victim.id)
        assert (balance.points, balance.tokens) == (5, 9)
        # The attacker's balance is untouched by the resolution.
        assert (await economy.get_balance(attacker.id)).tokens == 12

    @pytest.mark.asyncio
    async def test_shield_neutralizes_exactly_one(self, economy, make_user):
        """One shield blocks one sabotage; the next one lands."""
        first_attacker = await make_user("first-attacker", tokens=10)
        second_attacker = await make_user("second-attacker", tokens=10)
        victim = await make_user("shielded", tokens=10)
        await economy.purchase_power_up(victim.id, "103", now=NOW)

        s1 = await economy.purchase_power_up(first_attacker.id, "102", now=NOW)
        await economy.activate_sabotage(first_attacker.id, victim.id, s1.id, now=NOW)
        blocked = await economy.submit_quiz_attempt(victim.id, "topic-1", 10, "att-1", now=NOW)
        assert blocked.final_score == 10
        assert blocked.sabotage_outcome == NEUTRALIZED
        assert await economy.get_active_effects(victim.id) == []

        s2 = await economy.purchase_power_up(second_attacker.id, "102", now=NOW)
        await economy.activate_sabotage(second_attacker.id, victim.id, s2.id, now=NOW)
        hit = await economy.submit_quiz_attempt(victim.id, "topic-2", 10, "att-2", now=NOW)
        assert hit.final_score == 5
        assert hit.sabotage_outcome == APPLIED

    @pytest.mark.asyncio
    async def test_multiplier_and_sabotage_together(self, economy, make_user):
        """Doubled then halved gives back the raw score."""
        attacker = await make_user("mixer-attacker", tokens=10)
        victim = await make_user("mixer-victim", tokens=10)
        await economy.purchase_power_up(victim.id, "101", now=NOW)
        sabotage = await economy.purchase_power_up(attacker.id, "102", now=NOW)
        await economy.activate_sabotage(attacker.id, victim.id, sabotage.id, now=NOW)

        result = await economy.submit_quiz_attempt(victim.id, "topic-1", 7, "att-1", now=NOW)
        assert result.multiplier_applied is True
        assert result.sabotage_outcome == APPLIED
        assert result.final_score == 7


class TestDuplicates:
    """Replayed attempt ids are rejected without side effects."""

    @pytest.mark.asyncio
    async def test_duplicate_attempt_id_rejected(self, economy, make_user):
        """The same attempt id on another topic is still a duplicate."""
        user = await make_user("replayer")
        await economy.submit_quiz_attempt(user.id, "topic-1", 6, "att-1", now=NOW)

        submission = Submission(user_id=user.id, topic_id="topic-2", raw_score=6, attempt_id="att-1")
        with pytest.raises(DuplicateSubmission):
            await economy.submit_quiz_attempt(user.id, "topic-2", 6, "att-1", submission=submission)
        assert submission.state == REJECTED
        assert isinstance(submission.error, DuplicateSubmission)
        assert (await economy.get_balance(user.id)).points == 6

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_credit_once(self, economy, make_user):
        """Two racing copies of one attempt credit once."""
        user = await make_user("racer")
        results = await asyncio.gather(
            economy.submit_quiz_attempt(user.id, "topic-1", 6, "att-1", now=NOW),
            economy.submit_quiz_attempt(user.id, "topic-1", 6, "att-1", now=NOW),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], DuplicateSubmission)
        assert (await economy.get_balance(user.id)).points == 6

    @pytest.mark.asyncio
    async def test_concurrent_topics_serialized(self, economy, make_user):
        """Parallel submissions for one user all land and the audit balances."""
        user = await make_user("parallel")
        await asyncio.gather(*(
            economy.submit_quiz_attempt(user.id, f"topic-{i}", 3, f"att-{i}", now=NOW)
            for i in range(5)
        ))
        assert (await economy.get_balance(user.id)).points == 15
        audit = await economy.audit_balance(user.id)
        assert all(cached == derived for cached, derived in audit.values())


class TestUnknownUser:
    """Operations for an id without a user change nothing and are not retried."""

    @pytest.mark.asyncio
    async def test_submission_rejected_without_retry(self, economy, db_session, monkeypatch):
        """No wallet, attempt or ledger row is created for a missing user."""
        original = economy.run_transaction
        calls = 0

        async def counting(work):
            nonlocal calls
            calls += 1
            return await original(work)

        monkeypatch.setattr(economy, "run_transaction", counting)
        submission = Submission(
            user_id=MISSING_USER_ID, topic_id="topic-1", raw_score=10, attempt_id="ghost-1",
        )
        with pytest.raises(UnknownUser):
            await economy.submit_quiz_attempt(
                MISSING_USER_ID, "topic-1", 10, "ghost-1", submission=submission,
            )

        assert calls == 1
        assert submission.state == REJECTED
        assert await db_session.get(Wallet, MISSING_USER_ID) is None
        assert await count_attempts(db_session, MISSING_USER_ID) == 0

    @pytest.mark.asyncio
    async def test_purchase_rejected(self, economy, db_session):
        """Buying for a missing user raises before any debit."""
        with pytest.raises(UnknownUser):
            await economy.purchase_power_up(MISSING_USER_ID, "101", now=NOW)
        assert await db_session.get(Wallet, MISSING_USER_ID) is None

    @pytest.mark.asyncio
    async def test_grant_rejected(self, economy, db_session):
        """Manual credits need an existing user."""
        with pytest.raises(UnknownUser):
            await economy.grant(MISSING_USER_ID, 50, "bonus")
        with pytest.raises(UnknownUser):
            await economy.compensate(MISSING_USER_ID, "points", -5, "refund")
        assert await db_session.get(Wallet, MISSING_USER_ID) is None

    @pytest.mark.asyncio
    async def test_gamble_rejected(self, economy):
        """Rolling for a missing user is an unknown user, not a missing session."""
        with pytest.raises(UnknownUser):
            await economy.roll_gamble(MISSING_USER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_sabotage_by_missing_attacker_rejected(self, economy, make_user):
        """The attacker must exist."""
        victim = await make_user("lonely-victim")
        with pytest.raises(UnknownUser):
            await economy.activate_sabotage(MISSING_USER_ID, victim.id, 1, now=NOW)
        assert await economy.is_targetable(victim.id) is True

    @pytest.mark.asyncio
    async def test_balance_read_does_not_create_wallet(self, economy, db_session):
        """Reads report zero and leave no row behind."""
        balance = await economy.get_balance(MISSING_USER_ID)
        assert (balance.points, balance.tokens) == (0, 0)
        audit = await economy.audit_balance(MISSING_USER_ID)
        assert audit == {"points": (0, 0), "tokens": (0, 0)}
        assert await db_session.get(Wallet, MISSING_USER_ID) is None


class TestAtomicCommit:
    """A submission that fails before commit leaves no trace."""

    @pytest.mark.asyncio
    async def test_failed_consume_rolls_back_ledger_writes(self, economy, make_user, db_session, monkeypatch):
        """Credits written before the failing consume are rolled back."""
        user = await make_user("unlucky", tokens=20)
        multiplier = await economy.purchase_power_up(user.id, "101", now=NOW)

        async def failing_consume(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(inventory, "consume", failing_consume)
        with pytest.raises(RuntimeError, match="disk full"):
            await economy.submit_quiz_attempt(user.id, "topic-1", 10, "att-1", now=NOW)

        balance = await economy.get_balance(user.id)
        assert (balance.points, balance.tokens) == (0, 15)
        assert [e.id for e in await economy.get_active_effects(user.id)] == [multiplier.id]
        assert await count_attempts(db_session, user.id) == 0
        completed = await db_session.execute(
            select(TopicCompletion.id).where(TopicCompletion.user_id == user.id)
        )
        assert completed.scalar_one_or_none() is None

        monkeypatch.undo()
        result = await economy.submit_quiz_attempt(user.id, "topic-1", 10, "att-2", now=NOW)
        assert result.is_first_attempt is True
        assert result.final_score == 20

    @pytest.mark.asyncio
    async def test_consume_twice_raises_already_consumed(self, economy, make_user, session_factory):
        """An instance is consumed at most once, even across sessions."""
        user = await make_user("double-dipper", tokens=10)
        bought = await economy.purchase_power_up(user.id, "103", now=NOW)

        async with session_factory() as db:
            instance = await inventory.get_instance(db, bought.id, for_update=True)
            await inventory.consume(db, instance, resolution=NEUTRALIZED, attempt_id="att-1", now=NOW)
            await db.commit()

        async with session_factory() as db:
            instance = await inventory.get_instance(db, bought.id, for_update=True)
            with pytest.raises(AlreadyConsumed):
                await inventory.consume(db, instance, resolution=NEUTRALIZED, attempt_id="att-2", now=NOW)
            assert instance.resolved_by_attempt_id == "att-1"


class TestSubmissionLifecycle:
    """State history, cancellation and transient retries."""

    @pytest.mark.asyncio
    async def test_history_on_success(self, economy, make_user):
        """A clean run walks every state up to committed."""
        user = await make_user("tracked")
        submission = Submission(user_id=user.id, topic_id="topic-1", raw_score=4, attempt_id="att-1")
        await economy.submit_quiz_attempt(user.id, "topic-1", 4, "att-1", submission=submission)
        assert submission.history == [RECEIVED, VALIDATED, RESOLVED, COMMITTED]
        assert submission.result is not None
        assert submission.result.final_score == 4

    @pytest.mark.asyncio
    async def test_cancelled_submission_writes_nothing(self, economy, make_user):
        """Cancelling before submit leaves the topic open."""
        user = await make_user("quitter")
        submission = Submission(user_id=user.id, topic_id="topic-1", raw_score=4, attempt_id="att-1")
        assert submission.cancel() is True

        with pytest.raises(SubmissionCancelled):
            await economy.submit_quiz_attempt(user.id, "topic-1", 4, "att-1", submission=submission)
        assert submission.state == CANCELLED
        assert (await economy.get_balance(user.id)).points == 0

        # The topic is still open for a fresh submission.
        result = await economy.submit_quiz_attempt(user.id, "topic-1", 4, "att-2")
        assert result.is_first_attempt is True

    @pytest.mark.asyncio
    async def test_cancel_while_resolving_rolls_back(self, economy, make_user, db_session, monkeypatch):
        """A cancel arriving between validation and resolution stops the commit."""
        user = await make_user("second-thoughts", tokens=10)
        await economy.purchase_power_up(user.id, "101", now=NOW)
        submission = Submission(user_id=user.id, topic_id="topic-1", raw_score=4, attempt_id="att-1")
        original = targeting.incoming_sabotages

        async def cancel_then_look(db, user_id):
            assert submission.cancel() is True
            return await original(db, user_id)

        monkeypatch.setattr(targeting, "incoming_sabotages", cancel_then_look)
        with pytest.raises(SubmissionCancelled):
            await economy.submit_quiz_attempt(user.id, "topic-1", 4, "att-1", submission=submission)

        assert submission.state == CANCELLED
        assert submission.history == [RECEIVED, VALIDATED, CANCELLED]
        balance = await economy.get_balance(user.id)
        assert (balance.points, balance.tokens) == (0, 5)
        assert [e.kind for e in await economy.get_active_effects(user.id)] == ["multiplier"]
        assert await count_attempts(db_session, user.id) == 0

    @pytest.mark.asyncio
    async def test_task_cancelled_mid_transaction(self, economy, make_user, db_session, monkeypatch):
        """Cancelling the running task rolls back and releases the user lock."""
        user = await make_user("interrupted")
        submission = Submission(user_id=user.id, topic_id="topic-1", raw_score=4, attempt_id="att-1")
        started = asyncio.Event()

        async def stall(db, user_id):
            started.set()
            await asyncio.sleep(10)
            return []

        monkeypatch.setattr(targeting, "incoming_sabotages", stall)
        task = asyncio.create_task(
            economy.submit_quiz_attempt(user.id, "topic-1", 4, "att-1", submission=submission),
        )
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert submission.state == CANCELLED
        assert not economy.locks.is_locked(user.id)
        assert (await economy.get_balance(user.id)).points == 0
        assert await count_attempts(db_session, user.id) == 0

        monkeypatch.undo()
        result = await economy.submit_quiz_attempt(user.id, "topic-1", 4, "att-2", now=NOW)
        assert result.is_first_attempt is True

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, economy, make_user, monkeypatch):
        """One transient failure is retried and the second run commits."""
        user = await make_user("flaky")
        original = economy.run_transaction
        calls = 0

        async def flaky(work):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise TransientFailure("simulated outage")
            return await original(work)

        monkeypatch.setattr(economy, "run_transaction", flaky)
        submission = Submission(user_id=user.id, topic_id="topic-1", raw_score=4, attempt_id="att-1")
        result = await economy.submit_quiz_attempt(user.id, "topic-1", 4, "att-1", submission=submission)

        assert calls == 2
        assert result.final_score == 4
        assert submission.state == COMMITTED
        assert (await economy.get_balance(user.id)).points == 4

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, economy, make_user, monkeypatch):
        """A persistent outage gives up after the configured attempts."""
        user = await make_user("down")
        calls = 0

        async def always_down(work):
            nonlocal calls
            calls += 1
            raise TransientFailure("simulated outage")

        monkeypatch.setattr(economy, "run_transaction", always_down)
        with pytest.raises(TransientFailure):
            await economy.submit_quiz_attempt(user.id, "topic-1", 4, "att-1")
        assert calls == economy.settings.submit_retry_attempts

    @pytest.mark.asyncio
    async def test_persistence_timeout_is_transient(self, economy):
        """A slow transaction times out as a retryable failure."""
        economy.settings.persistence_timeout_seconds = 0.05

        async def slow(db):
            await asyncio.sleep(1)

        with pytest.raises(TransientFailure, match="timed out"):
            await economy.run_transaction(slow)

    @pytest.mark.asyncio
    async def test_operational_error_is_transient(self, economy):
        """Lost database connectivity is retryable."""
        async def broken(db):
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))

        with pytest.raises(TransientFailure):
            await economy.run_transaction(broken)

    @pytest.mark.asyncio
    async def test_domain_errors_not_retried(self, economy, make_user, monkeypatch):
        """Rule violations run exactly once."""
        user = await make_user("strict")
        await economy.submit_quiz_attempt(user.id, "topic-1", 4, "att-1")
        original = economy.run_transaction
        calls = 0

        async def counting(work):
            nonlocal calls
            calls += 1
            return await original(work)

        monkeypatch.setattr(economy, "run_transaction", counting)
        with pytest.raises(DuplicateSubmission):
            await economy.submit_quiz_attempt(user.id, "topic-1", 4, "att-1")
        assert calls == 1
