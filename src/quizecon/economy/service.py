"""Economy service: the operations exposed to the app's API layer.

Each mutating operation takes the per-user lock(s), runs in its own
transaction bounded by ``persistence_timeout_seconds``, and publishes
balance-changed notifications only after commit. Timeouts and lost
connections become ``TransientFailure``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quizecon.config import Settings, get_settings
from quizecon.db.models import LedgerEntry, PowerUpDefinition, PowerUpInstance, User
from quizecon.economy import catalog, inventory, ledger, targeting
from quizecon.economy.coordinator import Submission, SubmissionCoordinator, SubmissionResult
from quizecon.economy.errors import NoActiveSession, TransientFailure, UnknownPowerUp, UnknownUser
from quizecon.economy.locks import UserLockRegistry
from quizecon.economy.resolver import roll_gamble as draw_gamble_outcome

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Balance:
    points: int
    tokens: int


@dataclass(frozen=True)
class GambleResult:
    instance_id: int
    outcome: int
    token_delta: int
    tokens: int
    rolls_remaining: int


class EconomyService:
    """Facade over ledger, inventory, targeting and the submission coordinator."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: object = None,
        settings: Settings | None = None,
        rng: random.Random | None = None,
        locks: UserLockRegistry | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.settings = settings or get_settings()
        self.rng = rng or random.SystemRandom()
        self.locks = locks or UserLockRegistry(timeout=self.settings.lock_timeout_seconds)
        self.coordinator = SubmissionCoordinator(self)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def run_transaction(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``work`` in one transaction: commit on success, roll back on any error."""

        async def _run() -> T:
            async with self.session_factory() as db:
                async with db.begin():
                    return await work(db)

        try:
            return await asyncio.wait_for(_run(), timeout=self.settings.persistence_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning("Persistence timed out after %.1fs", self.settings.persistence_timeout_seconds)
            raise TransientFailure("Persistence timed out") from e
        except IntegrityError as e:
            # A concurrent writer got there first; a retry sees its result.
            logger.warning("Conflicting concurrent write: %s", e.orig)
            raise TransientFailure("Conflicting concurrent write") from e
        except OperationalError as e:
            logger.warning("Database operational error: %s", e.orig)
            raise TransientFailure("Database unavailable") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientFailure("Database connection lost") from e
            raise

    async def _read(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        return await self.run_transaction(work)

    # ------------------------------------------------------------------
    # Quiz submission
    # ------------------------------------------------------------------

    async def submit_quiz_attempt(
        self,
        user_id: int,
        topic_id: str,
        raw_score: int,
        attempt_id: str,
        *,
        now: datetime | None = None,
        submission: Submission | None = None,
    ) -> SubmissionResult:
        """Score a completed quiz. Only the first attempt per topic is rewarded.

        Pass a ``submission`` to keep a handle for ``Submission.cancel()``.
        """
        if submission is None:
            submission = Submission(
                user_id=user_id, topic_id=str(topic_id), raw_score=int(raw_score), attempt_id=attempt_id,
            )
        return await self.coordinator.submit(submission, now=now)

    # ------------------------------------------------------------------
    # Shop
    # ------------------------------------------------------------------

    async def purchase_power_up(
        self,
        user_id: int,
        definition_id: str,
        *,
        now: datetime | None = None,
    ) -> PowerUpInstance:
        """Buy a power-up with tokens. Raises CooldownActive or InsufficientBalance."""
        changes: list[ledger.BalanceChange] = []

        async def _work(db: AsyncSession) -> PowerUpInstance:
            await ledger.lock_wallet(db, user_id)
            return await inventory.purchase(db, user_id, definition_id, changes=changes, now=now)

        async with self.locks.hold(user_id):
            instance = await self.run_transaction(_work)
        await ledger.publish_balance_changes(self.redis, changes)
        return instance

    async def list_power_up_definitions(self) -> list[PowerUpDefinition]:
        return await self._read(catalog.list_definitions)

    # ------------------------------------------------------------------
    # Sabotage
    # ------------------------------------------------------------------

    async def activate_sabotage(
        self,
        attacker_id: int,
        target_id: int,
        instance_id: int,
        *,
        now: datetime | None = None,
    ) -> PowerUpInstance:
        """Aim one of the attacker's Sabotage instances at a target.

        Locks attacker and target, lowest id first.
        """

        async def _work(db: AsyncSession) -> PowerUpInstance:
            for uid in sorted({attacker_id, target_id}):
                if await db.get(User, uid) is not None:
                    await ledger.get_or_create_wallet(db, uid, for_update=True)
                elif uid == attacker_id:
                    raise UnknownUser(f"User {uid} not found")
            instance = await inventory.get_instance(db, instance_id, for_update=True)
            if instance.user_id != attacker_id:
                raise UnknownPowerUp(f"Power-up instance {instance_id} not found")
            return await targeting.register_target(db, instance, target_id, now=now)

        async with self.locks.hold(attacker_id, target_id):
            return await self.run_transaction(_work)

    async def list_targetable_users(self, user_id: int) -> list[User]:
        return await self._read(lambda db: targeting.targetable_users(db, exclude_user_id=user_id))

    # ------------------------------------------------------------------
    # Gamble
    # ------------------------------------------------------------------

    async def roll_gamble(self, user_id: int, *, now: datetime | None = None) -> GambleResult:
        """Roll the dice once against the user's open gamble session.

        A loss larger than the token balance takes the balance to zero.
        Raises NoActiveSession when no purchased rolls remain.
        """
        changes: list[ledger.BalanceChange] = []
        outcomes = self.settings.gamble_outcomes

        async def _work(db: AsyncSession) -> GambleResult:
            wallet = await ledger.lock_wallet(db, user_id)
            session = await inventory.active_gamble_session(db, user_id)
            if session is None:
                raise NoActiveSession("No active gamble session; purchase Roll the Dice first")
            outcome = draw_gamble_outcome(session, self.rng, outcomes)

            delta = outcome if outcome >= 0 else -min(-outcome, wallet.tokens)
            tokens = await ledger.record_delta(
                db, user_id, delta, "gamble", ledger.TOKENS,
                reference_id=f"power_up:{session.id}:roll:{session.uses + 1}",
                changes=changes, now=now,
            )
            remaining = await inventory.record_gamble_use(db, session, now=now)
            return GambleResult(
                instance_id=session.id,
                outcome=outcome,
                token_delta=delta,
                tokens=tokens,
                rolls_remaining=remaining,
            )

        async with self.locks.hold(user_id):
            result = await self.run_transaction(_work)
        logger.info("User %d gamble roll %+d (applied %+d)", user_id, result.outcome, result.token_delta)
        await ledger.publish_balance_changes(self.redis, changes)
        return result

    # ------------------------------------------------------------------
    # Balances and effects
    # ------------------------------------------------------------------

    async def get_balance(self, user_id: int) -> Balance:
        async def _work(db: AsyncSession) -> Balance:
            wallet = await ledger.get_wallet(db, user_id)
            if wallet is None:
                return Balance(points=0, tokens=0)
            return Balance(points=int(wallet.points), tokens=int(wallet.tokens))

        return await self._read(_work)

    async def get_active_effects(self, user_id: int) -> list[PowerUpInstance]:
        return await self._read(lambda db: inventory.active_effects_for(db, user_id))

    async def is_targetable(self, user_id: int) -> bool:
        return await self._read(lambda db: targeting.is_targetable(db, user_id))

    async def get_ledger_history(
        self,
        user_id: int,
        *,
        currency: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[LedgerEntry], int]:
        return await self._read(
            lambda db: ledger.get_history(db, user_id, currency=currency, limit=limit, offset=offset)
        )

    async def grant(
        self,
        user_id: int,
        amount: int,
        reason: str,
        currency: str = ledger.TOKENS,
        *,
        reference_id: str | None = None,
    ) -> int:
        """Manual credit or debit (signup bonus, compensating entry). Returns the new balance."""
        changes: list[ledger.BalanceChange] = []

        async def _work(db: AsyncSession) -> int:
            await ledger.lock_wallet(db, user_id)
            return await ledger.record_delta(
                db, user_id, amount, reason, currency, reference_id=reference_id, changes=changes,
            )

        async with self.locks.hold(user_id):
            balance = await self.run_transaction(_work)
        await ledger.publish_balance_changes(self.redis, changes)
        return balance

    async def compensate(
        self,
        user_id: int,
        currency: str,
        amount: int,
        reason: str,
        reference_id: str | None = None,
    ) -> int:
        """Undo part of a committed result with a new ledger entry; history is never rewritten."""
        return await self.grant(
            user_id, amount, f"compensation:{reason}", currency, reference_id=reference_id,
        )

    async def audit_balance(self, user_id: int) -> dict[str, tuple[int, int]]:
        """Cached vs folded balance per currency."""

        async def _work(db: AsyncSession) -> dict[str, tuple[int, int]]:
            return {
                currency: (
                    await ledger.current_balance(db, user_id, currency),
                    await ledger.derived_balance(db, user_id, currency),
                )
                for currency in ledger.CURRENCIES
            }

        return await self._read(_work)
