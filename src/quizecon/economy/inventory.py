"""Power-up inventory: purchases, active effects, write-once consumption."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quizecon.db.models import PowerUpInstance
from quizecon.economy import ledger
from quizecon.economy.catalog import GAMBLE, get_definition
from quizecon.economy.errors import AlreadyConsumed, CooldownActive, UnknownPowerUp

logger = logging.getLogger(__name__)


def cadence_window_start(now: datetime, cadence_days: int) -> datetime:
    """Start of the rolling cadence window ending at ``now``."""
    return now - timedelta(days=cadence_days)


async def last_purchase_of_kind(
    db: AsyncSession,
    user_id: int,
    kind: str,
    since: datetime,
) -> PowerUpInstance | None:
    """Most recent purchase of ``kind`` strictly after ``since``."""
    result = await db.execute(
        select(PowerUpInstance)
        .where(
            PowerUpInstance.user_id == user_id,
            PowerUpInstance.kind == kind,
            PowerUpInstance.purchased_at > since,
        )
        .order_by(PowerUpInstance.purchased_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def purchase(
    db: AsyncSession,
    user_id: int,
    definition_id: str,
    *,
    changes: list[ledger.BalanceChange] | None = None,
    now: datetime | None = None,
) -> PowerUpInstance:
    """Buy a power-up: cadence check, token debit and instance creation.

    All three happen in the caller's transaction. Raises CooldownActive or
    InsufficientBalance before anything is written.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    definition = await get_definition(db, definition_id)

    if definition.cadence_days:
        previous = await last_purchase_of_kind(
            db, user_id, definition.kind, cadence_window_start(now, definition.cadence_days)
        )
        if previous is not None:
            raise CooldownActive(
                definition.kind,
                available_at=previous.purchased_at + timedelta(days=definition.cadence_days),
            )

    instance = PowerUpInstance(
        user_id=user_id,
        definition_id=definition.id,
        kind=definition.kind,
        purchased_at=now,
        uses=0,
        max_uses=definition.max_uses,
        consumed=False,
    )
    db.add(instance)
    await db.flush()

    # Raises InsufficientBalance; the caller rolls back the instance with it.
    await ledger.record_delta(
        db,
        user_id,
        -definition.price,
        f"purchase:{definition.kind}",
        ledger.TOKENS,
        reference_id=f"power_up:{instance.id}",
        changes=changes,
        now=now,
    )
    logger.info("User %d purchased %s (instance %d)", user_id, definition.kind, instance.id)
    return instance


async def get_instance(
    db: AsyncSession,
    instance_id: int,
    *,
    for_update: bool = False,
) -> PowerUpInstance:
    stmt = select(PowerUpInstance).where(PowerUpInstance.id == instance_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    instance = result.scalar_one_or_none()
    if instance is None:
        raise UnknownPowerUp(f"Power-up instance {instance_id} not found")
    return instance


async def active_effects_for(
    db: AsyncSession,
    user_id: int,
    kind: str | None = None,
) -> list[PowerUpInstance]:
    """Unconsumed instances owned by the user, oldest first."""
    filters = [PowerUpInstance.user_id == user_id, PowerUpInstance.consumed.is_(False)]
    if kind is not None:
        filters.append(PowerUpInstance.kind == kind)
    result = await db.execute(
        select(PowerUpInstance).where(*filters).order_by(PowerUpInstance.id)
    )
    return list(result.scalars().all())


async def consume(
    db: AsyncSession,
    instance: PowerUpInstance,
    *,
    resolution: str | None = None,
    attempt_id: str | None = None,
    now: datetime | None = None,
) -> PowerUpInstance:
    """Flip the consumed flag. Raises AlreadyConsumed on a second call.

    For a Sabotage, ``resolution`` records how it resolved.
    """
    if instance.consumed:
        raise AlreadyConsumed(f"Power-up instance {instance.id} already consumed")
    if now is None:
        now = datetime.now(timezone.utc)

    instance.consumed = True
    instance.consumed_at = now
    if resolution is not None:
        instance.resolution = resolution
        instance.resolved_at = now
        instance.resolved_by_attempt_id = attempt_id
    await db.flush()
    return instance


async def active_gamble_session(db: AsyncSession, user_id: int) -> PowerUpInstance | None:
    """Oldest open gamble session, if any."""
    sessions = await active_effects_for(db, user_id, GAMBLE)
    return sessions[0] if sessions else None


async def record_gamble_use(
    db: AsyncSession,
    instance: PowerUpInstance,
    *,
    now: datetime | None = None,
) -> int:
    """Count one roll against the session; consume it on the last roll.

    Returns the rolls remaining.
    """
    if instance.consumed:
        raise AlreadyConsumed(f"Gamble session {instance.id} already used up")
    instance.uses += 1
    remaining = instance.max_uses - instance.uses
    if remaining <= 0:
        await consume(db, instance, now=now)
        return 0
    await db.flush()
    return remaining
