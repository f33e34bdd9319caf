"""Sabotage targeting registry.

A victim may have at most one unresolved Sabotage aimed at them. The
registry is the ``target_user_id``/``resolution`` columns on the Sabotage
instances themselves; nothing is duplicated elsewhere.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quizecon.db.models import PowerUpInstance, User
from quizecon.economy.catalog import SABOTAGE
from quizecon.economy.errors import AlreadyConsumed, AlreadyTargeted, TargetUnavailable, UnknownPowerUp

logger = logging.getLogger(__name__)


def _unresolved_against(user_id: int) -> list:
    return [
        PowerUpInstance.kind == SABOTAGE,
        PowerUpInstance.target_user_id == user_id,
        PowerUpInstance.resolution.is_(None),
        PowerUpInstance.consumed.is_(False),
    ]


async def incoming_sabotages(db: AsyncSession, user_id: int) -> list[PowerUpInstance]:
    """Unresolved Sabotage instances aimed at the user, oldest first."""
    result = await db.execute(
        select(PowerUpInstance)
        .where(*_unresolved_against(user_id))
        .order_by(PowerUpInstance.id)
    )
    return list(result.scalars().all())


async def is_targetable(db: AsyncSession, user_id: int) -> bool:
    """True when no unresolved Sabotage is aimed at the user."""
    result = await db.execute(
        select(func.count()).select_from(PowerUpInstance).where(*_unresolved_against(user_id))
    )
    return result.scalar_one() == 0


async def register_target(
    db: AsyncSession,
    attacker_instance: PowerUpInstance,
    target_user_id: int,
    *,
    now: datetime | None = None,
) -> PowerUpInstance:
    """Aim an unused Sabotage instance at a victim.

    Raises UnknownPowerUp if the instance is not a Sabotage, AlreadyConsumed if
    it was already used or aimed, TargetUnavailable for a missing or self
    target, and AlreadyTargeted if the victim already has one pending.
    """
    if attacker_instance.kind != SABOTAGE:
        raise UnknownPowerUp(f"Power-up instance {attacker_instance.id} is not a Sabotage")
    if attacker_instance.consumed or attacker_instance.target_user_id is not None:
        raise AlreadyConsumed(f"Sabotage {attacker_instance.id} has already been used")
    if target_user_id == attacker_instance.user_id:
        raise TargetUnavailable("You cannot sabotage yourself")

    target = await db.get(User, target_user_id)
    if target is None:
        raise TargetUnavailable(f"User {target_user_id} not found")

    if not await is_targetable(db, target_user_id):
        raise AlreadyTargeted(f"User {target_user_id} is already targeted by a Sabotage")

    if now is None:
        now = datetime.now(timezone.utc)
    attacker_instance.target_user_id = target_user_id
    attacker_instance.targeted_at = now
    await db.flush()

    logger.info(
        "User %d aimed sabotage %d at user %d",
        attacker_instance.user_id, attacker_instance.id, target_user_id,
    )
    return attacker_instance


async def targetable_users(
    db: AsyncSession,
    exclude_user_id: int | None = None,
    limit: int = 100,
) -> list[User]:
    """Users with no pending Sabotage against them, for the opponent picker."""
    pending = (
        select(PowerUpInstance.target_user_id)
        .where(
            PowerUpInstance.kind == SABOTAGE,
            PowerUpInstance.target_user_id.is_not(None),
            PowerUpInstance.resolution.is_(None),
            PowerUpInstance.consumed.is_(False),
        )
    )
    stmt = select(User).where(User.id.not_in(pending))
    if exclude_user_id is not None:
        stmt = stmt.where(User.id != exclude_user_id)
    result = await db.execute(stmt.order_by(User.id).limit(limit))
    return list(result.scalars().all())
