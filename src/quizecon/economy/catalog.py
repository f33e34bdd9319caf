"""Power-up catalog seed data, matching the app's shop item list (ids 101-104)."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quizecon.config import get_settings
from quizecon.db.models import PowerUpDefinition
from quizecon.economy.errors import UnknownPowerUp

logger = logging.getLogger(__name__)

MULTIPLIER = "multiplier"
SABOTAGE = "sabotage"
SHIELD = "shield"
GAMBLE = "gamble"

# Kinds limited to one purchase per cadence window.
WEEKLY_KINDS = {MULTIPLIER, SABOTAGE, SHIELD}

POWER_UP_SEED_DATA: list[dict] = [
    {
        "id": "101",
        "slug": "multiplier",
        "kind": MULTIPLIER,
        "name": "Multiplier",
        "category": "defence",
        "description": (
            "Earn double points on your next first-attempt quiz. "
            "Can only be purchased once a week."
        ),
        "price": 5,
        "max_uses": 1,
        "sort_order": 1,
    },
    {
        "id": "102",
        "slug": "sabotage",
        "kind": SABOTAGE,
        "name": "Sabotage",
        "category": "offence",
        "description": (
            "Select a player and halve the points of their next first-attempt quiz. "
            "Can only be purchased once a week."
        ),
        "price": 8,
        "max_uses": 1,
        "sort_order": 2,
    },
    {
        "id": "103",
        "slug": "shield",
        "kind": SHIELD,
        "name": "Shield",
        "category": "defence",
        "description": (
            "Protects you against one Sabotage, then breaks. "
            "Can only be purchased once a week."
        ),
        "price": 6,
        "max_uses": 1,
        "sort_order": 3,
    },
    {
        "id": "104",
        "slug": "gamble",
        "kind": GAMBLE,
        "name": "Roll the Dice",
        "category": "wildcard",
        "description": "Three rolls per session: win 15 or 6 tokens, or lose 6 or 10 tokens.",
        "price": 6,
        "max_uses": 3,
        "sort_order": 4,
    },
]


async def seed_power_ups(db: AsyncSession) -> int:
    """Upsert all power-up definitions. Returns number seeded."""
    settings = get_settings()
    seeded = 0
    for data in POWER_UP_SEED_DATA:
        values = dict(data)
        values["cadence_days"] = settings.power_up_cadence_days if data["kind"] in WEEKLY_KINDS else None
        if data["kind"] == GAMBLE:
            values["max_uses"] = settings.gamble_max_rolls
        await db.merge(PowerUpDefinition(is_active=True, **values))
        seeded += 1

    await db.commit()
    logger.info("Seeded %d power-up definitions", seeded)
    return seeded


async def list_definitions(db: AsyncSession) -> list[PowerUpDefinition]:
    """Active definitions in shop order."""
    result = await db.execute(
        select(PowerUpDefinition)
        .where(PowerUpDefinition.is_active.is_(True))
        .order_by(PowerUpDefinition.sort_order)
    )
    return list(result.scalars().all())


async def get_definition(db: AsyncSession, definition_id: str) -> PowerUpDefinition:
    """Fetch an active definition by id or slug."""
    result = await db.execute(
        select(PowerUpDefinition).where(
            (PowerUpDefinition.id == definition_id) | (PowerUpDefinition.slug == definition_id)
        )
    )
    definition = result.scalar_one_or_none()
    if definition is None or not definition.is_active:
        raise UnknownPowerUp(f"Power-up {definition_id!r} not found")
    return definition
