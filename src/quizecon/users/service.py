"""User identity and profile logic.

The external auth provider owns sign-up and passwords; we only map its
principal (the token ``sub``) to an internal user row.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import func, select

from quizecon.config import get_settings
from quizecon.db.models import TopicCompletion, User, Wallet
from quizecon.economy import ledger
from quizecon.leaderboard.ranks import unlocked_titles

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


async def get_user_by_external_id(db: AsyncSession, external_id: str) -> User | None:
    """Fetch a user by auth provider principal."""
    result = await db.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()


async def get_or_create_user(
    db: AsyncSession,
    external_id: str,
    display_name: str | None = None,
    email: str | None = None,
) -> tuple[User, bool]:
    """
    Resolve an auth principal to a user, creating it on first sight.

    New users get a wallet and, if configured, a starting token grant.

    Returns:
        Tuple of (user, created) where created is True if a new user was made.
    """
    user = await get_user_by_external_id(db, external_id)
    if user is not None:
        return user, False

    now = datetime.now(timezone.utc)
    user = User(
        external_id=external_id,
        display_name=display_name,
        email=email,
        created_at=now,
    )
    db.add(user)
    await db.flush()

    db.add(Wallet(user_id=user.id, points=0, tokens=0, updated_at=now))
    await db.flush()

    starting_tokens = get_settings().starting_tokens
    if starting_tokens > 0:
        await ledger.record_delta(
            db, user.id, starting_tokens, "signup_bonus", ledger.TOKENS, now=now,
        )

    logger.info("user_created", user_id=user.id, external_id=external_id)
    return user, True


async def update_selected_title(db: AsyncSession, user: User, title: str) -> User:
    """
    Set the title shown on the leaderboard and profile.

    Raises:
        ValueError: If the title has not been unlocked yet.
    """
    points = await ledger.current_balance(db, user.id, ledger.POINTS)
    if title not in unlocked_titles(points):
        msg = f"Title '{title}' is not unlocked"
        raise ValueError(msg)
    user.selected_title = title
    await db.flush()
    return user


async def count_completed_topics(db: AsyncSession, user_id: int) -> int:
    """Number of topics the user has been rewarded for."""
    result = await db.execute(
        select(func.count()).select_from(TopicCompletion).where(TopicCompletion.user_id == user_id)
    )
    return int(result.scalar_one())
