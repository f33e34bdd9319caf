"""Append-only points/tokens ledger with a transactionally cached wallet total.

Every write inserts a ``LedgerEntry`` and updates the ``Wallet`` row in the
same flush, so the cached total and the folded entries never diverge. Callers
own the transaction: nothing here commits.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quizecon.db.models import LedgerEntry, User, Wallet
from quizecon.economy.errors import InsufficientBalance, UnknownUser

logger = logging.getLogger(__name__)

POINTS = "points"
TOKENS = "tokens"
CURRENCIES = (POINTS, TOKENS)

BALANCE_CHANGED_CHANNEL = "pubsub:balance_changed"


@dataclass(frozen=True)
class BalanceChange:
    """Pending balance-changed notification, published after commit."""

    user_id: int
    currency: str
    delta: int
    balance: int
    reason: str


async def get_wallet(
    db: AsyncSession,
    user_id: int,
    *,
    for_update: bool = False,
) -> Wallet | None:
    """Cached-balance row for a user, or None. Never inserts."""
    stmt = select(Wallet).where(Wallet.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_or_create_wallet(
    db: AsyncSession,
    user_id: int,
    *,
    for_update: bool = False,
) -> Wallet:
    """Get or create the cached-balance row for a user.

    ``for_update`` takes a row lock on backends that support it.
    """
    wallet = await get_wallet(db, user_id, for_update=for_update)
    if wallet is None:
        wallet = Wallet(
            user_id=user_id,
            points=0,
            tokens=0,
            updated_at=datetime.now(timezone.utc),
        )
        db.add(wallet)
        await db.flush()
    return wallet


async def lock_wallet(db: AsyncSession, user_id: int) -> Wallet:
    """Row-lock the wallet of an existing user before writing to it.

    Raises UnknownUser when the user does not exist, so no entry is ever
    appended for an id without an owner.
    """
    if await db.get(User, user_id) is None:
        raise UnknownUser(f"User {user_id} not found")
    return await get_or_create_wallet(db, user_id, for_update=True)


def _check_currency(currency: str) -> None:
    if currency not in CURRENCIES:
        msg = f"Unknown currency: {currency!r}"
        raise ValueError(msg)


async def current_balance(db: AsyncSession, user_id: int, currency: str = POINTS) -> int:
    """Cached balance for one currency."""
    _check_currency(currency)
    wallet = await get_wallet(db, user_id)
    if wallet is None:
        return 0
    return int(getattr(wallet, currency))


async def derived_balance(db: AsyncSession, user_id: int, currency: str = POINTS) -> int:
    """Balance folded from ledger entries. Used to audit the cached total."""
    _check_currency(currency)
    result = await db.execute(
        select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.currency == currency,
        )
    )
    return int(result.scalar_one())


async def record_delta(
    db: AsyncSession,
    user_id: int,
    amount: int,
    reason: str,
    currency: str = POINTS,
    *,
    reference_id: str | None = None,
    changes: list[BalanceChange] | None = None,
    now: datetime | None = None,
) -> int:
    """Append a ledger entry and update the cached total. Returns the new balance.

    Raises InsufficientBalance when a debit exceeds the current balance; in
    that case nothing is written. A zero amount is a no-op and writes no entry.
    When ``changes`` is given, the resulting notification is appended to it
    so the caller can publish once the transaction commits.
    """
    _check_currency(currency)
    wallet = await get_or_create_wallet(db, user_id)
    balance = int(getattr(wallet, currency))

    if amount == 0:
        return balance
    if amount < 0 and -amount > balance:
        raise InsufficientBalance(currency, balance, -amount)

    if now is None:
        now = datetime.now(timezone.utc)
    new_balance = balance + amount

    db.add(LedgerEntry(
        user_id=user_id,
        currency=currency,
        delta=amount,
        reason=reason,
        reference_id=reference_id,
        balance_after=new_balance,
        created_at=now,
    ))
    setattr(wallet, currency, new_balance)
    wallet.updated_at = now
    await db.flush()

    logger.debug("ledger %s %+d %s for user %d -> %d", reason, amount, currency, user_id, new_balance)
    if changes is not None:
        changes.append(BalanceChange(user_id, currency, amount, new_balance, reason))
    return new_balance


async def get_history(
    db: AsyncSession,
    user_id: int,
    *,
    currency: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[LedgerEntry], int]:
    """Ledger entries in reverse append order, plus the total count."""
    filters = [LedgerEntry.user_id == user_id]
    if currency is not None:
        _check_currency(currency)
        filters.append(LedgerEntry.currency == currency)

    total_result = await db.execute(
        select(func.count()).select_from(LedgerEntry).where(*filters)
    )
    result = await db.execute(
        select(LedgerEntry)
        .where(*filters)
        .order_by(LedgerEntry.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total_result.scalar_one())


async def publish_balance_changes(redis: object, changes: list[BalanceChange]) -> None:
    """Broadcast committed balance changes for UI-facing listeners."""
    if redis is None or not changes:
        return
    for change in changes:
        try:
            await redis.publish(  # type: ignore[attr-defined]
                BALANCE_CHANGED_CHANNEL,
                json.dumps({
                    "user_id": change.user_id,
                    "currency": change.currency,
                    "delta": change.delta,
                    "balance": change.balance,
                    "reason": change.reason,
                }),
            )
        except Exception:
            logger.warning("Failed to publish balance_changed for user %d", change.user_id, exc_info=True)
