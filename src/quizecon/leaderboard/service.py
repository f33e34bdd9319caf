"""Points leaderboard. Players are ranked by points only; tokens never count."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quizecon.db.models import User, Wallet
from quizecon.leaderboard.ranks import compute_rank


async def get_leaderboard(db: AsyncSession, limit: int = 100) -> list[dict]:
    """Top players by points. Ties share a position (standard competition ranking)."""
    result = await db.execute(
        select(User.id, User.display_name, User.selected_title, Wallet.points)
        .join(Wallet, Wallet.user_id == User.id)
        .order_by(Wallet.points.desc(), User.id.asc())
        .limit(limit)
    )

    entries: list[dict] = []
    position = 0
    previous_points: int | None = None
    for index, row in enumerate(result.all(), start=1):
        if row.points != previous_points:
            position = index
            previous_points = row.points
        entries.append({
            "position": position,
            "user_id": row.id,
            "name": row.display_name or "Unknown",
            "title": row.selected_title or compute_rank(row.points)["title"],
            "points": int(row.points),
        })
    return entries
