"""Leaderboard endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from quizecon.config import get_settings
from quizecon.database import get_session
from quizecon.leaderboard.service import get_leaderboard

router = APIRouter(prefix="/api/v1", tags=["Leaderboard"])


class LeaderboardEntry(BaseModel):
    position: int
    user_id: int
    name: str
    title: str
    points: int


class LeaderboardResponse(BaseModel):
    entries: list[LeaderboardEntry]


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def leaderboard(
    limit: int | None = Query(None, ge=1),
    db: AsyncSession = Depends(get_session),
):
    """Players ranked by points. The leaderboard never resets."""
    max_entries = get_settings().leaderboard_max_entries
    limit = min(limit or max_entries, max_entries)
    entries = await get_leaderboard(db, limit=limit)
    return LeaderboardResponse(entries=[LeaderboardEntry(**e) for e in entries])
