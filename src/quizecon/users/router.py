"""Profile endpoints: who am I, rank, title selection."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from quizecon.auth.dependencies import get_current_user
from quizecon.database import get_session
from quizecon.db.models import User
from quizecon.economy import ledger
from quizecon.leaderboard.ranks import compute_rank, unlocked_titles
from quizecon.users.service import count_completed_topics, update_selected_title

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


class RankResponse(BaseModel):
    title: str
    selected_title: str
    unlocked_titles: list[str]
    next_title: str
    points_to_next: int


class ProfileResponse(BaseModel):
    id: int
    name: str | None
    email: str | None
    points: int
    tokens: int
    topics_completed: int
    rank: RankResponse


class TitleUpdateRequest(BaseModel):
    title: str


async def _profile(db: AsyncSession, user: User) -> ProfileResponse:
    points = await ledger.current_balance(db, user.id, ledger.POINTS)
    tokens = await ledger.current_balance(db, user.id, ledger.TOKENS)
    rank = compute_rank(points)
    return ProfileResponse(
        id=user.id,
        name=user.display_name,
        email=user.email,
        points=points,
        tokens=tokens,
        topics_completed=await count_completed_topics(db, user.id),
        rank=RankResponse(
            title=rank["title"],
            selected_title=user.selected_title or rank["title"],
            unlocked_titles=unlocked_titles(points),
            next_title=rank["next_title"],
            points_to_next=rank["points_to_next"],
        ),
    )


@router.get("/me", response_model=ProfileResponse)
async def get_me(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Current user's profile, balances and rank."""
    return await _profile(db, user)


@router.put("/me/title", response_model=ProfileResponse)
async def set_title(
    body: TitleUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Choose which unlocked title to display."""
    try:
        await update_selected_title(db, user, body.title)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return await _profile(db, user)
