"""Economy API: shop, power-ups, gamble, quiz submission, balances."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query, Request

from quizecon.auth.dependencies import get_current_user
from quizecon.db.models import User
from quizecon.economy.catalog import SHIELD
from quizecon.economy.schemas import (
    ActiveEffectsResponse,
    BalanceResponse,
    GambleRollResponse,
    LedgerEntryResponse,
    LedgerHistoryResponse,
    PowerUpCatalogResponse,
    PowerUpDefinitionResponse,
    PowerUpInstanceResponse,
    PurchaseResponse,
    QuizAttemptRequest,
    QuizAttemptResponse,
    SabotageRequest,
    TargetableUser,
    TargetableUsersResponse,
)
from quizecon.economy.service import EconomyService

router = APIRouter(prefix="/api/v1", tags=["Economy"])


def get_economy(request: Request) -> EconomyService:
    """The application's economy service (built at startup)."""
    return request.app.state.economy


# ── Public endpoints ──


@router.get("/shop/power-ups", response_model=PowerUpCatalogResponse)
async def list_power_ups(economy: EconomyService = Depends(get_economy)):
    """Shop catalog."""
    definitions = await economy.list_power_up_definitions()
    return PowerUpCatalogResponse(
        power_ups=[PowerUpDefinitionResponse.model_validate(d) for d in definitions]
    )


# ── Authenticated endpoints ──


@router.post("/shop/power-ups/{definition_id}/purchase", response_model=PurchaseResponse, status_code=201)
async def purchase_power_up(
    definition_id: str,
    user: User = Depends(get_current_user),
    economy: EconomyService = Depends(get_economy),
):
    """Buy a power-up with tokens."""
    instance = await economy.purchase_power_up(user.id, definition_id)
    balance = await economy.get_balance(user.id)
    return PurchaseResponse(
        instance=PowerUpInstanceResponse.model_validate(instance),
        tokens=balance.tokens,
    )


@router.post("/power-ups/{instance_id}/sabotage", response_model=PowerUpInstanceResponse)
async def activate_sabotage(
    instance_id: int,
    body: SabotageRequest,
    user: User = Depends(get_current_user),
    economy: EconomyService = Depends(get_economy),
):
    """Aim a purchased Sabotage at another player."""
    instance = await economy.activate_sabotage(user.id, body.target_user_id, instance_id)
    return PowerUpInstanceResponse.model_validate(instance)


@router.post("/power-ups/gamble/roll", response_model=GambleRollResponse)
async def roll_gamble(
    user: User = Depends(get_current_user),
    economy: EconomyService = Depends(get_economy),
):
    """Roll the dice once against the open gamble session."""
    result = await economy.roll_gamble(user.id)
    return GambleRollResponse(
        outcome=result.outcome,
        token_delta=result.token_delta,
        tokens=result.tokens,
        rolls_remaining=result.rolls_remaining,
    )


@router.get("/users/targetable", response_model=TargetableUsersResponse)
async def list_targetable_users(
    user: User = Depends(get_current_user),
    economy: EconomyService = Depends(get_economy),
):
    """Players who can currently be sabotaged."""
    users = await economy.list_targetable_users(user.id)
    return TargetableUsersResponse(
        users=[
            TargetableUser(user_id=u.id, name=u.display_name or "Unknown", title=u.selected_title)
            for u in users
        ]
    )


@router.post("/quizzes/{topic_id}/attempts", response_model=QuizAttemptResponse)
async def submit_quiz_attempt(
    body: QuizAttemptRequest,
    topic_id: str = Path(..., min_length=1, max_length=64),
    user: User = Depends(get_current_user),
    economy: EconomyService = Depends(get_economy),
):
    """Submit a finished quiz. Only the first attempt per topic earns points and tokens."""
    result = await economy.submit_quiz_attempt(user.id, topic_id, body.raw_score, body.attempt_id)
    return QuizAttemptResponse(
        attempt_id=result.attempt_id,
        topic_id=result.topic_id,
        raw_score=result.raw_score,
        is_first_attempt=result.is_first_attempt,
        final_score=result.final_score,
        token_delta=result.token_delta,
        multiplier_applied=result.multiplier_applied,
        sabotage_outcome=result.sabotage_outcome,
    )


@router.get("/users/me/balance", response_model=BalanceResponse)
async def get_my_balance(
    user: User = Depends(get_current_user),
    economy: EconomyService = Depends(get_economy),
):
    """Current points and tokens."""
    balance = await economy.get_balance(user.id)
    return BalanceResponse(points=balance.points, tokens=balance.tokens)


@router.get("/users/me/effects", response_model=ActiveEffectsResponse)
async def get_my_effects(
    user: User = Depends(get_current_user),
    economy: EconomyService = Depends(get_economy),
):
    """Unconsumed power-ups, shield state and whether the user can be targeted."""
    effects = await economy.get_active_effects(user.id)
    return ActiveEffectsResponse(
        effects=[PowerUpInstanceResponse.model_validate(e) for e in effects],
        shielded=any(e.kind == SHIELD for e in effects),
        can_be_targeted=await economy.is_targetable(user.id),
    )


@router.get("/users/me/ledger", response_model=LedgerHistoryResponse)
async def get_my_ledger(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    currency: str | None = Query(None, pattern="^(points|tokens)$"),
    user: User = Depends(get_current_user),
    economy: EconomyService = Depends(get_economy),
):
    """Balance history (paginated, newest first)."""
    entries, total = await economy.get_ledger_history(
        user.id, currency=currency, limit=per_page, offset=(page - 1) * per_page,
    )
    return LedgerHistoryResponse(
        entries=[LedgerEntryResponse.model_validate(e) for e in entries],
        total=total,
        page=page,
        per_page=per_page,
    )
