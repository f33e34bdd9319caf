"""Pydantic schemas for economy API requests and responses."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# --- Shop ---


class PowerUpDefinitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    kind: str
    name: str
    category: str
    description: str
    price: int
    cadence_days: int | None
    max_uses: int


class PowerUpCatalogResponse(BaseModel):
    power_ups: list[PowerUpDefinitionResponse]


class PowerUpInstanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    definition_id: str
    kind: str
    purchased_at: datetime
    uses: int
    max_uses: int
    consumed: bool
    consumed_at: datetime | None = None
    target_user_id: int | None = None
    targeted_at: datetime | None = None
    resolution: str | None = None


class ActiveEffectsResponse(BaseModel):
    effects: list[PowerUpInstanceResponse]
    shielded: bool
    can_be_targeted: bool


class PurchaseResponse(BaseModel):
    instance: PowerUpInstanceResponse
    tokens: int


# --- Sabotage ---


class SabotageRequest(BaseModel):
    target_user_id: int


class TargetableUser(BaseModel):
    user_id: int
    name: str
    title: str | None = None


class TargetableUsersResponse(BaseModel):
    users: list[TargetableUser]


# --- Gamble ---


class GambleRollResponse(BaseModel):
    outcome: int
    token_delta: int
    tokens: int
    rolls_remaining: int


# --- Quiz ---


class QuizAttemptRequest(BaseModel):
    attempt_id: str = Field(min_length=1, max_length=128)
    raw_score: int = Field(ge=0)


class QuizAttemptResponse(BaseModel):
    attempt_id: str
    topic_id: str
    raw_score: int
    is_first_attempt: bool
    final_score: int
    token_delta: int
    multiplier_applied: bool
    sabotage_outcome: str | None = None


# --- Balances ---


class BalanceResponse(BaseModel):
    points: int
    tokens: int


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    currency: str
    delta: int
    reason: str
    reference_id: str | None = None
    balance_after: int
    created_at: datetime


class LedgerHistoryResponse(BaseModel):
    entries: list[LedgerEntryResponse]
    total: int
    page: int
    per_page: int
