"""Effect resolution for quiz attempts and gamble rolls.

Pure functions: nothing here touches the database or mutates the instances
it is given. The coordinator applies the returned consumption list through
the inventory.

Rules for a quiz attempt, in order:

1. Not the first attempt for the topic: delta 0, nothing consumed.
2. Base delta is the raw score, one point per correct answer.
3. The oldest active Multiplier multiplies the delta and is consumed.
4. The oldest unresolved Sabotage aimed at the user is consumed. If the user
   holds an active Shield, the Sabotage is neutralized and the Shield is
   consumed; otherwise the delta is halved (floor).
"""

from __future__ import annotations

import random
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from quizecon.economy.catalog import MULTIPLIER, SABOTAGE, SHIELD
from quizecon.economy.errors import NoActiveSession

APPLIED = "applied"
NEUTRALIZED = "neutralized"

DEFAULT_GAMBLE_OUTCOMES: tuple[int, ...] = (15, 6, -6, -10)


class EffectLike(Protocol):
    id: int
    user_id: int
    kind: str
    consumed: bool
    uses: int
    max_uses: int
    target_user_id: int | None
    resolution: str | None


class AttemptLike(Protocol):
    user_id: int
    raw_score: int
    is_first_attempt: bool


@dataclass(frozen=True)
class ConsumedEffect:
    """An instance the coordinator must consume, with the sabotage outcome if any."""

    instance: EffectLike
    resolution: str | None = None


@dataclass
class Resolution:
    base_delta: int
    final_delta: int
    consumed: list[ConsumedEffect] = field(default_factory=list)
    multiplier_applied: bool = False
    sabotage_outcome: str | None = None


def _is_active(effect: EffectLike) -> bool:
    return not effect.consumed


def _oldest(effects: Iterable[EffectLike]) -> EffectLike | None:
    # Instance ids increase with purchase order.
    return min(effects, key=lambda e: e.id, default=None)


def resolve(
    attempt: AttemptLike,
    active_effects: Sequence[EffectLike],
    incoming_sabotages: Sequence[EffectLike] = (),
    *,
    multiplier_factor: int = 2,
) -> Resolution:
    """Compute the final point delta for an attempt.

    ``active_effects`` are the user's own instances; ``incoming_sabotages``
    are Sabotage instances owned by other users and aimed at this one.
    """
    if not attempt.is_first_attempt:
        return Resolution(base_delta=0, final_delta=0)

    base = max(int(attempt.raw_score), 0)
    result = Resolution(base_delta=base, final_delta=base)

    own = [e for e in active_effects if _is_active(e) and e.user_id == attempt.user_id]

    multiplier = _oldest(e for e in own if e.kind == MULTIPLIER)
    if multiplier is not None:
        result.final_delta *= multiplier_factor
        result.multiplier_applied = True
        result.consumed.append(ConsumedEffect(multiplier))

    sabotage = _oldest(
        s for s in incoming_sabotages
        if s.kind == SABOTAGE
        and _is_active(s)
        and s.resolution is None
        and s.target_user_id == attempt.user_id
    )
    if sabotage is not None:
        shield = _oldest(e for e in own if e.kind == SHIELD)
        if shield is not None:
            result.sabotage_outcome = NEUTRALIZED
            result.consumed.append(ConsumedEffect(shield))
        else:
            result.sabotage_outcome = APPLIED
            result.final_delta //= 2
        result.consumed.append(ConsumedEffect(sabotage, resolution=result.sabotage_outcome))

    return result


def roll_gamble(
    session: EffectLike | None,
    rng: random.Random,
    outcomes: Sequence[int] = DEFAULT_GAMBLE_OUTCOMES,
) -> int:
    """Draw one gamble outcome, uniformly at random, for an open session.

    Raises NoActiveSession when there is no session or its rolls are spent.
    """
    if session is None or session.consumed or session.uses >= session.max_uses:
        raise NoActiveSession("No active gamble session; purchase Roll the Dice first")
    return rng.choice(list(outcomes))
