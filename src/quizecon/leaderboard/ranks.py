"""Rank titles unlocked by total points.

Titles match the avatar progression images shipped with the app.
"""

from __future__ import annotations

RANK_THRESHOLDS: list[dict] = [
    {"rank": 1, "title": "Trainee", "points_required": 0},
    {"rank": 2, "title": "SCEngineer", "points_required": 100},
    {"rank": 3, "title": "TeamIC", "points_required": 250},
    {"rank": 4, "title": "FlightLead", "points_required": 500},
    {"rank": 5, "title": "OC", "points_required": 1000},
    {"rank": 6, "title": "CO", "points_required": 2000},
    {"rank": 7, "title": "Commander", "points_required": 4000},
]


def compute_rank(points: int) -> dict:
    """Current rank and progress towards the next one."""
    current = RANK_THRESHOLDS[0]
    next_rank = RANK_THRESHOLDS[1]

    for i, threshold in enumerate(RANK_THRESHOLDS):
        if points >= threshold["points_required"]:
            current = threshold
            next_rank = RANK_THRESHOLDS[min(i + 1, len(RANK_THRESHOLDS) - 1)]

    return {
        "rank": current["rank"],
        "title": current["title"],
        "next_title": next_rank["title"],
        "points_to_next": max(next_rank["points_required"] - points, 0),
    }


def unlocked_titles(points: int) -> list[str]:
    """Every title the player may display, lowest first."""
    return [t["title"] for t in RANK_THRESHOLDS if points >= t["points_required"]]
