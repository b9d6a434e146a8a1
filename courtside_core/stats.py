"""Derived, non-authoritative match statistics.

Nothing here feeds back into apply_action(); values are recomputed for display.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable

POINT_CATEGORIES = ("ATTACK", "BLOCK", "SERVE_POINT", "OPPONENT_ERROR")


def calculate_win_probability(score_a: int, score_b: int, max_points: int) -> float:
    """Estimated chance (0-100) that team A wins the set from the current score."""
    total = score_a + score_b
    if total == 0 or max_points <= 0:
        return 50.0

    diff = score_a - score_b
    progress = total / (max_points * 2)
    win_prob = 50 + (diff / max_points) * 50 * (1 + progress)

    # Leader at set point gets a bump.
    if score_a >= max_points - 1 and score_a > score_b:
        win_prob = min(95.0, win_prob + 10)
    elif score_b >= max_points - 1 and score_b > score_a:
        win_prob = max(5.0, win_prob - 10)

    return float(max(0.0, min(100.0, win_prob)))


@dataclass
class TeamStats:
    points: Dict[str, int] = field(default_factory=lambda: {c: 0 for c in POINT_CATEGORIES})
    total_points: int = 0
    uncategorized: int = 0

    @property
    def aces(self) -> int:
        return self.points["SERVE_POINT"]

    @property
    def attacks(self) -> int:
        return self.points["ATTACK"]

    @property
    def blocks(self) -> int:
        return self.points["BLOCK"]

    @property
    def errors(self) -> int:
        # Points this team received from opponent errors.
        return self.points["OPPONENT_ERROR"]


def team_statistics(events: Iterable[Dict[str, Any]]) -> Dict[str, TeamStats]:
    """Count POINT events per team and category; overrides are not reflected."""
    stats = {"A": TeamStats(), "B": TeamStats()}
    for event in events:
        if event.get("type") != "POINT":
            continue
        team = event.get("team")
        if team not in stats:
            continue
        entry = stats[team]
        entry.total_points += 1
        category = event.get("pointCategory")
        if category in entry.points:
            entry.points[category] += 1
        else:
            entry.uncategorized += 1
    return stats
