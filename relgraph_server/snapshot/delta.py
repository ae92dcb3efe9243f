"""
Leaderboards computed from two graph snapshots.

Referral-point growth is the difference between a later and an earlier
snapshot; network strength is read from the later snapshot only.
Rankings sort by value descending and break ties by name ascending.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ..graph.types import PersistableUserNode


@dataclass(frozen=True)
class RankedUser:
    name: str
    value: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "value": self.value}


@dataclass
class Leaderboard:
    """Rankings between two snapshots.

    Attributes:
        referral_points: Referral points gained between the snapshots
        network_strength: Friends + referrals + referrer in the later snapshot
    """

    referral_points: list[RankedUser] = field(default_factory=list)
    network_strength: list[RankedUser] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "referral_points": [r.to_dict() for r in self.referral_points],
            "network_strength": [r.to_dict() for r in self.network_strength],
        }


def network_strength(user: PersistableUserNode) -> int:
    return user.friends_count + user.referrals_count + (1 if user.referred_by else 0)


def _rank(values: dict[str, int], count: int | None) -> list[RankedUser]:
    ranked = sorted(values.items(), key=lambda item: (-item[1], item[0]))
    if count is not None:
        ranked = ranked[:count]
    return [RankedUser(name=name, value=value) for name, value in ranked]


def compute_leaderboard(
    earlier: Iterable[PersistableUserNode] | None,
    later: Iterable[PersistableUserNode],
    count: int | None = None,
) -> Leaderboard:
    """Rank users of the later snapshot.

    Args:
        earlier: Users at the start of the window (None for an empty graph)
        later: Users at the end of the window
        count: Keep only the top entries of each ranking

    Returns:
        Leaderboard with both rankings

    Raises:
        ValueError: If count is negative
    """
    if count is not None and count < 0:
        raise ValueError("count must be non-negative")

    before = {u.name: u.referral_points for u in earlier or ()}
    later = list(later)

    gained = {u.name: u.referral_points - before.get(u.name, 0) for u in later}
    strength = {u.name: network_strength(u) for u in later}

    return Leaderboard(
        referral_points=_rank(gained, count),
        network_strength=_rank(strength, count),
    )
