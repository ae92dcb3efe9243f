"""
Node and result types for the relationship graph.

UserNode is the engine-internal mutable record; PersistableUserNode is the
immutable projection handed to storage and snapshots.

Invariants:
    - last_seq never decreases
    - referred_by is set at most once
    - Sets are serialized as sorted lists so projections are deterministic

How to change safely:
    - New fields need a default in from_dict() so old snapshots still load
    - Keep to_dict() keys stable; snapshot files and the users table use them
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class UserNode:
    """A user in the graph, owned exclusively by the GraphEngine.

    Attributes:
        name: Unique user name
        created_at: Registration timestamp (set once)
        referred_by: Name of the referring user (set at most once)
        referrals: Names of users this user referred
        friends: Names of friends (symmetric relation)
        referral_points: Points earned from referrals in the subtree
        last_seq: Highest applied sequence number (-1 when none)
        referrals_count: Cached len(referrals), recomputed on drain
        friends_count: Cached len(friends), recomputed on drain
    """

    name: str
    created_at: str | None = None
    referred_by: str | None = None
    referrals: set[str] = field(default_factory=set)
    friends: set[str] = field(default_factory=set)
    referral_points: int = 0
    last_seq: int = -1
    referrals_count: int = 0
    friends_count: int = 0


@dataclass(frozen=True)
class PersistableUserNode:
    """Flattened, immutable view of a UserNode."""

    name: str
    created_at: str | None
    referred_by: str | None
    referrals: tuple[str, ...]
    friends: tuple[str, ...]
    referral_points: int
    last_seq: int
    referrals_count: int
    friends_count: int

    @classmethod
    def from_node(cls, node: UserNode) -> PersistableUserNode:
        return cls(
            name=node.name,
            created_at=node.created_at,
            referred_by=node.referred_by,
            referrals=tuple(sorted(node.referrals)),
            friends=tuple(sorted(node.friends)),
            referral_points=node.referral_points,
            last_seq=node.last_seq,
            referrals_count=len(node.referrals),
            friends_count=len(node.friends),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "name": self.name,
            "created_at": self.created_at,
            "referred_by": self.referred_by,
            "referrals": list(self.referrals),
            "friends": list(self.friends),
            "referral_points": self.referral_points,
            "last_seq": self.last_seq,
            "referrals_count": self.referrals_count,
            "friends_count": self.friends_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PersistableUserNode:
        """Create from dictionary, tolerating missing optional fields."""
        referrals = tuple(sorted(data.get("referrals") or ()))
        friends = tuple(sorted(data.get("friends") or ()))
        referrals_count = data.get("referrals_count")
        friends_count = data.get("friends_count")
        return cls(
            name=data["name"],
            created_at=data.get("created_at"),
            referred_by=data.get("referred_by"),
            referrals=referrals,
            friends=friends,
            referral_points=data.get("referral_points") or 0,
            last_seq=data.get("last_seq", -1),
            referrals_count=len(referrals) if referrals_count is None else referrals_count,
            friends_count=len(friends) if friends_count is None else friends_count,
        )


@dataclass(frozen=True)
class IngestResult:
    """Outcome of ingesting one event.

    Attributes:
        applied: Whether the event changed graph state
        touched: Names of nodes mutated or whose last_seq advanced, in order
    """

    applied: bool
    touched: tuple[str, ...] = ()


NOT_APPLIED = IngestResult(applied=False)
