"""
In-memory relationship graph engine.

The GraphEngine is the materialized view of the event log. It applies
register/referral/addfriend/unfriend events keyed by a log-derived sequence
number, tracks which users changed since the last flush, and supports full
export/import for bootstrap and point-in-time capture.

Invariants:
    - An event is rejected if any targeted node has last_seq >= event seq
    - Accepted events that change nothing report applied=False
      (register always advances last_seq once accepted)
    - Friendship is symmetric at every observable point
    - referred_by never changes once set (first referrer wins)
    - Referral points are awarded only when a referral edge is new,
      so redelivery never double-awards
    - ingest() never raises for a rejected event

Thread safety:
    None. Exactly one caller may mutate an engine. The Processor
    guarantees this by applying one batch at a time.

How to change safely:
    - New event types need a handler and a dispatch entry in ingest()
    - Anything that mutates a node must call _mark_dirty()
    - Verify idempotency with the replay-twice tests
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .events import (
    AddFriendEvent,
    ReferralEvent,
    RegisterEvent,
    SequencedEvent,
    UnfriendEvent,
)
from .types import NOT_APPLIED, IngestResult, PersistableUserNode, UserNode

logger = logging.getLogger(__name__)

DEFAULT_REFERRAL_POINT_DEPTH = 2


class GraphEngine:
    """Applies sequenced connection events to an in-memory user graph.

    Attributes:
        referral_point_depth: How many ancestors earn a point for a new referral

    Example:
        >>> engine = GraphEngine()
        >>> engine.ingest(SequencedEvent(RegisterEvent("alice"), seq=1))
        IngestResult(applied=True, touched=('alice',))
    """

    def __init__(self, referral_point_depth: int = DEFAULT_REFERRAL_POINT_DEPTH) -> None:
        if referral_point_depth < 0:
            raise ValueError("referral_point_depth must be >= 0")
        self.referral_point_depth = referral_point_depth
        self._users: dict[str, UserNode] = {}
        self._dirty: set[str] = set()

    def __len__(self) -> int:
        return len(self._users)

    def __contains__(self, name: object) -> bool:
        return name in self._users

    @property
    def dirty_count(self) -> int:
        """Number of users changed since the last drain."""
        return len(self._dirty)

    def get(self, name: str) -> PersistableUserNode | None:
        """Get a read-only projection of a user."""
        node = self._users.get(name)
        return PersistableUserNode.from_node(node) if node else None

    def ingest(self, sequenced: SequencedEvent) -> IngestResult:
        """Apply one event.

        Args:
            sequenced: Event plus its log-derived sequence number

        Returns:
            IngestResult; unknown event types yield applied=False, touched=()
        """
        event = sequenced.event
        seq = sequenced.seq

        if isinstance(event, RegisterEvent):
            return self._handle_register(event, seq)
        if isinstance(event, ReferralEvent):
            return self._handle_referral(event, seq)
        if isinstance(event, AddFriendEvent):
            return self._handle_add_friend(event, seq)
        if isinstance(event, UnfriendEvent):
            return self._handle_unfriend(event, seq)
        return NOT_APPLIED

    def ingest_many(self, events: Iterable[SequencedEvent]) -> int:
        """Apply events in order and return how many were applied."""
        applied = 0
        for sequenced in events:
            if self.ingest(sequenced).applied:
                applied += 1
        return applied

    def drain_dirty_nodes(self) -> list[PersistableUserNode]:
        """Return projections of all users changed since the last drain.

        Recomputes the cached counts and clears the dirty set, so an
        immediate second call returns an empty list.
        """
        if not self._dirty:
            return []

        out = []
        for name in sorted(self._dirty):
            node = self._users.get(name)
            if node is None:
                continue
            node.referrals_count = len(node.referrals)
            node.friends_count = len(node.friends)
            out.append(PersistableUserNode.from_node(node))

        self._dirty.clear()
        return out

    def hydrate(self, nodes: Iterable[PersistableUserNode]) -> None:
        """Replace all state with the given projections.

        Hydration is a bootstrap, not a mutation: nothing is marked dirty.
        """
        self._users.clear()
        self._dirty.clear()
        for doc in nodes:
            self._users[doc.name] = UserNode(
                name=doc.name,
                created_at=doc.created_at,
                referred_by=doc.referred_by,
                referrals=set(doc.referrals),
                friends=set(doc.friends),
                referral_points=doc.referral_points,
                last_seq=doc.last_seq,
                referrals_count=doc.referrals_count,
                friends_count=doc.friends_count,
            )
        logger.debug("Graph hydrated", extra={"users": len(self._users)})

    def snapshot(self) -> list[PersistableUserNode]:
        """Export every user, sorted by name. Does not touch dirty tracking."""
        return [PersistableUserNode.from_node(self._users[name]) for name in sorted(self._users)]

    # Handlers

    def _handle_register(self, ev: RegisterEvent, seq: int) -> IngestResult:
        targets = (ev.name,)
        if not self._can_apply(targets, seq):
            return NOT_APPLIED

        node = self._get_or_create(ev.name)
        created_at_set = False
        if not node.created_at and ev.created_at:
            node.created_at = ev.created_at
            created_at_set = True
            self._mark_dirty(node.name)

        advanced = self._mark_applied(targets, seq)
        if advanced or created_at_set:
            return IngestResult(applied=True, touched=targets)
        return NOT_APPLIED

    def _handle_referral(self, ev: ReferralEvent, seq: int) -> IngestResult:
        if ev.referred_by == ev.user:
            return NOT_APPLIED
        parent = self._users.get(ev.referred_by)
        child = self._users.get(ev.user)
        if parent is None or child is None:
            return NOT_APPLIED

        targets = (parent.name, child.name)
        if not self._can_apply(targets, seq):
            return NOT_APPLIED

        # First referrer wins.
        if child.referred_by and child.referred_by != parent.name:
            return NOT_APPLIED

        mutated = False
        if not child.referred_by:
            child.referred_by = parent.name
            mutated = True
            self._mark_dirty(child.name)

        if child.name not in parent.referrals:
            parent.referrals.add(child.name)
            mutated = True
            self._mark_dirty(parent.name)
            self._propagate_referral_points(parent.name)

        if not mutated:
            return NOT_APPLIED

        self._mark_applied(targets, seq)
        return IngestResult(applied=True, touched=targets)

    def _handle_add_friend(self, ev: AddFriendEvent, seq: int) -> IngestResult:
        pair = self._friend_pair(ev.user1, ev.user2, seq)
        if pair is None:
            return NOT_APPLIED
        a, b = pair

        grew = b.name not in a.friends or a.name not in b.friends
        if not grew:
            return NOT_APPLIED

        a.friends.add(b.name)
        b.friends.add(a.name)
        return self._finish_friend_change(a, b, seq)

    def _handle_unfriend(self, ev: UnfriendEvent, seq: int) -> IngestResult:
        pair = self._friend_pair(ev.user1, ev.user2, seq)
        if pair is None:
            return NOT_APPLIED
        a, b = pair

        shrank = b.name in a.friends or a.name in b.friends
        if not shrank:
            return NOT_APPLIED

        a.friends.discard(b.name)
        b.friends.discard(a.name)
        return self._finish_friend_change(a, b, seq)

    # Helpers

    def _friend_pair(self, user1: str, user2: str, seq: int) -> tuple[UserNode, UserNode] | None:
        """Resolve both sides of a friend event, or None if it must be rejected."""
        if user1 == user2:
            return None
        a = self._users.get(user1)
        b = self._users.get(user2)
        if a is None or b is None:
            return None
        if not self._can_apply((a.name, b.name), seq):
            return None
        return a, b

    def _finish_friend_change(self, a: UserNode, b: UserNode, seq: int) -> IngestResult:
        targets = (a.name, b.name)
        self._mark_dirty(a.name)
        self._mark_dirty(b.name)
        self._mark_applied(targets, seq)
        return IngestResult(applied=True, touched=targets)

    def _can_apply(self, names: Iterable[str], seq: int) -> bool:
        for name in names:
            node = self._users.get(name)
            if node is not None and node.last_seq >= seq:
                return False
        return True

    def _mark_applied(self, names: Iterable[str], seq: int) -> bool:
        """Advance last_seq on every target. Returns True if any advanced."""
        advanced = False
        for name in names:
            node = self._get_or_create(name)
            if node.last_seq < seq:
                node.last_seq = seq
                self._mark_dirty(name)
                advanced = True
        return advanced

    def _mark_dirty(self, name: str) -> None:
        self._dirty.add(name)

    def _get_or_create(self, name: str) -> UserNode:
        node = self._users.get(name)
        if node is None:
            node = UserNode(name=name)
            self._users[name] = node
            self._mark_dirty(name)
        return node

    def _propagate_referral_points(self, start: str) -> None:
        """Award +1 to the direct parent and up to depth-1 further ancestors."""
        current: str | None = start
        depth = 0
        while current and depth < self.referral_point_depth:
            node = self._users.get(current)
            if node is None:
                break
            node.referral_points += 1
            self._mark_dirty(node.name)
            current = node.referred_by
            depth += 1
