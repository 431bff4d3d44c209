"""Who listens to whom."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from aiocelebeaty.clock import Clock, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FollowEdge:
    """A receiver following a sender."""

    follower_id: str
    target_id: str
    since: int
    """Milliseconds since epoch when the edge was created."""


class FollowGraph:
    """
    Maps each sender to the receivers currently subscribed to it, and back.

    Edges are indexed by target so audience lookups only depend on the number
    of followers of that target. Following a new target does not drop the
    previous one; switching targets is done by the client with an explicit
    unfollow.
    """

    def __init__(self, clock: Clock = now_ms) -> None:
        """Create an empty graph."""
        self._clock = clock
        self._by_target: dict[str, dict[str, FollowEdge]] = {}
        self._by_follower: dict[str, set[str]] = {}

    def follow(self, follower_id: str, target_id: str) -> bool:
        """
        Add an edge from follower to target.

        Idempotent, returns True only if the edge did not exist yet.
        """
        if follower_id == target_id:
            logger.debug("Ignoring %s following itself", follower_id)
            return False
        edges = self._by_target.setdefault(target_id, {})
        if follower_id in edges:
            return False
        edges[follower_id] = FollowEdge(follower_id, target_id, self._clock())
        self._by_follower.setdefault(follower_id, set()).add(target_id)
        logger.debug("%s follows %s", follower_id, target_id)
        return True

    def unfollow(self, follower_id: str, target_id: str) -> bool:
        """Remove the edge from follower to target, returns True if it existed."""
        edges = self._by_target.get(target_id)
        if edges is None or edges.pop(follower_id, None) is None:
            return False
        if not edges:
            del self._by_target[target_id]
        targets = self._by_follower.get(follower_id)
        if targets is not None:
            targets.discard(target_id)
            if not targets:
                del self._by_follower[follower_id]
        logger.debug("%s unfollowed %s", follower_id, target_id)
        return True

    def listener_count_of(self, target_id: str) -> int:
        """Return how many receivers follow the target."""
        return len(self._by_target.get(target_id, ()))

    def audience_of(self, target_id: str) -> frozenset[str]:
        """Return the ids of all receivers following the target."""
        return frozenset(self._by_target.get(target_id, ()))

    def edges_of(self, target_id: str) -> list[FollowEdge]:
        """Return the edges pointing at the target."""
        return list(self._by_target.get(target_id, {}).values())

    def targets_of(self, follower_id: str) -> frozenset[str]:
        """Return the ids of all senders the receiver follows."""
        return frozenset(self._by_follower.get(follower_id, ()))

    def remove_target(self, target_id: str) -> frozenset[str]:
        """Drop every edge pointing at the target, returns the former followers."""
        followers = frozenset(self._by_target.get(target_id, ()))
        for follower_id in followers:
            self.unfollow(follower_id, target_id)
        return followers

    def remove_follower(self, follower_id: str) -> frozenset[str]:
        """Drop every edge starting at the follower, returns the former targets."""
        targets = self.targets_of(follower_id)
        for target_id in targets:
            self.unfollow(follower_id, target_id)
        return targets
