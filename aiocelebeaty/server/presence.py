"""Directory of the senders that are currently live."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from aiocelebeaty.clock import Clock, now_ms
from aiocelebeaty.models import TrackSummary
from aiocelebeaty.tokens import SessionIdentity

from .follow import FollowGraph

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PresenceEntry:
    """A live sender."""

    user_id: str
    display_name: str
    since: int
    """Milliseconds since epoch when the sender went live."""
    last_seen: int
    """Milliseconds since epoch of the last ping or sync emission."""
    last_known_track: TrackSummary | None = None


class PresenceDirectory:
    """
    In-memory registry of live senders.

    Staleness is evaluated when the directory is queried: entries whose last
    sign of life is older than the liveness window are left out of snapshots.
    ``expire`` additionally purges them for callers that run a sweep.
    Going offline cascades into the follow graph.
    """

    def __init__(
        self,
        follows: FollowGraph,
        *,
        liveness_window_ms: int = 15_000,
        clock: Clock = now_ms,
    ) -> None:
        """Create an empty directory bound to a follow graph."""
        self._follows = follows
        self._liveness_window_ms = liveness_window_ms
        self._clock = clock
        self._entries: dict[str, PresenceEntry] = {}

    @property
    def liveness_window_ms(self) -> int:
        """Maximum silence before an entry is stale."""
        return self._liveness_window_ms

    def go_live(self, identity: SessionIdentity) -> PresenceEntry:
        """Insert or overwrite the entry of a sender."""
        now = self._clock()
        entry = PresenceEntry(identity.user_id, identity.display_name, since=now, last_seen=now)
        self._entries.pop(identity.user_id, None)
        self._entries[identity.user_id] = entry
        logger.info("%s (%s) is live", identity.user_id, identity.display_name)
        return entry

    def go_offline(self, user_id: str) -> bool:
        """Remove the entry of a sender and every edge targeting it."""
        removed = self._entries.pop(user_id, None) is not None
        followers = self._follows.remove_target(user_id)
        if removed:
            logger.info("%s went offline, dropped %d followers", user_id, len(followers))
        return removed

    def ping(self, user_id: str) -> bool:
        """Refresh the last sign of life of a sender, returns False if unknown."""
        entry = self._entries.get(user_id)
        if entry is None:
            return False
        entry.last_seen = self._clock()
        return True

    def touch(self, user_id: str, track: TrackSummary | None = None) -> bool:
        """Refresh a sender because it emitted a sync event, remembering the track."""
        entry = self._entries.get(user_id)
        if entry is None:
            return False
        entry.last_seen = self._clock()
        if track is not None:
            entry.last_known_track = track
        return True

    def get(self, user_id: str) -> PresenceEntry | None:
        """Return the entry of a sender if it is live."""
        entry = self._entries.get(user_id)
        if entry is None or self._is_stale(entry, self._clock()):
            return None
        return entry

    def is_live(self, user_id: str) -> bool:
        """Return True if the sender has a non-stale entry."""
        return self.get(user_id) is not None

    def snapshot(self) -> list[PresenceEntry]:
        """Return the live senders, most recently seen first."""
        now = self._clock()
        live = [entry for entry in self._entries.values() if not self._is_stale(entry, now)]
        # sorted is stable, so ties keep insertion order
        return sorted(live, key=lambda entry: -entry.last_seen)

    def expire(self) -> list[str]:
        """Purge stale entries (cascading to follows), returns the removed ids."""
        now = self._clock()
        stale = [uid for uid, entry in self._entries.items() if self._is_stale(entry, now)]
        for user_id in stale:
            logger.debug("Presence of %s expired", user_id)
            self.go_offline(user_id)
        return stale

    def __len__(self) -> int:
        """Return the number of stored entries, stale ones included."""
        return len(self._entries)

    def _is_stale(self, entry: PresenceEntry, now: int) -> bool:
        return now - entry.last_seen > self._liveness_window_ms
