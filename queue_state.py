"""
Queue read model and dedup bookkeeping for auto-fill.

Tracks and queue entries are rebuilt from MPD on every tick; only
RecentHistory lives across ticks.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Set

# Dedup memory holds this many batches worth of track ids
HISTORY_MULTIPLIER = 4


@dataclass(frozen=True)
class Track:
    file: str
    title: str = ''
    artist: str = ''
    album: str = ''
    genres: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class QueueEntry:
    track: Track
    pos: int
    id: int


@dataclass(frozen=True)
class PlaybackStatus:
    state: str
    queue_length: int
    song_id: Optional[int] = None
    elapsed: float = 0.0

    @property
    def is_playing(self) -> bool:
        return self.state == 'play'


class RecentHistory:
    """Bounded, insertion-ordered set of track ids enqueued by the monitor.

    Once more than ``capacity`` ids are held the oldest ones are evicted.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"History capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._ids = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    def resize(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"History capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._evict()

    def extend(self, track_ids: Iterable[str]):
        for track_id in track_ids:
            # Re-adding refreshes the entry so it is evicted last
            self._ids.pop(track_id, None)
            self._ids[track_id] = None
        self._evict()

    def _evict(self):
        while len(self._ids) > self._capacity:
            self._ids.popitem(last=False)

    def __contains__(self, track_id) -> bool:
        return track_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self):
        return iter(list(self._ids))


class QueueState:
    """Snapshot of the MPD queue combined with the monitor's recent history."""

    def __init__(self, status: PlaybackStatus, entries: List[QueueEntry], history: RecentHistory):
        self.status = status
        self.entries = list(entries)
        self.history = history

    @property
    def length(self) -> int:
        # playlistinfo is authoritative; status may lag a concurrent edit
        return len(self.entries)

    def current_entry(self) -> Optional[QueueEntry]:
        if self.status.song_id is None:
            return None
        for entry in self.entries:
            if entry.id == self.status.song_id:
                return entry
        return None

    def current_track(self) -> Optional[Track]:
        entry = self.current_entry()
        return entry.track if entry else None

    def queued_ids(self) -> Set[str]:
        return {entry.track.file for entry in self.entries}

    def exclusion_set(self) -> Set[str]:
        return self.queued_ids() | set(self.history)

    def filter_candidates(self, tracks: Iterable[Track]) -> List[Track]:
        """Drop excluded tracks and repeated ids, keeping first-seen order."""
        excluded = self.exclusion_set()
        seen = set()
        pool = []
        for track in tracks:
            if not track.file or track.file in excluded or track.file in seen:
                continue
            seen.add(track.file)
            pool.append(track)
        return pool
