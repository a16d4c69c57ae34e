"""
Serialized MPD connection used by both the web routes and the auto-fill monitor.

Every command goes through a single python-mpd2 connection guarded by one
lock, so a user "clear" and a monitor "add" batch never interleave on the wire.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Union

import mpd
from mpd import MPDClient

from queue_state import PlaybackStatus, QueueEntry, Track

logger = logging.getLogger(__name__)


class DaemonError(Exception):
    """Base class for MPD failures that abort a single operation."""


class ConnectionError(DaemonError):
    """MPD is unreachable, timed out, or dropped the connection."""


class ProtocolError(DaemonError):
    """MPD answered with something that could not be understood."""


@dataclass(frozen=True)
class ArtistCriteria:
    artist: str


@dataclass(frozen=True)
class GenreCriteria:
    genres: FrozenSet[str]


SearchCriteria = Union[ArtistCriteria, GenreCriteria]


def _tag_text(value, default=''):
    """MPD returns a list when a tag appears more than once."""
    if value is None:
        return default
    if isinstance(value, list):
        return ", ".join(str(v) for v in value if v) or default
    return str(value)


def _tag_set(value):
    if not value:
        return frozenset()
    if isinstance(value, list):
        return frozenset(str(v).strip() for v in value if v and str(v).strip())
    return frozenset([str(value).strip()]) if str(value).strip() else frozenset()


def track_from_song(song: dict) -> Track:
    if not isinstance(song, dict) or not song.get('file'):
        raise ProtocolError(f"Song entry without file: {song!r}")
    return Track(
        file=_tag_text(song.get('file')),
        title=_tag_text(song.get('title')),
        artist=_tag_text(song.get('artist')),
        album=_tag_text(song.get('album')),
        genres=_tag_set(song.get('genre')),
    )


def queue_entry_from_song(song: dict) -> QueueEntry:
    try:
        pos = int(song['pos'])
        song_id = int(song['id'])
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Queue entry missing pos/id: {song!r}") from e
    return QueueEntry(track=track_from_song(song), pos=pos, id=song_id)


def playback_status_from_dict(status: dict) -> PlaybackStatus:
    try:
        state = status['state']
        queue_length = int(status.get('playlistlength', 0))
        song_id = int(status['songid']) if 'songid' in status else None
        elapsed = float(status.get('elapsed', 0.0))
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Unparseable MPD status: {status!r}") from e
    if state not in ('play', 'pause', 'stop'):
        raise ProtocolError(f"Unknown playback state: {state!r}")
    return PlaybackStatus(state=state, queue_length=queue_length, song_id=song_id, elapsed=elapsed)


class MPDProtocolClient:
    """Small, thread-safe command set over one persistent MPD connection."""

    def __init__(self, host: str = "localhost", port: int = 6600, timeout: int = 10,
                 client_factory=MPDClient):
        """
        Args:
            host: MPD server hostname or IP
            port: MPD server port (default 6600)
            timeout: Socket timeout in seconds, also bounds waiting for the lock
            client_factory: Callable returning a python-mpd2 compatible client
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        self._client_factory = client_factory
        self._client = None
        self._lock = threading.RLock()

    # -- connection handling ------------------------------------------------

    def _connect(self):
        client = self._client_factory()
        client.timeout = self.timeout
        client.idletimeout = None
        try:
            client.connect(self.host, self.port)
        except (mpd.ConnectionError, OSError) as e:
            raise ConnectionError(f"Could not connect to MPD at {self.host}:{self.port}: {e}") from e
        logger.info(f"Connected to MPD at {self.host}:{self.port}")
        self._client = client
        return client

    def _drop_connection(self):
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.disconnect()
        except (mpd.ConnectionError, OSError) as e:
            logger.debug(f"Ignoring error while dropping MPD connection: {e}")

    def close(self):
        with self._lock:
            self._drop_connection()

    @contextmanager
    def _session(self):
        """Hold the command lock and yield a live client, translating failures."""
        if not self._lock.acquire(timeout=self.timeout):
            raise ConnectionError(f"Timed out after {self.timeout}s waiting for the MPD connection")
        try:
            client = self._client or self._connect()
            try:
                yield client
            except (mpd.ConnectionError, OSError) as e:
                logger.warning(f"MPD connection lost: {e}")
                self._drop_connection()
                raise ConnectionError(str(e)) from e
            except mpd.CommandError as e:
                # ACK replies leave the connection usable
                raise ProtocolError(str(e)) from e
            except mpd.ProtocolError as e:
                # The stream is out of sync after a protocol error; start fresh next time
                self._drop_connection()
                raise ProtocolError(str(e)) from e
        finally:
            self._lock.release()

    # -- read commands ------------------------------------------------------

    def status(self) -> PlaybackStatus:
        with self._session() as client:
            return playback_status_from_dict(client.status())

    def queue(self) -> List[QueueEntry]:
        with self._session() as client:
            songs = client.playlistinfo()
        entries = [queue_entry_from_song(song) for song in songs]
        entries.sort(key=lambda entry: entry.pos)
        return entries

    def search(self, criteria: SearchCriteria) -> List[Track]:
        if isinstance(criteria, ArtistCriteria):
            queries = [('artist', criteria.artist)]
        elif isinstance(criteria, GenreCriteria):
            queries = [('genre', genre) for genre in sorted(criteria.genres)]
        else:
            raise TypeError(f"Unsupported search criteria: {criteria!r}")

        results = []
        with self._session() as client:
            for tag, value in queries:
                try:
                    songs = client.find(tag, value)
                except mpd.CommandError as e:
                    raise ProtocolError(f"MPD rejected find {tag} {value!r}: {e}") from e
                results.extend(track_from_song(song) for song in songs)
        logger.debug(f"Search {criteria!r} returned {len(results)} tracks")
        return results

    def list_genres(self) -> List[str]:
        with self._session() as client:
            items = client.list('genre')
        genres = []
        for item in items:
            name = item.get('genre', '') if isinstance(item, dict) else item
            if name and name.strip() and name.strip() != 'N/A':
                genres.append(name)
        genres.sort(key=str.lower)
        return genres

    # -- mutations ----------------------------------------------------------

    def enqueue(self, track_ids: Iterable[str]) -> List[str]:
        """Append tracks to the queue and return the ids MPD accepted.

        MPD has no atomic multi-add, so ids are added one by one. Rejected
        ids are skipped. A connection failure after some ids went in ends
        the batch early and the partial result is returned as-is; with
        nothing added yet it is raised.
        """
        added = []
        if not self._lock.acquire(timeout=self.timeout):
            raise ConnectionError(f"Timed out after {self.timeout}s waiting for the MPD connection")
        try:
            client = self._client or self._connect()
            for track_id in track_ids:
                try:
                    client.add(track_id)
                except mpd.CommandError as e:
                    logger.warning(f"MPD rejected {track_id}: {e}")
                    continue
                except (mpd.ConnectionError, mpd.ProtocolError, OSError) as e:
                    self._drop_connection()
                    if not added:
                        if isinstance(e, mpd.ProtocolError):
                            raise ProtocolError(str(e)) from e
                        raise ConnectionError(str(e)) from e
                    logger.warning(f"MPD connection failed after adding {len(added)} tracks: {e}")
                    break
                added.append(track_id)
        finally:
            self._lock.release()
        return added

    def add(self, uri: str) -> bool:
        return bool(self.enqueue([uri]))

    def clear(self):
        with self._session() as client:
            client.clear()

    def delete(self, pos: int):
        with self._session() as client:
            try:
                client.delete(pos)
            except mpd.CommandError as e:
                raise ProtocolError(f"MPD rejected delete {pos}: {e}") from e

    def next(self):
        with self._session() as client:
            client.next()
