import random
import threading

import pytest

from auto_fill_config import AutoFillConfig, ConfigStore
from mpd_client import ArtistCriteria, ConnectionError
from queue_state import PlaybackStatus, QueueEntry, Track


def make_track(n, artist='Artist', genres=(), album='Album'):
    return Track(file=f'music/{artist}/{n:03d}.flac', title=f'Song {n}', artist=artist,
                 album=album, genres=frozenset(genres))


class FakeDaemon:
    """In-memory MPD speaking the MPDProtocolClient interface."""

    def __init__(self, library=(), queued=(), state='play', current=0):
        self.library = {t.file: t for t in library}
        self.entries = []
        self._next_id = 1
        for track in queued:
            self.library.setdefault(track.file, track)
            self._append(track)
        self.state = state
        self.current = current if self.entries else None
        self.mutations = 0
        self.calls = []
        self.fail = {}
        self.add_limit = None
        self.on_status = None

    def _append(self, track):
        self.entries.append((track, self._next_id))
        self._next_id += 1

    def _maybe_fail(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise self.fail[name]

    @property
    def queue_ids(self):
        return [track.file for track, _ in self.entries]

    def status(self):
        self._maybe_fail('status')
        if self.on_status:
            self.on_status()
        song_id = None
        if self.current is not None and self.current < len(self.entries):
            song_id = self.entries[self.current][1]
        return PlaybackStatus(state=self.state, queue_length=len(self.entries), song_id=song_id)

    def queue(self):
        self._maybe_fail('queue')
        return [QueueEntry(track, pos, song_id) for pos, (track, song_id) in enumerate(self.entries)]

    def search(self, criteria):
        self._maybe_fail('search')
        if isinstance(criteria, ArtistCriteria):
            return [t for t in self.library.values() if t.artist == criteria.artist]
        results = []
        for genre in sorted(criteria.genres):
            results.extend(t for t in self.library.values() if genre in t.genres)
        return results

    def enqueue(self, track_ids):
        self._maybe_fail('enqueue')
        added = []
        for track_id in track_ids:
            if self.add_limit is not None and len(added) >= self.add_limit:
                if not added:
                    raise ConnectionError('timed out')
                break
            if track_id not in self.library:
                continue
            self._append(self.library[track_id])
            self.mutations += 1
            added.append(track_id)
        return added

    def add(self, uri):
        return bool(self.enqueue([uri]))

    def clear(self):
        self._maybe_fail('clear')
        self.entries = []
        self.current = None
        self.mutations += 1

    def delete(self, pos):
        self._maybe_fail('delete')
        del self.entries[pos]
        self.mutations += 1

    def next(self):
        self._maybe_fail('next')

    def list_genres(self):
        self._maybe_fail('list_genres')
        return sorted({g for t in self.library.values() for g in t.genres}, key=str.lower)


class FakeMPDClient:
    """Stand-in for python-mpd2's MPDClient."""

    def __init__(self):
        self.connected = False
        self.connect_error = None
        self.status_dict = {'state': 'stop', 'playlistlength': '0'}
        self.playlist = []
        self.songs = []
        self.genres = []
        self.added = []
        self.add_errors = {}
        self.command_errors = {}
        self.commands = []
        # When set, add() of this uri waits for add_release
        self.hold_add = None
        self.add_held = threading.Event()
        self.add_release = threading.Event()

    def connect(self, host, port):
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    def disconnect(self):
        self.connected = False

    def _check(self, name):
        if name in self.command_errors:
            raise self.command_errors[name]

    def status(self):
        self._check('status')
        return self.status_dict

    def playlistinfo(self):
        self._check('playlistinfo')
        return self.playlist

    def find(self, tag, value):
        self._check('find')
        results = []
        for song in self.songs:
            field = song.get(tag)
            values = field if isinstance(field, list) else [field]
            if value in values:
                results.append(song)
        return results

    def list(self, tag):
        return self.genres

    def add(self, uri):
        if uri == self.hold_add:
            self.add_held.set()
            self.add_release.wait(5)
        self.commands.append(('add', uri))
        error = self.add_errors.get(uri)
        if error is not None:
            raise error
        self.added.append(uri)

    def clear(self):
        self._check('clear')
        self.commands.append(('clear',))
        self.playlist = []

    def delete(self, pos):
        self._check('delete')

    def next(self):
        pass


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def config_store():
    return ConfigStore(AutoFillConfig(enabled=True, threshold=4, batch_size=5))
