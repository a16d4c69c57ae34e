import random
import threading

import mpd
import pytest

from auto_fill import (ERROR, REFILL_COMPLETED, REFILL_SKIPPED, REFILL_STARTED,
                       AutoFillMonitor, MonitorState, Notification, Ticker, TickOutcome)
from auto_fill_config import AutoFillConfig, ConfigStore, FillMode
from conftest import FakeDaemon, FakeMPDClient, make_track
from mpd_client import ConnectionError, MPDProtocolClient, ProtocolError
from selection import REASON_NO_CANDIDATES, Selection


def genre_config(**overrides):
    values = dict(enabled=True, mode=FillMode.GENRE, threshold=4, batch_size=5,
                  genres=frozenset({'Holiday', 'Christmas'}))
    values.update(overrides)
    return ConfigStore(AutoFillConfig(**values))


def make_monitor(daemon, store, **kwargs):
    events = []
    monitor = AutoFillMonitor(daemon, store, notify=events.append, rng=random.Random(7), **kwargs)
    return monitor, events


def holiday_library():
    queued = [make_track(i, artist='Queued', genres={'Holiday'}) for i in range(3)]
    fresh = [make_track(10 + i, artist='Fresh', genres={'Holiday'}) for i in range(3)]
    fresh += [make_track(20 + i, artist='Fresh', genres={'Christmas'}) for i in range(2)]
    fresh += [make_track(30 + i, artist='Fresh', genres={'Holiday', 'Christmas'}) for i in range(2)]
    return queued, fresh


class TestScenarios:
    def test_genre_refill_adds_batch_without_duplicates(self):
        queued, fresh = holiday_library()
        daemon = FakeDaemon(library=fresh, queued=queued)
        monitor, events = make_monitor(daemon, genre_config())

        result = monitor.tick()

        assert result.outcome is TickOutcome.COMPLETED
        assert len(result.added) == 5
        assert len(set(result.added)) == 5
        assert not set(result.added) & {t.file for t in queued}
        assert len(daemon.entries) == 8
        assert [e.kind for e in events] == [REFILL_STARTED, REFILL_COMPLETED]
        assert events[-1].data['count'] == 5
        assert monitor.state is MonitorState.IDLE

    def test_empty_pool_skips_without_mutation(self):
        queued = [make_track(i, genres={'Holiday'}) for i in range(2)]
        daemon = FakeDaemon(queued=queued)
        monitor, events = make_monitor(daemon, genre_config())

        result = monitor.tick()

        assert result.outcome is TickOutcome.SKIPPED
        assert daemon.mutations == 0
        assert 'enqueue' not in daemon.calls
        assert len(daemon.entries) == 2
        assert events[-1].kind == REFILL_SKIPPED
        assert events[-1].data['reason'] == REASON_NO_CANDIDATES

    def test_partial_enqueue_is_reported_and_remembered(self):
        queued, fresh = holiday_library()
        daemon = FakeDaemon(library=fresh, queued=queued[:1])
        daemon.add_limit = 2
        monitor, events = make_monitor(daemon, genre_config())

        result = monitor.tick()

        assert result.outcome is TickOutcome.COMPLETED
        assert len(result.added) == 2
        assert list(monitor.history) == list(result.added)
        assert daemon.calls.count('enqueue') == 1
        completed = events[-1]
        assert completed.kind == REFILL_COMPLETED
        assert completed.data == {'count': 2, 'requested': 5}


class TestInvariants:
    @pytest.mark.parametrize('queue_length', [0, 1, 4])
    @pytest.mark.parametrize('pool_size', [1, 5, 9])
    def test_refill_amount(self, queue_length, pool_size):
        queued = [make_track(i, artist='Q', genres={'Holiday'}) for i in range(queue_length)]
        fresh = [make_track(100 + i, artist='F', genres={'Holiday'}) for i in range(pool_size)]
        daemon = FakeDaemon(library=fresh, queued=queued)
        monitor, _ = make_monitor(daemon, genre_config())

        monitor.tick()

        assert len(daemon.entries) == queue_length + min(5, pool_size)

    def test_queue_above_threshold_is_left_alone(self):
        queued = [make_track(i, genres={'Holiday'}) for i in range(5)]
        fresh = [make_track(100 + i, genres={'Holiday'}) for i in range(10)]
        daemon = FakeDaemon(library=fresh, queued=queued)
        monitor, events = make_monitor(daemon, genre_config())

        assert monitor.tick().outcome is TickOutcome.NOT_NEEDED
        assert daemon.mutations == 0
        assert events == []

    def test_disabled_monitor_never_talks_to_mpd(self):
        daemon = FakeDaemon(library=[make_track(1, genres={'Holiday'})])
        monitor, events = make_monitor(daemon, genre_config(enabled=False))

        assert monitor.tick().outcome is TickOutcome.DISABLED
        assert daemon.calls == []
        assert events == []

    def test_recent_history_blocks_reselection_after_clear(self):
        fresh = [make_track(i, genres={'Holiday'}) for i in range(10)]
        daemon = FakeDaemon(library=fresh)
        monitor, events = make_monitor(daemon, genre_config())

        first = monitor.tick().added
        daemon.clear()
        second = monitor.tick().added
        daemon.clear()
        third = monitor.tick()

        assert len(first) == len(second) == 5
        assert not set(first) & set(second)
        assert third.outcome is TickOutcome.SKIPPED

    def test_history_capacity_follows_batch_size(self):
        store = genre_config(batch_size=2)
        daemon = FakeDaemon(library=[make_track(i, genres={'Holiday'}) for i in range(30)])
        monitor, _ = make_monitor(daemon, store)

        for _ in range(6):
            monitor.tick()
            daemon.clear()

        assert len(monitor.history) == 8

    def test_mode_change_during_tick_applies_next_tick(self):
        library = [make_track(i, artist='Seed') for i in range(3)]
        library += [make_track(50 + i, artist='Radio', genres={'Holiday'}) for i in range(3)]
        daemon = FakeDaemon(library=library, queued=[library[0]])
        store = genre_config(mode=FillMode.ARTIST, batch_size=1)
        monitor, _ = make_monitor(daemon, store)

        daemon.on_status = lambda: store.update(mode=FillMode.GENRE)
        first = monitor.tick()
        daemon.on_status = None
        second = monitor.tick()

        assert first.added[0].startswith('music/Seed/')
        assert second.added[0].startswith('music/Radio/')


class TestFailures:
    def test_connection_error_backs_off_and_recovers(self):
        fresh = [make_track(i, genres={'Holiday'}) for i in range(6)]
        daemon = FakeDaemon(library=fresh)
        daemon.fail['status'] = ConnectionError('refused')
        monitor, events = make_monitor(daemon, genre_config())

        result = monitor.tick()

        assert result.outcome is TickOutcome.FAILED
        assert monitor.state is MonitorState.BACKOFF
        assert events[-1].kind == ERROR
        assert events[-1].level == 'warning'
        assert events[-1].data['kind'] == 'connection'
        assert len(monitor.history) == 0

        del daemon.fail['status']
        assert monitor.tick().outcome is TickOutcome.COMPLETED
        assert monitor.state is MonitorState.IDLE

    def test_protocol_error_while_selecting_leaves_state_unchanged(self):
        daemon = FakeDaemon(library=[make_track(1, genres={'Holiday'})])
        daemon.fail['search'] = ProtocolError('garbage')
        monitor, events = make_monitor(daemon, genre_config())

        assert monitor.tick().outcome is TickOutcome.FAILED
        assert daemon.mutations == 0
        assert len(monitor.history) == 0
        assert events[-1].level == 'error'
        assert events[-1].data['kind'] == 'protocol'

    def test_command_refused_by_mpd_backs_off(self):
        fake = FakeMPDClient()
        fake.command_errors['status'] = mpd.CommandError(
            '[4@0] {status} you don\'t have permission for "status"')
        client = MPDProtocolClient(timeout=1, client_factory=lambda: fake)
        monitor, events = make_monitor(client, genre_config())

        assert monitor.tick().outcome is TickOutcome.FAILED
        assert monitor.state is MonitorState.BACKOFF
        assert events[-1].kind == ERROR
        assert events[-1].level == 'error'
        assert events[-1].data['kind'] == 'protocol'
        assert 'permission' in events[-1].data['detail']
        # An ACK does not cost the connection
        assert fake.connected
        assert fake.added == []

        del fake.command_errors['status']
        assert monitor.tick().outcome is TickOutcome.SKIPPED
        assert monitor.state is MonitorState.IDLE

    def test_error_payload_keeps_its_own_kind(self):
        daemon = FakeDaemon()
        daemon.fail['status'] = ProtocolError('garbage')
        monitor, events = make_monitor(daemon, genre_config())
        monitor.tick()

        assert events[-1].to_dict() == {
            'kind': ERROR,
            'level': 'error',
            'payload': {'kind': 'protocol', 'detail': 'garbage'},
        }
        assert Notification(REFILL_COMPLETED, 'success', {'count': 2}).to_dict()['payload'] == {'count': 2}

    def test_failed_enqueue_is_not_retried(self):
        daemon = FakeDaemon(library=[make_track(i, genres={'Holiday'}) for i in range(3)])
        daemon.add_limit = 0
        monitor, _ = make_monitor(daemon, genre_config())

        assert monitor.tick().outcome is TickOutcome.FAILED
        assert daemon.calls.count('enqueue') == 1
        assert len(monitor.history) == 0

    def test_broken_notification_sink_does_not_abort_tick(self):
        daemon = FakeDaemon(library=[make_track(i, genres={'Holiday'}) for i in range(3)])

        def explode(notification):
            raise RuntimeError('socket gone')

        monitor = AutoFillMonitor(daemon, genre_config(), notify=explode)
        assert monitor.tick().outcome is TickOutcome.COMPLETED
        assert len(daemon.entries) == 3


class TestTickBehaviour:
    def test_overlapping_tick_is_dropped(self):
        daemon = FakeDaemon(library=[make_track(i, genres={'Holiday'}) for i in range(3)])
        nested = []

        class ReentrantStrategy:
            def select(self, ctx):
                nested.append(monitor.tick())
                return Selection(tuple(daemon.library)[:1])

        monitor = AutoFillMonitor(daemon, genre_config(), strategies={FillMode.GENRE: ReentrantStrategy()})
        result = monitor.tick()

        assert nested[0].outcome is TickOutcome.BUSY
        assert result.outcome is TickOutcome.COMPLETED
        assert len(daemon.entries) == 1

    def test_only_while_playing_skips_paused_player(self):
        daemon = FakeDaemon(library=[make_track(i, genres={'Holiday'}) for i in range(3)], state='pause')
        monitor, _ = make_monitor(daemon, genre_config(), only_while_playing=True)

        assert monitor.tick().outcome is TickOutcome.NOT_NEEDED
        assert daemon.mutations == 0

    def test_artist_mode_falls_back_to_last_seen_artist(self):
        seed_tracks = [make_track(i, artist='Seed') for i in range(8)]
        daemon = FakeDaemon(queued=seed_tracks[:6])
        store = genre_config(mode=FillMode.ARTIST, batch_size=2)
        monitor, _ = make_monitor(daemon, store)
        daemon.library.update({t.file: t for t in seed_tracks})

        # Queue long enough: nothing added, but the playing artist is remembered
        assert monitor.tick().outcome is TickOutcome.NOT_NEEDED
        assert monitor.last_artist == 'Seed'

        daemon.clear()
        result = monitor.tick()
        assert result.outcome is TickOutcome.COMPLETED
        assert all(track_id.startswith('music/Seed/') for track_id in result.added)


class TestTicker:
    def test_ticker_runs_until_stopped(self):
        ticked = threading.Event()
        calls = []

        def callback():
            calls.append(1)
            if len(calls) >= 2:
                ticked.set()
            raise RuntimeError('tick blew up')

        ticker = Ticker(0.01, callback)
        thread = ticker.start()
        assert ticked.wait(2)
        ticker.stop()
        thread.join(2)

        assert not thread.is_alive()
        assert ticker.stopped
        assert len(calls) >= 2

    def test_ticker_rejects_bad_interval(self):
        with pytest.raises(ValueError):
            Ticker(0, lambda: None)

    def test_ticker_cannot_start_twice(self):
        ticker = Ticker(10, lambda: None, runner=lambda target: None)
        ticker.start()
        with pytest.raises(RuntimeError):
            ticker.start()
