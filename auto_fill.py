"""
Auto-fill monitor: keeps the MPD queue from running dry.

On every tick the monitor reads one config snapshot, checks the queue
length against the threshold, asks the strategy for the active mode for a
batch and appends it. MPD failures are contained within the tick; the next
tick starts fresh.
"""

import enum
import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from auto_fill_config import ConfigStore
from mpd_client import ConnectionError, DaemonError
from queue_state import HISTORY_MULTIPLIER, QueueState, RecentHistory
from selection import SelectionContext, default_strategies

logger = logging.getLogger(__name__)


class MonitorState(enum.Enum):
    IDLE = 'idle'
    EVALUATING = 'evaluating'
    SELECTING = 'selecting'
    ENQUEUING = 'enqueuing'
    BACKOFF = 'backoff'


class TickOutcome(enum.Enum):
    DISABLED = 'disabled'
    NOT_NEEDED = 'not_needed'
    SKIPPED = 'skipped'
    COMPLETED = 'completed'
    FAILED = 'failed'
    BUSY = 'busy'


@dataclass(frozen=True)
class TickResult:
    outcome: TickOutcome
    added: tuple = ()


# Notification kinds
REFILL_STARTED = 'refill_started'
REFILL_COMPLETED = 'refill_completed'
REFILL_SKIPPED = 'refill_skipped'
ERROR = 'error'


@dataclass(frozen=True)
class Notification:
    kind: str
    level: str = 'info'
    data: Dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        # Payload stays nested: an error payload has its own 'kind'
        return {'kind': self.kind, 'level': self.level, 'payload': dict(self.data)}


class AutoFillMonitor:
    """Evaluate/select/enqueue state machine driven one tick at a time."""

    def __init__(self, client, config_store: ConfigStore, notify: Optional[Callable[[Notification], None]] = None,
                 strategies=None, rng: Optional[random.Random] = None, only_while_playing: bool = False):
        """
        Args:
            client: MPDProtocolClient (or anything with status/queue/search/enqueue)
            config_store: Source of AutoFillConfig snapshots
            notify: Receives a Notification for each tick transition
            strategies: FillMode -> strategy mapping (default: artist + genre radio)
            rng: Random source for sampling; seed it for reproducible selection
            only_while_playing: Skip refills unless MPD is playing
        """
        self.client = client
        self.config_store = config_store
        self.notify = notify
        self.strategies = strategies if strategies is not None else default_strategies()
        self.rng = rng or random.Random()
        self.only_while_playing = only_while_playing
        self.history = RecentHistory(HISTORY_MULTIPLIER * config_store.snapshot().batch_size)
        self.last_artist = None
        self.state = MonitorState.IDLE
        self._tick_lock = threading.Lock()

    def _emit(self, event, level='info', **data):
        if self.notify is None:
            return
        try:
            self.notify(Notification(event, level, data))
        except Exception:
            # Delivery is best-effort
            logger.exception(f"Auto-fill notification {event} could not be delivered")

    def tick(self) -> TickResult:
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Auto-fill tick still running, dropping this one")
            return TickResult(TickOutcome.BUSY)
        try:
            return self._run_tick()
        finally:
            self._tick_lock.release()

    def _run_tick(self) -> TickResult:
        config = self.config_store.snapshot()
        if not config.enabled:
            self.state = MonitorState.IDLE
            return TickResult(TickOutcome.DISABLED)

        try:
            self.state = MonitorState.EVALUATING
            status = self.client.status()
            entries = self.client.queue()
            self.history.resize(HISTORY_MULTIPLIER * config.batch_size)
            queue_state = QueueState(status, entries, self.history)

            current = queue_state.current_track()
            if current and current.artist:
                self.last_artist = current.artist

            if queue_state.length > config.threshold:
                self.state = MonitorState.IDLE
                return TickResult(TickOutcome.NOT_NEEDED)
            if self.only_while_playing and not status.is_playing:
                logger.debug("Auto-fill active but MPD is not playing. Skipping check.")
                self.state = MonitorState.IDLE
                return TickResult(TickOutcome.NOT_NEEDED)

            logger.info(f"Auto-fill triggered: queue length ({queue_state.length}) "
                        f"at or below threshold ({config.threshold}), mode {config.mode.value}")
            self._emit(REFILL_STARTED, mode=config.mode.value, queue_length=queue_state.length,
                       station=config.station_name)

            self.state = MonitorState.SELECTING
            strategy = self.strategies[config.mode]
            selection = strategy.select(SelectionContext(
                config=config,
                queue_state=queue_state,
                client=self.client,
                rng=self.rng,
                last_artist=self.last_artist,
            ))
            if not selection:
                logger.info(f"Auto-fill skipped: {selection.reason}")
                self._emit(REFILL_SKIPPED, reason=selection.reason)
                self.state = MonitorState.IDLE
                return TickResult(TickOutcome.SKIPPED)

            self.state = MonitorState.ENQUEUING
            added = self.client.enqueue(selection.track_ids)
        except DaemonError as e:
            kind = 'connection' if isinstance(e, ConnectionError) else 'protocol'
            level = 'warning' if kind == 'connection' else 'error'
            logger.log(logging.WARNING if kind == 'connection' else logging.ERROR,
                       f"Auto-fill tick aborted ({kind}): {e}")
            self.state = MonitorState.BACKOFF
            self._emit(ERROR, level=level, kind=kind, detail=str(e))
            return TickResult(TickOutcome.FAILED)

        self.history.extend(added)
        if len(added) < len(selection.track_ids):
            logger.warning(f"MPD added {len(added)} of {len(selection.track_ids)} selected tracks")
        logger.info(f"Auto-fill added {len(added)} tracks")
        self._emit(REFILL_COMPLETED, level='success', count=len(added), requested=len(selection.track_ids))
        self.state = MonitorState.IDLE
        return TickResult(TickOutcome.COMPLETED, tuple(added))


def _thread_runner(target):
    thread = threading.Thread(target=target, name='auto-fill-ticker', daemon=True)
    thread.start()
    return thread


class Ticker:
    """Calls ``callback`` every ``interval`` seconds until stopped."""

    def __init__(self, interval: float, callback: Callable[[], object], runner=_thread_runner):
        if interval <= 0:
            raise ValueError(f"Ticker interval must be positive, got {interval}")
        self.interval = interval
        self.callback = callback
        self._runner = runner
        self._stop = threading.Event()
        self._started = False

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def start(self):
        if self._started:
            raise RuntimeError("Ticker already started")
        self._started = True
        self._stop.clear()
        return self._runner(self.run)

    def stop(self):
        self._stop.set()

    def run(self):
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception("Unhandled error in auto-fill tick")
        logger.info("Auto-fill ticker stopped")
