"""
Runtime auto-fill settings and saved genre stations.

The web routes write through ConfigStore.update(); the monitor only ever
reads an immutable AutoFillConfig snapshot, once per tick.
"""

import dataclasses
import enum
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Rejected auto-fill setting."""


class FillMode(enum.Enum):
    ARTIST = 'artist'
    GENRE = 'genre'


@dataclass(frozen=True)
class AutoFillConfig:
    enabled: bool = False
    mode: FillMode = FillMode.ARTIST
    threshold: int = 5
    batch_size: int = 20
    genres: FrozenSet[str] = field(default_factory=frozenset)
    seed_artist: Optional[str] = None
    genre_filter: bool = False
    station_name: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.mode, FillMode):
            raise ConfigError(f"Unknown auto-fill mode: {self.mode!r}")
        for name in ('threshold', 'batch_size'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
            if value < 1:
                raise ConfigError(f"{name} must be at least 1, got {value}")
        if isinstance(self.genres, str) or not isinstance(self.genres, (set, frozenset, list, tuple)):
            raise ConfigError(f"genres must be a collection of names, got {self.genres!r}")
        object.__setattr__(self, 'genres', frozenset(self.genres))

    def to_dict(self) -> dict:
        return {
            'active': self.enabled,
            'mode': self.mode.value,
            'min_queue_length': self.threshold,
            'batch_size': self.batch_size,
            'genres': sorted(self.genres),
            'seed_artist': self.seed_artist,
            'genre_filter_enabled': self.genre_filter,
            'genre_station_mode': self.mode is FillMode.GENRE,
            'genre_station_name': self.station_name or '',
        }


# JSON field name -> AutoFillConfig attribute
_REQUEST_FIELDS = {
    'active': 'enabled',
    'enabled': 'enabled',
    'mode': 'mode',
    'min_queue_length': 'threshold',
    'threshold': 'threshold',
    'batch_size': 'batch_size',
    'genres': 'genres',
    'seed_artist': 'seed_artist',
    'genre_filter_enabled': 'genre_filter',
    'station_name': 'station_name',
}


def _coerce_genres(value):
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ConfigError(f"genres must be a list of names, got {value!r}")
    return frozenset(g.strip() for g in value if isinstance(g, str) and g.strip())


def coerce_changes(data: dict) -> dict:
    """Turn a JSON settings payload into typed AutoFillConfig changes.

    Unknown keys are ignored, matching the old settings endpoint.
    """
    if not isinstance(data, dict):
        raise ConfigError("Settings payload must be a JSON object")
    changes = {}
    for key, value in data.items():
        attr = _REQUEST_FIELDS.get(key)
        if attr is None:
            continue
        if attr in ('enabled', 'genre_filter'):
            if not isinstance(value, bool):
                raise ConfigError(f"{key} must be true or false")
            changes[attr] = value
        elif attr in ('threshold', 'batch_size'):
            try:
                changes[attr] = int(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"{key} must be an integer, got {value!r}") from e
        elif attr == 'mode':
            try:
                changes[attr] = FillMode(value)
            except ValueError as e:
                raise ConfigError(f"Unknown auto-fill mode: {value!r}") from e
        elif attr == 'genres':
            changes[attr] = _coerce_genres(value)
        else:
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"{key} must be a string")
            changes[attr] = (value or '').strip() or None
    return changes


class ConfigStore:
    """Holds the current AutoFillConfig and swaps it atomically on update."""

    def __init__(self, initial: Optional[AutoFillConfig] = None, settings_file: Optional[str] = None):
        self._lock = threading.Lock()
        # Serializes swap + write so settings.json never lags the in-memory config
        self._save_lock = threading.Lock()
        self._settings_file = settings_file
        self._config = initial if initial is not None else self._load()

    def snapshot(self) -> AutoFillConfig:
        with self._lock:
            return self._config

    def update(self, **changes) -> AutoFillConfig:
        with self._save_lock:
            with self._lock:
                try:
                    new_config = dataclasses.replace(self._config, **changes)
                except TypeError as e:
                    raise ConfigError(str(e)) from e
                self._config = new_config
            self._save(new_config)
        return new_config

    # -- settings.json persistence --------------------------------------------

    def _load(self) -> AutoFillConfig:
        if not self._settings_file or not os.path.exists(self._settings_file):
            return AutoFillConfig()
        try:
            with open(self._settings_file, 'r') as f:
                stored = json.load(f).get('auto_fill', {})
            return AutoFillConfig(**coerce_changes(stored))
        except (OSError, json.JSONDecodeError, ConfigError, AttributeError) as e:
            logger.error(f"Error loading auto-fill settings from {self._settings_file}: {e}")
            return AutoFillConfig()

    def _save(self, config: AutoFillConfig):
        if not self._settings_file:
            return
        data = {}
        try:
            if os.path.exists(self._settings_file):
                with open(self._settings_file, 'r') as f:
                    data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Rewriting unreadable settings file {self._settings_file}: {e}")
            data = {}
        data['auto_fill'] = {
            'active': config.enabled,
            'mode': config.mode.value,
            'min_queue_length': config.threshold,
            'batch_size': config.batch_size,
            'genres': sorted(config.genres),
            'seed_artist': config.seed_artist,
            'genre_filter_enabled': config.genre_filter,
            'station_name': config.station_name,
        }
        try:
            with open(self._settings_file, 'w') as f:
                json.dump(data, f, indent=2)
            os.chmod(self._settings_file, 0o600)
        except OSError as e:
            logger.error(f"Error saving settings to {self._settings_file}: {e}")


class GenreStationStore:
    """Named genre lists saved to a JSON file: {name: {genres, created}}."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict:
        try:
            if os.path.exists(self.path):
                with open(self.path, 'r') as f:
                    return json.load(f)
            return {}
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Error loading genre stations: {e}")
            return {}

    def _write(self, stations: dict) -> bool:
        try:
            with open(self.path, 'w') as f:
                json.dump(stations, f, indent=2)
            return True
        except IOError as e:
            logger.error(f"Error saving genre stations: {e}")
            return False

    def list(self) -> dict:
        with self._lock:
            return self._read()

    def get(self, name: str) -> Optional[dict]:
        with self._lock:
            return self._read().get(name)

    def save(self, name: str, genres) -> bool:
        name = (name or '').strip()
        if not name:
            raise ConfigError("Station name is required")
        genre_set = _coerce_genres(genres)
        if not genre_set:
            raise ConfigError("At least one genre is required")
        with self._lock:
            stations = self._read()
            stations[name] = {
                'genres': sorted(genre_set),
                'created': int(time.time()),
            }
            return self._write(stations)

    def delete(self, name: str) -> bool:
        with self._lock:
            stations = self._read()
            if name not in stations:
                return False
            del stations[name]
            return self._write(stations)
