"""
Process configuration for the Maestro auto-fill server.

Values come from config.env (loaded with python-dotenv) and can be
overridden by real environment variables.
"""

import os

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Load environment variables from config.env file
load_dotenv(os.path.join(BASE_DIR, 'config.env'))


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('true', '1', 'yes', 'on')


# MPD connection
MPD_HOST = os.environ.get('MPD_HOST', 'localhost')
MPD_PORT = int(os.environ.get('MPD_PORT', '6600'))
MPD_TIMEOUT = int(os.environ.get('MPD_TIMEOUT', '10'))

# Auto-fill loop
AUTO_FILL_INTERVAL = float(os.environ.get('AUTO_FILL_INTERVAL', '5'))
AUTO_FILL_ONLY_WHILE_PLAYING = _env_bool('AUTO_FILL_ONLY_WHILE_PLAYING')

# Web server
APP_HOST = os.environ.get('APP_HOST', '0.0.0.0')
APP_PORT = int(os.environ.get('APP_PORT', '5003'))
DEBUG = _env_bool('DEBUG')
SECRET_KEY = os.environ.get('SECRET_KEY', 'mpd-web-control-secret-key-2025')

# Last.fm (similar artists for artist-mode auto-fill)
LASTFM_API_KEY = os.environ.get('LASTFM_API_KEY', '')

# Persisted data
SETTINGS_FILE = os.environ.get('SETTINGS_FILE', os.path.join(BASE_DIR, 'settings.json'))
GENRE_STATIONS_FILE = os.environ.get('GENRE_STATIONS_FILE', os.path.join(BASE_DIR, 'genre_stations.json'))
