"""
Maestro MPD Server: web remote and queue auto-fill.

The Flask routes are the only writers of the auto-fill settings. Direct
queue edits from the UI share the monitor's serialized MPD connection.
Auto-fill notifications reach the browser as Socket.IO toasts.
"""

# Application version information
APP_VERSION = "2.3.0"
APP_BUILD_DATE = "2025-12-23"
APP_NAME = "Maestro MPD Server"

import logging

from flask import Flask, jsonify, request
from flask_socketio import SocketIO, emit

import config
from auto_fill import (ERROR, REFILL_COMPLETED, REFILL_SKIPPED, REFILL_STARTED,
                       AutoFillMonitor, Ticker)
from auto_fill_config import (ConfigError, ConfigStore, FillMode,
                              GenreStationStore, coerce_changes)
from lastfm_client import LastFmSimilarArtists
from mpd_client import ConnectionError, DaemonError, MPDProtocolClient
from selection import default_strategies

logger = logging.getLogger(__name__)


def notification_text(notification):
    data = notification.data
    if notification.kind == REFILL_STARTED:
        if data.get('mode') == FillMode.GENRE.value and data.get('station'):
            return f'🎵 Genre Station Auto-fill: refilling from station "{data["station"]}"...'
        return f'Auto-filling (queue length {data.get("queue_length", 0)})...'
    if notification.kind == REFILL_COMPLETED:
        return f'Auto-fill: added {data.get("count", 0)} tracks to playlist.'
    if notification.kind == REFILL_SKIPPED:
        return f'Auto-fill skipped: {data.get("reason")}.'
    if notification.kind == ERROR:
        return f'Auto-fill error ({data.get("kind")}): {data.get("detail")}'
    return notification.kind


def _daemon_error_response(e):
    status_code = 503 if isinstance(e, ConnectionError) else 500
    return jsonify({'status': 'error', 'message': f'MPD error: {e}'}), status_code


def create_app(client=None, config_store=None, station_store=None, similar_artists=None,
               only_while_playing=None):
    """Build the Flask app, its SocketIO server and the auto-fill monitor.

    Returns ``(app, socketio)``; the monitor is available as
    ``app.extensions['auto_fill_monitor']``.
    """
    app = Flask('mpd-web-control')
    app.secret_key = config.SECRET_KEY
    app.config['JSON_AS_ASCII'] = False

    # Configure SocketIO to use threading for async support (no eventlet issues)
    socketio = SocketIO(app, async_mode='threading', cors_allowed_origins="*")

    if client is None:
        client = MPDProtocolClient(config.MPD_HOST, config.MPD_PORT, timeout=config.MPD_TIMEOUT)
    if config_store is None:
        config_store = ConfigStore(settings_file=config.SETTINGS_FILE)
    if station_store is None:
        station_store = GenreStationStore(config.GENRE_STATIONS_FILE)
    if similar_artists is None and config.LASTFM_API_KEY:
        similar_artists = LastFmSimilarArtists(config.LASTFM_API_KEY,
                                               user_agent=f"{APP_NAME}/{APP_VERSION}")
    if only_while_playing is None:
        only_while_playing = config.AUTO_FILL_ONLY_WHILE_PLAYING

    def notify(notification):
        socketio.emit('auto_fill_event', notification.to_dict())
        socketio.emit('server_message', {'type': notification.level, 'text': notification_text(notification)})

    monitor = AutoFillMonitor(
        client,
        config_store,
        notify=notify,
        strategies=default_strategies(similar_artists),
        only_while_playing=only_while_playing,
    )
    app.extensions['auto_fill_monitor'] = monitor
    app.extensions['mpd_client'] = client

    def auto_fill_status():
        status = config_store.snapshot().to_dict()
        status['monitor_state'] = monitor.state.value
        return status

    def update_auto_fill(**changes):
        new_config = config_store.update(**changes)
        socketio.emit('auto_fill_status', auto_fill_status())
        return new_config

    # --- API endpoint for application version info ---
    @app.route('/api/version')
    def get_version_info():
        return jsonify({
            'app_name': APP_NAME,
            'version': APP_VERSION,
            'build_date': APP_BUILD_DATE,
            'status': 'running'
        })

    # --- Auto-fill settings (the only write path into the config store) ---
    @app.route('/get_auto_fill_status')
    def get_auto_fill_status():
        return jsonify(auto_fill_status())

    @app.route('/toggle_auto_fill', methods=['POST'])
    def toggle_auto_fill():
        data = request.get_json(silent=True) or {}
        new_state = data.get('active')
        if not isinstance(new_state, bool):
            return jsonify({'status': 'error', 'message': 'Invalid state'}), 400
        update_auto_fill(enabled=new_state)
        status_text = "enabled" if new_state else "disabled"
        socketio.emit('server_message', {'type': 'info', 'text': f'Auto-fill has been {status_text}.'})
        return jsonify({'status': 'success', 'active': new_state})

    @app.route('/set_auto_fill_settings', methods=['POST'])
    def set_auto_fill_settings():
        data = request.get_json(silent=True)
        try:
            update_auto_fill(**coerce_changes(data))
        except ConfigError as e:
            socketio.emit('server_message', {'type': 'error', 'text': f'Invalid auto-fill settings provided: {e}'})
            return jsonify({'status': 'error', 'message': str(e)}), 400
        socketio.emit('server_message', {'type': 'info', 'text': 'Auto-fill settings updated.'})
        return jsonify({'status': 'success', 'settings': auto_fill_status()})

    # --- Genre stations ---
    @app.route('/api/genres', methods=['GET'])
    def get_genres():
        """Get all available genres from MPD."""
        try:
            return jsonify(client.list_genres())
        except DaemonError as e:
            return _daemon_error_response(e)

    @app.route('/api/genre_stations', methods=['GET'])
    def get_genre_stations():
        return jsonify({'status': 'success', 'stations': station_store.list()})

    @app.route('/api/genre_stations', methods=['POST'])
    def save_genre_station():
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'status': 'error', 'message': 'No data provided'}), 400
        station_name = (data.get('name') or '').strip()
        try:
            saved = station_store.save(station_name, data.get('genres', []))
        except ConfigError as e:
            return jsonify({'status': 'error', 'message': str(e)}), 400
        if not saved:
            return jsonify({'status': 'error', 'message': 'Failed to save station'}), 500
        return jsonify({'status': 'success', 'message': f'Station "{station_name}" saved'})

    @app.route('/api/genre_stations/<station_name>', methods=['GET'])
    def get_genre_station(station_name):
        station = station_store.get(station_name)
        if station is None:
            return jsonify({'status': 'error', 'message': 'Station not found'}), 404
        return jsonify({'status': 'success', 'station': station})

    @app.route('/api/genre_stations/<station_name>', methods=['DELETE'])
    def delete_genre_station(station_name):
        if station_store.get(station_name) is None:
            return jsonify({'status': 'error', 'message': 'Station not found'}), 404
        if not station_store.delete(station_name):
            return jsonify({'status': 'error', 'message': 'Failed to delete station'}), 500
        return jsonify({'status': 'success', 'message': f'Station "{station_name}" deleted'})

    @app.route('/api/genre_station_mode', methods=['POST'])
    def set_genre_station_mode():
        """Switch auto-fill to a genre station, or back to artist mode when empty."""
        data = request.get_json(silent=True) or {}
        station_name = (data.get('station_name') or '').strip()
        genres = data.get('genres') or []
        if station_name and not genres:
            station = station_store.get(station_name)
            genres = station['genres'] if station else []

        try:
            if station_name and genres:
                changes = coerce_changes({'genres': genres})
                update_auto_fill(mode=FillMode.GENRE, station_name=station_name, **changes)
                logger.info(f"Genre station mode activated: '{station_name}' with genres {sorted(changes['genres'])}")
                return jsonify({'status': 'success', 'message': f'Genre station mode set to "{station_name}"'})
        except ConfigError as e:
            return jsonify({'status': 'error', 'message': str(e)}), 400

        update_auto_fill(mode=FillMode.ARTIST, station_name=None, genres=frozenset())
        logger.info("Genre station mode deactivated")
        return jsonify({'status': 'success', 'message': 'Genre station mode cleared'})

    # --- Direct queue edits (same serialized MPD connection as the monitor) ---
    @app.route('/get_mpd_status')
    def get_mpd_status():
        try:
            status = client.status()
        except DaemonError as e:
            return _daemon_error_response(e)
        return jsonify({
            'state': status.state,
            'queue_length': status.queue_length,
            'song_id': status.song_id,
            'elapsed': status.elapsed,
        })

    @app.route('/get_mpd_playlist')
    def get_mpd_playlist():
        try:
            entries = client.queue()
        except DaemonError as e:
            return _daemon_error_response(e)
        return jsonify([{
            'pos': entry.pos,
            'id': entry.id,
            'file': entry.track.file,
            'title': entry.track.title,
            'artist': entry.track.artist,
            'album': entry.track.album,
        } for entry in entries])

    @app.route('/add_song', methods=['POST'])
    def add_song_to_playlist():
        song_file = request.form.get('song_file') or (request.get_json(silent=True) or {}).get('song_file')
        if not song_file:
            return jsonify({'status': 'error', 'message': 'Song file not provided'}), 400
        try:
            added = client.add(song_file)
        except DaemonError as e:
            return _daemon_error_response(e)
        if not added:
            return jsonify({'status': 'error', 'message': 'MPD rejected the song'}), 400
        socketio.emit('server_message', {'type': 'info', 'text': 'Song added to playlist.'})
        return jsonify({'status': 'success', 'message': 'Song added'})

    @app.route('/remove_from_playlist', methods=['POST'])
    def remove_from_playlist():
        """Removes a song from the playlist by its position."""
        pos = request.form.get('pos', type=int)
        if pos is None:
            return jsonify({'status': 'error', 'message': 'Position not provided'}), 400
        try:
            client.delete(pos)
        except DaemonError as e:
            return _daemon_error_response(e)
        socketio.emit('server_message', {'type': 'info', 'text': f'Removed song at position {pos+1} from playlist.'})
        return jsonify({'status': 'success', 'message': 'Song removed'})

    @app.route('/clear_playlist', methods=['POST'])
    def clear_playlist():
        """Clears the entire MPD playlist."""
        try:
            client.clear()
        except DaemonError as e:
            return _daemon_error_response(e)

        # Clear genre station mode when playlist is manually cleared
        if config_store.snapshot().mode is FillMode.GENRE:
            update_auto_fill(mode=FillMode.ARTIST, station_name=None, genres=frozenset())
            logger.info("Genre station mode cleared due to manual playlist clear")

        socketio.emit('server_message', {'type': 'info', 'text': 'MPD playlist cleared.'})
        return jsonify({'status': 'success', 'message': 'Playlist cleared'})

    @app.route('/next', methods=['POST'])
    def next_song():
        try:
            client.next()
        except DaemonError as e:
            return _daemon_error_response(e)
        return jsonify({'status': 'success'})

    # --- SocketIO Event Handlers ---
    @socketio.on('connect')
    def on_connect():
        logger.info(f"Client connected: {request.sid}")
        emit('auto_fill_status', auto_fill_status())

    @socketio.on('disconnect')
    def on_disconnect(*args):
        logger.info(f"Client disconnected: {request.sid}")

    return app, socketio


# --- Application Startup ---
if __name__ == '__main__':
    logging.basicConfig(
        level=logging.DEBUG if config.DEBUG else logging.INFO,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    logger.info(f"{APP_NAME} v{APP_VERSION} (Build: {APP_BUILD_DATE})")

    app, socketio = create_app()
    monitor = app.extensions['auto_fill_monitor']

    # Start background auto-fill loop
    ticker = Ticker(config.AUTO_FILL_INTERVAL, monitor.tick, runner=socketio.start_background_task)
    ticker.start()

    logger.info(f"Starting MPD Web Control on {config.APP_HOST}:{config.APP_PORT}")
    try:
        socketio.run(app, host=config.APP_HOST, port=config.APP_PORT, debug=config.DEBUG,
                     allow_unsafe_werkzeug=True)
    finally:
        ticker.stop()
        app.extensions['mpd_client'].close()
