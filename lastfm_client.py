"""
Last.fm similar-artist lookup used to widen artist-mode auto-fill.
"""

import logging
from typing import List

import requests

logger = logging.getLogger(__name__)

LASTFM_API_URL = 'https://ws.audioscrobbler.com/2.0/'


class LastFmSimilarArtists:
    """Callable returning artist names Last.fm considers similar to a seed artist."""

    def __init__(self, api_key: str, timeout: int = 5, user_agent: str = 'Maestro MPD Server',
                 session=None):
        self.api_key = api_key
        self.timeout = timeout
        self.headers = {'User-Agent': user_agent}
        self.session = session or requests.Session()

    def __call__(self, artist_name: str, limit: int = 10) -> List[str]:
        params = {
            'method': 'artist.getsimilar',
            'artist': artist_name,
            'api_key': self.api_key,
            'format': 'json',
            'limit': limit,
        }
        try:
            response = self.session.get(LASTFM_API_URL, params=params, timeout=self.timeout,
                                        headers=self.headers)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Error fetching similar artists from Last.fm for {artist_name!r}: {e}")
            return []

        similar = data.get('similarartists', {}).get('artist', []) if isinstance(data, dict) else []
        names = [a.get('name') for a in similar if isinstance(a, dict)]
        return [n for n in names if n][:limit]
