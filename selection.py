"""
Candidate selection for auto-fill.

Each FillMode has one strategy. A strategy builds a candidate pool from the
MPD library, drops anything already queued or recently added, and samples
up to batch_size distinct tracks from what is left.
"""

import logging
import random
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from auto_fill_config import AutoFillConfig, FillMode
from mpd_client import ArtistCriteria, GenreCriteria
from queue_state import QueueState, Track

logger = logging.getLogger(__name__)

SIMILAR_ARTIST_LIMIT = 10

REASON_NO_CANDIDATES = 'no candidates'
REASON_NO_SEED_ARTIST = 'no seed artist'
REASON_NO_GENRES = 'no genres configured'


@dataclass(frozen=True)
class Selection:
    track_ids: Tuple[str, ...]
    reason: Optional[str] = None

    def __bool__(self):
        return bool(self.track_ids)


@dataclass
class SelectionContext:
    config: AutoFillConfig
    queue_state: QueueState
    client: object
    rng: random.Random
    # Artist of the last track seen playing, used when nothing is playing now
    last_artist: Optional[str] = None


def is_genre_match(target_genre, candidate_genre):
    """
    Compares two genre strings for a flexible match, considering sub-genres and base genres.
    Returns True if they are considered a match, False otherwise.
    """
    if not target_genre or not candidate_genre:
        return False

    target_genre_lower = target_genre.lower()
    candidate_genre_lower = candidate_genre.lower()

    if target_genre_lower == candidate_genre_lower:
        return True

    # One genre string contains the other ("Rock" / "Progressive Rock")
    if target_genre_lower in candidate_genre_lower or candidate_genre_lower in target_genre_lower:
        return True

    # "Jazz (Bebop)" -> "jazz"
    def get_base_genre(genre_str):
        if '(' in genre_str and ')' in genre_str:
            return genre_str.split('(')[0].strip().lower()
        return genre_str.lower()

    base_target = get_base_genre(target_genre)
    base_candidate = get_base_genre(candidate_genre)
    return bool(base_target and base_candidate and base_target == base_candidate)


def sample_batch(pool: Sequence[Track], batch_size: int, rng: random.Random) -> Tuple[str, ...]:
    """Uniform random sample without replacement, at most batch_size long."""
    count = min(batch_size, len(pool))
    return tuple(track.file for track in rng.sample(list(pool), count))


class ArtistSimilarityStrategy:
    """Continue with the seed artist and, when a lookup is available, similar artists."""

    def __init__(self, similar_artists: Optional[Callable[[str, int], List[str]]] = None,
                 similar_limit: int = SIMILAR_ARTIST_LIMIT):
        self.similar_artists = similar_artists
        self.similar_limit = similar_limit

    def seed_artist(self, ctx: SelectionContext) -> Optional[str]:
        if ctx.config.seed_artist:
            return ctx.config.seed_artist
        current = ctx.queue_state.current_track()
        if current and current.artist:
            return current.artist
        return ctx.last_artist

    def select(self, ctx: SelectionContext) -> Selection:
        seed = self.seed_artist(ctx)
        if not seed:
            return Selection((), REASON_NO_SEED_ARTIST)

        artists = [seed]
        if self.similar_artists is not None:
            for name in self.similar_artists(seed, self.similar_limit):
                if name.lower() not in {a.lower() for a in artists}:
                    artists.append(name)

        tracks = []
        for artist in artists:
            tracks.extend(ctx.client.search(ArtistCriteria(artist)))

        pool = ctx.queue_state.filter_candidates(tracks)

        if ctx.config.genre_filter:
            current = ctx.queue_state.current_track()
            target_genres = current.genres if current else frozenset()
            if target_genres:
                pool = [
                    track for track in pool
                    if any(is_genre_match(target, genre) for target in target_genres for genre in track.genres)
                ]
            else:
                logger.warning("Genre filter requested, but the current song has no genre. Using all genres.")

        logger.info(f"Artist auto-fill seeded by {seed!r}: {len(artists)} artists, {len(pool)} candidates")
        if not pool:
            return Selection((), REASON_NO_CANDIDATES)
        return Selection(sample_batch(pool, ctx.config.batch_size, ctx.rng))


class GenreRadioStrategy:
    """Pick from every library track carrying one of the configured genres."""

    def select(self, ctx: SelectionContext) -> Selection:
        genres = ctx.config.genres
        if not genres:
            return Selection((), REASON_NO_GENRES)

        tracks = ctx.client.search(GenreCriteria(frozenset(genres)))
        # A track tagged with two configured genres is listed twice by MPD
        pool = ctx.queue_state.filter_candidates(tracks)

        logger.info(f"Genre auto-fill over {len(genres)} genres: {len(pool)} candidates")
        if not pool:
            return Selection((), REASON_NO_CANDIDATES)
        return Selection(sample_batch(pool, ctx.config.batch_size, ctx.rng))


def default_strategies(similar_artists=None) -> Dict[FillMode, object]:
    return {
        FillMode.ARTIST: ArtistSimilarityStrategy(similar_artists),
        FillMode.GENRE: GenreRadioStrategy(),
    }
