"""Standard content filter pipeline applied to every TMDB query result."""

import logging
from datetime import date
from typing import Iterable, List, Optional, Sequence

from ..core.genres import (
    ANIMATION,
    COMEDY,
    CRIME,
    DOCUMENTARY,
    DRAMA,
    FAMILY,
    HORROR,
    MUSIC,
    MYSTERY,
)
from ..schemas import Movie
from .movie_format import is_movie_released

logger = logging.getLogger(__name__)

BLOCKED_TITLES = ("nude", "succubus", "the way to the hearth")
EXCLUDED_LANGUAGES = frozenset({"tr", "es"})

INCOMPATIBLE_WITH_ANIMATION = frozenset({DRAMA, HORROR, CRIME, DOCUMENTARY, MYSTERY})
INCOMPATIBLE_WITH_HORROR = frozenset({ANIMATION, FAMILY, COMEDY, MUSIC})
INCOMPATIBLE_PAIRS = ((ANIMATION, DOCUMENTARY),)


def has_blocked_title(movie: Movie) -> bool:
    title = (movie.title or "").lower()
    return any(blocked in title for blocked in BLOCKED_TITLES)


def has_incompatible_genres(movie: Movie, target_genre_id: Optional[int]) -> bool:
    """Return True if the movie pairs the queried genre with a clashing one."""
    genre_ids = set(movie.genre_ids)
    if target_genre_id is None or len(genre_ids) <= 1 or target_genre_id not in genre_ids:
        return False

    if target_genre_id == ANIMATION and genre_ids & INCOMPATIBLE_WITH_ANIMATION:
        return True
    if target_genre_id == HORROR and genre_ids & INCOMPATIBLE_WITH_HORROR:
        return True
    if target_genre_id == DRAMA and ANIMATION in genre_ids:
        return True

    for first, second in INCOMPATIBLE_PAIRS:
        if target_genre_id == first and second in genre_ids:
            return True
        if target_genre_id == second and first in genre_ids:
            return True
    return False


def passes_standard_filters(
    movie: Movie,
    target_genre_ids: Sequence[int] = (),
    target_genre_id: Optional[int] = None,
    today: Optional[date] = None,
) -> bool:
    """Apply the standard pipeline to one movie.

    ``target_genre_ids`` are the ids of the queried display genre (Family is
    only kept on the Comedy shelf); ``target_genre_id`` is the id of the
    individual sub-query used for the incompatible-pair rules. Local records
    only go through the release and blocklist checks since the remaining
    rules depend on provider genre ids and languages they never carry.
    """
    if not is_movie_released(movie, today):
        return False
    if has_blocked_title(movie):
        return False
    if movie.source_origin == "local":
        return True

    genre_ids = movie.genre_ids
    if not genre_ids:
        return False
    if (movie.original_language or "").lower() in EXCLUDED_LANGUAGES:
        return False
    if MUSIC in genre_ids:
        return False
    if FAMILY in genre_ids and COMEDY not in target_genre_ids:
        return False
    if has_incompatible_genres(movie, target_genre_id):
        return False
    return True


def apply_standard_filters(
    movies: Iterable[Optional[Movie]],
    target_genre_ids: Sequence[int] = (),
    target_genre_id: Optional[int] = None,
    today: Optional[date] = None,
) -> List[Movie]:
    kept = [
        movie for movie in movies
        if movie is not None and passes_standard_filters(movie, target_genre_ids, target_genre_id, today)
    ]
    return kept
