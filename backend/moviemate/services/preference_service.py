"""User preference extraction

Builds a weighted taste profile from a user's favorites, watched history
and explicit star ratings. Profiles are memoized per extractor instance so
that repeated calls with unchanged history return the very same object.
"""

import json
import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.genres import UNKNOWN_GENRE
from ..schemas import Movie
from .movie_format import (
    build_lookup_index,
    coerce_movie,
    entry_id,
    normalize_string,
    resolve_entry,
)

logger = logging.getLogger(__name__)

FAVORITE_WEIGHT = 1.5
WATCHED_WEIGHT = 1.0
DEFAULT_BASELINE_RATING = 8.0
MIN_RATING_FLOOR = 7.5
MIN_RATING_MARGIN = 0.5
USER_RATING_MIN = 0.5
USER_RATING_MAX = 5.0


@dataclass(frozen=True)
class PreferenceProfile:
    """Aggregated taste of one user.

    The normalized sets serve O(1) membership tests during scoring; the
    ``*_names`` tuples keep raw labels in first-seen order for catalog
    queries. Frequencies are keyed by raw label.
    """
    genres: FrozenSet[str] = frozenset()
    directors: FrozenSet[str] = frozenset()
    actors: FrozenSet[str] = frozenset()
    genre_names: Tuple[str, ...] = ()
    director_names: Tuple[str, ...] = ()
    actor_names: Tuple[str, ...] = ()
    genre_frequency: Dict[str, int] = field(default_factory=dict, hash=False)
    director_frequency: Dict[str, int] = field(default_factory=dict, hash=False)
    actor_frequency: Dict[str, int] = field(default_factory=dict, hash=False)
    min_rating: float = 0.0
    user_avg_rating: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return not (self.genres or self.directors or self.actors)

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "genres": list(self.genre_names),
            "directors": list(self.director_names),
            "actors": list(self.actor_names),
            "min_rating": self.min_rating,
        }
        if self.user_avg_rating is not None:
            data.update(
                user_avg_rating=self.user_avg_rating,
                genre_frequency=dict(self.genre_frequency),
                director_frequency=dict(self.director_frequency),
                actor_frequency=dict(self.actor_frequency),
            )
        return data


EMPTY_PROFILE = PreferenceProfile()


def _unique(values: Iterable[Optional[str]]) -> List[str]:
    return list(dict.fromkeys(value for value in values if value))


def _weighted_baseline(favorites: Sequence[Movie], watched: Sequence[Movie]) -> float:
    """Weighted mean rating of liked movies; favorites count 1.5x."""
    weighted = [(FAVORITE_WEIGHT, m.rating) for m in favorites if m.rating > 0]
    weighted += [(WATCHED_WEIGHT, m.rating) for m in watched if m.rating > 0]
    total_weight = sum(weight for weight, _ in weighted)
    if not total_weight:
        return DEFAULT_BASELINE_RATING
    return sum(weight * rating for weight, rating in weighted) / total_weight


def _explicit_rating_average(explicit_ratings: Optional[Mapping[str, Any]]) -> Optional[float]:
    values = [
        float(value) for value in (explicit_ratings or {}).values()
        if isinstance(value, (int, float)) and not isinstance(value, bool)
        and USER_RATING_MIN <= value <= USER_RATING_MAX
    ]
    if not values:
        return None
    return sum(values) / len(values)


class PreferenceExtractor:
    """Derives PreferenceProfile objects and memoizes them by history key."""

    def __init__(self, max_cached_profiles: int = 256):
        self.max_cached_profiles = max_cached_profiles
        self._profiles: "OrderedDict[str, PreferenceProfile]" = OrderedDict()

    @staticmethod
    def cache_key(
        favorites: Sequence[Any],
        watched_history: Sequence[Any],
        explicit_ratings: Optional[Mapping[str, Any]],
    ) -> str:
        return json.dumps({
            "fav_ids": sorted(entry_id(f) or "" for f in favorites),
            "watched_ids": sorted(entry_id(w) or "" for w in watched_history),
            "rating_keys": sorted(str(k) for k in (explicit_ratings or {})),
        })

    def clear(self) -> None:
        self._profiles.clear()

    def extract(
        self,
        favorites: Optional[Sequence[Any]] = None,
        watched_history: Optional[Sequence[Any]] = None,
        catalog_lookup: Optional[Iterable[Any]] = None,
        explicit_ratings: Optional[Mapping[str, Any]] = None,
    ) -> PreferenceProfile:
        favorites = list(favorites or [])
        watched_history = list(watched_history or [])

        key = self.cache_key(favorites, watched_history, explicit_ratings)
        cached = self._profiles.get(key)
        if cached is not None:
            return cached

        profile = self._build_profile(favorites, watched_history, catalog_lookup or [], explicit_ratings)
        self._profiles[key] = profile
        if len(self._profiles) > self.max_cached_profiles:
            self._profiles.popitem(last=False)
        return profile

    def _build_profile(
        self,
        favorites: Sequence[Any],
        watched_history: Sequence[Any],
        catalog_lookup: Iterable[Any],
        explicit_ratings: Optional[Mapping[str, Any]],
    ) -> PreferenceProfile:
        favorite_movies = []
        for favorite in favorites:
            try:
                favorite_movies.append(coerce_movie(favorite))
            except (ValueError, TypeError, KeyError) as e:
                logger.warning(f"Ignoring malformed favorite: {e}")

        index = build_lookup_index(catalog_lookup) if watched_history else {}
        watched_movies = [m for m in (resolve_entry(e, index) for e in watched_history) if m is not None]
        unresolved = len(watched_history) - len(watched_movies)
        if unresolved:
            logger.debug(f"{unresolved} watched entries could not be resolved and are ignored.")

        user_movies = favorite_movies + watched_movies
        if not user_movies:
            return EMPTY_PROFILE

        genre_names = _unique(m.genre for m in user_movies if m.genre != UNKNOWN_GENRE)
        director_names = _unique(m.director for m in user_movies)
        actor_names = _unique(actor for m in user_movies for actor in m.cast)

        genre_frequency = Counter(m.genre for m in user_movies if m.genre and m.genre != UNKNOWN_GENRE)
        director_frequency = Counter(m.director for m in user_movies if m.director)
        actor_frequency = Counter(actor for m in user_movies for actor in m.cast if actor)

        user_avg_rating = _explicit_rating_average(explicit_ratings)
        effective_rating = (
            user_avg_rating if user_avg_rating is not None
            else _weighted_baseline(favorite_movies, watched_movies)
        )

        return PreferenceProfile(
            genres=frozenset(normalize_string(g) for g in genre_names),
            directors=frozenset(normalize_string(d) for d in director_names),
            actors=frozenset(normalize_string(a) for a in actor_names),
            genre_names=tuple(genre_names),
            director_names=tuple(director_names),
            actor_names=tuple(actor_names),
            genre_frequency=dict(genre_frequency),
            director_frequency=dict(director_frequency),
            actor_frequency=dict(actor_frequency),
            min_rating=max(MIN_RATING_FLOOR, effective_rating - MIN_RATING_MARGIN),
            user_avg_rating=effective_rating,
        )
