"""Recommendation assembly

Turns a user's history into a ranked, de-duplicated and diversified list of
suggestions:

1. build the preference profile,
2. optionally fan out TMDB genre/director/actor queries and merge them with
   the local inventory (local entries win on equal titles),
3. drop favorites and already watched movies,
4. score, rank and apply the per-director / per-actor caps.

Scoring runs in batches and stops early once twice the requested number of
positive candidates has been collected. Later batches may hold better
candidates; they are not scanned in that case.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Set

from ..schemas import Movie
from .movie_format import (
    build_lookup_index,
    coerce_movie,
    entry_id,
    identity_keys,
    merge_local_and_api_results,
    normalize_title,
    resolve_entry,
)
from .preference_service import PreferenceExtractor, PreferenceProfile
from .scoring import ScoredCandidate, score_movie
from .tmdb_service import TmdbService, get_tmdb_service
from .user_data_service import UserDataService, get_user_data_service

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
MAX_PER_DIRECTOR = 3
MAX_PER_ACTOR = 2

GENRE_QUERIES = 3
DIRECTOR_QUERIES = 2
ACTOR_QUERIES = 2
GENRE_RESULTS_PER_QUERY = 10
PERSON_RESULTS_PER_QUERY = 5


def rank_candidates(candidates: List[ScoredCandidate]) -> List[ScoredCandidate]:
    """Score descending, ties broken by rating descending."""
    return sorted(candidates, key=lambda c: (c.score, c.matched_rating), reverse=True)


def apply_diversity(
    candidates: Iterable[ScoredCandidate],
    max_per_director: int = MAX_PER_DIRECTOR,
    max_per_actor: int = MAX_PER_ACTOR,
) -> List[ScoredCandidate]:
    """Greedy single pass over ranked candidates.

    A candidate is dropped when its director already has ``max_per_director``
    accepted movies or any of its cast members already has ``max_per_actor``.
    Earlier candidates consume the quota first.
    """
    director_count: Counter = Counter()
    actor_count: Counter = Counter()
    accepted = []
    for candidate in candidates:
        movie = candidate.movie
        if movie.director and director_count[movie.director] >= max_per_director:
            continue
        if any(actor_count[actor] >= max_per_actor for actor in movie.cast):
            continue
        if movie.director:
            director_count[movie.director] += 1
        for actor in movie.cast:
            actor_count[actor] += 1
        accepted.append(candidate)
    return accepted


@dataclass
class Exclusions:
    """Keys of movies already known to the user.

    Known movies are matched on their own origin only: canonical id, raw
    local id against local candidates, TMDB id against external ones. Bare
    watched ids that resolve to no known movie match any identity key.
    """
    ids: Set[str] = field(default_factory=set)
    local_ids: Set[str] = field(default_factory=set)
    tmdb_ids: Set[int] = field(default_factory=set)
    bare_ids: Set[str] = field(default_factory=set)
    titles: Set[str] = field(default_factory=set)

    def add_movie(self, movie: Movie) -> None:
        self.ids.add(movie.id)
        if movie.local_id:
            self.local_ids.add(movie.local_id)
        if movie.tmdb_id is not None:
            self.tmdb_ids.add(movie.tmdb_id)
        self.titles.add(normalize_title(movie.title))

    def excludes(self, movie: Movie) -> bool:
        if movie.id in self.ids or normalize_title(movie.title) in self.titles:
            return True
        if movie.local_id and movie.local_id in self.local_ids:
            return True
        if movie.tmdb_id is not None and movie.tmdb_id in self.tmdb_ids:
            return True
        return bool(self.bare_ids) and bool(identity_keys(movie) & self.bare_ids)


def _coerce_all(records: Iterable[Any], label: str) -> List[Movie]:
    movies = []
    for record in records:
        try:
            movies.append(coerce_movie(record))
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Skipping malformed {label}: {e}")
    return movies


class RecommendationService:
    """Orchestrates preference extraction, catalog fan-out and ranking."""

    def __init__(
        self,
        tmdb_service: Optional[TmdbService] = None,
        preference_extractor: Optional[PreferenceExtractor] = None,
        user_data_service: Optional[UserDataService] = None,
        today: Callable[[], date] = date.today,
    ):
        self.tmdb_service = tmdb_service or TmdbService()
        self.preference_extractor = preference_extractor or PreferenceExtractor()
        self.user_data_service = user_data_service
        self._today = today

    async def _gather_group(self, label: str, coroutines: List[Any], per_query: int) -> List[Movie]:
        results = await asyncio.gather(*coroutines, return_exceptions=True)
        movies: List[Movie] = []
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"TMDB {label} query failed: {result}")
                continue
            movies.extend(result[:per_query])
        return movies

    async def fetch_external_candidates(self, profile: PreferenceProfile) -> List[Movie]:
        """Query TMDB for the profile's top genres, directors and actors concurrently."""
        genre_group = self._gather_group(
            "genre",
            [
                self.tmdb_service.search_by_genre(genre, min_rating=profile.min_rating)
                for genre in profile.genre_names[:GENRE_QUERIES]
            ],
            GENRE_RESULTS_PER_QUERY,
        )
        director_group = self._gather_group(
            "director",
            [self.tmdb_service.search_by_director(d) for d in profile.director_names[:DIRECTOR_QUERIES]],
            PERSON_RESULTS_PER_QUERY,
        )
        actor_group = self._gather_group(
            "actor",
            [self.tmdb_service.search_by_actor(a) for a in profile.actor_names[:ACTOR_QUERIES]],
            PERSON_RESULTS_PER_QUERY,
        )
        genre_movies, director_movies, actor_movies = await asyncio.gather(
            genre_group, director_group, actor_group
        )
        return genre_movies + director_movies + actor_movies

    @staticmethod
    def _exclusions(
        favorites: Sequence[Movie],
        watched_history: Sequence[Any],
        lookup_index: Mapping[str, Movie],
    ) -> Exclusions:
        """Favorites and watched movies that must not be recommended."""
        exclusions = Exclusions()
        for movie in favorites:
            exclusions.add_movie(movie)

        for entry in watched_history:
            movie = resolve_entry(entry, lookup_index)
            if movie is not None:
                exclusions.add_movie(movie)
                continue
            raw_id = entry_id(entry)
            if raw_id:
                exclusions.bare_ids.add(raw_id)
        exclusions.titles.discard("")
        return exclusions

    async def assemble(
        self,
        local_inventory: Sequence[Any],
        favorites: Optional[Sequence[Any]] = None,
        use_external: bool = False,
        limit: int = 20,
        watched_history: Optional[Sequence[Any]] = None,
        catalog_lookup: Optional[Sequence[Any]] = None,
        explicit_ratings: Optional[Mapping[str, Any]] = None,
    ) -> List[ScoredCandidate]:
        favorites = list(favorites or [])
        watched_history = list(watched_history or [])
        catalog_lookup = list(catalog_lookup or [])
        if not favorites and not watched_history:
            return []

        profile = self.preference_extractor.extract(favorites, watched_history, catalog_lookup, explicit_ratings)
        if profile.is_empty:
            return []

        local_movies = _coerce_all(local_inventory or [], "inventory record")

        candidates = local_movies
        if use_external:
            try:
                api_movies = await self.fetch_external_candidates(profile)
                candidates = merge_local_and_api_results(local_movies, api_movies)
            except Exception as e:
                logger.error(f"TMDB fetch failed, using local movies only: {e}")

        favorite_movies = _coerce_all(favorites, "favorite")
        exclusions = self._exclusions(favorite_movies, watched_history, build_lookup_index(catalog_lookup))

        today = self._today()
        target_count = limit * 2
        scored: List[ScoredCandidate] = []
        for start in range(0, len(candidates), BATCH_SIZE):
            for movie in candidates[start:start + BATCH_SIZE]:
                if exclusions.excludes(movie):
                    continue
                candidate = score_movie(movie, profile, today)
                if candidate.score > 0:
                    scored.append(candidate)

            if len(scored) >= target_count:
                logger.debug(f"Early termination after {start + BATCH_SIZE} of {len(candidates)} candidates.")
                break

        ranked = apply_diversity(rank_candidates(scored))
        return ranked[:limit]

    async def get_recommendations(
        self,
        inventory: Sequence[Any],
        favorites: Optional[Sequence[Any]] = None,
        use_external: bool = False,
        limit: int = 20,
        watched: Optional[Sequence[Any]] = None,
        lookup: Optional[Sequence[Any]] = None,
        ratings: Optional[Mapping[str, Any]] = None,
    ) -> List[ScoredCandidate]:
        """Consumer entry point; any failure yields an empty list."""
        try:
            return await self.assemble(inventory, favorites, use_external, limit, watched, lookup, ratings)
        except Exception as e:
            logger.exception(f"Error generating recommendations: {e}")
            return []

    async def recommend_for_user(
        self,
        user_id: str,
        inventory: Sequence[Any] = (),
        use_external: bool = True,
        limit: int = 20,
    ) -> List[ScoredCandidate]:
        """Recommendations from the history stored for ``user_id``."""
        if self.user_data_service is None:
            logger.error("No user data service configured for stored-history recommendations.")
            return []
        user_data = self.user_data_service.load(user_id)
        return await self.get_recommendations(
            inventory,
            user_data.favorites,
            use_external,
            limit,
            user_data.watched,
            list(inventory) + list(user_data.favorites),
            user_data.ratings,
        )

    def verify_ranking(self, recommendations: Sequence[ScoredCandidate], profile: PreferenceProfile) -> dict:
        """Sanity checks over the top five results, logged for development."""
        top = list(recommendations[:5])
        if not top:
            return {}
        rescored = [score_movie(c.movie, profile, self._today()) for c in top]
        checks = {
            "has_genre_high_score_movies": any(s.breakdown.genre_high_score for s in rescored),
            "correct_priority_order": all(a.score >= b.score for a, b in zip(rescored, rescored[1:])),
            "top_movie_has_score": rescored[0].score > 0,
        }
        for position, scored in enumerate(rescored, start=1):
            logger.debug(f"{position}. {scored.movie.title}: score={scored.score} rating={scored.matched_rating}")
        logger.debug(f"Ranking checks: {checks}")
        return checks


@lru_cache()
def get_recommendation_service():
    """Cached dependency injector wiring the shared catalog and user data services."""
    return RecommendationService(get_tmdb_service(), user_data_service=get_user_data_service())
