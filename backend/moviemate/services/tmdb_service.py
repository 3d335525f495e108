import asyncio
import logging
import random
from datetime import date
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..core.config import settings
from ..core.genres import ALL_MOVIES, DISPLAY_GENRES, genre_ids_for
from ..schemas import Movie, WatchProvider, WatchProviders
from .content_filter import apply_standard_filters
from .movie_format import LOCAL_PREFIX, TMDB_PREFIX, convert_tmdb_movie
from .rate_limiter import RateLimiter
from .response_cache import ResponseCache

logger = logging.getLogger(__name__)

DISCOVER_MOVIE = "/discover/movie"
SEARCH_MOVIE = "/search/movie"
SEARCH_PERSON = "/search/person"
PERSON_CREDITS = "/person/{person_id}/movie_credits"
MOVIE_DETAILS = "/movie/{movie_id}"
WATCH_PROVIDERS = "/movie/{movie_id}/watch/providers"

SORT_BY_MAP = {
    "most_liked": "popularity.desc",
    "most_rated": "vote_average.desc",
    "new_most_rated": "release_date.desc",
    None: "release_date.desc",
}
NEW_AND_RATED_MODES = (None, "new_most_rated")
NEW_AND_RATED_MIN_RATING = 7.0
DEFAULT_MIN_RATING = 6.0
MIN_VOTE_COUNT = 100

PERSON_CREDITS_LIMIT = 20
PERSON_DETAILS_LIMIT = 10

ALLOWED_PROVIDERS = (
    "netflix",
    "amazon prime", "prime video", "prime",
    "hbo max", "hbo",
    "apple tv", "itunes",
    "disney", "disney+", "disney plus",
)
EXCLUDED_SUBSCRIPTION_PROVIDERS = ("apple tv", "itunes")

SEED_PAGES = 3
SEED_PER_GENRE = 5
SEED_SIZE = 50

# Failures that only cost the current query its results
TRANSIENT_ERRORS = (httpx.HTTPError, ValueError, KeyError, TypeError)


def _sort_movies(movies: List[Movie], sort_by: Optional[str]) -> List[Movie]:
    if sort_by == "most_liked":
        return sorted(movies, key=lambda m: m.popularity, reverse=True)
    return sorted(movies, key=lambda m: m.rating, reverse=True)


def _numeric_tmdb_id(movie_id: Any) -> Optional[str]:
    """Strip the source prefix; local ids have no TMDB counterpart."""
    if movie_id is None or movie_id == "":
        return None
    movie_id = str(movie_id)
    if movie_id.startswith(LOCAL_PREFIX):
        return None
    if movie_id.startswith(TMDB_PREFIX):
        movie_id = movie_id[len(TMDB_PREFIX):]
    return movie_id if movie_id.isdigit() else None


class TmdbService:
    """Service for querying the TMDB movie catalog.

    Every public operation is rate limited, cached, and returns an empty
    result (``[]`` or None) instead of raising.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[ResponseCache] = None,
        client: Optional[httpx.AsyncClient] = None,
        region: Optional[str] = None,
        rng: Optional[random.Random] = None,
        today: Callable[[], date] = date.today,
    ):
        self._api_key = api_key
        self.base_url = (base_url or settings.TMDB_API_BASE_URL).rstrip("/")
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=settings.RATE_LIMIT_REQUESTS,
            window_seconds=settings.RATE_LIMIT_WINDOW_MS / 1000,
        )
        self.cache = cache or ResponseCache(ttl_seconds=settings.CACHE_TTL_SECONDS)
        self.region = (region or settings.WATCH_PROVIDER_REGION).upper()
        self._rng = rng or random.Random()
        self._today = today
        self._client = client
        self._owns_client = client is None

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key or settings.TMDB_API_KEY

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS, connect=settings.HTTP_CONNECT_TIMEOUT_SECONDS)
            self._client = httpx.AsyncClient(timeout=timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Rate-limited GET against the TMDB API. Raises on any failure."""
        query = {"api_key": self.api_key, "language": "en-US"}
        for key, value in (params or {}).items():
            if value is not None:
                query[key] = value

        await self.rate_limiter.acquire()
        response = await self._get_client().get(f"{self.base_url}{path}", params=query)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected TMDB payload for {path}: {type(data).__name__}")
        return data

    def _has_api_key(self, operation: str) -> bool:
        if not self.api_key:
            logger.error(f"TMDB_API_KEY not configured. Cannot run {operation}.")
            return False
        return True

    def _convert_results(self, results: List[Dict[str, Any]]) -> List[Movie]:
        movies = []
        for result in results:
            try:
                movies.append(convert_tmdb_movie(result))
            except TRANSIENT_ERRORS as e:
                logger.warning(f"Skipping malformed TMDB record {result.get('id')!r}: {e}")
        return movies

    # ------------------------------------------------------------------
    # Genre search
    # ------------------------------------------------------------------

    async def _discover_genre(
        self,
        genre_id: int,
        genre_ids: List[int],
        params: Dict[str, Any],
        limit: int,
    ) -> Optional[List[Movie]]:
        """Run one discover sub-query; None signals a failed request."""
        try:
            data = await self._get_json(DISCOVER_MOVIE, {**params, "with_genres": genre_id})
            results = data.get("results") or []
        except TRANSIENT_ERRORS as e:
            logger.error(f"Error discovering movies for genre id {genre_id}: {e}")
            return None

        movies = self._convert_results(results[:limit])
        movies = apply_standard_filters(
            movies,
            target_genre_ids=genre_ids,
            target_genre_id=genre_id,
            today=self._today(),
        )
        return [m for m in movies if any(gid in m.genre_ids for gid in genre_ids)]

    async def search_by_genre(
        self,
        genre: str,
        min_year: Optional[int] = None,
        max_year: Optional[int] = None,
        min_rating: Optional[float] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: Optional[str] = None,
    ) -> List[Movie]:
        """Discover movies of a display genre.

        Merged categories query each TMDB genre id independently and union
        the filtered results by id.
        """
        genre_ids = genre_ids_for(genre)
        if not genre_ids:
            logger.warning(f"Genre '{genre}' is not mapped to TMDB.")
            return []
        if not self._has_api_key("genre search"):
            return []
        if sort_by not in SORT_BY_MAP:
            logger.warning(f"Unknown sort mode '{sort_by}', using newest highly rated.")
            sort_by = None

        cache_key = (
            f"genre_{'_'.join(str(gid) for gid in genre_ids)}_{sort_by or 'new_rated'}"
            f"_{min_year}_{max_year}_{min_rating}_{page}_{limit}"
        )
        cached = self.cache.get(cache_key)
        if cached is not None:
            return list(cached)

        params: Dict[str, Any] = {
            "page": page,
            "sort_by": SORT_BY_MAP[sort_by],
            "vote_count.gte": MIN_VOTE_COUNT,
            "with_original_language": "en",
        }
        if sort_by in NEW_AND_RATED_MODES:
            params["vote_average.gte"] = NEW_AND_RATED_MIN_RATING
        else:
            params["vote_average.gte"] = min_rating or DEFAULT_MIN_RATING
        if min_year:
            params["primary_release_date.gte"] = f"{min_year}-01-01"
        if max_year:
            params["primary_release_date.lte"] = f"{max_year}-12-31"

        try:
            sub_results = await asyncio.gather(
                *[self._discover_genre(gid, genre_ids, params, limit) for gid in genre_ids]
            )
            merged: Dict[int, Movie] = {}
            for movies in sub_results:
                for movie in movies or []:
                    merged.setdefault(movie.tmdb_id, movie)

            valid_movies = _sort_movies(list(merged.values()), sort_by)[:limit]
            if all(movies is not None for movies in sub_results):
                self.cache.put(cache_key, valid_movies)
            return list(valid_movies)
        except Exception as e:
            logger.exception(f"Unexpected error searching movies by genre '{genre}': {e}")
            return []

    # ------------------------------------------------------------------
    # Person search
    # ------------------------------------------------------------------

    async def find_person(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the first TMDB person matching ``name``.

        Same-named people are not disambiguated. Override or patch this
        method to plug in deterministic fixtures.
        """
        try:
            data = await self._get_json(SEARCH_PERSON, {"query": name, "page": 1})
        except TRANSIENT_ERRORS as e:
            logger.error(f"Person search failed for '{name}': {e}")
            return None
        results = data.get("results") or []
        return results[0] if results else None

    async def _fetch_movie(self, tmdb_id: Any) -> Optional[Movie]:
        try:
            data = await self._get_json(MOVIE_DETAILS.format(movie_id=tmdb_id), {"append_to_response": "credits"})
            return convert_tmdb_movie(data, data)
        except TRANSIENT_ERRORS as e:
            logger.error(f"Error fetching details for TMDB id {tmdb_id}: {e}")
            return None

    async def _search_person_movies(self, name: str, role: str) -> List[Movie]:
        if not name or not name.strip():
            return []
        if not self._has_api_key(f"{role} search"):
            return []

        cache_key = f"{role}_{name.lower()}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return list(cached)

        try:
            person = await self.find_person(name)
            if not person:
                logger.info(f"No TMDB person found for {role} '{name}'.")
                return []

            credits = await self._get_json(PERSON_CREDITS.format(person_id=person["id"]))
            if role == "director":
                credited = [c for c in credits.get("crew") or [] if c.get("job") == "Director"]
            else:
                credited = sorted(credits.get("cast") or [], key=lambda c: c.get("popularity") or 0, reverse=True)
            credited = credited[:PERSON_CREDITS_LIMIT]

            detailed = await asyncio.gather(
                *[self._fetch_movie(credit["id"]) for credit in credited[:PERSON_DETAILS_LIMIT]]
            )
            movies = apply_standard_filters(detailed, today=self._today())
            self.cache.put(cache_key, movies)
            return list(movies)
        except TRANSIENT_ERRORS as e:
            logger.error(f"Error searching movies by {role} '{name}': {e}")
            return []
        except Exception as e:
            logger.exception(f"Unexpected error searching movies by {role} '{name}': {e}")
            return []

    async def search_by_director(self, name: str) -> List[Movie]:
        return await self._search_person_movies(name, "director")

    async def search_by_actor(self, name: str) -> List[Movie]:
        return await self._search_person_movies(name, "actor")

    # ------------------------------------------------------------------
    # Details, title search and browse
    # ------------------------------------------------------------------

    async def get_details(self, movie_id: Any) -> Optional[Movie]:
        """Full details and credits for a canonical id; None for local ids."""
        numeric_id = _numeric_tmdb_id(movie_id)
        if numeric_id is None:
            return None
        if not self._has_api_key("movie details"):
            return None

        cache_key = f"details_{numeric_id}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            movie = await self._fetch_movie(numeric_id)
        except Exception as e:
            logger.exception(f"Unexpected error getting movie details for {movie_id}: {e}")
            return None
        if movie is not None:
            self.cache.put(cache_key, movie)
        return movie

    async def search_by_title(self, query: str, page: int = 1, limit: int = 20) -> List[Movie]:
        """Free-text title search.

        Results come straight from the search endpoint; full details are
        fetched later through ``get_details``. The whole filtered page is
        cached and truncated to ``limit`` on every read.
        """
        if not query or not query.strip():
            return []
        if not self._has_api_key("title search"):
            return []

        cache_key = f"search_{query.lower()}_{page}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return list(cached[:limit])

        try:
            data = await self._get_json(SEARCH_MOVIE, {"query": query.strip(), "page": page})
            movies = apply_standard_filters(self._convert_results(data.get("results") or []), today=self._today())
            self.cache.put(cache_key, movies)
            return list(movies[:limit])
        except TRANSIENT_ERRORS as e:
            logger.error(f"Error searching TMDB for '{query}': {e}")
            return []
        except Exception as e:
            logger.exception(f"Unexpected error searching TMDB for '{query}': {e}")
            return []

    async def get_top_rated(self, page: int = 1, limit: int = 50, sort_by: Optional[str] = None) -> List[Movie]:
        """Browse highly rated movies across all genres.

        In the default mode the first two pages list recent releases; from
        page 3 on the browse continues with the best rated titles overall.
        """
        if not self._has_api_key("top rated browse"):
            return []
        if sort_by not in SORT_BY_MAP:
            sort_by = None

        adjusted_page = page
        use_old_movies = False
        if sort_by in NEW_AND_RATED_MODES and page > 2:
            tmdb_sort_by = "vote_average.desc"
            adjusted_page = page - 2
            use_old_movies = True
        else:
            tmdb_sort_by = SORT_BY_MAP[sort_by]

        cache_key = f"toprated_{sort_by or 'new_rated'}_{page}_{limit}_{'old' if use_old_movies else 'new'}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return list(cached)

        params = {
            "page": adjusted_page,
            "sort_by": tmdb_sort_by,
            "vote_count.gte": MIN_VOTE_COUNT,
            "with_original_language": "en",
            "vote_average.gte": NEW_AND_RATED_MIN_RATING if sort_by in NEW_AND_RATED_MODES else DEFAULT_MIN_RATING,
        }
        try:
            data = await self._get_json(DISCOVER_MOVIE, params)
            movies = self._convert_results((data.get("results") or [])[:limit])
            movies = _sort_movies(apply_standard_filters(movies, today=self._today()), sort_by)
            self.cache.put(cache_key, movies)
            return list(movies)
        except TRANSIENT_ERRORS as e:
            logger.error(f"Error fetching top rated movies (page {page}): {e}")
            return []
        except Exception as e:
            logger.exception(f"Unexpected error fetching top rated movies: {e}")
            return []

    async def search_catalog(
        self,
        genre: Optional[str] = None,
        title: Optional[str] = None,
        director: Optional[str] = None,
        actor: Optional[str] = None,
        **options: Any,
    ) -> List[Movie]:
        """Single search entry point used by the API layer."""
        page = options.get("page") or 1
        limit = options.get("limit") or 20
        try:
            if title:
                return await self.search_by_title(title, page=page, limit=limit)
            if director:
                return (await self.search_by_director(director))[:limit]
            if actor:
                return (await self.search_by_actor(actor))[:limit]
            if genre == ALL_MOVIES:
                return await self.get_top_rated(page=page, limit=limit, sort_by=options.get("sort_by"))
            if genre:
                return await self.search_by_genre(
                    genre,
                    min_year=options.get("min_year"),
                    max_year=options.get("max_year"),
                    min_rating=options.get("min_rating"),
                    page=page,
                    limit=limit,
                    sort_by=options.get("sort_by"),
                )
        except Exception as e:
            logger.exception(f"Unexpected error in catalog search: {e}")
        return []

    # ------------------------------------------------------------------
    # Watch providers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_allowed_provider(name: str) -> bool:
        name = (name or "").lower()
        return any(allowed in name for allowed in ALLOWED_PROVIDERS)

    def _filter_providers(self, providers: Any, subscription: bool = False) -> List[WatchProvider]:
        if not isinstance(providers, list):
            return []
        kept = []
        for provider in providers:
            if not isinstance(provider, dict) or not provider.get("provider_name"):
                continue
            name = provider["provider_name"].lower()
            if subscription and any(excluded in name for excluded in EXCLUDED_SUBSCRIPTION_PROVIDERS):
                continue
            if self._is_allowed_provider(name):
                kept.append(WatchProvider(
                    provider_id=provider.get("provider_id"),
                    provider_name=provider["provider_name"],
                    logo_path=provider.get("logo_path"),
                ))
        return kept

    async def get_watch_providers(self, movie_id: Any) -> Optional[WatchProviders]:
        """Allowed providers in the home region, or None when unavailable."""
        numeric_id = _numeric_tmdb_id(movie_id)
        if numeric_id is None:
            return None
        if not self._has_api_key("watch providers"):
            return None

        cache_key = f"watch_providers_{numeric_id}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            data = await self._get_json(WATCH_PROVIDERS.format(movie_id=numeric_id))
            regions = data.get("results") or {}
            selected = regions.get(self.region) or regions.get(self.region.lower())
            if selected is None and regions:
                selected = next(iter(regions.values()))
            if not selected:
                return None

            providers = WatchProviders(
                flatrate=self._filter_providers(selected.get("flatrate"), subscription=True),
                rent=self._filter_providers(selected.get("rent")),
                buy=self._filter_providers(selected.get("buy")),
            )
            if providers.is_empty():
                return None
            self.cache.put(cache_key, providers)
            return providers
        except TRANSIENT_ERRORS as e:
            logger.error(f"Error getting watch providers for {movie_id}: {e}")
            return None
        except Exception as e:
            logger.exception(f"Unexpected error getting watch providers for {movie_id}: {e}")
            return None

    # ------------------------------------------------------------------
    # Onboarding
    # ------------------------------------------------------------------

    async def get_curated_seed_set(self) -> List[Movie]:
        """Up to 50 top rated movies spread across the display genres."""
        if not self._has_api_key("onboarding seed set"):
            return []

        cache_key = "onboarding_movies"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return list(cached)

        try:
            all_movies: List[Movie] = []
            for page in range(1, SEED_PAGES + 1):
                params = {
                    "page": page,
                    "sort_by": "vote_average.desc",
                    "vote_count.gte": MIN_VOTE_COUNT,
                    "vote_average.gte": NEW_AND_RATED_MIN_RATING,
                    "with_original_language": "en",
                }
                try:
                    data = await self._get_json(DISCOVER_MOVIE, params)
                except TRANSIENT_ERRORS as e:
                    logger.warning(f"Skipping onboarding page {page}: {e}")
                    continue
                all_movies.extend(self._convert_results(data.get("results") or []))

            if not all_movies:
                return []
            unique_movies: Dict[str, Movie] = {}
            for movie in all_movies:
                unique_movies.setdefault(movie.id, movie)
            valid_movies = apply_standard_filters(unique_movies.values(), today=self._today())

            buckets: Dict[str, List[Movie]] = {genre: [] for genre in DISPLAY_GENRES}
            for movie in valid_movies:
                if movie.genre in buckets:
                    buckets[movie.genre].append(movie)

            selected: List[Movie] = []
            for genre in DISPLAY_GENRES:
                bucket = buckets[genre]
                selected.extend(self._rng.sample(bucket, min(SEED_PER_GENRE, len(bucket))))

            if len(selected) < SEED_SIZE:
                selected_ids = {m.id for m in selected}
                backfill = sorted(
                    (m for m in valid_movies if m.id not in selected_ids),
                    key=lambda m: m.rating,
                    reverse=True,
                )
                selected.extend(backfill[:SEED_SIZE - len(selected)])

            self._rng.shuffle(selected)
            final_movies = selected[:SEED_SIZE]
            self.cache.put(cache_key, final_movies)
            return list(final_movies)
        except Exception as e:
            logger.exception(f"Unexpected error building onboarding movies: {e}")
            return []


@lru_cache()
def get_tmdb_service():
    """Dependency injector for TmdbService. One shared client per process."""
    return TmdbService()
