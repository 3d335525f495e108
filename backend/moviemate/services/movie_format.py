"""Conversion of local inventory records and TMDB payloads into ``Movie``."""

import logging
import re
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from ..core.config import settings
from ..core.genres import (
    UNKNOWN_GENRE,
    display_genre_for_id,
    display_genre_for_name,
    genre_ids_for,
)
from ..schemas import Movie

logger = logging.getLogger(__name__)

LOCAL_PREFIX = "local_"
TMDB_PREFIX = "tmdb_"
MAX_GENRES = 3
MAX_CAST = 5

_NON_WORD = re.compile(r"[^\w\s]")


def normalize_string(value: Optional[str]) -> str:
    """Lowercase, trim and strip punctuation for name/genre matching."""
    if not value:
        return ""
    return _NON_WORD.sub("", value.lower().strip())


def normalize_title(title: Optional[str]) -> str:
    """Title key used for de-duplication across origins."""
    return (title or "").lower().strip()


def parse_rating(value: Any) -> float:
    try:
        rating = float(value)
    except (TypeError, ValueError):
        return 0.0
    return rating if rating == rating else 0.0  # NaN


def parse_year(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(str(value)[:4])
    except ValueError:
        return None


def get_image_url(poster_path: Optional[str], size: str = "w500") -> Optional[str]:
    if not poster_path:
        return None
    if poster_path.startswith("http"):
        return poster_path
    return f"{settings.TMDB_IMAGE_BASE_URL}/{size}{poster_path}"


def get_director_from_crew(crew: Any) -> Optional[str]:
    """Return the first crew member whose job is 'director' (any case)."""
    if not crew:
        return None
    if isinstance(crew, Mapping):
        crew = crew.get("crew") or []
    if not isinstance(crew, list):
        return None
    for person in crew:
        if not isinstance(person, Mapping):
            continue
        job = person.get("job") or ""
        if job.lower() == "director":
            return person.get("name") or person.get("original_name")
    return None


def _primary_genre(details: Mapping[str, Any]) -> str:
    genres = details.get("genres")
    if isinstance(genres, list) and genres:
        return display_genre_for_name(genres[0].get("name", ""))
    genre_ids = details.get("genre_ids")
    if isinstance(genre_ids, list) and genre_ids:
        return display_genre_for_id(genre_ids[0])
    return UNKNOWN_GENRE


def _all_genres(details: Mapping[str, Any]) -> List[str]:
    names: List[str] = []
    genres = details.get("genres")
    genre_ids = details.get("genre_ids")
    if isinstance(genres, list) and genres:
        names = [display_genre_for_name(g.get("name", "")) for g in genres]
    elif isinstance(genre_ids, list) and genre_ids:
        names = [display_genre_for_id(genre_id) for genre_id in genre_ids]

    unique: List[str] = []
    for name in names:
        if name and name != UNKNOWN_GENRE and name not in unique:
            unique.append(name)
    return unique[:MAX_GENRES]


def _cast_names(details: Mapping[str, Any]) -> List[str]:
    credits = details.get("credits") or {}
    cast = details.get("cast") or credits.get("cast") or []
    names = []
    for member in cast[:MAX_CAST]:
        name = member.get("name") if isinstance(member, Mapping) else member
        if name:
            names.append(str(name))
    return names


def convert_tmdb_movie(tmdb_movie: Mapping[str, Any], full_details: Optional[Mapping[str, Any]] = None) -> Movie:
    """Convert a TMDB list entry (and optionally its full details) into a Movie.

    ``genre_ids`` are always carried over because the content filters depend
    on them. Detail payloads only have a ``genres`` list, so ids are rebuilt
    from it in that case.
    """
    details = full_details or tmdb_movie

    genre_ids = (
        details.get("genre_ids")
        or [g["id"] for g in details.get("genres") or [] if "id" in g]
        or tmdb_movie.get("genre_ids")
        or []
    )
    release_date = tmdb_movie.get("release_date") or details.get("release_date") or None
    credits = details.get("credits") or {}
    director = (
        details.get("director")
        or get_director_from_crew(details.get("crew"))
        or get_director_from_crew(credits.get("crew"))
        or get_director_from_crew(tmdb_movie.get("crew"))
    )
    vote_average = details.get("vote_average") or tmdb_movie.get("vote_average") or 0

    return Movie(
        id=f"{TMDB_PREFIX}{tmdb_movie['id']}",
        title=tmdb_movie.get("title") or tmdb_movie.get("original_title") or "",
        year=parse_year(release_date),
        release_date=release_date,
        genre=_primary_genre(details),
        genres=_all_genres(details),
        genre_ids=[int(genre_id) for genre_id in genre_ids],
        director=director or None,
        cast=_cast_names(details),
        rating=round(parse_rating(vote_average), 1),
        original_language=tmdb_movie.get("original_language") or details.get("original_language"),
        source_origin="external",
        tmdb_id=int(tmdb_movie["id"]),
        popularity=parse_rating(tmdb_movie.get("popularity") or details.get("popularity")),
        poster=get_image_url(tmdb_movie.get("poster_path")),
        summary=tmdb_movie.get("overview") or details.get("overview") or "",
    )


def normalize_local_movie(local_movie: Mapping[str, Any]) -> Movie:
    """Convert a local inventory record into the canonical Movie shape."""
    raw_id = str(local_movie.get("id"))
    year = parse_year(local_movie.get("year"))
    genre = local_movie.get("genre") or UNKNOWN_GENRE
    poster = local_movie.get("poster")
    rating = local_movie.get("imdb")
    if rating in (None, ""):
        rating = local_movie.get("rating", local_movie.get("vote_average"))

    return Movie(
        id=raw_id if raw_id.startswith(LOCAL_PREFIX) else f"{LOCAL_PREFIX}{raw_id}",
        title=local_movie.get("title") or "",
        year=year,
        release_date=f"{year}-01-01" if year else None,
        genre=genre,
        genres=[genre] if genre != UNKNOWN_GENRE else [],
        genre_ids=genre_ids_for(genre),
        director=local_movie.get("director") or None,
        cast=[str(actor) for actor in local_movie.get("cast") or []],
        rating=round(parse_rating(rating), 1),
        source_origin="local",
        local_id=raw_id[len(LOCAL_PREFIX):] if raw_id.startswith(LOCAL_PREFIX) else raw_id,
        poster=poster if isinstance(poster, str) else None,
        summary=local_movie.get("summary") or "",
    )


def coerce_movie(record: Union[Movie, Mapping[str, Any]]) -> Movie:
    """Accept a Movie, a serialized Movie or a local inventory record."""
    if isinstance(record, Movie):
        return record
    if "source_origin" in record:
        return Movie.model_validate(record)
    return normalize_local_movie(record)


def identity_keys(movie: Movie) -> Set[str]:
    """Every id under which a movie may be referenced by callers."""
    keys = {movie.id}
    if movie.local_id:
        keys.add(movie.local_id)
    if movie.tmdb_id is not None:
        keys.add(str(movie.tmdb_id))
        keys.add(f"{TMDB_PREFIX}{movie.tmdb_id}")
    return keys


def entry_id(entry: Union[str, int, Movie, Mapping[str, Any]]) -> Optional[str]:
    """Id of a watched-history or favorites entry, which may be a bare id."""
    if isinstance(entry, Movie):
        return entry.id
    if isinstance(entry, Mapping):
        value = entry.get("id") or entry.get("tmdb_id") or entry.get("tmdbId")
        return str(value) if value is not None else None
    if entry is None:
        return None
    return str(entry)


def build_lookup_index(catalog: Iterable[Union[Movie, Mapping[str, Any]]]) -> Dict[str, Movie]:
    """Index a flat catalog by every identity key (first occurrence wins)."""
    index: Dict[str, Movie] = {}
    for record in catalog:
        try:
            movie = coerce_movie(record)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Skipping malformed catalog record: {e}")
            continue
        for key in identity_keys(movie):
            index.setdefault(key, movie)
    return index


def resolve_entry(entry: Any, index: Mapping[str, Movie]) -> Optional[Movie]:
    """Resolve a watched entry: embedded records are used as-is, ids are looked up."""
    if isinstance(entry, Movie):
        return entry
    if isinstance(entry, Mapping) and entry.get("title"):
        return coerce_movie(entry)
    key = entry_id(entry)
    return index.get(key) if key else None


def is_movie_released(movie: Movie, today: Optional[date] = None) -> bool:
    """A movie is released if its date is today or earlier.

    Without a full date the year decides; with neither the movie is
    treated as released.
    """
    today = today or date.today()
    if movie.release_date:
        try:
            return date.fromisoformat(movie.release_date[:10]) <= today
        except ValueError:
            logger.debug(f"Unparseable release date '{movie.release_date}' for '{movie.title}'")
    if movie.year is not None:
        return movie.year <= today.year
    return True


def merge_local_and_api_results(local_movies: Iterable[Movie], api_movies: Iterable[Movie]) -> List[Movie]:
    """Merge by normalized title; the first occurrence wins, local first."""
    merged: Dict[str, Movie] = {}
    for movie in list(local_movies) + list(api_movies):
        key = normalize_title(movie.title)
        if key not in merged:
            merged[key] = movie
    return list(merged.values())
