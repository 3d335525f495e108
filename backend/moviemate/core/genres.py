"""Genre tables shared by the catalog client and the recommendation engine.

The product shows a small set of display genres. Several of them are merged
categories that map to more than one TMDB genre id.
"""

from typing import Dict, List, Optional

UNKNOWN_GENRE = "Unknown"
ALL_MOVIES = "All Movies"

# Display genre -> TMDB genre ids
GENRE_MAP: Dict[str, Optional[List[int]]] = {
    "Science Fiction": [878, 14],   # Science Fiction + Fantasy
    "Comedy": [35],
    "Action/Adventure": [28, 12],
    "Animation": [16],
    "Crime": [80],
    "Drama": [18, 10749],           # Drama + Romance
    "Mystery": [9648, 53],          # Mystery + Thriller
    "Documentary": [99],
    "Horror": [27],
    ALL_MOVIES: None,
}

DISPLAY_GENRES: List[str] = [name for name, ids in GENRE_MAP.items() if ids]

# TMDB genre id -> display genre
TMDB_GENRE_TO_DISPLAY: Dict[int, str] = {
    878: "Science Fiction",
    14: "Science Fiction",
    35: "Comedy",
    28: "Action/Adventure",
    12: "Action/Adventure",
    16: "Animation",
    80: "Crime",
    18: "Drama",
    10749: "Drama",
    9648: "Mystery",
    53: "Mystery",
    99: "Documentary",
    27: "Horror",
}

# TMDB English genre name -> display genre
TMDB_GENRE_NAME_TO_DISPLAY: Dict[str, str] = {
    "Science Fiction": "Science Fiction",
    "Fantasy": "Science Fiction",
    "Comedy": "Comedy",
    "Action": "Action/Adventure",
    "Adventure": "Action/Adventure",
    "Animation": "Animation",
    "Crime": "Crime",
    "Drama": "Drama",
    "Romance": "Drama",
    "Mystery": "Mystery",
    "Thriller": "Mystery",
    "Documentary": "Documentary",
    "Biography": "Documentary",
    "Horror": "Horror",
}

# TMDB ids referenced by the content filters
ANIMATION = 16
COMEDY = 35
CRIME = 80
DOCUMENTARY = 99
DRAMA = 18
FAMILY = 10751
HORROR = 27
MUSIC = 10402
MYSTERY = 9648


def genre_ids_for(genre: Optional[str]) -> List[int]:
    """Return the TMDB ids of a display genre, or an empty list if unmapped."""
    if not genre:
        return []
    return list(GENRE_MAP.get(genre) or [])


def display_genre_for_id(genre_id: int) -> str:
    return TMDB_GENRE_TO_DISPLAY.get(genre_id, UNKNOWN_GENRE)


def display_genre_for_name(genre_name: str) -> str:
    # Unmapped provider names pass through unchanged
    return TMDB_GENRE_NAME_TO_DISPLAY.get(genre_name, genre_name)
