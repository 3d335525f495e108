from datetime import date

from moviemate.schemas import Movie
from moviemate.services.movie_format import (
    build_lookup_index,
    convert_tmdb_movie,
    get_director_from_crew,
    identity_keys,
    is_movie_released,
    merge_local_and_api_results,
    normalize_local_movie,
    normalize_string,
    resolve_entry,
)

TMDB_LIST_ENTRY = {
    "id": 27205,
    "title": "Inception",
    "release_date": "2010-07-15",
    "genre_ids": [28, 878, 12],
    "vote_average": 8.369,
    "original_language": "en",
    "popularity": 83.9,
    "poster_path": "/inception.jpg",
    "overview": "A thief who steals corporate secrets.",
}


def test_normalize_string_strips_punctuation_and_case():
    assert normalize_string("  Christopher Nolan! ") == "christopher nolan"
    assert normalize_string("Sci-Fi") == "scifi"
    assert normalize_string(None) == ""


def test_convert_tmdb_movie_list_entry():
    # Act
    movie = convert_tmdb_movie(TMDB_LIST_ENTRY)

    # Assert
    assert movie.id == "tmdb_27205"
    assert movie.tmdb_id == 27205
    assert movie.source_origin == "external"
    assert movie.year == 2010
    assert movie.genre == "Action/Adventure"
    assert movie.genres == ["Action/Adventure", "Science Fiction"]
    assert movie.genre_ids == [28, 878, 12]
    assert movie.rating == 8.4
    assert movie.poster.endswith("/w500/inception.jpg")


def test_convert_tmdb_movie_with_details_rebuilds_genre_ids_and_credits():
    # Arrange
    details = {
        **TMDB_LIST_ENTRY,
        "genre_ids": None,
        "genres": [{"id": 878, "name": "Science Fiction"}, {"id": 28, "name": "Action"}],
        "credits": {
            "cast": [{"name": f"Actor {i}"} for i in range(8)],
            "crew": [{"job": "Producer", "name": "Emma Thomas"}, {"job": "Director", "name": "Christopher Nolan"}],
        },
    }

    # Act
    movie = convert_tmdb_movie(details, details)

    # Assert
    assert movie.genre_ids == [878, 28]
    assert movie.genre == "Science Fiction"
    assert movie.director == "Christopher Nolan"
    assert len(movie.cast) == 5


def test_get_director_from_crew_is_case_insensitive():
    assert get_director_from_crew([{"job": "DIRECTOR", "name": "Greta Gerwig"}]) == "Greta Gerwig"
    assert get_director_from_crew([]) is None


def test_normalize_local_movie():
    # Arrange
    record = {
        "id": 7,
        "title": "Heat",
        "year": "1995",
        "genre": "Crime",
        "director": "Michael Mann",
        "cast": ["Al Pacino", "Robert De Niro"],
        "imdb": "8.3",
    }

    # Act
    movie = normalize_local_movie(record)

    # Assert
    assert movie.id == "local_7"
    assert movie.local_id == "7"
    assert movie.source_origin == "local"
    assert movie.release_date == "1995-01-01"
    assert movie.genre_ids == [80]
    assert movie.rating == 8.3


def test_identity_keys_and_lookup_resolution():
    # Arrange
    external = convert_tmdb_movie(TMDB_LIST_ENTRY)
    index = build_lookup_index([external, {"id": 7, "title": "Heat", "genre": "Crime"}])

    # Act & Assert
    assert identity_keys(external) == {"tmdb_27205", "27205"}
    assert resolve_entry("27205", index).title == "Inception"
    assert resolve_entry(27205, index).title == "Inception"
    assert resolve_entry("local_7", index).title == "Heat"
    assert resolve_entry({"id": "7"}, index).title == "Heat"
    assert resolve_entry("missing", index) is None


def test_is_movie_released():
    today = date(2024, 6, 1)

    assert is_movie_released(Movie(id="a", title="A", release_date="2024-06-01"), today)
    assert not is_movie_released(Movie(id="b", title="B", release_date="2024-06-02"), today)
    assert not is_movie_released(Movie(id="c", title="C", year=2025), today)
    assert is_movie_released(Movie(id="d", title="D"), today)


def test_merge_prefers_local_on_equal_titles():
    # Arrange
    local = normalize_local_movie({"id": 1, "title": "Inception", "genre": "Action/Adventure"})
    external = convert_tmdb_movie(TMDB_LIST_ENTRY)
    other = convert_tmdb_movie({**TMDB_LIST_ENTRY, "id": 1, "title": "Memento"})

    # Act
    merged = merge_local_and_api_results([local], [external, other])

    # Assert
    assert [m.id for m in merged] == ["local_1", "tmdb_1"]
