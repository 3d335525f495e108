import time
from collections import Counter
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from moviemate.schemas import Movie, UserData
from moviemate.services.preference_service import PreferenceExtractor
from moviemate.services.recommendation_service import (
    RecommendationService,
    apply_diversity,
    rank_candidates,
)
from moviemate.services.scoring import ScoreBreakdown, ScoredCandidate
from moviemate.services.tmdb_service import TmdbService
from moviemate.services.user_data_service import UserDataService

TODAY = date(2024, 6, 1)


def local(movie_id, title, genre="Crime", director=None, cast=(), rating=8.0, year=2000):
    return {
        "id": movie_id,
        "title": title,
        "genre": genre,
        "director": director,
        "cast": list(cast),
        "imdb": rating,
        "year": year,
    }


def external(tmdb_id, title, genre="Crime", director=None, cast=(), rating=8.0, year=2010):
    return Movie(
        id=f"tmdb_{tmdb_id}",
        title=title,
        genre=genre,
        director=director,
        cast=list(cast),
        rating=rating,
        year=year,
        source_origin="external",
        tmdb_id=tmdb_id,
    )


HEAT = local(1, "Heat", "Crime", "Michael Mann", ["Al Pacino", "Robert De Niro"])


@pytest.fixture
def tmdb_service():
    service = MagicMock(spec=TmdbService)
    service.search_by_genre = AsyncMock(return_value=[])
    service.search_by_director = AsyncMock(return_value=[])
    service.search_by_actor = AsyncMock(return_value=[])
    return service


@pytest.fixture
def service(tmdb_service):
    return RecommendationService(tmdb_service=tmdb_service, preference_extractor=PreferenceExtractor(), today=lambda: TODAY)


def candidate(title, score, rating=8.0, director=None, cast=()):
    movie = Movie(id=f"local_{title}", title=title, director=director, cast=list(cast), rating=rating, source_origin="local")
    return ScoredCandidate(movie, score, rating, 1, ScoreBreakdown(genre_match=True))


@pytest.mark.asyncio
async def test_no_history_returns_empty(service, tmdb_service):
    # Act
    result = await service.get_recommendations([local(2, "Thief")], favorites=[], use_external=True)

    # Assert
    assert result == []
    tmdb_service.search_by_genre.assert_not_awaited()


@pytest.mark.asyncio
async def test_favorites_and_watched_are_excluded_by_id_and_title(service):
    # Arrange
    inventory = [
        HEAT,
        local(5, "  HEAT ", director="Someone Else"),
        local(6, "Thief", director="Michael Mann"),
        local(7, "Manhunter", director="Michael Mann"),
        local(8, "Public Enemies", director="Michael Mann"),
    ]

    # Act
    result = await service.get_recommendations(
        inventory, favorites=[HEAT], watched=["6"], lookup=inventory, limit=10
    )

    # Assert
    assert sorted(c.movie.title for c in result) == ["Manhunter", "Public Enemies"]


@pytest.mark.asyncio
async def test_diversity_caps_directors_and_actors(service):
    # Arrange
    mann_movies = [local(10 + i, f"Mann {i}", director="Michael Mann", rating=8.0 + i / 100) for i in range(6)]
    pacino_movies = [
        local(30 + i, f"Pacino {i}", director=f"Director {i}", cast=["Al Pacino"], rating=7.0) for i in range(5)
    ]

    # Act
    result = await service.get_recommendations(mann_movies + pacino_movies, favorites=[HEAT], limit=20)

    # Assert
    directors = Counter(c.movie.director for c in result if c.movie.director)
    actors = Counter(actor for c in result for actor in c.movie.cast)
    assert directors["Michael Mann"] == 3
    assert actors["Al Pacino"] == 2
    assert max(directors.values()) <= 3
    assert max(actors.values()) <= 2


@pytest.mark.asyncio
async def test_results_are_ranked_by_score(service):
    inventory = [
        local(2, "Genre Only", rating=7.0),
        local(3, "Genre And Director", director="Michael Mann", rating=7.0),
        local(4, "Unrelated", genre="Comedy"),
    ]

    result = await service.get_recommendations(inventory, favorites=[HEAT])

    assert [c.movie.title for c in result] == ["Genre And Director", "Genre Only"]
    assert all(c.score > 0 for c in result)


def test_rank_candidates_breaks_ties_by_rating():
    ranked = rank_candidates([candidate("a", 100, 7.0), candidate("b", 100, 9.0), candidate("c", 120, 6.0)])

    assert [c.movie.title for c in ranked] == ["c", "b", "a"]


def test_apply_diversity_earlier_candidates_take_the_quota():
    ranked = [candidate(str(i), 100 - i, director="Same") for i in range(5)]

    kept = apply_diversity(ranked)

    assert [c.movie.title for c in kept] == ["0", "1", "2"]


@pytest.mark.asyncio
async def test_large_inventory_returns_exactly_limit_quickly(service):
    # Arrange
    inventory = [local(100 + i, f"Crime Movie {i}", rating=7.0 + (i % 20) / 10) for i in range(5000)]

    # Act
    started = time.perf_counter()
    result = await service.get_recommendations(inventory, favorites=[HEAT], limit=20)
    elapsed = time.perf_counter() - started

    # Assert
    assert len(result) == 20
    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_single_drama_favorite_over_synthetic_pool(service):
    # Arrange
    favorites = [{"id": 1, "genre": "Drama", "imdb": "8.5"}]
    pool = [{"id": i, "title": f"Drama {i}", "genre": "Drama", "imdb": "8.0"} for i in range(2, 5002)]

    # Act
    started = time.perf_counter()
    result = await service.get_recommendations(pool, favorites=favorites, use_external=False, limit=20)
    elapsed = time.perf_counter() - started

    # Assert
    assert len(result) == 20
    assert all(c.score > 0 for c in result)
    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_external_fan_out_merges_and_tolerates_failed_queries(service, tmdb_service):
    # Arrange
    tmdb_service.search_by_genre.return_value = [external(100, "Thief", rating=7.9), external(101, "Heat")]
    tmdb_service.search_by_director.side_effect = RuntimeError("TMDB unavailable")
    tmdb_service.search_by_actor.return_value = [external(102, "Collateral", cast=["Robert De Niro"])]
    inventory = [local(2, "Collateral", director="Michael Mann")]

    # Act
    result = await service.get_recommendations(inventory, favorites=[HEAT], use_external=True)

    # Assert
    by_title = {c.movie.title: c.movie for c in result}
    assert set(by_title) == {"Thief", "Collateral"}
    assert by_title["Collateral"].source_origin == "local"
    tmdb_service.search_by_genre.assert_awaited_once_with("Crime", min_rating=7.5)
    tmdb_service.search_by_director.assert_awaited_once_with("Michael Mann")
    assert tmdb_service.search_by_actor.await_count == 2


@pytest.mark.asyncio
async def test_external_failure_falls_back_to_local(mocker, service):
    # Arrange
    mocker.patch.object(service, "fetch_external_candidates", new_callable=AsyncMock, side_effect=RuntimeError("boom"))

    # Act
    result = await service.get_recommendations([local(2, "Thief")], favorites=[HEAT], use_external=True)

    # Assert
    assert [c.movie.title for c in result] == ["Thief"]


@pytest.mark.asyncio
async def test_watched_external_movie_is_excluded(service, tmdb_service):
    tmdb_service.search_by_genre.return_value = [external(100, "Thief"), external(101, "Manhunter")]

    result = await service.get_recommendations([], favorites=[HEAT], use_external=True, watched=["tmdb_100"])

    assert [c.movie.title for c in result] == ["Manhunter"]


@pytest.mark.asyncio
async def test_local_favorite_does_not_exclude_external_movie_with_same_number(service, tmdb_service):
    # Arrange
    tmdb_service.search_by_genre.return_value = [external(550, "Fight Club")]
    favorites = [{"id": 550, "title": "Heat", "genre": "Crime"}]

    # Act
    result = await service.get_recommendations([], favorites=favorites, use_external=True)

    # Assert
    assert [c.movie.title for c in result] == ["Fight Club"]


@pytest.mark.asyncio
async def test_watched_local_movie_does_not_exclude_external_movie_with_same_number(service, tmdb_service):
    # Arrange
    tmdb_service.search_by_genre.return_value = [external(550, "Fight Club"), external(551, "Thief")]
    inventory = [local(550, "Ronin")]

    # Act
    result = await service.get_recommendations(
        inventory, favorites=[HEAT], use_external=True, watched=["550", "tmdb_551"], lookup=inventory
    )

    # Assert
    assert [c.movie.title for c in result] == ["Fight Club"]


@pytest.mark.asyncio
async def test_external_favorite_excludes_same_tmdb_movie(service, tmdb_service):
    tmdb_service.search_by_genre.return_value = [external(550, "Fight Club (Remastered)"), external(552, "Thief")]
    favorite = external(550, "Fight Club", director="David Fincher").model_dump()

    result = await service.get_recommendations([], favorites=[favorite], use_external=True)

    assert [c.movie.title for c in result] == ["Thief"]


@pytest.mark.asyncio
async def test_get_recommendations_never_raises(mocker, service):
    mocker.patch.object(service, "assemble", new_callable=AsyncMock, side_effect=ValueError("bad input"))

    assert await service.get_recommendations([local(2, "Thief")], favorites=[HEAT]) == []


@pytest.mark.asyncio
async def test_recommend_for_user_uses_stored_history(tmdb_service):
    # Arrange
    user_data_service = MagicMock(spec=UserDataService)
    user_data_service.load.return_value = UserData(favorites=[HEAT], watched=["3"])
    service = RecommendationService(tmdb_service, PreferenceExtractor(), user_data_service, today=lambda: TODAY)
    inventory = [local(2, "Thief"), local(3, "Manhunter")]

    # Act
    result = await service.recommend_for_user("user-1", inventory, use_external=False)

    # Assert
    assert [c.movie.title for c in result] == ["Thief"]
    user_data_service.load.assert_called_once_with("user-1")


@pytest.mark.asyncio
async def test_verify_ranking_reports_checks(service):
    inventory = [local(2, "Thief", director="Michael Mann", rating=8.5), local(3, "Ronin", rating=7.0)]
    result = await service.get_recommendations(inventory, favorites=[HEAT])
    profile = service.preference_extractor.extract([HEAT])

    checks = service.verify_ranking(result, profile)

    assert checks == {
        "has_genre_high_score_movies": True,
        "correct_priority_order": True,
        "top_movie_has_score": True,
    }
