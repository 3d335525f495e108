import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query

from .core.config import settings
from .schemas import (
    Movie,
    RatingRequest,
    RecommendationRequest,
    RecommendationResponse,
    RecommendedMovie,
    UserData,
    UserDataUpdate,
    WatchProviders,
)
from .services.recommendation_service import RecommendationService, get_recommendation_service
from .services.scoring import ScoredCandidate
from .services.tmdb_service import TmdbService, get_tmdb_service
from .services.user_data_service import UserDataService, get_user_data_service

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events."""
    logger.info("MovieMate API starting up.")
    yield
    await get_tmdb_service().aclose()
    logger.info("Application shutdown.")


app = FastAPI(
    lifespan=lifespan,
    title="MovieMate API",
    description="Content-based movie recommendations over a local inventory and the TMDB catalog.",
    version="0.1.0",
)


def to_recommended_movie(candidate: ScoredCandidate) -> RecommendedMovie:
    return RecommendedMovie(
        **candidate.movie.model_dump(),
        recommendation_score=candidate.score,
        recommendation_rating=candidate.matched_rating,
        match_count=candidate.match_count,
        score_breakdown=candidate.breakdown.as_dict(),
    )


def _response(candidates: List[ScoredCandidate]) -> RecommendationResponse:
    if not candidates:
        return RecommendationResponse(recommendations=[], message="No recommendations found.")
    return RecommendationResponse(
        recommendations=[to_recommended_movie(c) for c in candidates],
        message=f"Generated {len(candidates)} recommendations.",
    )


@app.get("/")
async def read_root():
    return {"message": "Welcome to the MovieMate API!"}


@app.get("/search", response_model=List[Movie])
async def search_movies(
    genre: Optional[str] = None,
    title: Optional[str] = None,
    director: Optional[str] = None,
    actor: Optional[str] = None,
    sort_by: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    min_year: Optional[int] = None,
    max_year: Optional[int] = None,
    min_rating: Optional[float] = None,
    tmdb_service: TmdbService = Depends(get_tmdb_service),
):
    """
    Search the TMDB catalog. The first of title, director, actor and genre
    that is given decides the query; genre "All Movies" browses top rated.
    """
    if not any((genre, title, director, actor)):
        raise HTTPException(status_code=400, detail="Provide one of genre, title, director or actor.")
    return await tmdb_service.search_catalog(
        genre=genre,
        title=title,
        director=director,
        actor=actor,
        sort_by=sort_by,
        page=page,
        limit=limit,
        min_year=min_year,
        max_year=max_year,
        min_rating=min_rating,
    )


@app.get("/movies/{movie_id}", response_model=Movie)
async def get_movie(movie_id: str, tmdb_service: TmdbService = Depends(get_tmdb_service)):
    movie = await tmdb_service.get_details(movie_id)
    if movie is None:
        raise HTTPException(status_code=404, detail=f"Movie {movie_id} not found.")
    return movie


@app.get("/movies/{movie_id}/providers", response_model=WatchProviders)
async def get_movie_providers(movie_id: str, tmdb_service: TmdbService = Depends(get_tmdb_service)):
    providers = await tmdb_service.get_watch_providers(movie_id)
    if providers is None:
        raise HTTPException(status_code=404, detail=f"No watch providers for {movie_id}.")
    return providers


@app.get("/onboarding/movies", response_model=List[Movie])
async def get_onboarding_movies(tmdb_service: TmdbService = Depends(get_tmdb_service)):
    return await tmdb_service.get_curated_seed_set()


@app.post("/recommendations", response_model=RecommendationResponse)
async def get_recommendations(
    request: RecommendationRequest,
    recommendation_service: RecommendationService = Depends(get_recommendation_service),
):
    """
    Rank the given inventory (and, with use_external, TMDB candidates)
    against the favorites and watched history in the request body.
    """
    candidates = await recommendation_service.get_recommendations(
        request.inventory,
        request.favorites,
        request.use_external,
        request.limit,
        request.watched,
        request.lookup,
        request.ratings,
    )
    return _response(candidates)


@app.get("/users/{user_id}/data", response_model=UserData)
async def get_user_data(user_id: str, user_data_service: UserDataService = Depends(get_user_data_service)):
    return user_data_service.load(user_id)


@app.patch("/users/{user_id}/data", response_model=UserData)
async def update_user_data(
    user_id: str,
    update: UserDataUpdate,
    user_data_service: UserDataService = Depends(get_user_data_service),
):
    try:
        saved = user_data_service.save(user_id, update)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not saved:
        raise HTTPException(status_code=500, detail="Failed to save user data.")
    return user_data_service.load(user_id)


@app.delete("/users/{user_id}/data")
async def clear_user_data(user_id: str, user_data_service: UserDataService = Depends(get_user_data_service)):
    if not user_data_service.clear_user_data(user_id):
        raise HTTPException(status_code=500, detail="Failed to clear user data.")
    return {"message": f"Cleared data for user {user_id}."}


def _saved(saved: bool, action: str):
    if not saved:
        raise HTTPException(status_code=500, detail=f"Failed to {action}.")


@app.put("/users/{user_id}/favorites", response_model=UserData)
async def set_favorites(
    user_id: str,
    favorites: List[Dict[str, Any]],
    user_data_service: UserDataService = Depends(get_user_data_service),
):
    _saved(user_data_service.set_favorites(user_id, favorites), "save favorites")
    return user_data_service.load(user_id)


@app.get("/users/{user_id}/watched/{movie_id}")
async def is_watched(user_id: str, movie_id: str, user_data_service: UserDataService = Depends(get_user_data_service)):
    return {"movie_id": movie_id, "watched": user_data_service.is_watched(user_id, movie_id)}


@app.put("/users/{user_id}/watched/{movie_id}")
async def mark_watched(user_id: str, movie_id: str, user_data_service: UserDataService = Depends(get_user_data_service)):
    _saved(user_data_service.set_watched(user_id, movie_id), "mark movie as watched")
    return {"movie_id": movie_id, "watched": True}


@app.delete("/users/{user_id}/watched/{movie_id}")
async def unmark_watched(user_id: str, movie_id: str, user_data_service: UserDataService = Depends(get_user_data_service)):
    _saved(user_data_service.remove_watched(user_id, movie_id), "remove movie from watched")
    return {"movie_id": movie_id, "watched": False}


@app.put("/users/{user_id}/want-to-watch/{movie_id}")
async def add_want_to_watch(
    user_id: str,
    movie_id: str,
    user_data_service: UserDataService = Depends(get_user_data_service),
):
    _saved(user_data_service.add_want_to_watch(user_id, movie_id), "add movie to want to watch")
    return {"movie_id": movie_id, "want_to_watch": True}


@app.delete("/users/{user_id}/want-to-watch/{movie_id}")
async def remove_want_to_watch(
    user_id: str,
    movie_id: str,
    user_data_service: UserDataService = Depends(get_user_data_service),
):
    _saved(user_data_service.remove_want_to_watch(user_id, movie_id), "remove movie from want to watch")
    return {"movie_id": movie_id, "want_to_watch": False}


@app.get("/users/{user_id}/onboarding")
async def get_onboarding_status(user_id: str, user_data_service: UserDataService = Depends(get_user_data_service)):
    return {"first_time_user": user_data_service.is_first_time_user(user_id)}


@app.post("/users/{user_id}/onboarding/complete")
async def complete_onboarding(user_id: str, user_data_service: UserDataService = Depends(get_user_data_service)):
    _saved(user_data_service.set_onboarding_complete(user_id), "complete onboarding")
    return {"first_time_user": False}


@app.get("/users/{user_id}/ratings/{movie_id}")
async def get_rating(user_id: str, movie_id: str, user_data_service: UserDataService = Depends(get_user_data_service)):
    rating = user_data_service.get_rating(user_id, movie_id)
    if rating is None:
        raise HTTPException(status_code=404, detail=f"No rating for {movie_id}.")
    return {"movie_id": movie_id, "rating": rating}


@app.put("/users/{user_id}/ratings/{movie_id}")
async def rate_movie(
    user_id: str,
    movie_id: str,
    request: RatingRequest,
    user_data_service: UserDataService = Depends(get_user_data_service),
):
    try:
        saved = user_data_service.set_rating(user_id, movie_id, request.rating)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not saved:
        raise HTTPException(status_code=500, detail="Failed to save rating.")
    return {"movie_id": movie_id, "rating": request.rating}


@app.get("/users/{user_id}/recommendations", response_model=RecommendationResponse)
async def get_user_recommendations(
    user_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    recommendation_service: RecommendationService = Depends(get_recommendation_service),
):
    """Recommendations from the stored favorites, watched history and ratings of a user."""
    candidates = await recommendation_service.recommend_for_user(user_id, use_external=True, limit=limit)
    return _response(candidates)
