from pydantic import BaseModel, ConfigDict, Field
from typing import List, Dict, Any, Optional, Union, Literal

SourceOrigin = Literal["local", "external"]
WatchedEntry = Union[str, int, Dict[str, Any]]


class Movie(BaseModel):
    """Canonical movie record shared by local inventory and TMDB results."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    title: str
    year: Optional[int] = None
    release_date: Optional[str] = None
    genre: str = "Unknown"
    genres: List[str] = Field(default_factory=list)
    genre_ids: List[int] = Field(default_factory=list)
    director: Optional[str] = None
    cast: List[str] = Field(default_factory=list)
    rating: float = 0.0
    original_language: Optional[str] = None
    source_origin: SourceOrigin = "external"
    tmdb_id: Optional[int] = None
    local_id: Optional[str] = None
    popularity: float = 0.0
    poster: Optional[str] = None
    summary: str = ""


class RecommendedMovie(Movie):
    recommendation_score: float
    recommendation_rating: float
    match_count: int
    score_breakdown: Dict[str, bool]


class WatchProvider(BaseModel):
    provider_id: Optional[int] = None
    provider_name: str
    logo_path: Optional[str] = None


class WatchProviders(BaseModel):
    """Allowed streaming offers for a movie, bucketed by offer type."""
    flatrate: List[WatchProvider] = Field(default_factory=list)
    rent: List[WatchProvider] = Field(default_factory=list)
    buy: List[WatchProvider] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.flatrate or self.rent or self.buy)


class RecommendationRequest(BaseModel):
    inventory: List[Dict[str, Any]] = Field(default_factory=list)
    favorites: List[Dict[str, Any]] = Field(default_factory=list)
    use_external: bool = False
    limit: int = Field(default=20, ge=1, le=100)
    watched: List[WatchedEntry] = Field(default_factory=list)
    lookup: List[Dict[str, Any]] = Field(default_factory=list)
    ratings: Dict[str, float] = Field(default_factory=dict)


class RecommendationResponse(BaseModel):
    recommendations: List[RecommendedMovie]
    message: str = ""


class UserData(BaseModel):
    """Per-user history held by the persistence collaborator."""
    favorites: List[Dict[str, Any]] = Field(default_factory=list)
    watched: List[str] = Field(default_factory=list)
    ratings: Dict[str, float] = Field(default_factory=dict)
    want_to_watch: List[str] = Field(default_factory=list)


class UserDataUpdate(BaseModel):
    favorites: Optional[List[Dict[str, Any]]] = None
    watched: Optional[List[str]] = None
    ratings: Optional[Dict[str, float]] = None
    want_to_watch: Optional[List[str]] = None


class RatingRequest(BaseModel):
    rating: float
