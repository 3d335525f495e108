"""Recommendation scoring.

``score_movie`` is a pure function of a candidate and a preference profile.
Scores are additive and not normalized; a candidate that matches no genre,
director or actor scores exactly 0.
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional

from ..schemas import Movie
from .movie_format import normalize_string
from .preference_service import PreferenceProfile

HIGH_RATING = 8.0
GENRE_HIGH_POINTS = 100
GENRE_POINTS = 50
DIRECTOR_POINTS = 30
ACTOR_POINTS = 20
GENRE_WEIGHT_CAP = 2.0
PERSON_WEIGHT_CAP = 1.5
MULTI_MATCH_BONUS = 25
FULL_MATCH_BONUS = 50
CLOSE_RATING_BONUS = 15
NEAR_RATING_BONUS = 10
RECENT_BONUS = 5
DECADE_BONUS = 3


@dataclass(frozen=True)
class ScoreBreakdown:
    genre_high_score: bool = False
    genre_match: bool = False
    director_match: bool = False
    actor_match: bool = False
    multiple_matches: bool = False

    def as_dict(self) -> Dict[str, bool]:
        return {
            "genre_high_score": self.genre_high_score,
            "genre_match": self.genre_match,
            "director_match": self.director_match,
            "actor_match": self.actor_match,
            "multiple_matches": self.multiple_matches,
        }


@dataclass(frozen=True)
class ScoredCandidate:
    movie: Movie
    score: float
    matched_rating: float
    match_count: int
    breakdown: ScoreBreakdown


def _matched_actor(movie: Movie, profile: PreferenceProfile) -> Optional[str]:
    """First cast member (raw name) found among the profile's actors."""
    if not profile.actors:
        return None
    for actor in movie.cast:
        if normalize_string(actor) in profile.actors:
            return actor
    return None


def _recency_bonus(year: Optional[int], current_year: int) -> int:
    if year is None:
        return 0
    years_ago = current_year - year
    if years_ago <= 5:
        return RECENT_BONUS
    if years_ago <= 10:
        return DECADE_BONUS
    return 0


def score_movie(movie: Movie, profile: PreferenceProfile, today: Optional[date] = None) -> ScoredCandidate:
    """Score one candidate against a profile."""
    rating = movie.rating
    genre_match = bool(movie.genre) and normalize_string(movie.genre) in profile.genres
    director_match = bool(movie.director) and normalize_string(movie.director) in profile.directors
    matched_actor = _matched_actor(movie, profile)
    actor_match = matched_actor is not None

    score = 0.0
    match_count = 0

    if genre_match:
        match_count += 1
        weight = min(profile.genre_frequency.get(movie.genre, 1), GENRE_WEIGHT_CAP)
        score += (GENRE_HIGH_POINTS if rating >= HIGH_RATING else GENRE_POINTS) * weight

    if director_match:
        match_count += 1
        weight = min(profile.director_frequency.get(movie.director, 1), PERSON_WEIGHT_CAP)
        score += DIRECTOR_POINTS * weight

    if actor_match:
        match_count += 1
        weight = min(profile.actor_frequency.get(matched_actor, 1), PERSON_WEIGHT_CAP)
        score += ACTOR_POINTS * weight

    breakdown = ScoreBreakdown(
        genre_high_score=genre_match and rating >= HIGH_RATING,
        genre_match=genre_match and rating < HIGH_RATING,
        director_match=director_match,
        actor_match=actor_match,
        multiple_matches=match_count >= 2,
    )
    if match_count == 0:
        return ScoredCandidate(movie, 0.0, rating, 0, breakdown)

    if match_count >= 2:
        score += MULTI_MATCH_BONUS
    if match_count >= 3:
        score += FULL_MATCH_BONUS

    if profile.user_avg_rating is not None:
        rating_diff = abs(rating - profile.user_avg_rating)
        if rating_diff <= 0.5:
            score += CLOSE_RATING_BONUS
        elif rating_diff <= 1.0:
            score += NEAR_RATING_BONUS

    score += _recency_bonus(movie.year, (today or date.today()).year)

    return ScoredCandidate(movie, score, rating, match_count, breakdown)
