import json
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, inspect, text

from ..core.config import settings
from ..schemas import UserData, UserDataUpdate

logger = logging.getLogger(__name__)

FAVORITES = "favorites"
WATCHED = "watched"
RATINGS = "ratings"
WANT_TO_WATCH = "want_to_watch"
ONBOARDING_COMPLETE = "onboarding_complete"

MIN_USER_RATING = 0.5
MAX_USER_RATING = 5.0

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS user_data (
    user_id TEXT NOT NULL,
    data_key TEXT NOT NULL,
    data_value TEXT NOT NULL,
    PRIMARY KEY (user_id, data_key)
)
"""


def validate_rating(rating: float) -> float:
    """Ratings are 0.5 to 5 stars in half-star steps."""
    if isinstance(rating, bool) or not isinstance(rating, (int, float)):
        raise ValueError(f"Rating must be a number, got {rating!r}.")
    if not MIN_USER_RATING <= rating <= MAX_USER_RATING or (rating * 2) % 1:
        raise ValueError(f"Rating must be between {MIN_USER_RATING} and {MAX_USER_RATING} in steps of 0.5.")
    return float(rating)


class UserDataService:
    """Per-user key-value storage for favorites, watched history and ratings."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize the database service and create the engine."""
        self._db_engine = None
        try:
            self._db_engine = create_engine(database_url or settings.DATABASE_URL)
            logger.info("Database engine created for UserDataService.")
            self._ensure_table()
        except Exception as e:
            logger.error(f"Failed to create database engine: {e}")
            self._db_engine = None

    def _ensure_table(self):
        """Create the user_data table on first use."""
        if "user_data" in inspect(self._db_engine).get_table_names():
            return
        with self._db_engine.begin() as connection:
            connection.execute(text(CREATE_TABLE_SQL))
        logger.info("Created user_data table.")

    def _read(self, user_id: str) -> Dict[str, Any]:
        if not self._db_engine:
            logger.error("Database engine not available for user data.")
            return {}
        try:
            with self._db_engine.connect() as connection:
                rows = connection.execute(
                    text("SELECT data_key, data_value FROM user_data WHERE user_id = :user_id"),
                    {"user_id": user_id},
                ).fetchall()
        except Exception as e:
            logger.error(f"Error loading data for user {user_id}: {e}")
            return {}

        data = {}
        for data_key, data_value in rows:
            try:
                data[data_key] = json.loads(data_value)
            except ValueError:
                logger.warning(f"Discarding corrupt '{data_key}' entry for user {user_id}")
        return data

    def _write(self, user_id: str, values: Dict[str, Any]) -> bool:
        if not self._db_engine:
            logger.error("Database engine not available for user data.")
            return False
        try:
            with self._db_engine.begin() as connection:
                for data_key, value in values.items():
                    connection.execute(
                        text("DELETE FROM user_data WHERE user_id = :user_id AND data_key = :data_key"),
                        {"user_id": user_id, "data_key": data_key},
                    )
                    connection.execute(
                        text(
                            "INSERT INTO user_data (user_id, data_key, data_value) "
                            "VALUES (:user_id, :data_key, :data_value)"
                        ),
                        {"user_id": user_id, "data_key": data_key, "data_value": json.dumps(value)},
                    )
            return True
        except Exception as e:
            logger.error(f"Error saving data for user {user_id}: {e}")
            return False

    def load(self, user_id: str) -> UserData:
        """Load the stored history of a user; missing keys default to empty."""
        data = self._read(user_id)
        try:
            return UserData(
                favorites=data.get(FAVORITES) or [],
                watched=[str(movie_id) for movie_id in data.get(WATCHED) or []],
                ratings=data.get(RATINGS) or {},
                want_to_watch=[str(movie_id) for movie_id in data.get(WANT_TO_WATCH) or []],
            )
        except ValueError as e:
            logger.error(f"Stored data for user {user_id} is invalid: {e}")
            return UserData()

    def save(self, user_id: str, update: UserDataUpdate) -> bool:
        """Persist only the keys present in ``update``."""
        values = update.model_dump(exclude_none=True)
        if RATINGS in values:
            values[RATINGS] = {movie_id: validate_rating(r) for movie_id, r in values[RATINGS].items()}
        if not values:
            return True
        return self._write(user_id, values)

    # --- Watched ---

    def set_watched(self, user_id: str, movie_id: str) -> bool:
        watched = self.load(user_id).watched
        if str(movie_id) in watched:
            return True
        return self._write(user_id, {WATCHED: watched + [str(movie_id)]})

    def remove_watched(self, user_id: str, movie_id: str) -> bool:
        watched = [m for m in self.load(user_id).watched if m != str(movie_id)]
        return self._write(user_id, {WATCHED: watched})

    def is_watched(self, user_id: str, movie_id: str) -> bool:
        return str(movie_id) in self.load(user_id).watched

    # --- Ratings ---

    def set_rating(self, user_id: str, movie_id: str, rating: float) -> bool:
        ratings = self.load(user_id).ratings
        ratings[str(movie_id)] = validate_rating(rating)
        return self._write(user_id, {RATINGS: ratings})

    def get_rating(self, user_id: str, movie_id: str) -> Optional[float]:
        return self.load(user_id).ratings.get(str(movie_id))

    # --- Want to watch ---

    def add_want_to_watch(self, user_id: str, movie_id: str) -> bool:
        want_to_watch = self.load(user_id).want_to_watch
        if str(movie_id) in want_to_watch:
            return True
        return self._write(user_id, {WANT_TO_WATCH: want_to_watch + [str(movie_id)]})

    def remove_want_to_watch(self, user_id: str, movie_id: str) -> bool:
        want_to_watch = [m for m in self.load(user_id).want_to_watch if m != str(movie_id)]
        return self._write(user_id, {WANT_TO_WATCH: want_to_watch})

    # --- Favorites and onboarding ---

    def set_favorites(self, user_id: str, favorites: List[Dict[str, Any]]) -> bool:
        return self._write(user_id, {FAVORITES: favorites})

    def is_first_time_user(self, user_id: str) -> bool:
        return not self._read(user_id).get(ONBOARDING_COMPLETE, False)

    def set_onboarding_complete(self, user_id: str) -> bool:
        return self._write(user_id, {ONBOARDING_COMPLETE: True})

    def clear_user_data(self, user_id: str) -> bool:
        if not self._db_engine:
            logger.error("Database engine not available for user data.")
            return False
        try:
            with self._db_engine.begin() as connection:
                connection.execute(text("DELETE FROM user_data WHERE user_id = :user_id"), {"user_id": user_id})
            return True
        except Exception as e:
            logger.error(f"Error clearing data for user {user_id}: {e}")
            return False


@lru_cache()
def get_user_data_service():
    """Cached dependency injector for UserDataService; shares one engine."""
    return UserDataService()
