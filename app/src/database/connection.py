"""
MongoDB connection management.

Provides a singleton DatabaseManager and a convenience ``get_db()`` helper.
All collection indexes are configured on first connection.
"""

import logging
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import ConnectionFailure

from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()


class DatabaseManager:
    """Thread-safe singleton that owns the MongoClient."""

    _instance: Optional["DatabaseManager"] = None
    _client: Optional[MongoClient] = None
    _db: Optional[Database] = None

    def __new__(cls) -> "DatabaseManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if self._client is None:
            self.connect()

    # ── Connection ───────────────────────────────────────────────────────

    def connect(self) -> None:
        """Establish the MongoDB connection and create indexes."""
        try:
            self._client = MongoClient(
                cfg.MONGODB_URL, serverSelectionTimeoutMS=5000, tz_aware=False
            )
            self._client.admin.command("ping")
            self._db = self._client[cfg.DATABASE_NAME]
            logger.info("Connected to MongoDB database %s", cfg.DATABASE_NAME)

            ensure_indexes(self._db)
            logger.info("Database indexes created / verified")
        except ConnectionFailure as exc:
            logger.error("Failed to connect to MongoDB: %s", exc)
            raise

    def get_db(self) -> Database:
        """Return the database handle, reconnecting if necessary."""
        if self._db is None:
            self.connect()
        return self._db

    def close(self) -> None:
        """Gracefully close the connection."""
        if self._client:
            self._client.close()
            logger.info("MongoDB connection closed")


# ── Index helpers ────────────────────────────────────────────────────────


def ensure_indexes(db: Database) -> None:
    """Create all required indexes for the application."""
    jobs = db[cfg.JOBS_COLLECTION]
    jobs.create_index("job_id", unique=True)
    jobs.create_index([("user_email", ASCENDING), ("created_at", DESCENDING)])
    jobs.create_index([("status", ASCENDING), ("heartbeat_at", ASCENDING)])
    jobs.create_index([("status", ASCENDING), ("stage", ASCENDING)])
    jobs.create_index([("user_email", ASCENDING), ("test_id", ASCENDING)])

    # One result per job: the unique key is what makes the write idempotent
    results = db[cfg.RESULTS_COLLECTION]
    results.create_index("job_id", unique=True)
    results.create_index("result_id", unique=True)
    results.create_index([("user_email", ASCENDING), ("created_at", DESCENDING)])

    credentials = db[cfg.CREDENTIALS_COLLECTION]
    credentials.create_index("credential_id", unique=True)
    credentials.create_index(
        [("provider", ASCENDING), ("is_active", ASCENDING), ("error_count", ASCENDING)]
    )

    db[cfg.PRACTICE_TESTS_COLLECTION].create_index("test_id", unique=True)
    db[cfg.USERS_COLLECTION].create_index("email", unique=True)


# ── Convenience function ─────────────────────────────────────────────────


def get_db() -> Database:
    """Shortcut to obtain the database handle."""
    return DatabaseManager().get_db()
