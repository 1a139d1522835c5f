import os

os.environ.setdefault("ENVIRONMENT", "development")

from typing import Dict

import mongomock
import pytest

from src.database import (
    catalogue_repository,
    credential_repository,
    job_repository,
    result_repository,
    user_repository,
)
from src.database.connection import ensure_indexes


@pytest.fixture
def db(monkeypatch):
    database = mongomock.MongoClient().speaking_eval_test
    ensure_indexes(database)
    for module in (
        job_repository,
        credential_repository,
        result_repository,
        catalogue_repository,
        user_repository,
    ):
        monkeypatch.setattr(module, "get_db", lambda: database)
    return database


@pytest.fixture
def make_job(db):
    def _make_job(job_id: str = "job_000000000001", **overrides) -> Dict:
        job_repository.create_job(
            job_id,
            overrides.pop("user_email", "owner@example.com"),
            {
                "test_id": overrides.pop("test_id", "test-1"),
                "file_paths": overrides.pop(
                    "file_paths",
                    {"part1-q1": "audio/owner/part1-q1.webm", "part2-q7": "audio/owner/part2-q7.webm"},
                ),
                "durations": overrides.pop("durations", {"part1-q1": 12.0, "part2-q7": 60.0}),
            },
        )
        if overrides:
            db.speaking_jobs.update_one({"job_id": job_id}, {"$set": overrides})
        return db.speaking_jobs.find_one({"job_id": job_id}, {"_id": 0})

    return _make_job
