"""
Shared test fixtures for the render worker tests.

Provides:
- Test database (SQLite in-memory) and a JobStore bound to it
- Settings pointing the job workspaces at a temporary directory
- Fake AWS credentials for moto-backed storage tests
- Sample timelines
"""

import os
from pathlib import Path
from typing import Any, Dict, Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

from render_worker.core.config import Settings
from render_worker.db import create_all_tables
from render_worker.schemas.timeline import Timeline, validate_timeline
from render_worker.tasks.job_state import JobStore


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with workspaces under tmp_path and short timeouts."""
    return Settings(
        database_url="sqlite:///:memory:",
        work_dir_base=str(tmp_path / "work"),
        max_attempts=3,
        job_timeout_seconds=5,
        image_download_timeout_seconds=2.0,
        webhook_timeout_seconds=2.0,
        s3_bucket="test-outputs",
        s3_region="us-east-1",
    )


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine shared by every session of one test."""
    test_engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_all_tables(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def job_store(engine: Engine) -> JobStore:
    session_factory = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    return JobStore(session_factory=session_factory)


# =============================================================================
# AWS
# =============================================================================


@pytest.fixture
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Fake credentials so boto3 never touches a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


# =============================================================================
# Timelines
# =============================================================================


@pytest.fixture
def single_clip_data() -> Dict[str, Any]:
    return {
        "clips": [
            {"image": "https://example.com/a.jpg", "text": "Hello World", "duration": 3},
        ]
    }


@pytest.fixture
def three_clip_data() -> Dict[str, Any]:
    return {
        "clips": [
            {"image": "https://example.com/one.png", "text": "First", "duration": 2},
            {"image": "https://example.com/two", "text": "Second", "duration": 3},
            {"image": "https://example.com/three.webp?w=800", "text": "Third", "duration": 4},
        ]
    }


@pytest.fixture
def single_clip_timeline(single_clip_data: Dict[str, Any]) -> Timeline:
    return validate_timeline(single_clip_data)


@pytest.fixture
def three_clip_timeline(three_clip_data: Dict[str, Any]) -> Timeline:
    return validate_timeline(three_clip_data)
