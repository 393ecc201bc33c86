"""Pytest configuration and fixtures for reaper tests."""

import os
import sys
from pathlib import Path

# Add API and reaper paths for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "api"))
sys.path.insert(0, str(Path(__file__).parent.parent))

os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cwb_api.db.models import Base


@pytest.fixture(scope="function")
def session_factory():
    """sessionmaker over a fresh in-memory SQLite database.

    StaticPool keeps one connection so every session sees the same tables.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()
