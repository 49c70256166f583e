"""Pytest fixtures for Rating Intelligence tests."""

import os
from collections.abc import Callable, Generator
from datetime import UTC, datetime
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from ratingintel import db
from ratingintel.models import Base
from ratingintel.ratings.schema import Rating, RatingAction

# Optional external database; defaults to a throwaway SQLite file
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")


@pytest.fixture(scope="session")
def engine(tmp_path_factory):
    """Create test database engine."""
    url = TEST_DATABASE_URL or f"sqlite:///{tmp_path_factory.mktemp('db') / 'ratingintel.db'}"
    engine = create_engine(url)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch) -> Generator[sessionmaker, None, None]:
    """Point get_db() at the test database and empty every table afterwards."""
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    monkeypatch.setattr(db, "SessionLocal", factory)

    yield factory

    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """Plain session for arranging and inspecting rows."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_item() -> Callable[..., dict]:
    """Build one upstream rating record as the API returns it."""

    def _make(ticker: str = "AAPL", **overrides) -> dict:
        item = {
            "ticker": ticker,
            "company": f"{ticker} Inc.",
            "brokerage": "Goldman Sachs",
            "action": "upgraded by",
            "rating_from": "Hold",
            "rating_to": "Buy",
            "target_from": "$150.00",
            "target_to": "$180.00",
            "time": "2025-01-15T14:30:00Z",
        }
        item.update(overrides)
        return item

    return _make


@pytest.fixture
def make_rating() -> Callable[..., Rating]:
    """Build an already-validated Rating."""

    def _make(ticker: str = "AAPL", **overrides) -> Rating:
        fields = {
            "id": uuid4(),
            "ticker": ticker,
            "company": f"{ticker} Inc.",
            "brokerage": "Goldman Sachs",
            "action": RatingAction.UPGRADE,
            "rating_from": "Hold",
            "rating_to": "Buy",
            "target_from": 150.0,
            "target_to": 180.0,
            "event_time": datetime(2025, 1, 15, 14, 30, tzinfo=UTC),
        }
        fields.update(overrides)
        return Rating(**fields)

    return _make


@pytest.fixture
def paged_transport() -> Callable[..., httpx.MockTransport]:
    """MockTransport serving ``{cursor: body}``; the first page is keyed by None."""

    def _make(pages: dict, requests: list | None = None) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            if requests is not None:
                requests.append(request)
            cursor = request.url.params.get("next_page")
            if cursor not in pages:
                return httpx.Response(404, json={"error": f"unknown cursor {cursor}"})
            return httpx.Response(200, json=pages[cursor])

        return httpx.MockTransport(handler)

    return _make
