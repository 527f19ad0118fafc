"""Shared fixtures: a manual clock, an in-memory stand-in for the database, and an app wired to both."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from ..config import Settings
from ..main import create_app
from ..utils.caching import ReportCache
from ..utils.database import QueryResult


class FakeClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 8, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> None:
        self.now += timedelta(seconds=seconds, milliseconds=milliseconds)


def make_result(rows: List[Dict[str, Any]], field_types: Optional[List[Any]] = None) -> QueryResult:
    columns = list(rows[0].keys()) if rows else []
    return QueryResult(rows=rows, columns=columns, row_count=len(rows), field_types=field_types or [])


class FakeDatabase:
    """
    Answers queries by SQL fragment. The first registered fragment found in
    the statement decides the outcome; unmatched statements return no rows.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.outcomes: List[tuple] = []
        self.ping_error: Optional[Exception] = None
        self.disposed = False

    def respond(self, fragment: str, rows: Optional[List[Dict[str, Any]]] = None,
                error: Optional[Exception] = None, field_types: Optional[List[Any]] = None) -> None:
        outcome = error if error is not None else make_result(rows or [], field_types)
        self.outcomes.append((fragment, outcome))

    def calls_matching(self, fragment: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if fragment in call["sql"]]

    def _answer(self, sql: str) -> QueryResult:
        for fragment, outcome in self.outcomes:
            if fragment in sql:
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        return QueryResult()

    async def query(self, sql, params=None, statement_timeout_ms=None) -> QueryResult:
        self.calls.append({"sql": sql, "params": params, "statement_timeout_ms": statement_timeout_ms})
        return self._answer(sql)

    async def execute_raw(self, sql, params=None) -> QueryResult:
        self.calls.append({"sql": sql, "params": params, "raw": True})
        return self._answer(sql)

    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    def dispose(self) -> None:
        self.disposed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ReportCache(clock=clock)


@pytest.fixture
def database():
    return FakeDatabase()


@pytest.fixture
def settings():
    return Settings(cors_origins=["http://testserver"])


@pytest.fixture
def app(settings, database, cache):
    return create_app(settings=settings, database=database, cache=cache)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
