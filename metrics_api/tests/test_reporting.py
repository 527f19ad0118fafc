"""
Tests for serving stored-procedure reports through the cache.
"""
import asyncio
from datetime import date

import pytest

from ..services.metrics import MetricsService
from ..services.reporting import (
    BACK_OFFICE_METRICS,
    CSR_METRICS,
    USER_PERSONAS,
    ReportingService,
)
from ..utils.caching import generate_key
from ..utils.database import DatabaseError, QueryResult

PERSONA_ROWS = [
    {"persona": "Browser", "users": 42},
    {"persona": "Power user", "users": 7},
]


@pytest.fixture
def metrics_service(database):
    database.respond("SP_CFE_Prod_Reports_CSR_Browse1", rows=PERSONA_ROWS)
    database.respond("SP_CFE_Prod_Reports_CSR_Metrics1", rows=[{"csr": "amy", "calls": 3}])
    database.respond("SP_CFE_Prod_Reports_Active_BO1", rows=[{"user": "bob", "active": True}])
    return MetricsService(database, csr_statement_timeout_ms=180000)


@pytest.fixture
def reporting(cache, metrics_service):
    return ReportingService(cache, metrics_service)


@pytest.mark.asyncio
async def test_miss_fetches_and_caches(reporting, database, cache):
    report = await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05")

    assert report["from_cache"] is False
    assert isinstance(report["query_duration"], int)
    assert "cached_at" not in report
    assert report["data"] == PERSONA_ROWS
    assert report["start_date"] == "2025-08-01"
    assert report["end_date"] == "2025-08-05"
    assert generate_key(USER_PERSONAS, "2025-08-01", "2025-08-05") in cache
    assert len(database.calls_matching("CSR_Browse1")) == 1


@pytest.mark.asyncio
async def test_hit_skips_fetch(reporting, database):
    await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05")
    report = await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05")

    assert report["from_cache"] is True
    assert report["cached_at"] == "2025-08-01T12:00:00.000Z"
    assert "query_duration" not in report
    assert report["data"] == PERSONA_ROWS
    assert len(database.calls_matching("CSR_Browse1")) == 1


@pytest.mark.asyncio
async def test_different_range_is_a_separate_entry(reporting, database):
    await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05")
    report = await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-06")

    assert report["from_cache"] is False
    assert len(database.calls_matching("CSR_Browse1")) == 2


@pytest.mark.asyncio
async def test_bypass_fetches_fresh_and_repopulates(reporting, database, cache, clock):
    await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05")
    clock.advance(seconds=30)

    report = await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05", use_cache=False)
    assert report["from_cache"] is False
    assert len(database.calls_matching("CSR_Browse1")) == 2

    hit = cache.get(generate_key(USER_PERSONAS, "2025-08-01", "2025-08-05"))
    assert hit.cached_at == "2025-08-01T12:00:30.000Z"


@pytest.mark.asyncio
async def test_custom_ttl_applies_to_fresh_result(reporting, database, clock):
    await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05", cache_ttl=60)
    clock.advance(seconds=61)

    report = await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05")
    assert report["from_cache"] is False
    assert len(database.calls_matching("CSR_Browse1")) == 2


@pytest.mark.asyncio
async def test_default_ttl_refetches_after_ten_minutes(reporting, database, clock):
    await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05")
    clock.advance(seconds=599)
    assert (await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05"))["from_cache"] is True
    clock.advance(seconds=2)
    assert (await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05"))["from_cache"] is False


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached(cache, database):
    database.respond("SP_CFE_Prod_Reports_CSR_Browse1", error=DatabaseError("connection reset"))
    reporting = ReportingService(cache, MetricsService(database))

    with pytest.raises(DatabaseError):
        await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05")
    assert len(cache) == 0

    database.outcomes.clear()
    database.respond("SP_CFE_Prod_Reports_CSR_Browse1", rows=PERSONA_ROWS)
    report = await reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05")
    assert report["from_cache"] is False
    assert report["data"] == PERSONA_ROWS


@pytest.mark.asyncio
async def test_missing_dates_are_resolved_before_keying(reporting, cache):
    report = await reporting.get_report(CSR_METRICS)
    year = date.today().year

    assert report["start_date"] == f"{year}-01-01"
    assert report["end_date"] == f"{year}-12-31"
    assert generate_key(CSR_METRICS, f"{year}-01-01", f"{year}-12-31") in cache


@pytest.mark.asyncio
async def test_csr_report_runs_under_statement_timeout(reporting, database):
    await reporting.get_report(CSR_METRICS, "2025-01-01", "2025-03-31")
    await reporting.get_report(BACK_OFFICE_METRICS, "2025-01-01", "2025-03-31")

    assert database.calls_matching("CSR_Metrics1")[0]["statement_timeout_ms"] == 180000
    assert database.calls_matching("Active_BO1")[0]["statement_timeout_ms"] is None


@pytest.mark.asyncio
async def test_unknown_report_raises(reporting):
    with pytest.raises(KeyError):
        await reporting.get_report("nope", "2025-01-01", "2025-01-02")


@pytest.mark.asyncio
async def test_concurrent_misses_each_fetch(cache, database):
    """Misses on the same key are not coalesced; both fetch and the last write wins."""
    release = asyncio.Event()
    started = []

    class SlowDatabase(type(database)):
        async def query(self, sql, params=None, statement_timeout_ms=None):
            started.append(sql)
            await release.wait()
            return QueryResult(rows=[{"call": len(started)}], columns=["call"], row_count=1)

    reporting = ReportingService(cache, MetricsService(SlowDatabase()))
    first = asyncio.create_task(reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05"))
    second = asyncio.create_task(reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05"))
    while len(started) < 2:
        await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(first, second)

    assert all(r["from_cache"] is False for r in results)
    assert len(started) == 2
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_cancelled_fetch_leaves_cache_untouched(cache, database):
    never = asyncio.Event()

    class HangingDatabase(type(database)):
        async def query(self, sql, params=None, statement_timeout_ms=None):
            await never.wait()

    reporting = ReportingService(cache, MetricsService(HangingDatabase()))
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(reporting.get_report(USER_PERSONAS, "2025-08-01", "2025-08-05"), timeout=0.05)
    assert len(cache) == 0
