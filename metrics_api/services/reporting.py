"""Cached access to the slow stored-procedure reports."""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .metrics import (
    MetricsService,
    ReportResult,
    resolve_calendar_year,
    resolve_year_to_date,
)
from ..utils.caching import ReportCache, generate_key
from ..utils.logging import slogger, Timer

ReportFetch = Callable[[str, str], Awaitable[ReportResult]]
DateResolver = Callable[[Optional[str], Optional[str]], Tuple[str, str]]

CSR_METRICS = "csr-metrics"
BACK_OFFICE_METRICS = "back-office-metrics"
USER_PERSONAS = "user-personas"


@dataclass(frozen=True)
class ReportDefinition:
    """A cacheable report: its cache key prefix, date defaults and fetch."""
    name: str
    resolve_dates: DateResolver
    fetch: ReportFetch


class ReportingService:
    """
    Serves reports through the cache.

    The cache only answers get/set; whether to read it, and which TTL to
    store with, is decided here per request. Failed fetches raise and are
    never stored, so the next request retries the procedure.
    """

    def __init__(self, cache: ReportCache[ReportResult], metrics_service: MetricsService):
        self.cache = cache
        self.reports: Dict[str, ReportDefinition] = {
            CSR_METRICS: ReportDefinition(
                CSR_METRICS, resolve_calendar_year, metrics_service.get_csr_metrics
            ),
            BACK_OFFICE_METRICS: ReportDefinition(
                BACK_OFFICE_METRICS, resolve_year_to_date, metrics_service.get_back_office_metrics
            ),
            USER_PERSONAS: ReportDefinition(
                USER_PERSONAS, resolve_year_to_date, metrics_service.get_user_personas_metrics
            ),
        }

    async def get_report(
        self,
        report_name: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        use_cache: bool = True,
        cache_ttl: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Return a report for the date range, from the cache when allowed.

        Args:
            report_name: One of the registered report names
            start_date: Range start as sent by the client; defaults per report
            end_date: Range end as sent by the client; defaults per report
            use_cache: False always runs the procedure, and still caches the result
            cache_ttl: Seconds to keep a freshly fetched result (cache default if None)

        Returns:
            Dict with ``data``, ``start_date``, ``end_date``, ``from_cache`` and
            either ``cached_at`` (hit) or ``query_duration`` in ms (miss)
        """
        report = self.reports.get(report_name)
        if report is None:
            raise KeyError(f"Unknown report: {report_name}")

        start_date, end_date = report.resolve_dates(start_date, end_date)
        cache_key = generate_key(report.name, start_date, end_date)

        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return {
                    **cached.data,
                    "from_cache": True,
                    "cached_at": cached.cached_at,
                }

        slogger.info(
            "REPORT_FETCH_START",
            f"Fetching fresh {report.name} data",
            data={"key": cache_key, "use_cache": use_cache},
        )
        with Timer() as timer:
            result = await report.fetch(start_date, end_date)
        duration = int(round(timer.elapsed_ms))

        self.cache.set(cache_key, result, ttl=cache_ttl)

        slogger.info(
            "REPORT_FETCH_COMPLETE",
            f"Fetched {report.name} in {duration}ms",
            data={"key": cache_key, "query_duration_ms": duration, "rows": len(result["data"])},
        )
        return {
            **result,
            "from_cache": False,
            "query_duration": duration,
        }
