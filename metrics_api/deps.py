from fastapi import Request

from .services.metrics import MetricsService
from .services.reporting import ReportingService
from .services.search import TableSearchService
from .utils.caching import ReportCache


def get_cache(request: Request) -> ReportCache:
    return request.app.state.cache


def get_metrics_service(request: Request) -> MetricsService:
    return request.app.state.metrics_service


def get_reporting_service(request: Request) -> ReportingService:
    return request.app.state.reporting_service


def get_search_service(request: Request) -> TableSearchService:
    return request.app.state.search_service
