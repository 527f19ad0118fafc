from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..deps import get_cache, get_metrics_service, get_reporting_service, get_search_service
from ..models.metrics import (
    ApiResponse,
    CacheStatsResponse,
    DatabaseStatsResponse,
    QueryRequest,
    QueryResponse,
    ReportResponse,
    RowsResponse,
    TableSampleResponse,
    TableSearchResponse,
    WorktypeCountsResponse,
)
from ..services.metrics import MetricsService
from ..services.reporting import (
    BACK_OFFICE_METRICS,
    CSR_METRICS,
    USER_PERSONAS,
    ReportingService,
)
from ..services.search import SEARCH_MODES, TableSearchService
from ..utils.caching import ReportCache
from ..utils.database import DatabaseError, QueryTimeoutError
from ..utils.logging import slogger, Timer
from ..utils.matching import is_valid_identifier

router = APIRouter(
    prefix="/api/metrics",
    tags=["metrics"],
    responses={404: {"description": "Not found"}},
)

TIMEOUT_DETAILS = {
    CSR_METRICS: (
        "Query timeout: The CSR Metrics stored procedure is taking too long. "
        "Please contact your DBA to optimize SP_CFE_Prod_Reports_CSR_Metrics1 "
        "or try a shorter date range."
    ),
}


def _server_error(event_type: str, message: str, error: Exception, elapsed_ms: float, **data) -> HTTPException:
    slogger.error(event_type, message, error=error, data={**data, "elapsed_ms": elapsed_ms})
    return HTTPException(status_code=500, detail=f"An error occurred while {message[0].lower()}{message[1:]}")


@router.get("/schema", response_model=RowsResponse)
async def get_schema(metrics: MetricsService = Depends(get_metrics_service)):
    """
    List user tables with their on-disk size.
    """
    with Timer() as timer:
        try:
            tables = await metrics.get_database_schema()
        except DatabaseError as e:
            raise _server_error("GET_SCHEMA_ERROR", "Retrieving database schema", e, timer.elapsed_ms)

    slogger.info(
        "GET_SCHEMA_COMPLETE",
        f"Retrieved {len(tables)} tables",
        data={"table_count": len(tables), "elapsed_ms": timer.elapsed_ms},
    )
    return {"message": "Successfully retrieved database schema", "data": tables}


@router.get("/table-counts", response_model=RowsResponse)
async def get_table_counts(metrics: MetricsService = Depends(get_metrics_service)):
    """
    Row counts for every user table, largest first.
    """
    with Timer() as timer:
        try:
            counts = await metrics.get_table_counts()
        except DatabaseError as e:
            raise _server_error("GET_TABLE_COUNTS_ERROR", "Retrieving table counts", e, timer.elapsed_ms)

    slogger.info(
        "GET_TABLE_COUNTS_COMPLETE",
        f"Counted {len(counts)} tables",
        data={"table_count": len(counts), "elapsed_ms": timer.elapsed_ms},
    )
    return {"message": "Successfully retrieved table counts", "data": counts}


@router.get("/table/{schema}/{table}/columns", response_model=RowsResponse)
async def get_table_columns(
    schema: str,
    table: str,
    metrics: MetricsService = Depends(get_metrics_service),
):
    """
    Column definitions of one table in ordinal order.
    """
    with Timer() as timer:
        try:
            columns = await metrics.get_table_columns(schema, table)
        except DatabaseError as e:
            raise _server_error(
                "GET_TABLE_COLUMNS_ERROR", "Retrieving table columns", e, timer.elapsed_ms,
                schema=schema, table=table,
            )

    return {"message": "Successfully retrieved table columns", "data": columns}


@router.get("/table/{schema}/{table}/sample", response_model=TableSampleResponse)
async def get_table_sample(
    schema: str,
    table: str,
    limit: int = Query(10, description="Number of rows to return", ge=1, le=1000),
    metrics: MetricsService = Depends(get_metrics_service),
):
    """
    First ``limit`` rows of a table.
    """
    if not (is_valid_identifier(schema) and is_valid_identifier(table)):
        raise HTTPException(status_code=400, detail="Schema and table must be plain SQL identifiers")

    with Timer() as timer:
        try:
            result = await metrics.get_table_sample(schema, table, limit)
        except DatabaseError as e:
            raise _server_error(
                "GET_TABLE_SAMPLE_ERROR", "Retrieving table sample", e, timer.elapsed_ms,
                schema=schema, table=table, limit=limit,
            )

    return {
        "message": "Successfully retrieved table sample",
        "rows": result.rows,
        "columns": result.columns,
    }


@router.post("/query", response_model=QueryResponse, response_model_exclude_unset=True)
async def execute_query(
    body: QueryRequest,
    metrics: MetricsService = Depends(get_metrics_service),
):
    """
    Execute an ad-hoc SQL query.
    Database errors are returned in the body with ``success: false``.
    """
    if not body.query.strip():
        raise HTTPException(status_code=400, detail="Query is required")

    with Timer() as timer:
        try:
            result = await metrics.execute_custom_query(body.query, body.params)
        except DatabaseError as e:
            slogger.warning(
                "EXECUTE_QUERY_FAILED",
                "Ad-hoc query failed",
                data={"error": str(e), "elapsed_ms": timer.elapsed_ms},
            )
            return {"success": False, "error": str(e)}

    fields = [
        {
            "name": name,
            "data_type": result.field_types[i] if i < len(result.field_types) else None,
        }
        for i, name in enumerate(result.columns)
    ]
    slogger.info(
        "EXECUTE_QUERY_COMPLETE",
        f"Ad-hoc query returned {result.row_count} rows",
        data={"row_count": result.row_count, "elapsed_ms": timer.elapsed_ms},
    )
    return {
        "success": True,
        "rows": result.rows,
        "row_count": result.row_count,
        "fields": fields,
    }


@router.get("/stats", response_model=DatabaseStatsResponse)
async def get_database_stats(metrics: MetricsService = Depends(get_metrics_service)):
    """
    Database size and table/schema counts.
    """
    with Timer() as timer:
        try:
            stats = await metrics.get_database_stats()
        except DatabaseError as e:
            raise _server_error("GET_DATABASE_STATS_ERROR", "Retrieving database statistics", e, timer.elapsed_ms)

    return {"message": "Successfully retrieved database statistics", "data": stats}


@router.get("/search", response_model=TableSearchResponse)
async def search_tables(
    q: str = Query(..., description="Search query string", min_length=1),
    mode: str = Query("exact", description="Search mode (exact or fuzzy)"),
    limit: int = Query(50, description="Maximum number of results", ge=1, le=500),
    offset: int = Query(0, description="Pagination offset", ge=0),
    search: TableSearchService = Depends(get_search_service),
):
    """
    Search tables by schema or table name.
    ``exact`` matches substrings; ``fuzzy`` ranks every table by similarity.
    """
    if mode not in SEARCH_MODES:
        raise HTTPException(
            status_code=400,
            detail="Search mode must be either 'exact' or 'fuzzy'"
        )

    with Timer() as timer:
        try:
            results = await search.search_tables(query=q, mode=mode, limit=limit, offset=offset)
        except DatabaseError as e:
            raise _server_error(
                "SEARCH_TABLES_ERROR", "Performing the search", e, timer.elapsed_ms, query=q, mode=mode,
            )

    return {"message": "Successfully retrieved search results", **results}


@router.get("/worktype-counts", response_model=WorktypeCountsResponse)
async def get_worktype_counts(
    start_date: Optional[str] = Query(None, alias="startDate", description="Count activity on or after this date"),
    metrics: MetricsService = Depends(get_metrics_service),
):
    """
    Monthly counts of policy servicing work types.
    """
    with Timer() as timer:
        try:
            result = await metrics.get_worktype_counts(start_date)
        except DatabaseError as e:
            raise _server_error(
                "GET_WORKTYPE_COUNTS_ERROR", "Retrieving worktype counts", e, timer.elapsed_ms,
                start_date=start_date,
            )

    return {"message": "Successfully retrieved worktype counts", **result}


async def _serve_report(
    reporting: ReportingService,
    report_name: str,
    start_date: Optional[str],
    end_date: Optional[str],
    use_cache: bool,
    cache_ttl: Optional[int],
):
    with Timer() as timer:
        try:
            report = await reporting.get_report(
                report_name,
                start_date=start_date,
                end_date=end_date,
                use_cache=use_cache,
                cache_ttl=cache_ttl,
            )
        except QueryTimeoutError as e:
            slogger.error(
                "GET_REPORT_TIMEOUT",
                f"Report {report_name} timed out",
                error=e,
                data={"report": report_name, "start_date": start_date, "end_date": end_date,
                      "elapsed_ms": timer.elapsed_ms},
            )
            raise HTTPException(
                status_code=504,
                detail=TIMEOUT_DETAILS.get(report_name, "Query timeout: the report took too long to run"),
            )
        except DatabaseError as e:
            raise _server_error(
                "GET_REPORT_ERROR", f"Retrieving {report_name} report", e, timer.elapsed_ms,
                report=report_name, start_date=start_date, end_date=end_date,
            )

    slogger.info(
        "GET_REPORT_COMPLETE",
        f"Served {report_name} report",
        data={
            "report": report_name,
            "from_cache": report["from_cache"],
            "rows": len(report["data"]),
            "elapsed_ms": timer.elapsed_ms,
        },
    )
    return {"success": True, "message": f"Successfully retrieved {report_name} report", **report}


@router.get("/csr-metrics", response_model=ReportResponse, response_model_exclude_unset=True)
async def get_csr_metrics(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    use_cache: bool = Query(True, alias="useCache", description="Serve from cache when fresh"),
    cache_ttl: Optional[int] = Query(None, alias="cacheTTL", description="Cache lifetime in seconds", ge=1),
    reporting: ReportingService = Depends(get_reporting_service),
):
    """
    CSR metrics report. Runs under a statement timeout.
    """
    return await _serve_report(reporting, CSR_METRICS, start_date, end_date, use_cache, cache_ttl)


@router.get("/back-office-metrics", response_model=ReportResponse, response_model_exclude_unset=True)
async def get_back_office_metrics(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    use_cache: bool = Query(True, alias="useCache", description="Serve from cache when fresh"),
    cache_ttl: Optional[int] = Query(None, alias="cacheTTL", description="Cache lifetime in seconds", ge=1),
    reporting: ReportingService = Depends(get_reporting_service),
):
    """
    Active back office users report.
    """
    return await _serve_report(reporting, BACK_OFFICE_METRICS, start_date, end_date, use_cache, cache_ttl)


@router.get("/user-personas-metrics", response_model=ReportResponse, response_model_exclude_unset=True)
async def get_user_personas_metrics(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    use_cache: bool = Query(True, alias="useCache", description="Serve from cache when fresh"),
    cache_ttl: Optional[int] = Query(None, alias="cacheTTL", description="Cache lifetime in seconds", ge=1),
    reporting: ReportingService = Depends(get_reporting_service),
):
    """
    User personas report.
    """
    return await _serve_report(reporting, USER_PERSONAS, start_date, end_date, use_cache, cache_ttl)


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def get_cache_stats(cache: ReportCache = Depends(get_cache)):
    """
    Snapshot of every cached report, including expired entries not yet swept.
    """
    stats = cache.get_stats()
    return {"message": "Successfully retrieved cache statistics", "stats": asdict(stats)}


@router.delete("/cache", response_model=ApiResponse)
async def clear_cache(
    key: Optional[str] = Query(None, description="Cache key to remove; all entries when omitted"),
    cache: ReportCache = Depends(get_cache),
):
    """
    Invalidate one cached report or the whole cache.
    """
    if key:
        cache.delete(key)
        return {"message": f"Cache entry '{key}' cleared"}

    cache.clear()
    return {"message": "All cache entries cleared"}
