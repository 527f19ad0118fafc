from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base model serialized with camelCase keys, as the dashboard frontend reads them."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiResponse(ApiModel):
    success: bool = True
    message: str


class RowsResponse(ApiResponse):
    """Response model for catalog listings (schema, counts, columns)."""
    data: List[Dict[str, Any]]


class TableSampleResponse(ApiResponse):
    rows: List[Dict[str, Any]]
    columns: List[str]


class QueryRequest(ApiModel):
    """Ad-hoc query from the query console."""
    query: str = Field("", description="SQL to execute")
    params: Optional[Union[List[Any], Dict[str, Any]]] = Field(
        None, description="Positional (%s) or named (%(name)s) parameters"
    )


class QueryField(ApiModel):
    name: str
    data_type: Optional[Any] = None


class QueryResponse(ApiModel):
    """
    Result of an ad-hoc query. A database error is reported in-band with
    ``success=False`` so the console can show it next to the query.
    """
    success: bool
    rows: List[Dict[str, Any]] = []
    row_count: int = 0
    fields: List[QueryField] = []
    error: Optional[str] = None


class DatabaseStats(ApiModel):
    total_size: str
    table_count: int
    schema_count: int


class DatabaseStatsResponse(ApiResponse):
    data: DatabaseStats


class TableSearchResult(ApiModel):
    schemaname: str
    tablename: str
    size: Optional[str] = None
    score: float


class TableSearchResponse(ApiResponse):
    data: List[TableSearchResult]
    metadata: Dict[str, Any]


class WorktypeCountsResponse(ApiResponse):
    data: List[Dict[str, Any]]
    start_date: str


class ReportResponse(ApiResponse):
    """
    Response model for a stored-procedure report.
    ``cached_at`` is set on a cache hit, ``query_duration`` (ms) on a fresh fetch.
    """
    data: List[Dict[str, Any]]
    start_date: str
    end_date: str
    from_cache: bool
    cached_at: Optional[str] = None
    query_duration: Optional[int] = None


class CacheEntryInfo(ApiModel):
    key: str
    cached_at: str
    expires_at: str
    is_expired: bool
    size: int


class CacheStatsModel(ApiModel):
    total_entries: int
    active_entries: int
    expired_entries: int
    entries: List[CacheEntryInfo]


class CacheStatsResponse(ApiResponse):
    stats: CacheStatsModel


class RouteInfo(BaseModel):
    path: str
    name: str


class RoutesResponse(BaseModel):
    message: str
    routes: List[RouteInfo]
