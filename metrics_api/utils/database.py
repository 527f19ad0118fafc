from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from .logging import slogger, Timer

Params = Union[Mapping[str, Any], Sequence[Any], None]

_TIMEOUT_MARKERS = ("statement timeout", "canceling statement")


class DatabaseError(Exception):
    """A query failed in the database or the driver."""


class QueryTimeoutError(DatabaseError):
    """Postgres cancelled a query that ran past its statement timeout."""


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    row_count: int = 0
    field_types: List[Any] = field(default_factory=list)


def _is_timeout(error: SQLAlchemyError) -> bool:
    message = str(getattr(error, "orig", None) or error).lower()
    return isinstance(error, OperationalError) and any(m in message for m in _TIMEOUT_MARKERS)


def _collect(result) -> QueryResult:
    if not result.returns_rows:
        return QueryResult(row_count=max(result.rowcount, 0))
    columns = list(result.keys())
    description = getattr(result.cursor, "description", None) or []
    field_types = [column[1] for column in description]
    rows = [dict(row) for row in result.mappings().all()]
    return QueryResult(rows=rows, columns=columns, row_count=len(rows), field_types=field_types)


class DatabaseClient:
    """
    Thin wrapper around a pooled SQLAlchemy engine.

    Calls block on the driver, so each one runs in the threadpool and the
    event loop stays free while a multi-minute report is executing.
    """

    def __init__(self, url: str, pool_size: int = 5, max_overflow: int = 10):
        self.url = url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(
                self.url,
                pool_pre_ping=True,
                pool_size=self.pool_size,
                max_overflow=self.max_overflow,
            )
        return self._engine

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    async def query(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        statement_timeout_ms: Optional[int] = None,
    ) -> QueryResult:
        """Run ``sql`` with named ``:binds`` in its own transaction."""

        def run(conn: Connection):
            if statement_timeout_ms:
                conn.exec_driver_sql(f"SET LOCAL statement_timeout = {int(statement_timeout_ms)}")
            return _collect(conn.execute(text(sql), dict(params or {})))

        return await run_in_threadpool(self._run, run, sql)

    async def execute_raw(self, sql: str, params: Params = None) -> QueryResult:
        """Run user-supplied SQL using the driver's own placeholders (``%s`` / ``%(name)s``)."""

        def run(conn: Connection):
            if params:
                bound = dict(params) if isinstance(params, Mapping) else tuple(params)
                return _collect(conn.exec_driver_sql(sql, bound))
            return _collect(conn.execution_options(no_parameters=True).exec_driver_sql(sql))

        return await run_in_threadpool(self._run, run, sql)

    async def ping(self) -> None:
        await self.query("SELECT 1")

    def _run(self, fn, sql: str) -> QueryResult:
        with Timer() as timer:
            try:
                with self.engine.begin() as conn:
                    result = fn(conn)
            except SQLAlchemyError as e:
                slogger.error(
                    "DB_QUERY_ERROR",
                    "Query failed",
                    error=e,
                    data={"sql": _summarize(sql), "elapsed_ms": timer.elapsed_ms},
                )
                if _is_timeout(e):
                    raise QueryTimeoutError(str(getattr(e, "orig", None) or e)) from e
                raise DatabaseError(str(getattr(e, "orig", None) or e)) from e

        slogger.info(
            "DB_QUERY",
            f"Query returned {result.row_count} rows",
            data={
                "sql": _summarize(sql),
                "row_count": result.row_count,
                "elapsed_ms": timer.elapsed_ms,
            },
        )
        return result


def _summarize(sql: str, limit: int = 200) -> str:
    collapsed = " ".join(sql.split())
    return collapsed if len(collapsed) <= limit else collapsed[:limit] + "..."
