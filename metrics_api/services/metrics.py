"""Service class for database introspection, ad-hoc queries and report procedures."""
from datetime import date
from typing import Any, Dict, List, Optional, Tuple, TypedDict

from ..utils.caching import utc_now
from ..utils.database import DatabaseClient, DatabaseError, Params, QueryResult
from ..utils.logging import slogger, Timer
from ..utils.matching import escape_identifier, quote_identifier

SCHEMA_SQL = """
    SELECT
      schemaname,
      tablename,
      pg_size_pretty(pg_total_relation_size(quote_ident(schemaname) || '.' || quote_ident(tablename))) AS size
    FROM pg_tables
    WHERE schemaname NOT IN ('pg_catalog', 'information_schema')
    ORDER BY schemaname, tablename
"""

COLUMNS_SQL = """
    SELECT column_name, data_type, is_nullable, column_default
    FROM information_schema.columns
    WHERE table_schema = :schema AND table_name = :table
    ORDER BY ordinal_position
"""

SEARCH_SQL = """
    SELECT
      schemaname,
      tablename,
      pg_size_pretty(pg_total_relation_size(quote_ident(schemaname) || '.' || quote_ident(tablename))) AS size
    FROM pg_tables
    WHERE schemaname NOT IN ('pg_catalog', 'information_schema')
      AND (tablename ILIKE :pattern OR schemaname ILIKE :pattern)
    ORDER BY schemaname, tablename
"""

DATABASE_SIZE_SQL = "SELECT pg_size_pretty(pg_database_size(current_database())) AS size"

TABLE_COUNT_SQL = """
    SELECT COUNT(*) AS count
    FROM pg_tables
    WHERE schemaname NOT IN ('pg_catalog', 'information_schema')
"""

SCHEMA_COUNT_SQL = """
    SELECT COUNT(DISTINCT schemaname) AS count
    FROM pg_tables
    WHERE schemaname NOT IN ('pg_catalog', 'information_schema')
"""

# Policy servicing activities grouped into work types, counted per month
WORKTYPE_COUNTS_SQL = """
    WITH worktype_submission AS (
      SELECT
        act_activitydate,
        CASE
          WHEN act_description LIKE 'Update Cash Surrender%' THEN 'Cash Surrender'
          WHEN act_description LIKE 'Update External Exchange%' THEN 'Rollover Exchange'
          WHEN act_description LIKE 'Process Address Change%' THEN 'Address Change'
          WHEN act_description LIKE 'Process Name Change%' THEN 'Name Change'
          WHEN act_description LIKE 'Process Assignment%' THEN 'Assignment'
          WHEN act_description LIKE 'Process Ownership Change%' THEN 'Ownership Change'
          WHEN act_description LIKE 'Process Endorsement%' THEN 'Endorsement'
          WHEN act_description LIKE 'Process EAddress Change%' THEN 'eAddress'
          WHEN act_description LIKE 'Process EEndorsement%' THEN 'eEndorsement'
          WHEN act_description LIKE 'Process ETIRPU%' THEN 'ETIRPU'
          WHEN act_description LIKE 'Process Cash Loan%' THEN 'Cash Loan'
          ELSE SUBSTRING(act_description FROM 1 FOR 24)
        END AS worktype
      FROM cm_opt_poh_policyhdr_s
      INNER JOIN cm_cfg_com_company_s ON com_id = poh_companyid
      INNER JOIN cm_jon_policyhdr_act_s ON poh_id = poh_policyhdrid
      INNER JOIN cc_opt_act_useractivity_s ON poh_useractivityid = act_id
      INNER JOIN cc_opt_usr_userlogin_s ON usr_id = act_userid
      INNER JOIN cc_jon_userlogin_urt_s ON usr_id = usr_userloginid
      INNER JOIN cc_opt_urt_userrole_i ON urt_id_i = usr_userroleid
      WHERE act_activitydate >= CAST(:start_date AS date)
        AND (
          act_description LIKE 'Process Name Change%'
          OR act_description LIKE 'Update Cash Surrender%'
          OR act_description LIKE 'Update External Exchange%'
          OR act_description LIKE 'Process Address Change%'
          OR act_description LIKE 'Process Endorsement%'
          OR act_description LIKE 'Process Assignment%'
          OR act_description LIKE 'Process Ownership Change%'
          OR act_description LIKE 'Process EAddress Change%'
          OR act_description LIKE 'Process EEndorsement%'
          OR act_description LIKE 'Process ETIRPU%'
          OR act_description LIKE 'Process Cash Loan%'
        )
    )
    SELECT
      worktype,
      TO_CHAR(DATE_TRUNC('month', act_activitydate), 'Mon') AS month1,
      DATE_TRUNC('month', act_activitydate) AS month2,
      COUNT(*) AS count
    FROM worktype_submission
    GROUP BY worktype, month1, month2
    ORDER BY month2, count DESC
"""

CSR_METRICS_SQL = "SELECT * FROM SP_CFE_Prod_Reports_CSR_Metrics1(:start_date, :end_date)"
BACK_OFFICE_SQL = "SELECT * FROM SP_CFE_Prod_Reports_Active_BO1(:start_date, :end_date)"
USER_PERSONAS_SQL = "SELECT * FROM SP_CFE_Prod_Reports_CSR_Browse1(:start_date, :end_date)"

DEFAULT_WORKTYPE_START_DATE = "2025-04-21"


class ReportResult(TypedDict):
    """Rows returned by a report procedure for a date range."""
    data: List[Dict[str, Any]]
    start_date: str
    end_date: str


def resolve_calendar_year(
    start_date: Optional[str], end_date: Optional[str], today: Optional[date] = None
) -> Tuple[str, str]:
    """Fill each missing side with Jan 1 / Dec 31 of the current year."""
    year = (today or utc_now().date()).year
    return start_date or f"{year}-01-01", end_date or f"{year}-12-31"


def resolve_year_to_date(
    start_date: Optional[str], end_date: Optional[str], today: Optional[date] = None
) -> Tuple[str, str]:
    """Use Jan 1 of the current year through today unless both dates are given."""
    if start_date and end_date:
        return start_date, end_date
    today = today or utc_now().date()
    return f"{today.year}-01-01", today.isoformat()


class MetricsService:
    """Service class for database metrics and report procedures."""

    def __init__(self, db_client: DatabaseClient, csr_statement_timeout_ms: Optional[int] = 180000):
        self.db = db_client
        self.csr_statement_timeout_ms = csr_statement_timeout_ms

    async def get_database_schema(self) -> List[Dict[str, Any]]:
        """User tables with their total on-disk size."""
        result = await self.db.query(SCHEMA_SQL)
        return result.rows

    async def get_table_counts(self) -> List[Dict[str, Any]]:
        """Row count for every user table, largest first."""
        tables = await self.get_database_schema()
        counts = []

        for table in tables:
            schema, name = table["schemaname"], table["tablename"]
            try:
                sql = f"SELECT COUNT(*) AS count FROM {escape_identifier(schema)}.{escape_identifier(name)}"
                result = await self.db.execute_raw(sql)
            except DatabaseError as e:
                slogger.warning(
                    "TABLE_COUNT_SKIPPED",
                    f"Could not count {schema}.{name}",
                    data={"schema": schema, "table": name, "error": str(e)},
                )
                continue
            counts.append({
                "schema": schema,
                "table": name,
                "count": int(result.rows[0]["count"]),
                "size": table.get("size"),
            })

        return sorted(counts, key=lambda c: c["count"], reverse=True)

    async def get_table_columns(self, schema: str, table: str) -> List[Dict[str, Any]]:
        result = await self.db.query(COLUMNS_SQL, {"schema": schema, "table": table})
        return result.rows

    async def execute_custom_query(self, sql: str, params: Params = None) -> QueryResult:
        """Run an ad-hoc query from the query console."""
        return await self.db.execute_raw(sql, params)

    async def get_database_stats(self) -> Dict[str, Any]:
        size = await self.db.query(DATABASE_SIZE_SQL)
        tables = await self.db.query(TABLE_COUNT_SQL)
        schemas = await self.db.query(SCHEMA_COUNT_SQL)
        return {
            "total_size": size.rows[0]["size"],
            "table_count": int(tables.rows[0]["count"]),
            "schema_count": int(schemas.rows[0]["count"]),
        }

    async def search_tables(self, term: str) -> List[Dict[str, Any]]:
        """Tables whose schema or table name contains ``term``, case-insensitively."""
        escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        result = await self.db.query(SEARCH_SQL, {"pattern": f"%{escaped}%"})
        return result.rows

    async def get_table_sample(self, schema: str, table: str, limit: int = 10) -> QueryResult:
        sql = f"SELECT * FROM {quote_identifier(schema)}.{quote_identifier(table)} LIMIT :limit"
        return await self.db.query(sql, {"limit": limit})

    async def get_worktype_counts(self, start_date: Optional[str] = None) -> Dict[str, Any]:
        start_date = start_date or DEFAULT_WORKTYPE_START_DATE
        result = await self.db.query(WORKTYPE_COUNTS_SQL, {"start_date": start_date})
        return {"data": result.rows, "start_date": start_date}

    async def get_csr_metrics(
        self, start_date: Optional[str] = None, end_date: Optional[str] = None
    ) -> ReportResult:
        """
        CSR metrics from the ``SP_CFE_Prod_Reports_CSR_Metrics1`` procedure.

        The procedure can run for minutes, so it executes under a statement
        timeout and raises ``QueryTimeoutError`` when the timeout fires.
        """
        start_date, end_date = resolve_calendar_year(start_date, end_date)
        return await self._run_report(
            "CSR_METRICS", CSR_METRICS_SQL, start_date, end_date,
            statement_timeout_ms=self.csr_statement_timeout_ms,
        )

    async def get_back_office_metrics(
        self, start_date: Optional[str] = None, end_date: Optional[str] = None
    ) -> ReportResult:
        start_date, end_date = resolve_year_to_date(start_date, end_date)
        return await self._run_report("BACK_OFFICE_METRICS", BACK_OFFICE_SQL, start_date, end_date)

    async def get_user_personas_metrics(
        self, start_date: Optional[str] = None, end_date: Optional[str] = None
    ) -> ReportResult:
        start_date, end_date = resolve_year_to_date(start_date, end_date)
        return await self._run_report("USER_PERSONAS_METRICS", USER_PERSONAS_SQL, start_date, end_date)

    async def _run_report(
        self,
        event_prefix: str,
        sql: str,
        start_date: str,
        end_date: str,
        statement_timeout_ms: Optional[int] = None,
    ) -> ReportResult:
        with Timer() as timer:
            slogger.info(
                f"{event_prefix}_START",
                "Running report procedure",
                data={"start_date": start_date, "end_date": end_date},
            )
            result = await self.db.query(
                sql,
                {"start_date": start_date, "end_date": end_date},
                statement_timeout_ms=statement_timeout_ms,
            )

        slogger.info(
            f"{event_prefix}_COMPLETE",
            f"Report returned {result.row_count} rows",
            data={
                "start_date": start_date,
                "end_date": end_date,
                "row_count": result.row_count,
                "columns": result.columns,
                "elapsed_ms": timer.elapsed_ms,
            },
        )
        return {"data": result.rows, "start_date": start_date, "end_date": end_date}
