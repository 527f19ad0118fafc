"""
Search service for finding tables by schema or table name.
"""
from typing import Any, Dict

from .metrics import MetricsService
from ..utils.logging import slogger, Timer
from ..utils.matching import identifiers_match

SEARCH_MODES = ("exact", "fuzzy")


class TableSearchService:
    """
    Service for searching user tables.
    Supports substring (exact) and fuzzy matching with pagination.
    """
    def __init__(self, metrics_service: MetricsService):
        self.metrics = metrics_service

    async def search_tables(
        self,
        query: str,
        mode: str = "exact",
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        """
        Search for tables by name.

        Args:
            query: Search query string
            mode: ``exact`` for a case-insensitive substring match done in
                SQL, ``fuzzy`` for similarity scoring of every user table
            limit: Maximum number of results to return
            offset: Number of results to skip (for pagination)

        Returns:
            Dict containing matches and pagination metadata
        """
        if mode not in SEARCH_MODES:
            raise ValueError(f"Unsupported search mode: {mode}")

        with Timer() as timer:
            if mode == "exact":
                tables = await self.metrics.search_tables(query)
                matches = [dict(table, score=1.0) for table in tables]
            else:
                tables = await self.metrics.get_database_schema()
                matches = []
                qualified = "." in query
                for table in tables:
                    candidate = table["tablename"]
                    if qualified:
                        candidate = f"{table['schemaname']}.{candidate}"
                    result = identifiers_match(query, candidate)
                    if result["match"]:
                        matches.append(dict(table, score=round(result["similarity"], 4)))

                matches.sort(key=lambda m: (-m["score"], m["schemaname"], m["tablename"]))

            page = matches[offset:offset + limit]

            slogger.info(
                "TABLE_SEARCH",
                "Table search completed",
                data={
                    "query": query,
                    "mode": mode,
                    "candidates": len(tables),
                    "total_matches": len(matches),
                    "returned_matches": len(page),
                    "elapsed_ms": timer.elapsed_ms,
                },
            )

        return {
            "data": page,
            "metadata": {
                "total": len(matches),
                "limit": limit,
                "offset": offset,
                "query": query,
                "mode": mode,
            },
        }
