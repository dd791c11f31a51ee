from __future__ import annotations
import asyncio
import copy
import json
import re
from typing import Any, Dict, List, Optional

import aiohttp
import duckdb
import pandas as pd
import sqlglot
import sqlglot.expressions as exp

from apiwizard.cache.redis_cache import SampleCache
from apiwizard.config.models import DataSource
from apiwizard.connectors.base import AsyncBaseConnector
from apiwizard.errors import InvalidSourceQueryError, MissingParameterError
from apiwizard.governance.redis_rate_limiter import SourceRateLimiter

_PARAM_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")


def validate_query(sql: str) -> None:
    """
    Accept exactly one read-only SELECT statement.

    Raises:
        ValueError: on parse errors, multiple statements, or any statement
            that is not a SELECT (INSERT, UPDATE, DROP, ATTACH, ...).
    """
    try:
        statements = [s for s in sqlglot.parse(sql, read="duckdb") if s is not None]
    except sqlglot.errors.ParseError as exc:
        raise ValueError(f"SQL parse error: {exc}") from exc
    if len(statements) != 1:
        raise ValueError(f"Expected one statement, got {len(statements)}")

    statement = statements[0]
    if not isinstance(statement, (exp.Select, exp.Union)):
        raise ValueError(f"Only SELECT queries are allowed, got {statement.key.upper()}")
    for node in statement.walk():
        if isinstance(node, (exp.Insert, exp.Update, exp.Delete, exp.Drop, exp.Create)):
            raise ValueError(f"Only SELECT queries are allowed, found {node.key.upper()}")


def query_parameters(source: DataSource, params: Dict[str, str]) -> Dict[str, str]:
    """Bind '$name' placeholders from `params`; every placeholder is required."""
    bound: Dict[str, str] = {}
    for name in dict.fromkeys(_PARAM_RE.findall(source.database_config.query)):
        if params.get(name) in (None, ""):
            raise MissingParameterError(source.id, name)
        bound[name] = params[name]
    return bound


def _frame_to_rows(df: pd.DataFrame) -> List[Dict[str, Any]]:
    # JSON round trip turns NaN into null and timestamps into ISO strings.
    return json.loads(df.to_json(orient="records", date_format="iso"))


def run_query(
    source: DataSource,
    params: Dict[str, str],
    default_connection: str = ":memory:",
) -> List[Dict[str, Any]]:
    cfg = source.database_config
    database = cfg.connection or default_connection
    try:
        validate_query(cfg.query)
    except ValueError as exc:
        raise InvalidSourceQueryError(source.id, str(exc)) from exc
    bound = query_parameters(source, params)

    read_only = database != ":memory:" and not cfg.tables
    con = duckdb.connect(database=database, read_only=read_only)
    try:
        for table_name, rows in cfg.tables.items():
            con.register(table_name, pd.DataFrame(rows))
        df = con.execute(cfg.query, bound).df() if bound else con.execute(cfg.query).df()
    finally:
        con.close()
    return _frame_to_rows(df)


class DatabaseConnector(AsyncBaseConnector):
    """
    Read-only SQL connector over DuckDB.

    The query is validated with sqlglot before execution; '$name'
    placeholders are bound from request parameters. Sources without their
    own connection use `database_path` (DATABASE_PATH in the gateway).
    Inline `tables` are registered as views first (dev/demo mode without a
    database file).
    Rows come back as a list of dicts.
    """

    source_type = "database"

    def __init__(
        self,
        rate_limiter: SourceRateLimiter,
        cache: SampleCache,
        session: Optional[aiohttp.ClientSession] = None,
        database_path: str = ":memory:",
    ) -> None:
        super().__init__(rate_limiter, cache, session)
        self._database_path = database_path

    def check_parameters(self, source: DataSource, params: Dict[str, str]) -> None:
        if source.database_config is not None:
            query_parameters(source, params)

    async def fetch_data(self, source: DataSource, params: Dict[str, str]) -> Any:
        if source.database_config is None:
            return copy.deepcopy(source.sample_data)
        # duckdb is blocking; keep the event loop free.
        return await asyncio.to_thread(run_query, source, params, self._database_path)
