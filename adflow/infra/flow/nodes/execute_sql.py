# adflow/infra/flow/nodes/execute_sql.py
"""
SQL execution node.

Runs one SQL statement against a registered datasource or an inline
connection. ``${name}`` placeholders are turned into bound parameters whose
values come from the node's merged inputs (falling back to the run
parameters); the quoted rendering is only used for logs and the result.
"""
from __future__ import annotations

import asyncio
import csv
import io
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic_core import to_jsonable_python
from sqlalchemy import MetaData, Table, create_engine, insert, text
from sqlalchemy.engine import URL

from adflow.infra.errors import NodeConfigError
from adflow.infra.flow.models import NodeKind
from adflow.infra.flow.nodes.base import BaseNode

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\$\{(\w+)\}")

# db_type -> SQLAlchemy dialect
DRIVERS = {
    "mysql": "mysql+pymysql",
    "doris": "mysql+pymysql",
    "starrocks": "mysql+pymysql",
    "postgresql": "postgresql+psycopg2",
    "sqlite": "sqlite",
    "trino": "trino",
}

OUTPUT_FORMATS = ("json", "csv", "none")
DEFAULT_TIMEOUT = 30
DEFAULT_MAX_ROWS = 1000


# ============================================================
#                   CONNECTIONS
# ============================================================
@dataclass
class ConnectionSettings:
    """Connection parameters of a datasource."""
    db_type: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    database: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def url(self) -> URL:
        try:
            drivername = DRIVERS[self.db_type]
        except KeyError:
            raise NodeConfigError(f"Unsupported database type '{self.db_type}'") from None
        if drivername == "sqlite":
            return URL.create(drivername, database=self.database)
        return URL.create(
            drivername,
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
            query={k: str(v) for k, v in self.extra.items()},
        )


class DatasourceResolver(Protocol):
    """Resolves a registered datasource id to its connection settings."""

    def resolve(self, datasource_id: Any) -> ConnectionSettings:
        ...


# ============================================================
#                   PLACEHOLDERS
# ============================================================
def quote_value(value: Any) -> str:
    """Render a value as a SQL literal, for display only."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def bind_placeholders(sql: str, values: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
    """
    Replace ``${name}`` placeholders with bind parameters.

    Placeholders without a value are left untouched.

    Args:
        sql: SQL text with placeholders
        values: Placeholder values

    Returns:
        The SQL text with ``:name`` bind markers and the bound values
    """
    params: Dict[str, Any] = {}

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in values:
            return match.group(0)
        key = f"p_{name}"
        params[key] = values[name]
        return f":{key}"

    return PLACEHOLDER.sub(replace, sql), params


def render_sql_preview(sql: str, values: Dict[str, Any]) -> str:
    """Substitute placeholders with quoted literals for logging."""
    return PLACEHOLDER.sub(
        lambda m: quote_value(values[m.group(1)]) if m.group(1) in values else m.group(0),
        sql,
    )


def rows_to_csv(rows: List[Dict[str, Any]], columns: List[str]) -> str:
    if not rows:
        return ""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow(["" if row.get(col) is None else row.get(col) for col in columns])
    return buffer.getvalue().rstrip("\n")


# ============================================================
#                   NODE
# ============================================================
class ExecuteSqlNode(BaseNode):
    """Executes a SQL statement with a wall-clock timeout and a row cap."""

    kind = NodeKind.EXECUTE_SQL

    def validate(self, config: Dict[str, Any]) -> None:
        """
        Check the node configuration.

        Raises:
            NodeConfigError: On the first missing or invalid field
        """
        connection_type = config.get("connection_type")
        if connection_type == "datasource":
            if not config.get("datasource_id"):
                raise NodeConfigError("datasource_id is required for a datasource connection")
        elif connection_type == "custom":
            custom = config.get("custom_connection")
            if not custom:
                raise NodeConfigError("custom_connection is required for a custom connection")
            for name in ("host", "port", "username", "password", "db_type"):
                value = custom.get(name)
                if value is None or (isinstance(value, str) and not value.strip()):
                    raise NodeConfigError(f"custom_connection.{name} must not be empty")
            port = custom.get("port")
            if isinstance(port, bool) or not isinstance(port, int) or port <= 0:
                raise NodeConfigError("custom_connection.port must be a positive integer")
        else:
            raise NodeConfigError(f"Invalid connection_type: {connection_type!r}")

        sql = config.get("sql")
        if not isinstance(sql, str) or not sql.strip():
            raise NodeConfigError("sql must not be empty")
        if self._number(config, "timeout", DEFAULT_TIMEOUT) <= 0:
            raise NodeConfigError("timeout must be greater than 0")
        if self._number(config, "max_rows", DEFAULT_MAX_ROWS) <= 0:
            raise NodeConfigError("max_rows must be greater than 0")
        if config.get("output_format", "json") not in OUTPUT_FORMATS:
            raise NodeConfigError(f"output_format must be one of {', '.join(OUTPUT_FORMATS)}")
        if config.get("save_result"):
            table = config.get("result_table")
            if not isinstance(table, str) or not table.strip():
                raise NodeConfigError("result_table is required when save_result is enabled")

    async def perform(self, config: Dict[str, Any], merged_inputs: Dict[str, Any]) -> Dict[str, Any]:
        self.validate(config)
        connection = self._connection(config)

        values = {**self.context.params, **merged_inputs}
        statement, params = bind_placeholders(config["sql"], values)
        preview = render_sql_preview(config["sql"], values)
        timeout = self._number(config, "timeout", DEFAULT_TIMEOUT)
        max_rows = int(self._number(config, "max_rows", DEFAULT_MAX_ROWS))
        output_format = config.get("output_format", "json")

        self.log.info(f"Executing SQL: db_type={connection.db_type}, timeout={timeout}s, sql={preview}")
        started = time.perf_counter()
        try:
            columns, rows, rows_affected = await asyncio.wait_for(
                asyncio.to_thread(self._run, connection.url(), statement, params, max_rows),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise TimeoutError(f"SQL execution timed out after {timeout}s") from None
        execution_time = round(time.perf_counter() - started, 3)
        self.log.info(f"SQL finished: rows_returned={len(rows)}, rows_affected={rows_affected}")

        if config.get("save_result") and rows:
            await asyncio.to_thread(self._save_rows, connection.url(), config["result_table"], rows)

        if output_format == "csv":
            data: Any = rows_to_csv(rows, columns)
        elif output_format == "none":
            data = None
        else:
            data = rows

        return {
            "sql": preview,
            "rows_returned": len(rows),
            "rows_affected": rows_affected,
            "columns": columns,
            "data": data,
            "output_format": output_format,
            "execution_time": execution_time,
        }

    def _connection(self, config: Dict[str, Any]) -> ConnectionSettings:
        if config["connection_type"] == "datasource":
            resolver: Optional[DatasourceResolver] = self.context.services.get("datasource_resolver")
            if resolver is None:
                raise NodeConfigError("No datasource resolver is configured")
            return resolver.resolve(config["datasource_id"])

        custom = config["custom_connection"]
        return ConnectionSettings(
            db_type=custom["db_type"],
            host=custom["host"],
            port=custom["port"],
            username=custom["username"],
            password=custom["password"],
            database=custom.get("database") or config.get("database"),
            extra=dict(custom.get("extra_config") or {}),
        )

    @staticmethod
    def _run(url: URL, statement: str, params: Dict[str, Any], max_rows: int) -> Tuple[List[str], List[Dict[str, Any]], int]:
        engine = create_engine(url)
        try:
            with engine.begin() as conn:
                result = conn.execute(text(statement), params)
                if not result.returns_rows:
                    return [], [], max(result.rowcount, 0)
                columns = list(result.keys())
                rows = [dict(row._mapping) for row in result.fetchmany(max_rows)]
                return columns, to_jsonable_python(rows), 0
        finally:
            engine.dispose()

    def _save_rows(self, url: URL, table_name: str, rows: List[Dict[str, Any]]) -> None:
        """Insert the result rows into an existing table; failures only warn."""
        engine = create_engine(url)
        try:
            with engine.begin() as conn:
                table = Table(table_name, MetaData(), autoload_with=conn)
                names = {c.name for c in table.columns}
                conn.execute(insert(table), [{k: v for k, v in row.items() if k in names} for row in rows])
            self.log.info(f"Saved {len(rows)} rows to table {table_name}")
        except Exception as e:
            self.log.warning(f"Could not save result to table {table_name}: {e}")
        finally:
            engine.dispose()

    @staticmethod
    def _number(config: Dict[str, Any], key: str, default: float) -> float:
        value = config.get(key)
        if value is None:
            return default
        try:
            return float(value)
        except (TypeError, ValueError):
            raise NodeConfigError(f"{key} must be a number") from None
