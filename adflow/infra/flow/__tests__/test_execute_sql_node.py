"""
Tests for the SQL execution node.

Runs against a temporary SQLite database resolved through a fake
datasource resolver.
"""
import time

import pytest
from sqlalchemy import create_engine, text

from adflow.infra.errors import NodeConfigError
from adflow.infra.flow import DagExecutor, FlowVersion, LogSink, NodeKind, NodeRegistry, RunStatus
from adflow.infra.flow.models import NodeContext, NodeSpec
from adflow.infra.flow.nodes import ConnectionSettings, ExecuteSqlNode
from adflow.infra.flow.nodes.execute_sql import bind_placeholders, render_sql_preview, rows_to_csv
from conftest import ScriptedNode, build_version, node


class FakeDatasourceResolver:
    def __init__(self, settings: ConnectionSettings):
        self.settings = settings
        self.requested = []

    def resolve(self, datasource_id):
        self.requested.append(datasource_id)
        return self.settings


@pytest.fixture
def database(tmp_path):
    path = tmp_path / "warehouse.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE campaigns (id INTEGER, name TEXT, spend REAL)"))
        conn.execute(text("CREATE TABLE campaign_copy (id INTEGER, name TEXT, spend REAL)"))
        conn.execute(
            text("INSERT INTO campaigns VALUES (:id, :name, :spend)"),
            [
                {"id": 1, "name": "spring", "spend": 12.5},
                {"id": 2, "name": "O'Brien", "spend": 80.0},
                {"id": 3, "name": "summer", "spend": 150.0},
            ],
        )
    engine.dispose()
    return path


@pytest.fixture
def resolver(database):
    return FakeDatasourceResolver(ConnectionSettings(db_type="sqlite", database=str(database)))


def sql_node(resolver, params=None, **config):
    config.setdefault("connection_type", "datasource")
    config.setdefault("datasource_id", 7)
    context = NodeContext(params=params or {}, log_sink=LogSink(), services={"datasource_resolver": resolver})
    return ExecuteSqlNode(NodeSpec(id="sql", kind=NodeKind.EXECUTE_SQL, config=config), context)


def fetch(database, sql):
    engine = create_engine(f"sqlite:///{database}")
    try:
        with engine.connect() as conn:
            return conn.execute(text(sql)).fetchall()
    finally:
        engine.dispose()


# ============================================================
#                   PLACEHOLDERS
# ============================================================

def test_bind_placeholders_produces_bind_parameters():
    sql, params = bind_placeholders(
        "SELECT * FROM t WHERE name = ${name} AND spend > ${min} AND day = ${missing}",
        {"name": "x'; DROP TABLE t; --", "min": 10},
    )

    assert sql == "SELECT * FROM t WHERE name = :p_name AND spend > :p_min AND day = ${missing}"
    assert params == {"p_name": "x'; DROP TABLE t; --", "p_min": 10}


def test_render_sql_preview_quotes_by_type():
    preview = render_sql_preview(
        "${s} ${i} ${f} ${t} ${n} ${missing}",
        {"s": "it's", "i": 3, "f": 1.5, "t": True, "n": None},
    )

    assert preview == "'it''s' 3 1.5 TRUE NULL ${missing}"


def test_rows_to_csv_escapes_values():
    csv_text = rows_to_csv([{"a": "x,y", "b": None}, {"a": 'say "hi"', "b": 2}], ["a", "b"])

    assert csv_text == 'a,b\n"x,y",\n"say ""hi""",2'
    assert rows_to_csv([], ["a"]) == ""


# ============================================================
#                   VALIDATION
# ============================================================

@pytest.mark.parametrize(
    "config, message",
    [
        ({"connection_type": "ldap", "sql": "SELECT 1"}, "connection_type"),
        ({"connection_type": "datasource", "datasource_id": None, "sql": "SELECT 1"}, "datasource_id"),
        ({"sql": "   "}, "sql"),
        ({"sql": "SELECT 1", "timeout": 0}, "timeout"),
        ({"sql": "SELECT 1", "max_rows": -1}, "max_rows"),
        ({"sql": "SELECT 1", "output_format": "xml"}, "output_format"),
        ({"sql": "SELECT 1", "save_result": True, "result_table": " "}, "result_table"),
        (
            {
                "connection_type": "custom",
                "sql": "SELECT 1",
                "custom_connection": {"host": "db", "port": "3306", "username": "u", "password": "p", "db_type": "mysql"},
            },
            "port",
        ),
        (
            {
                "connection_type": "custom",
                "sql": "SELECT 1",
                "custom_connection": {"host": "", "port": 3306, "username": "u", "password": "p", "db_type": "mysql"},
            },
            "host",
        ),
    ],
)
@pytest.mark.asyncio
async def test_invalid_config_is_rejected(resolver, config, message):
    node = sql_node(resolver, **config)

    with pytest.raises(NodeConfigError, match=message):
        await node.process()

    assert node.state == "failed"
    assert resolver.requested == []


def test_custom_connection_url():
    url = ConnectionSettings(
        db_type="postgresql", host="db.internal", port=5432, username="etl", password="s3cret", database="ads"
    ).url()

    assert url.drivername == "postgresql+psycopg2"
    assert url.host == "db.internal"
    assert url.port == 5432
    assert url.database == "ads"


def test_unsupported_db_type():
    with pytest.raises(NodeConfigError, match="oracle"):
        ConnectionSettings(db_type="oracle").url()


# ============================================================
#                   EXECUTION
# ============================================================

@pytest.mark.asyncio
async def test_select_binds_inputs(resolver):
    node = sql_node(resolver, sql="SELECT id, name FROM campaigns WHERE name = ${name} ORDER BY id")
    node.add_input("upstream", {"name": "O'Brien"})

    await node.process()

    assert node.state == "completed"
    assert node.result["data"] == [{"id": 2, "name": "O'Brien"}]
    assert node.result["columns"] == ["id", "name"]
    assert node.result["rows_returned"] == 1
    assert node.result["sql"] == "SELECT id, name FROM campaigns WHERE name = 'O''Brien' ORDER BY id"
    assert resolver.requested == [7]


@pytest.mark.asyncio
async def test_run_params_fill_placeholders_inputs_win(resolver):
    node = sql_node(
        resolver,
        params={"min_spend": 100, "name": "ignored"},
        sql="SELECT id FROM campaigns WHERE spend > ${min_spend} OR name = ${name} ORDER BY id",
    )
    node.add_input("upstream", {"name": "spring"})

    await node.process()

    assert node.result["data"] == [{"id": 1}, {"id": 3}]


@pytest.mark.asyncio
async def test_max_rows_caps_result(resolver):
    node = sql_node(resolver, sql="SELECT id FROM campaigns ORDER BY id", max_rows=2)

    await node.process()

    assert node.result["rows_returned"] == 2
    assert node.result["data"] == [{"id": 1}, {"id": 2}]


@pytest.mark.asyncio
async def test_csv_and_none_output_formats(resolver):
    csv_node = sql_node(resolver, sql="SELECT id, name FROM campaigns WHERE id = 1", output_format="csv")
    none_node = sql_node(resolver, sql="SELECT id FROM campaigns", output_format="none")

    await csv_node.process()
    await none_node.process()

    assert csv_node.result["data"] == "id,name\n1,spring"
    assert none_node.result["data"] is None
    assert none_node.result["rows_returned"] == 3


@pytest.mark.asyncio
async def test_statement_without_rows_reports_affected(resolver, database):
    node = sql_node(resolver, sql="UPDATE campaigns SET spend = spend + ${delta} WHERE spend > 50", params={"delta": 1})

    await node.process()

    assert node.result["rows_affected"] == 2
    assert node.result["data"] == []
    assert fetch(database, "SELECT spend FROM campaigns WHERE id = 3")[0][0] == 151.0


@pytest.mark.asyncio
async def test_save_result_inserts_rows(resolver, database):
    node = sql_node(
        resolver,
        sql="SELECT id, name, spend FROM campaigns WHERE spend > 50",
        save_result=True,
        result_table="campaign_copy",
    )

    await node.process()

    assert sorted(r[0] for r in fetch(database, "SELECT id FROM campaign_copy")) == [2, 3]


@pytest.mark.asyncio
async def test_save_result_failure_only_warns(resolver):
    node = sql_node(resolver, sql="SELECT id FROM campaigns", save_result=True, result_table="no_such_table")
    sink = node.context.log_sink

    await node.process()

    assert node.state == "completed"
    assert any(e.level == "WARNING" and "no_such_table" in e.message for e in sink.entries)


@pytest.mark.asyncio
async def test_sql_error_fails_node(resolver):
    node = sql_node(resolver, sql="SELECT * FROM missing_table")

    with pytest.raises(Exception, match="missing_table"):
        await node.process()

    assert node.state == "failed"
    assert "missing_table" in node.error


@pytest.mark.asyncio
async def test_timeout(resolver, monkeypatch):
    def slow_run(url, statement, params, max_rows):
        time.sleep(0.5)
        return [], [], 0

    monkeypatch.setattr(ExecuteSqlNode, "_run", staticmethod(slow_run))
    node = sql_node(resolver, sql="SELECT 1", timeout=0.05)

    with pytest.raises(TimeoutError):
        await node.process()

    assert node.state == "failed"
    assert "timed out" in node.error


# ============================================================
#                   IN A FLOW
# ============================================================

@pytest.mark.asyncio
async def test_sql_node_inside_flow(resolver, calls):
    registry = NodeRegistry()
    registry.register(NodeKind.EXECUTE_SQL, ExecuteSqlNode)
    registry.register(NodeKind.FILE_TRANSFER, ScriptedNode)
    executor = DagExecutor(registry, services={"datasource_resolver": resolver, "calls": calls})
    version = build_version(
        [
            node("params", kind=NodeKind.FLOW_PARAMS),
            node("seed", kind=NodeKind.FILE_TRANSFER, emit={"min_spend": 50}),
            node(
                "query",
                connection_type="datasource",
                datasource_id=7,
                sql="SELECT name FROM campaigns WHERE spend > ${min_spend} ORDER BY id",
            ),
            node("after", kind=NodeKind.FILE_TRANSFER, echo=True),
        ],
        [("seed", "query"), ("query", "after")],
    )

    report = await executor.execute(version)

    assert report.status == RunStatus.COMPLETED
    assert report.nodes["query"].result["data"] == [{"name": "O'Brien"}, {"name": "summer"}]
    after_inputs = dict(calls)["after"]
    assert after_inputs["rows_returned"] == 2
    assert isinstance(FlowVersion.from_config("f", 1, report.snapshot), FlowVersion)
