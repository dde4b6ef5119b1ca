"""
Tests for the operations API: status codes and the state each call leaves behind.
"""
from datetime import datetime, timezone

from fastapi.testclient import TestClient
from sqlalchemy import insert

from adflow.application.runtime import build_runtime
from adflow.infra.rules.metrics import ADS_MERGE_DATA
from adflow.infra.rules.models import AutomationRule
from adflow.infra.scheduler.models import ExecutionStatus, Task, TaskExecution
from adflow.infra.scheduler.params import system_params
from adflow.infra.scheduler.queue import InMemoryQueue
from adflow.main import create_app


def save_task(runtime, **kwargs) -> Task:
    task = Task(**{"flow_id": "flow-1", "name": "nightly", **kwargs})
    runtime.store.save_task(task)
    return task


def failed_execution(runtime, task: Task, data_time: str = "2024-05-01") -> TaskExecution:
    execution = TaskExecution(task_id=task.task_id, data_time=data_time, system_params=system_params(data_time, False))
    runtime.store.create_execution(execution)
    execution.mark_running()
    execution.mark_failed("boom")
    runtime.store.update_execution(execution)
    return execution


# ============================================================
#                   TASKS
# ============================================================

def test_activate_one_off_task_queues_it(client, runtime):
    task = save_task(runtime)

    response = client.post(f"/api/tasks/{task.task_id}/activate")

    assert response.status_code == 200
    assert response.json()["status"] == "active"
    assert runtime.queue.immediate == [{"task_id": task.task_id, "kind": "system", "run_dependents": True}]
    assert runtime.store.load_task(task.task_id).is_active


def test_activate_periodic_task_installs_schedule(client, runtime):
    task = save_task(runtime, task_type="periodic", period_type="daily")

    response = client.post(f"/api/tasks/{task.task_id}/activate")

    assert response.status_code == 200
    assert task.task_id in runtime.queue.schedules


def test_activate_errors(client, runtime):
    dependent = save_task(runtime, task_type="dependent", dependents=["other"])
    bad_cron = save_task(runtime, task_type="periodic", period_type="cron", cron_expression="* *")

    assert client.post("/api/tasks/missing/activate").status_code == 404
    assert client.post(f"/api/tasks/{dependent.task_id}/activate").status_code == 409
    assert client.post(f"/api/tasks/{bad_cron.task_id}/activate").status_code == 400
    assert runtime.store.load_task(bad_cron.task_id).status == "paused"
    assert bad_cron.task_id not in runtime.queue.schedules


def test_restart_reinstalls_active_schedules(runtime):
    with TestClient(create_app(runtime)) as client:
        active = save_task(runtime, task_type="periodic", period_type="daily")
        paused = save_task(runtime, name="paused", task_type="periodic", period_type="hourly")
        client.post(f"/api/tasks/{active.task_id}/activate")

    restarted = build_runtime(runtime.settings, queue=InMemoryQueue())
    with TestClient(create_app(restarted)):
        assert active.task_id in restarted.queue.schedules
        assert paused.task_id not in restarted.queue.schedules


def test_deactivate_removes_schedule(client, runtime):
    task = save_task(runtime, task_type="periodic", period_type="hourly")
    client.post(f"/api/tasks/{task.task_id}/activate")

    response = client.post(f"/api/tasks/{task.task_id}/deactivate")

    assert response.status_code == 200
    assert response.json()["status"] == "paused"
    assert task.task_id not in runtime.queue.schedules


def test_execute_creates_manual_execution(client, runtime):
    task = save_task(runtime, params={"region": "eu"})

    response = client.post(f"/api/tasks/{task.task_id}/execute", json={"data_time": "2024-05-01"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "pending"
    assert body["execution_kind"] == "manual"
    assert body["params"]["today"] == "2024-05-01"
    assert body["params"]["region"] == "eu"
    assert runtime.queue.immediate == [{"execution_id": body["execution_id"]}]


def test_execute_without_body_uses_current_data_time(client, runtime):
    task = save_task(runtime)

    response = client.post(f"/api/tasks/{task.task_id}/execute")

    assert response.status_code == 200
    assert response.json()["data_time"] == datetime.now(timezone.utc).strftime("%Y-%m-%d")


def test_execute_errors(client, runtime):
    task = save_task(runtime)
    client.post(f"/api/tasks/{task.task_id}/execute", json={"data_time": "2024-05-01"})

    assert client.post(f"/api/tasks/{task.task_id}/execute", json={"data_time": "2024-05-01"}).status_code == 409
    assert client.post(f"/api/tasks/{task.task_id}/execute", json={"data_time": "yesterday"}).status_code == 400
    assert client.post("/api/tasks/missing/execute").status_code == 404


def test_stats(client, runtime):
    task = save_task(runtime)

    assert client.get(f"/api/tasks/{task.task_id}/stats").json() == {"total": 0}

    failed_execution(runtime, task)
    stats = client.get(f"/api/tasks/{task.task_id}/stats").json()
    assert stats["total"] == 1
    assert stats["by_status"] == {"failed": 1}
    assert stats["success_rate_percent"] == 0

    assert client.get("/api/tasks/missing/stats").status_code == 404


# ============================================================
#                   EXECUTIONS
# ============================================================

def test_get_execution(client, runtime):
    execution = failed_execution(runtime, save_task(runtime))

    response = client.get(f"/api/executions/{execution.execution_id}")

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["error_message"] == "boom"
    assert client.get("/api/executions/missing").status_code == 404


def test_cancel_pending_execution(client, runtime):
    task = save_task(runtime)
    execution_id = client.post(f"/api/tasks/{task.task_id}/execute", json={"data_time": "2024-05-01"}).json()[
        "execution_id"
    ]

    response = client.post(f"/api/executions/{execution_id}/cancel")

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert client.post(f"/api/executions/{execution_id}/cancel").status_code == 409
    assert client.post("/api/executions/missing/cancel").status_code == 404


def test_retry_failed_execution(client, runtime):
    execution = failed_execution(runtime, save_task(runtime))

    response = client.post(f"/api/executions/{execution.execution_id}/retry")

    assert response.status_code == 200
    body = response.json()
    assert body["execution_id"] != execution.execution_id
    assert body["status"] == "pending"
    assert body["retry_count"] == 1
    assert runtime.store.load_execution(execution.execution_id).status == ExecutionStatus.FAILED

    assert client.post(f"/api/executions/{body['execution_id']}/retry").status_code == 409


# ============================================================
#                   RULES
# ============================================================

def test_check_rule(client, runtime):
    today = datetime.now(timezone.utc).date()
    blank = {column.name: 0.0 for column in ADS_MERGE_DATA.columns}
    with runtime.metrics_engine.begin() as connection:
        connection.execute(insert(ADS_MERGE_DATA), [
            {**blank, "date": today, "hour": 0, "project_id": 1, "platform": "facebook",
             "ads_account_id": "act-1", "campaign_id": "c-1", "campaign_name": "c", "adset_id": "s-1",
             "adset_name": "s", "ad_id": ad_id, "ad_name": ad_id, "os_name": "ios", "spend": spend}
            for ad_id, spend in (("ad-1", 80.0), ("ad-2", 5.0))
        ])
    rule = AutomationRule(
        project_id=1,
        name="high spend",
        action="pause_ad",
        time_range=1,
        condition_group={"type": "group", "logic": "AND", "children": [
            {"type": "condition", "metric": "spend_p", "operator": ">", "value": 50, "metricType": "numeric"},
        ]},
    )
    runtime.store.save_rule(rule)

    response = client.post(f"/api/rules/{rule.rule_id}/check")

    assert response.status_code == 200
    assert response.json()["matched"] == 1
    assert response.json()["ads"][0]["ad_id"] == "ad-1"
    assert len(runtime.store.list_automation_logs(rule.rule_id)) == 1


def test_check_rule_errors(client, runtime):
    broken = AutomationRule(project_id=1, name="broken", action="pause_ad", time_type="range")
    runtime.store.save_rule(broken)

    assert client.post("/api/rules/missing/check").status_code == 404
    assert client.post(f"/api/rules/{broken.rule_id}/check").status_code == 400
