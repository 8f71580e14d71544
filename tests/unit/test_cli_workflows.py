import asyncio

import pytest
from typer.testing import CliRunner

from nurture.cli import app
from nurture.persistence import SQLiteAutomationRepository
from nurture.persistence.models import (
    AuditEntry,
    Contact,
    ListMember,
    Workflow,
    WorkflowStatus,
)
from nurture.utils.clock import utcnow


@pytest.fixture
def cli_env(tmp_path):
    db_path = tmp_path / "nurture.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        f"database_url: sqlite://{db_path}\nmail:\n  backend: inmemory\n"
    )
    return SQLiteAutomationRepository(db_path), str(config_path)


def _invoke(config_path, *args):
    runner = CliRunner()
    return runner.invoke(app, ["--config", config_path, *args])


def test_workflow_list_and_show(cli_env):
    repo, config_path = cli_env
    workflow = Workflow(id="wf-cli", user_id="user-1", name="Onboarding", status="live")
    asyncio.run(repo.create_workflow(workflow))
    asyncio.run(
        repo.create_contact(Contact(workflow_id="wf-cli", user_id="user-1", email="ada@example.com"))
    )

    result = _invoke(config_path, "workflow", "list")
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert "wf-cli" in result.output
    assert "Onboarding" in result.output

    result = _invoke(config_path, "workflow", "show", "wf-cli")
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert "live" in result.output
    assert "ada@example.com: active step 0" in result.output

    result = _invoke(config_path, "workflow", "show", "missing")
    assert result.exit_code == 1
    assert "Workflow not found" in result.output


def test_workflow_list_empty(cli_env):
    _, config_path = cli_env
    result = _invoke(config_path, "workflow", "list")
    assert result.exit_code == 0
    assert "No workflows found" in result.output


def test_run_now_processes_contacts_and_records_logs(cli_env):
    repo, config_path = cli_env
    asyncio.run(
        repo.create_workflow(
            Workflow(
                id="wf-run",
                user_id="user-1",
                status=WorkflowStatus.DRAFT,
                trigger_type="webhook",
                flow=[{"id": "s", "type": "stop"}],
            )
        )
    )
    contact = asyncio.run(
        repo.create_contact(
            Contact(
                workflow_id="wf-run",
                user_id="user-1",
                email="ada@example.com",
                next_run_at=utcnow(),
            )
        )
    )

    result = _invoke(config_path, "run", "now", "wf-run")
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert '"workflowId": "wf-run"' in result.output
    assert '"completed": 1' in result.output

    result = _invoke(config_path, "workflow", "logs", "wf-run", "--contact-id", contact.id)
    assert result.exit_code == 0
    assert "workflow_stopped" in result.output


def test_run_enroll_and_unknown_workflow(cli_env):
    repo, config_path = cli_env
    asyncio.run(
        repo.create_workflow(
            Workflow(id="wf-list", user_id="user-1", status="live", trigger_list_id="list-1")
        )
    )
    asyncio.run(repo.add_list_member(ListMember(list_id="list-1", user_id="user-1", email="a@x.io")))

    result = _invoke(config_path, "run", "enroll", "wf-list")
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert '"enrolled": 1' in result.output

    result = _invoke(config_path, "run", "now", "missing")
    assert result.exit_code == 1
    assert "404: Workflow not found" in result.output


def test_run_ingest_rejects_invalid_json(cli_env):
    _, config_path = cli_env
    result = _invoke(config_path, "run", "ingest", "wf", "--payload", "{not json")
    assert result.exit_code == 1
    assert "Payload is not valid JSON" in result.output


def test_workflow_logs_empty(cli_env):
    repo, config_path = cli_env
    asyncio.run(
        repo.append_log(AuditEntry(workflow_id="wf-other", user_id="user-1", event_type="manual_enroll"))
    )
    result = _invoke(config_path, "workflow", "logs", "wf-none")
    assert result.exit_code == 0
    assert "No log entries found" in result.output
