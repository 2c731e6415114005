import asyncio

import pytest
from typer.testing import CliRunner

import chatforge.persistence as persistence
from chatforge.cli import app
from chatforge.persistence import (
    InMemoryWorkflowRepository,
    MessageStatus,
    RunStatus,
    StepRecord,
    StepStatus,
    WorkflowRun,
)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("CHATFORGE_CONFIG", str(tmp_path / "missing.yaml"))
    for name in ("CHATFORGE_DATABASE_URL", "DATABASE_URL", "CHATFORGE_TRANSPORT"):
        monkeypatch.delenv(name, raising=False)


def _setup_repo(monkeypatch) -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repo)
    return repo


def test_run_list_empty(monkeypatch):
    _setup_repo(monkeypatch)

    result = CliRunner().invoke(app, ["run", "list"])

    assert result.exit_code == 0, result.output
    assert "No runs found" in result.output


def test_run_list_shows_runs(monkeypatch):
    repo = _setup_repo(monkeypatch)
    first = asyncio.run(repo.create_run(WorkflowRun(message_id="msg-1")))
    asyncio.run(repo.complete_run(first.run_id, RunStatus.COMPLETED))
    second = asyncio.run(repo.create_run(WorkflowRun(message_id="msg-2")))

    result = CliRunner().invoke(app, ["run", "list"])

    assert result.exit_code == 0, result.output
    assert f"{first.run_id}\tmsg-1\tcompleted" in result.output
    assert f"{second.run_id}\tmsg-2\tqueued" in result.output


def test_run_show_details_and_missing(monkeypatch):
    repo = _setup_repo(monkeypatch)
    run = asyncio.run(repo.create_run(WorkflowRun(message_id="msg-1")))
    asyncio.run(
        repo.put_step(
            StepRecord(
                run_id=run.run_id,
                step_name="extract-urls",
                input_fingerprint="fp",
                status=StepStatus.SUCCEEDED,
                output={"urls": []},
                attempt=1,
            )
        )
    )
    asyncio.run(
        repo.put_step(
            StepRecord(
                run_id=run.run_id,
                step_name="scrape-urls",
                input_fingerprint="fp",
                status=StepStatus.FAILED,
                error="all 1 url(s) failed to scrape",
                attempt=3,
            )
        )
    )
    asyncio.run(repo.complete_run(run.run_id, RunStatus.FAILED, error="step scrape-urls failed"))

    runner = CliRunner()
    result = runner.invoke(app, ["run", "show", run.run_id])
    assert result.exit_code == 0, result.output
    assert f"Run {run.run_id}: failed" in result.output
    assert "Error: step scrape-urls failed" in result.output
    assert "- extract-urls: succeeded (attempt 1)" in result.output
    assert "- scrape-urls: failed (attempt 3) all 1 url(s) failed to scrape" in result.output

    missing = runner.invoke(app, ["run", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.output


def test_message_submit_and_show(monkeypatch):
    repo = _setup_repo(monkeypatch)
    runner = CliRunner()

    result = runner.invoke(app, ["message", "submit", "conv-1", "hello there"])
    assert result.exit_code == 0, result.output
    message_id = result.output.strip().split("Message queued: ")[-1]

    state = asyncio.run(repo.get_message(message_id))
    assert state.status is MessageStatus.QUEUED

    shown = runner.invoke(app, ["message", "show", message_id])
    assert shown.exit_code == 0, shown.output
    assert f"Message {message_id}: queued" in shown.output

    missing = runner.invoke(app, ["message", "show", "nope"])
    assert missing.exit_code == 1
    assert "Message not found" in missing.output


def test_run_resume_completes_interrupted_run(monkeypatch):
    monkeypatch.setenv("CHATFORGE_MODEL", "test")
    repo = _setup_repo(monkeypatch)
    run = asyncio.run(
        repo.create_run(WorkflowRun(message_id="msg-1", input_text="no links here"))
    )
    asyncio.run(repo.update_run_status(run.run_id, RunStatus.RUNNING))

    result = CliRunner().invoke(app, ["run", "resume"])

    assert result.exit_code == 0, result.output
    assert f"{run.run_id}\tcompleted" in result.output
    message = asyncio.run(repo.get_message("msg-1"))
    assert message.status is MessageStatus.COMPLETED
    assert message.content


def test_run_resume_nothing_to_do(monkeypatch):
    _setup_repo(monkeypatch)

    result = CliRunner().invoke(app, ["run", "resume"])

    assert result.exit_code == 0, result.output
    assert "No incomplete runs" in result.output


def test_run_retry_starts_new_run(monkeypatch):
    monkeypatch.setenv("CHATFORGE_MODEL", "test")
    repo = _setup_repo(monkeypatch)
    run = asyncio.run(repo.create_run(WorkflowRun(message_id="msg-1", input_text="hi")))
    asyncio.run(repo.complete_run(run.run_id, RunStatus.FAILED, error="step generate-text failed"))

    runner = CliRunner()
    result = runner.invoke(app, ["run", "retry", run.run_id])

    assert result.exit_code == 0, result.output
    assert "\tcompleted" in result.output
    assert run.run_id not in result.output

    missing = runner.invoke(app, ["run", "retry", "missing-id"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.output
