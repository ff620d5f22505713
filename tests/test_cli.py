from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result
from support import SAMPLE_REQUEST, ScriptedHandler

from course_orchestrator import __version__, main
from course_orchestrator.main import course_orchestrator
from course_orchestrator.orchestrator.handlers import HandlerRegistry

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]


@pytest.fixture()
def request_file(tmp_path: Path) -> Path:
    path = tmp_path / "course.json"
    path.write_text(json.dumps(SAMPLE_REQUEST), "utf-8")
    return path


def _invoke(runner: CliRunner, db_path: Path, *args: str) -> Result:
    group, command, *rest = args
    return runner.invoke(course_orchestrator, [group, command, "--db-path", str(db_path), *rest])


def _submit(runner: CliRunner, db_path: Path, request_file: Path) -> str:
    submit = _invoke(runner, db_path, "jobs", "submit", "--request", str(request_file))
    assert submit.exit_code == 0, submit.output
    assert "status=queued tasks=14 enqueued=1" in submit.output
    match = re.search(r"job_id=([a-f0-9-]+)", submit.output)
    assert match is not None
    return match.group(1)


def test_version_option() -> None:
    result = CliRunner().invoke(course_orchestrator, ["--version"])
    assert result.exit_code == 0
    assert f"course-orchestrator, version {__version__}" in result.output


def test_cli_submit_work_sweep_and_inspect(tmp_path: Path, request_file: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _submit(runner, db_path, request_file)

    worker = _invoke(runner, db_path, "worker", "run")
    assert worker.exit_code == 0, worker.output
    assert "processed=14 succeeded=14 failed=0" in worker.output

    sweep = _invoke(runner, db_path, "health", "sweep")
    assert sweep.exit_code == 0, sweep.output
    assert "checked=1 completed=1 failed=0" in sweep.output
    assert f"{job_id} action=completed" in sweep.output

    status = _invoke(runner, db_path, "jobs", "status", job_id)
    assert status.exit_code == 0
    assert "Status: completed" in status.output
    assert "Progress: 100.00%" in status.output
    assert "Tasks: 14" in status.output

    as_json = _invoke(runner, db_path, "jobs", "status", job_id, "--format", "json")
    payload = json.loads(as_json.output)
    assert payload["status"] == "completed"
    assert {task["status"] for task in payload["tasks"]} == {"completed"}

    listing = _invoke(runner, db_path, "jobs", "list", "--status", "completed")
    assert "Jobs: 1" in listing.output
    assert job_id in listing.output

    analytics = _invoke(runner, db_path, "analytics", "summarize", job_id, "--record")
    assert analytics.exit_code == 0, analytics.output
    assert "Success rate: 100.00%" in analytics.output
    assert "Analytics record saved." in analytics.output

    export_path = tmp_path / "exports" / "job.json"
    export = _invoke(runner, db_path, "jobs", "export", job_id, "--output", str(export_path))
    assert export.exit_code == 0
    document = json.loads(export_path.read_text("utf-8"))
    assert document["format_version"] == 1
    assert document["job"]["status"] == "completed"
    assert document["analytics"]["success_rate"] == 100.0

    rejected = _invoke(runner, db_path, "actions", "apply", job_id, "cancel_job")
    assert rejected.exit_code == 1
    assert "Action cancel_job: rejected" in rejected.output
    assert "Action rejected." in rejected.output


def test_cli_error_listing_and_skip_recovery(
    tmp_path: Path,
    request_file: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    db_path = tmp_path / "cli.db"
    handler = ScriptedHandler({"knowledge-analysis": [RuntimeError("No documents found")]})
    monkeypatch.setattr(
        main.ORCHESTRATOR_CONTROLLER,
        "handlers",
        HandlerRegistry(default=handler),
    )
    runner = CliRunner()
    job_id = _submit(runner, db_path, request_file)

    worker = _invoke(runner, db_path, "worker", "run")
    assert "processed=1 succeeded=0 failed=1" in worker.output

    errors = _invoke(runner, db_path, "errors", "list", "--job-id", job_id, "--unresolved")
    assert errors.exit_code == 0
    assert "Errors: 1" in errors.output
    assert "type=knowledge_base_empty severity=critical" in errors.output
    assert "Suggestion: Ensure sufficient documents are uploaded before generation" in (
        errors.output
    )

    skip = _invoke(
        runner,
        db_path,
        "actions",
        "apply",
        job_id,
        "skip_task",
        "--task",
        "knowledge-analysis",
        "--actor-id",
        "operator-1",
    )
    assert skip.exit_code == 0, skip.output
    assert "Action skip_task: ok" in skip.output
    assert "Affected tasks: knowledge-analysis" in skip.output

    resolved = _invoke(runner, db_path, "errors", "list", "--unresolved", "--format", "json")
    assert json.loads(resolved.output)["count"] == 0

    rest = _invoke(runner, db_path, "worker", "run")
    assert "processed=13 succeeded=13" in rest.output
    sweep = _invoke(runner, db_path, "health", "sweep")
    assert "completed=1" in sweep.output


def test_cli_rejects_bad_context_json(tmp_path: Path, request_file: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _submit(runner, db_path, request_file)

    result = _invoke(
        runner,
        db_path,
        "actions",
        "apply",
        job_id,
        "modify_config",
        "--context",
        "[1, 2]",
    )

    assert result.exit_code == 1
    assert "--context must be a JSON object" in result.output


def test_cli_reports_unknown_job(tmp_path: Path) -> None:
    result = _invoke(CliRunner(), tmp_path / "cli.db", "jobs", "status", "missing-job")
    assert result.exit_code == 1
    assert "Job not found: missing-job" in result.output
