import json

import pytest
from typer.testing import CliRunner

from sponsorcrm.cli import app

runner = CliRunner()


def _created_id(result) -> str:
    assert result.exit_code == 0, result.output
    return result.output.strip().rsplit(": ", 1)[1]


@pytest.fixture
def workspace_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert runner.invoke(app, ["init"]).exit_code == 0
    result = runner.invoke(app, ["workspace", "add", "demo", "--from", "sponsors@example.org"])
    assert result.exit_code == 0, result.output
    return tmp_path


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.output.strip() == "0.1.0"


def test_pipeline_commands(workspace_dir) -> None:
    conference_id = _created_id(runner.invoke(app, ["conference", "add", "Cloud Native Days", "--city", "Bergen"]))
    sponsor_id = _created_id(
        runner.invoke(app, ["sponsor", "add", "Acme Bio", "--contact", "Ada Lovelace <ada@acme.example>"])
    )
    sfc_id = _created_id(runner.invoke(app, ["pipeline", "add", sponsor_id, conference_id, "--value", "50000"]))

    moved = runner.invoke(app, ["pipeline", "move", sfc_id, "contacted", "--author", "ola"])
    listed = runner.invoke(app, ["pipeline", "list", "--json"])
    history = runner.invoke(app, ["activity", "list", sfc_id])

    assert moved.exit_code == 0
    assert f"{sfc_id}: prospect -> contacted" in moved.output
    rows = json.loads(listed.output)
    assert rows[0]["sponsor_name"] == "Acme Bio"
    assert rows[0]["status"] == "contacted"
    assert "Status changed from Prospect to Contacted" in history.output
    assert (workspace_dir / "workspaces" / "demo" / "local.sqlite").exists()


def test_invalid_move_exits_with_error(workspace_dir) -> None:
    conference_id = _created_id(runner.invoke(app, ["conference", "add", "Cloud Native Days"]))
    sponsor_id = _created_id(runner.invoke(app, ["sponsor", "add", "Acme Bio"]))
    sfc_id = _created_id(runner.invoke(app, ["pipeline", "add", sponsor_id, conference_id]))

    result = runner.invoke(app, ["pipeline", "move", sfc_id, "won"])

    assert result.exit_code == 1
    assert "Error: status must be one of" in result.output


def test_reminder_sweep_with_nothing_due(workspace_dir) -> None:
    result = runner.invoke(app, ["reminders", "sweep", "--json"])

    assert result.exit_code == 0
    assert json.loads(result.output)["message"] == "No pending contracts need reminders."


def test_commands_need_a_workspace(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(app, ["pipeline", "list"])

    assert result.exit_code == 1
    assert "No active workspace" in result.output
