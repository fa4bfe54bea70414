"""Tests for the CLI commands."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from agent_pipeline.cli import (
    EXIT_CONFLICT,
    EXIT_ERROR,
    EXIT_ILLEGAL_TRANSITION,
    EXIT_NOT_FOUND,
    EXIT_OK,
    main,
)
from agent_pipeline.errors import TooManyConflictsError
from agent_pipeline.state.file_store import STATE_FILE_NAME


@pytest.fixture
def cli(tmp_path):
    """Invoke the CLI against a state directory under tmp_path.

    Returns the click Result and the parsed JSON payload from stdout.
    """
    runner = CliRunner()
    state_dir = tmp_path / "state"

    def invoke(*args):
        result = runner.invoke(main, ["--state-dir", str(state_dir), *args])
        payload = json.loads(result.stdout) if result.stdout.strip() else None
        return result, payload

    invoke.state_dir = state_dir
    return invoke


# ---------------------------------------------------------------------------
# Entity lifecycle
# ---------------------------------------------------------------------------


def test_init_creates_queued_entity(cli):
    result, payload = cli("init", "001-login", "42")

    assert result.exit_code == EXIT_OK
    assert payload["entity_id"] == "001-login"
    assert payload["phase"] == "queued"
    assert payload["version"] == 0
    assert (cli.state_dir / "001-login" / STATE_FILE_NAME).exists()


def test_transition_then_show(cli):
    cli("init", "001-login", "42")
    result, payload = cli(
        "transition", "001-login", "intake", "--actor", "alice", "--detail", "triaged"
    )

    assert result.exit_code == EXIT_OK
    assert payload["phase"] == "intake"

    result, payload = cli("show", "001-login")

    assert result.exit_code == EXIT_OK
    assert payload["version"] == 1
    assert payload["history"][0]["actor"] == "alice"
    assert payload["history"][0]["from_phase"] == "queued"


def test_transition_accepts_hyphenated_phase(cli):
    cli("init", "001-login", "42")
    cli("transition", "001-login", "intake")

    result, payload = cli("transition", "001-login", "spec-created")

    assert result.exit_code == EXIT_OK
    assert payload["phase"] == "spec_created"


def test_list_filters_by_phase(cli):
    cli("init", "001-a", "1")
    cli("init", "002-b", "2")
    cli("transition", "002-b", "intake")

    result, payload = cli("list", "--phase", "intake")

    assert result.exit_code == EXIT_OK
    assert [s["entity_id"] for s in payload] == ["002-b"]


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


def test_missing_entity_exits_not_found(cli):
    result, payload = cli("show", "missing")

    assert result.exit_code == EXIT_NOT_FOUND
    assert payload["error"] == "NotFoundError"
    assert payload["entity_id"] == "missing"


def test_illegal_transition_exits_3(cli):
    cli("init", "001-login", "42")

    result, payload = cli("transition", "001-login", "qa")

    assert result.exit_code == EXIT_ILLEGAL_TRANSITION
    assert payload["error"] == "IllegalTransitionError"
    assert payload["current_phase"] == "queued"
    assert payload["rule"] == "declared_edge"


def test_terminal_phase_exits_3(cli):
    cli("init", "001-login", "42")
    cli("transition", "001-login", "failed", "--detail", "abandoned")

    result, payload = cli("transition", "001-login", "intake")

    assert result.exit_code == EXIT_ILLEGAL_TRANSITION
    assert payload["error"] == "TerminalPhaseError"


def test_conflicts_exit_4(cli):
    cli("init", "001-login", "42")

    with patch(
        "agent_pipeline.coordinator.TransitionCoordinator.request_transition",
        new=AsyncMock(side_effect=TooManyConflictsError("001-login", attempts=6)),
    ):
        result, payload = cli("transition", "001-login", "intake")

    assert result.exit_code == EXIT_CONFLICT
    assert payload["error"] == "TooManyConflictsError"


def test_duplicate_init_exits_1(cli):
    cli("init", "001-login", "42")

    result, payload = cli("init", "001-login", "42")

    assert result.exit_code == EXIT_ERROR
    assert payload["error"] == "AlreadyExistsError"


def test_unsafe_entity_id_exits_1(cli):
    result, payload = cli("init", "../escape", "42")

    assert result.exit_code == EXIT_ERROR
    assert payload["error"] == "ValueError"


def test_unknown_phase_exits_1(cli):
    cli("init", "001-login", "42")

    result, payload = cli("transition", "001-login", "shipping")

    assert result.exit_code == EXIT_ERROR
    assert payload["error"] == "InvalidPhase"


def test_usage_error_is_reported_as_json(cli):
    result, payload = cli("transition", "001-login")

    assert result.exit_code == EXIT_ERROR
    assert payload["error"] == "UsageError"


# ---------------------------------------------------------------------------
# Field updates
# ---------------------------------------------------------------------------


def test_field_updates_do_not_touch_history(cli):
    cli("init", "001-login", "42")
    cli("error", "set", "001-login", "clone failed", "--step", "provision")
    cli("detail", "001-login", "waiting on repo access")
    cli("pr", "001-login", "17")
    result, payload = cli(
        "progress", "001-login", "--total", "5", "--completed", "2", "--blocked", "T4"
    )

    assert result.exit_code == EXIT_OK
    assert payload["version"] == 4
    assert payload["history"] == []
    assert payload["error"]["step"] == "provision"
    assert payload["phase_detail"] == "waiting on repo access"
    assert payload["pr_number"] == 17
    assert payload["task_progress"]["blocked"] == ["T4"]

    result, payload = cli("error", "clear", "001-login")

    assert payload["error"] is None


def test_pr_number_must_be_positive(cli):
    cli("init", "001-login", "42")

    result, payload = cli("pr", "001-login", "0")

    assert result.exit_code == EXIT_ERROR
    assert payload["error"] == "UsageError"


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def test_sync_without_github_applies_nothing(cli):
    cli("init", "001-login", "42")

    result, payload = cli("sync", "001-login")

    assert result.exit_code == EXIT_OK
    assert payload == {"entity_id": "001-login", "applied": []}


def test_validate_reports_consistent_entity(cli):
    cli("init", "001-login", "42")
    cli("transition", "001-login", "intake")

    result, payload = cli("validate", "001-login")

    assert result.exit_code == EXIT_OK
    assert payload["valid"] is True


def test_validate_reports_tampered_entity(cli):
    cli("init", "001-login", "42")
    path = cli.state_dir / "001-login" / STATE_FILE_NAME
    data = json.loads(path.read_text())
    data["phase"] = "qa"
    path.write_text(json.dumps(data))

    result, payload = cli("validate", "001-login")

    assert result.exit_code == EXIT_ERROR
    assert payload["valid"] is False
    assert payload["problems"] == ["phase is qa but history is empty"]


def test_phases_prints_graph(cli):
    result, payload = cli("phases")

    assert result.exit_code == EXIT_OK
    assert payload["plan_review"]["label"] == "agent:plan-review"
    assert payload["complete"]["terminal"] is True
    assert payload["complete"]["targets"] == []
    assert "failed" in payload["queued"]["targets"]
