"""CLI smoke tests for the in-memory commands."""

import json

from click.testing import CliRunner

from goalflow.cli import main


def test_parse_as_json() -> None:
    result = CliRunner().invoke(main, ["parse", "Build a RESTful API for user management", "--as-json"])

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["intent"] == "build"
    assert data["template_id"] == "api-for-resource"
    assert "user" in [entity["name"] for entity in data["entities"]]


def test_plan_table_shows_critical_path() -> None:
    result = CliRunner().invoke(main, ["plan", "Build a RESTful API for user management"])

    assert result.exit_code == 0, result.output
    assert "Critical path:" in result.output
    assert "define_models" in result.output


def test_plan_rejects_unknown_strategy() -> None:
    result = CliRunner().invoke(main, ["plan", "Build an API", "--strategy", "fastest"])

    assert result.exit_code == 2


def test_simulate_history_reports_each_run() -> None:
    result = CliRunner().invoke(
        main, ["simulate-history", "Build a RESTful API for user management", "--runs", "2", "--failure-rate", "0"]
    )

    assert result.exit_code == 0, result.output
    assert result.output.count(": completed") == 2
