import json

import pytest

from goalflow.domain import TaskPriority
from goalflow.phases import (
    DEFAULT_PHASE_CONFIG,
    PHASES_FILE_ENV,
    default_phase_provider,
    get_phases_from_env,
    phases_from_config,
    resolve_phase_provider,
)


def test_default_phases_keep_declared_order() -> None:
    names = [phase.name for phase in default_phase_provider().phases()]

    assert names == [phase["name"] for phase in DEFAULT_PHASE_CONFIG]
    assert names[0] == "models"
    assert names[-1] == "documentation"


def test_blueprint_defaults() -> None:
    [phase] = phases_from_config(
        [{"name": "misc", "tasks": [{"key": "tidy_up", "agent_type": "quality", "task_type": "refactoring"}]}]
    )
    blueprint = phase.blueprints[0]

    assert blueprint.name == "Tidy Up"
    assert blueprint.priority == TaskPriority.MEDIUM
    assert blueprint.estimated_minutes == 60
    assert not phase.blocking


def test_phases_file_from_environment(tmp_path, monkeypatch) -> None:
    path = tmp_path / "phases.json"
    path.write_text(
        json.dumps(
            [{"name": "only", "triggers": ["api"], "tasks": [{"key": "x", "agent_type": "api", "task_type": "api_implementation"}]}]
        )
    )
    monkeypatch.setenv(PHASES_FILE_ENV, str(path))

    phases = get_phases_from_env()

    assert [p.name for p in phases] == ["only"]


def test_no_phases_file_means_none(monkeypatch) -> None:
    monkeypatch.delenv(PHASES_FILE_ENV, raising=False)

    assert get_phases_from_env() is None


@pytest.mark.asyncio
async def test_resolve_without_session_uses_env_then_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv(PHASES_FILE_ENV, raising=False)
    provider = await resolve_phase_provider()
    assert len(provider.phases()) == len(DEFAULT_PHASE_CONFIG)

    path = tmp_path / "phases.json"
    path.write_text(
        json.dumps([{"name": "one", "tasks": [{"key": "x", "agent_type": "api", "task_type": "api_implementation"}]}])
    )
    monkeypatch.setenv(PHASES_FILE_ENV, str(path))
    provider = await resolve_phase_provider()
    assert [p.name for p in provider.phases()] == ["one"]
