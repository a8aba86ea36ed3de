"""The initial alembic revision must create exactly what the ORM models declare."""

import importlib.util
from pathlib import Path

import sqlalchemy as sa

from goalflow.models import Base

REVISION = Path(__file__).resolve().parent.parent / "alembic" / "versions" / "0001_initial.py"


class RecordingOps:
    def __init__(self) -> None:
        self.tables: dict[str, set[str]] = {}
        self.indexes: dict[str, tuple[str, ...]] = {}
        self.dropped: list[str] = []

    def create_table(self, name, *elements):
        self.tables[name] = {e.name for e in elements if isinstance(e, sa.Column)}

    def create_index(self, name, table, columns):
        self.indexes[name] = (table, *columns)

    def drop_table(self, name):
        self.dropped.append(name)

    def drop_index(self, name, table_name):
        pass


def load_revision(monkeypatch) -> tuple:
    found = importlib.util.spec_from_file_location("initial_revision", REVISION)
    module = importlib.util.module_from_spec(found)
    found.loader.exec_module(module)
    ops = RecordingOps()
    monkeypatch.setattr(module, "op", ops)
    return module, ops


def test_revision_matches_models(monkeypatch) -> None:
    module, ops = load_revision(monkeypatch)

    module.upgrade()

    expected = {name: {c.name for c in table.columns} for name, table in Base.metadata.tables.items()}
    assert ops.tables == expected
    assert ops.indexes["ix_execution_history_agent_task"] == ("execution_history", "agent_type", "task_type")


def test_downgrade_drops_every_table(monkeypatch) -> None:
    module, ops = load_revision(monkeypatch)

    module.downgrade()

    assert sorted(ops.dropped) == sorted(Base.metadata.tables)
    assert ops.dropped[-1] == "plans"
