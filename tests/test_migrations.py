from __future__ import annotations

from pathlib import Path

import pytest
import sqlalchemy as sa
from sqlmodel import SQLModel

from buildboard.domain import models  # noqa: F401
from buildboard.infra.migrate import run_upgrade_head

ROOT = Path(__file__).resolve().parents[1]


def test_upgrade_head_builds_assignment_schema(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    database_url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv("DATABASE_URL", database_url)

    run_upgrade_head(str(ROOT / "alembic.ini"))

    engine = sa.create_engine(database_url)
    inspector = sa.inspect(engine)
    assert set(SQLModel.metadata.tables) <= set(inspector.get_table_names())

    indexes = {item["name"]: item for item in inspector.get_indexes("user_assignments")}
    live = indexes["uq_user_assignments_live"]
    assert live["unique"]
    assert live["column_names"] == ["user_id", "role_id", "context_type", "context_id"]
    assert "ix_user_assignments_context" in indexes
    engine.dispose()
