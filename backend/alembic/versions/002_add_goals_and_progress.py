"""Add goal columns and progress_logs table for recurring goals

Revision ID: 002
Revises: 001
Create Date: 2024-07-27

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()

    # Check existing columns
    columns = {row[1] for row in conn.execute(text("PRAGMA table_info(tasks)")).fetchall()}

    if "goal_type" not in columns:
        conn.execute(text("ALTER TABLE tasks ADD COLUMN goal_type TEXT"))

    if "goal_target" not in columns:
        conn.execute(text("ALTER TABLE tasks ADD COLUMN goal_target REAL"))

    if "goal_unit" not in columns:
        conn.execute(text("ALTER TABLE tasks ADD COLUMN goal_unit TEXT"))

    # One row per task per calendar day; logging again adds to the value
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS progress_logs (
            task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            date TEXT NOT NULL,
            value REAL NOT NULL DEFAULT 0,
            PRIMARY KEY (task_id, date)
        )
    """))


def downgrade() -> None:
    conn = op.get_bind()
    conn.execute(text("DROP TABLE IF EXISTS progress_logs"))
    # SQLite doesn't support DROP COLUMN easily; goal columns remain but are unused
