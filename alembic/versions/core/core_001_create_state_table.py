"""create_state_table

Revision ID: core_001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS state (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL DEFAULT '{}',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            version INTEGER NOT NULL DEFAULT 1
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_state_reminder_keys
        ON state (key text_pattern_ops)
        WHERE key LIKE 'reminder::%'
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_state_reminder_keys")
    op.execute("DROP TABLE IF EXISTS state")
