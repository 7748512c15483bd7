"""add campaign execution next fire time

Revision ID: 20261020_0002
Revises: 20261018_0001
Create Date: 2026-10-20 10:30:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261020_0002"
down_revision: Union[str, None] = "20261018_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_column(inspector: sa.Inspector, table_name: str, column_name: str) -> bool:
    return column_name in {column["name"] for column in inspector.get_columns(table_name)}


def _has_index(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _has_column(inspector, "campaign_executions", "next_fire_at"):
        op.add_column(
            "campaign_executions",
            sa.Column("next_fire_at", sa.DateTime(timezone=True), nullable=True),
        )
        # Earliest possible fire time; the engine corrects it on the first pass that finds the step not due.
        op.execute(
            "UPDATE campaign_executions "
            "SET next_fire_at = COALESCE(last_step_fired_at, started_at) "
            "WHERE status = 'active'"
        )
    if _has_index(inspector, "campaign_executions", "ix_campaign_executions_status_started_at"):
        op.drop_index("ix_campaign_executions_status_started_at", table_name="campaign_executions")
    if not _has_index(inspector, "campaign_executions", "ix_campaign_executions_status_next_fire_at"):
        op.create_index(
            "ix_campaign_executions_status_next_fire_at",
            "campaign_executions",
            ["status", "next_fire_at"],
            unique=False,
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if _has_index(inspector, "campaign_executions", "ix_campaign_executions_status_next_fire_at"):
        op.drop_index("ix_campaign_executions_status_next_fire_at", table_name="campaign_executions")
    if not _has_index(inspector, "campaign_executions", "ix_campaign_executions_status_started_at"):
        op.create_index(
            "ix_campaign_executions_status_started_at",
            "campaign_executions",
            ["status", "started_at"],
            unique=False,
        )
    if _has_column(inspector, "campaign_executions", "next_fire_at"):
        op.drop_column("campaign_executions", "next_fire_at")
