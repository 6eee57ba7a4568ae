"""add medication, time slot and dose tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "medications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("dose", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("color", sa.String(length=7), nullable=False, server_default="#4CAF50"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "time_slots",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("medication_id", sa.Integer(), nullable=False),
        sa.Column("time_of_day", sa.String(length=5), nullable=False),
        sa.Column(
            "recurrence",
            sa.Enum("daily", name="recurrence"),
            nullable=False,
            server_default="daily",
        ),
        sa.Column("with_food", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(["medication_id"], ["medications.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_time_slots_medication_id", "time_slots", ["medication_id"])

    op.create_table(
        "doses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("medication_id", sa.Integer(), nullable=False),
        sa.Column("time_slot_id", sa.Integer(), nullable=False),
        sa.Column("scheduled_on", sa.Date(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("taken_at", sa.DateTime(), nullable=True),
        sa.Column(
            "state",
            sa.Enum("pending", "taken", "skipped", "postponed", name="dose_state"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["medication_id"], ["medications.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["time_slot_id"], ["time_slots.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("medication_id", "time_slot_id", "scheduled_on", name="uq_doses_medication_slot_day"),
    )
    op.create_index("ix_doses_medication_id", "doses", ["medication_id"])
    op.create_index("ix_doses_scheduled_at", "doses", ["scheduled_at"])


def downgrade() -> None:
    op.drop_index("ix_doses_scheduled_at", table_name="doses")
    op.drop_index("ix_doses_medication_id", table_name="doses")
    op.drop_table("doses")

    op.drop_index("ix_time_slots_medication_id", table_name="time_slots")
    op.drop_table("time_slots")

    op.drop_table("medications")

    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS dose_state")
        op.execute("DROP TYPE IF EXISTS recurrence")
