"""Initial schema with servers, queue_entries and audit_records

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENTRY_STATUSES = ("waiting", "serving", "served", "skipped", "cancelled")
AUDIT_ACTIONS = (
    "queue.join",
    "queue.cancel",
    "entry.serving",
    "entry.served",
    "entry.skipped",
    "server.session_start",
    "server.session_stop",
)


def _create_enum(name: str, values: Sequence[str]) -> None:
    labels = ", ".join(f"'{value}'" for value in values)
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE {name} AS ENUM ({labels});
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)


def upgrade() -> None:
    _create_enum("entry_status", ENTRY_STATUSES)
    _create_enum("audit_action", AUDIT_ACTIONS)

    op.create_table(
        "servers",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("department", sa.String(255), nullable=False),
        sa.Column("is_accepting", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("average_service_minutes", sa.Integer, nullable=False, server_default="15"),
        sa.Column(
            "recent_service_minutes",
            postgresql.ARRAY(sa.Integer),
            nullable=False,
            server_default="{}",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "queue_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("consumer_id", sa.String(255), nullable=False),
        sa.Column("server_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("service_day", sa.Date, nullable=False),
        sa.Column("sequence_number", sa.Integer, nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(*ENTRY_STATUSES, name="entry_status", create_type=False),
            nullable=False,
            server_default="waiting",
        ),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("serving_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "server_id",
            "service_day",
            "sequence_number",
            name="uq_server_day_sequence",
        ),
    )

    op.create_index("ix_queue_entries_server_id", "queue_entries", ["server_id"])
    op.create_index(
        "ix_queue_entries_server_status_joined",
        "queue_entries",
        ["server_id", "status", "joined_at"],
    )

    # One waiting/serving entry per consumer
    op.execute("""
        CREATE UNIQUE INDEX uq_active_consumer
        ON queue_entries (consumer_id)
        WHERE status IN ('waiting', 'serving')
    """)

    # One serving entry per server
    op.execute("""
        CREATE UNIQUE INDEX uq_serving_per_server
        ON queue_entries (server_id)
        WHERE status = 'serving'
    """)

    op.create_table(
        "audit_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("seq", sa.BigInteger, sa.Identity(always=True), nullable=False),
        sa.Column(
            "action",
            postgresql.ENUM(*AUDIT_ACTIONS, name="audit_action", create_type=False),
            nullable=False,
        ),
        sa.Column("details", postgresql.JSONB, nullable=False),
        sa.Column("actor", sa.String(255), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_audit_records_timestamp", "audit_records", ["timestamp", "seq"])
    op.create_index(
        "ix_audit_records_action_timestamp",
        "audit_records",
        ["action", "timestamp"],
    )


def downgrade() -> None:
    op.drop_index("ix_audit_records_action_timestamp")
    op.drop_index("ix_audit_records_timestamp")
    op.drop_table("audit_records")

    op.execute("DROP INDEX IF EXISTS uq_serving_per_server")
    op.execute("DROP INDEX IF EXISTS uq_active_consumer")
    op.drop_index("ix_queue_entries_server_status_joined")
    op.drop_index("ix_queue_entries_server_id")
    op.drop_table("queue_entries")

    op.drop_table("servers")

    op.execute("DROP TYPE IF EXISTS audit_action")
    op.execute("DROP TYPE IF EXISTS entry_status")
