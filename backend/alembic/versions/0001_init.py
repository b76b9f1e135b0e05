"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


READING_STATUSES = ("PENDING", "PROCESSING", "COMPLETED", "FAILED")


def _inspector():
    from sqlalchemy import inspect as sa_inspect
    return sa_inspect(op.get_bind())


def upgrade() -> None:
    inspector = _inspector()
    existing_tables = set(inspector.get_table_names())

    def existing_indexes(table: str) -> set[str]:
        if table not in existing_tables:
            return set()
        return {idx["name"] for idx in inspector.get_indexes(table)}

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("name", sa.String(), nullable=True),
            sa.Column("free_point", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("stars", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("coins", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("exp", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    if "ix_users_id" not in existing_indexes("users"):
        op.create_index("ix_users_id", "users", ["id"])

    if "readings" not in existing_tables:
        op.create_table(
            "readings",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("question", sa.Text(), nullable=False),
            sa.Column("type", sa.String(), nullable=False, server_default="tarot"),
            sa.Column("status", sa.Enum(*READING_STATUSES, name="readingstatus"), nullable=False),
            sa.Column("answer", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("error_code", sa.String(), nullable=True),
            sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("processing_completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("readings")
    for name, cols in (
        ("ix_readings_id", ["id"]),
        ("ix_readings_user_id", ["user_id"]),
        ("ix_readings_status", ["status"]),
        ("ix_readings_created_at", ["created_at"]),
    ):
        if name not in idxs:
            op.create_index(name, "readings", cols)

    if "point_transactions" not in existing_tables:
        op.create_table(
            "point_transactions",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("event_type", sa.String(), nullable=False),
            sa.Column("delta_free_point", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("delta_stars", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("delta_coins", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("delta_exp", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("reading_id", sa.String(), nullable=True),
            sa.Column("reference_id", sa.String(), nullable=True, unique=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("point_transactions")
    for name, cols in (
        ("ix_point_transactions_id", ["id"]),
        ("ix_point_transactions_user_id", ["user_id"]),
        ("ix_point_transactions_event_type", ["event_type"]),
        ("ix_point_transactions_reading_id", ["reading_id"]),
    ):
        if name not in idxs:
            op.create_index(name, "point_transactions", cols)

    if "cards" not in existing_tables:
        op.create_table(
            "cards",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(), nullable=False, unique=True),
            sa.Column("display_name", sa.String(), nullable=False),
            sa.Column("arcana", sa.String(), nullable=False, server_default="Major"),
            sa.Column("short_meaning", sa.Text(), nullable=False, server_default=""),
            sa.Column("keywords", sa.JSON(), nullable=True),
            sa.Column("image_url", sa.String(), nullable=True),
        )
    if "ix_cards_id" not in existing_indexes("cards"):
        op.create_index("ix_cards_id", "cards", ["id"])

    if "reward_configurations" not in existing_tables:
        op.create_table(
            "reward_configurations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(), nullable=False, unique=True),
            sa.Column("rewards", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )


def downgrade() -> None:
    op.drop_table("reward_configurations")
    op.drop_table("cards")
    op.drop_table("point_transactions")
    op.drop_table("readings")
    op.drop_table("users")
