"""create stock ledger tables

Revision ID: 5e1d2c3b4a70
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "5e1d2c3b4a70"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=50), nullable=False, unique=True),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("full_name", sa.String(length=150), nullable=False),
        sa.Column("email", sa.String(length=120), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
    )
    op.create_table(
        "locations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=True),
    )
    op.create_table(
        "items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_code", sa.String(length=50), nullable=True, unique=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("size", sa.String(length=50), nullable=True),
        sa.Column("category", sa.String(length=50), nullable=True),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("opening_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("receipt_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sale_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("closing_qty", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["location_id"], ["locations.id"]),
        sa.ForeignKeyConstraint(["item_id"], ["items.id"]),
        sa.UniqueConstraint(
            "location_id", "item_id", "day", name="uq_ledger_entries_location_item_day"
        ),
        sa.CheckConstraint("receipt_qty >= 0", name="ck_ledger_entries_receipt_qty_non_negative"),
        sa.CheckConstraint("sale_qty >= 0", name="ck_ledger_entries_sale_qty_non_negative"),
        sa.CheckConstraint(
            "closing_qty = opening_qty + receipt_qty - sale_qty",
            name="ck_ledger_entries_closing_balance",
        ),
    )
    op.create_index(
        "ix_ledger_entries_location_day",
        "ledger_entries",
        ["location_id", "day"],
    )

    op.create_table(
        "transfer_permits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("permit_no", sa.String(length=50), nullable=False),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("permit_date", sa.Date(), nullable=False),
        sa.Column("party_name", sa.String(length=200), nullable=True),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["location_id"], ["locations.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
        sa.UniqueConstraint("permit_no", "location_id", name="uq_transfer_permits_no_location"),
    )
    op.create_index(
        "ix_transfer_permits_location_date",
        "transfer_permits",
        ["location_id", "permit_date"],
    )

    op.create_table(
        "receipt_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("permit_id", sa.Integer(), nullable=False, index=True),
        sa.Column("item_id", sa.Integer(), nullable=False, index=True),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["permit_id"], ["transfer_permits.id"]),
        sa.ForeignKeyConstraint(["item_id"], ["items.id"]),
        sa.UniqueConstraint("permit_id", "item_id", name="uq_receipt_events_permit_item"),
        sa.CheckConstraint("qty > 0", name="ck_receipt_events_qty_positive"),
    )

    op.create_table(
        "sale_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("sale_date", sa.Date(), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["location_id"], ["locations.id"]),
        sa.ForeignKeyConstraint(["item_id"], ["items.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
        sa.CheckConstraint("qty > 0", name="ck_sale_events_qty_positive"),
    )
    op.create_index(
        "ix_sale_events_location_item_date",
        "sale_events",
        ["location_id", "item_id", "sale_date"],
    )

    op.create_table(
        "propagation_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("trigger", sa.String(length=30), nullable=False),
        sa.Column("start_day", sa.Date(), nullable=False),
        sa.Column("target_day", sa.Date(), nullable=False),
        sa.Column("days_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("days_done", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_committed_day", sa.Date(), nullable=True),
        sa.Column("resume_from", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="running"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["location_id"], ["locations.id"]),
        sa.ForeignKeyConstraint(["item_id"], ["items.id"]),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"]),
    )
    op.create_index(
        "ix_propagation_runs_location_item",
        "propagation_runs",
        ["location_id", "item_id"],
    )


def downgrade():
    op.drop_index("ix_propagation_runs_location_item", table_name="propagation_runs")
    op.drop_table("propagation_runs")
    op.drop_index("ix_sale_events_location_item_date", table_name="sale_events")
    op.drop_table("sale_events")
    op.drop_table("receipt_events")
    op.drop_index("ix_transfer_permits_location_date", table_name="transfer_permits")
    op.drop_table("transfer_permits")
    op.drop_index("ix_ledger_entries_location_day", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_table("items")
    op.drop_table("locations")
    op.drop_table("users")
    op.drop_table("roles")
