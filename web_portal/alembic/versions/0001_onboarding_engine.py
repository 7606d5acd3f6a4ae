from alembic import op
import sqlalchemy as sa

revision = "0001_onboarding_engine"
down_revision = None
branch_labels = None
depends_on = None

AMOUNT = sa.Numeric(20, 8)
TS = sa.DateTime(timezone=True)


def upgrade():
    op.create_table(
        "payment_channels",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("channel_id", sa.String(length=100), nullable=False),
        sa.Column("username", sa.String(length=50), nullable=False),
        sa.Column("crypto_type", sa.String(length=10), nullable=False),
        sa.Column("payment_address", sa.String(length=255), nullable=False),
        sa.Column("memo", sa.String(length=255), nullable=True),
        sa.Column("amount_crypto", AMOUNT, nullable=False),
        sa.Column("amount_usd", sa.Numeric(12, 6), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("public_keys", sa.JSON(), nullable=True),
        sa.Column("tx_hash", sa.String(length=255), nullable=True),
        sa.Column("confirmations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("expires_at", TS, nullable=False),
        sa.Column("confirmed_at", TS, nullable=True),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("terminal_at", TS, nullable=True),
        sa.Column("updated_at", TS, nullable=True),
        sa.Column("creation_method", sa.String(length=20), nullable=True),
        sa.Column("act_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("creation_fee", sa.String(length=32), nullable=True),
        sa.Column("creation_tx_id", sa.String(length=255), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.UniqueConstraint("channel_id"),
    )
    op.create_index("ix_payment_channels_username", "payment_channels", ["username"])
    op.create_index("ix_payment_channels_crypto_type", "payment_channels", ["crypto_type"])
    op.create_index("ix_payment_channels_payment_address", "payment_channels", ["payment_address"])
    op.create_index("ix_payment_channels_status", "payment_channels", ["status"])
    op.create_index("ix_payment_channels_created_at", "payment_channels", ["created_at"])
    op.create_index("ix_payment_channels_expires_at", "payment_channels", ["expires_at"])

    op.create_table(
        "crypto_addresses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("address", sa.String(length=255), nullable=False),
        sa.Column("crypto_type", sa.String(length=10), nullable=False),
        sa.Column("channel_id", sa.String(length=100), nullable=True),
        sa.Column("public_key", sa.String(length=255), nullable=True),
        sa.Column("derivation_index", sa.Integer(), nullable=True),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("bound_at", TS, nullable=True),
        sa.Column("reusable_after", TS, nullable=True),
        sa.Column("balance", AMOUNT, nullable=False, server_default="0"),
        sa.Column("balance_updated_at", TS, nullable=True),
        sa.UniqueConstraint("address"),
    )
    op.create_index("ix_crypto_addresses_crypto_type", "crypto_addresses", ["crypto_type"])
    op.create_index("ix_crypto_addresses_channel_id", "crypto_addresses", ["channel_id"])

    op.create_table(
        "payment_detections",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("channel_id", sa.String(length=100), nullable=False),
        sa.Column("crypto_type", sa.String(length=10), nullable=False),
        sa.Column("address", sa.String(length=255), nullable=False),
        sa.Column("tx_hash", sa.String(length=255), nullable=False),
        sa.Column("amount", AMOUNT, nullable=False),
        sa.Column("confirmations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("accepted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("note", sa.String(length=255), nullable=True),
        sa.Column("detected_at", TS, nullable=False),
        sa.Column("processed_at", TS, nullable=True),
        sa.UniqueConstraint("channel_id", "tx_hash", name="uq_detection_channel_tx"),
    )
    op.create_index("ix_payment_detections_channel_id", "payment_detections", ["channel_id"])
    op.create_index("ix_payment_detections_tx_hash", "payment_detections", ["tx_hash"])

    op.create_table(
        "consolidation_plans",
        sa.Column("tx_id", sa.String(length=64), primary_key=True),
        sa.Column("crypto_type", sa.String(length=10), nullable=False),
        sa.Column("active_asset", sa.String(length=10), nullable=True),
        sa.Column("destination_address", sa.String(length=255), nullable=False),
        sa.Column("priority", sa.String(length=10), nullable=False, server_default="medium"),
        sa.Column("address_count", sa.Integer(), nullable=False),
        sa.Column("total_balance", AMOUNT, nullable=False),
        sa.Column("fee_estimate", sa.JSON(), nullable=False),
        sa.Column("net_amount", sa.JSON(), nullable=False),
        sa.Column("snapshot", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="planned"),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("expires_at", TS, nullable=False),
        sa.Column("executing_until", TS, nullable=True),
        sa.Column("blockchain_tx_hash", sa.String(length=255), nullable=True),
        sa.Column("total_amount", AMOUNT, nullable=True),
        sa.Column("addresses_consolidated", sa.Integer(), nullable=True),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.UniqueConstraint("active_asset"),
    )
    op.create_index("ix_consolidation_plans_crypto_type", "consolidation_plans", ["crypto_type"])

    op.create_table(
        "operator_resources",
        sa.Column("account", sa.String(length=50), primary_key=True),
        sa.Column("act_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rc_current", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("rc_max", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("hive_balance", sa.Numeric(20, 3), nullable=False, server_default="0"),
        sa.Column("updated_at", TS, nullable=False),
    )

    op.create_table(
        "rc_costs",
        sa.Column("operation", sa.String(length=64), primary_key=True),
        sa.Column("rc_needed", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", TS, nullable=False),
    )

    op.create_table(
        "resource_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account", sa.String(length=50), nullable=False),
        sa.Column("act_balance", sa.Integer(), nullable=False),
        sa.Column("rc_current", sa.BigInteger(), nullable=False),
        sa.Column("rc_max", sa.BigInteger(), nullable=False),
        sa.Column("hive_balance", sa.Numeric(20, 3), nullable=False),
        sa.Column("recorded_at", TS, nullable=False),
    )
    op.create_index("ix_resource_snapshots_account_time", "resource_snapshots", ["account", "recorded_at"])

    op.create_table(
        "monitor_heartbeats",
        sa.Column("crypto_type", sa.String(length=10), primary_key=True),
        sa.Column("last_event_at", TS, nullable=True),
        sa.Column("last_error_at", TS, nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("events_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors_total", sa.Integer(), nullable=False, server_default="0"),
    )


def downgrade():
    op.drop_table("monitor_heartbeats")
    op.drop_index("ix_resource_snapshots_account_time", table_name="resource_snapshots")
    op.drop_table("resource_snapshots")
    op.drop_table("rc_costs")
    op.drop_table("operator_resources")
    op.drop_index("ix_consolidation_plans_crypto_type", table_name="consolidation_plans")
    op.drop_table("consolidation_plans")
    op.drop_index("ix_payment_detections_tx_hash", table_name="payment_detections")
    op.drop_index("ix_payment_detections_channel_id", table_name="payment_detections")
    op.drop_table("payment_detections")
    op.drop_index("ix_crypto_addresses_channel_id", table_name="crypto_addresses")
    op.drop_index("ix_crypto_addresses_crypto_type", table_name="crypto_addresses")
    op.drop_table("crypto_addresses")
    for ix in ("expires_at", "created_at", "status", "payment_address", "crypto_type", "username"):
        op.drop_index(f"ix_payment_channels_{ix}", table_name="payment_channels")
    op.drop_table("payment_channels")
