from alembic import op
import sqlalchemy as sa

revision = "0002_monitor_cursor"
down_revision = "0001_onboarding_engine"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "monitor_cursors",
        sa.Column("feed", sa.String(length=32), primary_key=True),
        sa.Column("cursor", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade():
    op.drop_table("monitor_cursors")
