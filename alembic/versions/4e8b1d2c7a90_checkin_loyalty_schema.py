from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "4e8b1d2c7a90"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    insp = sa.inspect(bind)
    return table_name in insp.get_table_names()


def _index_names(bind, table_name: str) -> set:
    if not _table_exists(bind, table_name):
        return set()
    insp = sa.inspect(bind)
    return {ix["name"] for ix in insp.get_indexes(table_name)}


def _uuid():
    return postgresql.UUID(as_uuid=True)


def _timestamps():
    return [
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
    ]


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "businesses"):
        op.create_table(
            "businesses",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False, unique=True),
            sa.Column("sms_number", sa.String(length=20), nullable=True),
            sa.Column("sms_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("checkin_cooldown_hours", sa.Float(), nullable=False, server_default=sa.text("24")),
            sa.Column("reward_threshold", sa.Integer(), nullable=False, server_default=sa.text("10")),
            sa.Column("reward_expiry_days", sa.Integer(), nullable=False, server_default=sa.text("30")),
            sa.Column("welcome_message", sa.String(length=500), nullable=True),
            sa.Column("age_gate_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("age_gate_min_age", sa.Integer(), nullable=False, server_default=sa.text("18")),
            *_timestamps(),
        )

    if not _table_exists(bind, "import_runs"):
        op.create_table(
            "import_runs",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id"), nullable=False),
            sa.Column("filename", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="QUEUED"),
            sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("total_rows", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("processed_rows", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("send_welcome", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("rows", sa.JSON(), nullable=True),
            sa.Column("results", sa.JSON(), nullable=True),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
            sa.Column("next_attempt_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("locked_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("locked_by", sa.String(length=100), nullable=True),
            sa.Column("last_error", sa.String(length=2000), nullable=True),
            sa.Column("started_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("completed_at", sa.TIMESTAMP(), nullable=True),
            *_timestamps(),
        )

    if "ix_import_runs_status_next_attempt_at" not in _index_names(bind, "import_runs"):
        op.create_index(
            "ix_import_runs_status_next_attempt_at",
            "import_runs",
            ["status", "next_attempt_at"],
        )

    if not _table_exists(bind, "engagement_records"):
        op.create_table(
            "engagement_records",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id"), nullable=False),
            sa.Column("phone", sa.String(length=20), nullable=False),
            sa.Column("country_code", sa.String(length=5), nullable=False, server_default="+1"),
            sa.Column("checkin_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("first_checkin_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("last_checkin_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("last_live_checkin_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("subscription_state", sa.String(length=20), nullable=False, server_default="ACTIVE"),
            sa.Column("marketing_consent", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("consent_given", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("consent_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("age_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("age_verified_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("name", sa.String(length=150), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("notes", sa.String(length=1000), nullable=True),
            sa.Column("imported_via_csv", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("welcome_sent_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("blocked_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("block_reason", sa.String(length=255), nullable=True),
            sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("deleted_at", sa.TIMESTAMP(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("business_id", "phone", name="uq_engagement_records_business_phone"),
        )

    if "ix_engagement_records_business_last_checkin" not in _index_names(bind, "engagement_records"):
        op.create_index(
            "ix_engagement_records_business_last_checkin",
            "engagement_records",
            ["business_id", "last_checkin_at"],
        )

    if not _table_exists(bind, "reward_templates"):
        op.create_table(
            "reward_templates",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id"), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("threshold", sa.Integer(), nullable=False),
            sa.Column("discount_type", sa.String(length=20), nullable=False, server_default="NONE"),
            sa.Column("discount_value", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("expiry_days", sa.Integer(), nullable=True),
            sa.Column("active", sa.Boolean(), nullable=True, server_default=sa.text("true")),
            *_timestamps(),
            sa.CheckConstraint("threshold > 0", name="ck_reward_templates_threshold_positive"),
        )

    if not _table_exists(bind, "checkin_events"):
        op.create_table(
            "checkin_events",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id"), nullable=False),
            sa.Column("engagement_record_id", _uuid(), sa.ForeignKey("engagement_records.id"), nullable=True),
            sa.Column("phone", sa.String(length=20), nullable=False),
            sa.Column("source", sa.String(length=20), nullable=False),
            sa.Column("counted_toward_threshold", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("increment", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("import_run_id", _uuid(), sa.ForeignKey("import_runs.id"), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("occurred_at", sa.TIMESTAMP(), nullable=False),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        )

    if "ix_checkin_events_record_occurred_at" not in _index_names(bind, "checkin_events"):
        op.create_index(
            "ix_checkin_events_record_occurred_at",
            "checkin_events",
            ["engagement_record_id", "occurred_at"],
        )

    if not _table_exists(bind, "reward_instances"):
        op.create_table(
            "reward_instances",
            sa.Column("id", _uuid(), primary_key=True, nullable=False),
            sa.Column("template_id", _uuid(), sa.ForeignKey("reward_templates.id"), nullable=False),
            sa.Column("engagement_record_id", _uuid(), sa.ForeignKey("engagement_records.id"), nullable=False),
            sa.Column("business_id", _uuid(), sa.ForeignKey("businesses.id"), nullable=False),
            sa.Column("phone", sa.String(length=20), nullable=False),
            sa.Column("code", sa.String(length=20), nullable=False, unique=True),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("threshold", sa.Integer(), nullable=False),
            sa.Column("discount_type", sa.String(length=20), nullable=False, server_default="NONE"),
            sa.Column("discount_value", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="ISSUED"),
            sa.Column("issued_at", sa.TIMESTAMP(), nullable=False),
            sa.Column("expires_at", sa.TIMESTAMP(), nullable=False),
            sa.Column("redeemed_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("source_checkin_event_id", _uuid(), sa.ForeignKey("checkin_events.id"), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        )

    if "ix_reward_instances_status_expires_at" not in _index_names(bind, "reward_instances"):
        op.create_index(
            "ix_reward_instances_status_expires_at",
            "reward_instances",
            ["status", "expires_at"],
        )


def downgrade() -> None:
    bind = op.get_bind()

    for table_name, index_name in (
        ("reward_instances", "ix_reward_instances_status_expires_at"),
        ("checkin_events", "ix_checkin_events_record_occurred_at"),
        ("engagement_records", "ix_engagement_records_business_last_checkin"),
        ("import_runs", "ix_import_runs_status_next_attempt_at"),
    ):
        if index_name in _index_names(bind, table_name):
            op.drop_index(index_name, table_name=table_name)

    for table_name in (
        "reward_instances",
        "checkin_events",
        "reward_templates",
        "engagement_records",
        "import_runs",
        "businesses",
    ):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
