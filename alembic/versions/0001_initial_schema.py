"""Initial schema for pjn-sync.

Creates core tables:
- credentials
- excluded_causas
- causas
- causa_credentials
- movimientos
- folders
- sync_runs
- config_documents
- manager_status
- manager_snapshots
- worker_heartbeats
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list:
    return [
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
    ]


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default=sa.text("0"))


def upgrade() -> None:
    # credentials
    op.create_table(
        "credentials",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("cuil", sa.String(length=32), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_valid_at", sa.DateTime(timezone=True)),
        sa.Column(
            "sync_status",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'idle'"),
        ),
        sa.Column("initial_movements_sync", sa.String(length=20)),
        sa.Column("last_sync_at", sa.DateTime(timezone=True)),
        sa.Column("last_sync_attempt_at", sa.DateTime(timezone=True)),
        sa.Column("last_run_at", sa.DateTime(timezone=True)),
        _counter("consecutive_errors"),
        _counter("consecutive_auth_failures"),
        sa.Column("last_error_message", sa.Text()),
        sa.Column("last_error_code", sa.String(length=50)),
        sa.Column("last_error_at", sa.DateTime(timezone=True)),
        _counter("expected_causas_count"),
        _counter("processed_causas_count"),
        _counter("folders_created_count"),
        sa.Column("last_listing_total", sa.Integer()),
        sa.Column("last_full_scan_at", sa.DateTime(timezone=True)),
        sa.Column("stats", sa.JSON()),
        *_timestamps(),
    )
    op.create_index("ix_credentials_user_id", "credentials", ["user_id"])
    op.create_index("ix_credentials_cuil", "credentials", ["cuil"])
    op.create_index("ix_credentials_sync_status", "credentials", ["sync_status"])
    op.create_index(
        "ix_credentials_initial_movements_sync",
        "credentials",
        ["initial_movements_sync"],
    )

    # excluded_causas
    op.create_table(
        "excluded_causas",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "credential_id",
            sa.Integer(),
            sa.ForeignKey("credentials.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("causa_id", sa.Integer()),
        sa.Column("causa_type", sa.String(length=20), nullable=False),
        sa.Column("fuero", sa.String(length=10), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("incidente", sa.String(length=20), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "excluded_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "credential_id",
            "fuero",
            "number",
            "year",
            "incidente",
            name="uq_excluded_causas_credential_key",
        ),
    )
    op.create_index("ix_excluded_causas_credential_id", "excluded_causas", ["credential_id"])

    # causas
    op.create_table(
        "causas",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("fuero", sa.String(length=10), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("incidente", sa.String(length=20), nullable=False, server_default=sa.text("''")),
        sa.Column("source", sa.String(length=20), nullable=False, server_default=sa.text("'sync'")),
        sa.Column("caratula", sa.Text()),
        sa.Column("juzgado", sa.String(length=255)),
        sa.Column("is_private", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_update", sa.DateTime(timezone=True)),
        _counter("movimientos_count"),
        sa.Column("last_movement_key", sa.String(length=64)),
        sa.Column("skip_until", sa.DateTime(timezone=True)),
        _counter("consecutive_errors"),
        sa.Column("last_error", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("fuero", "number", "year", "incidente", name="uq_causas_natural_key"),
    )
    op.create_index("ix_causas_fuero", "causas", ["fuero"])
    op.create_index("ix_causas_source", "causas", ["source"])
    op.create_index("ix_causas_last_update", "causas", ["last_update"])

    # causa_credentials
    op.create_table(
        "causa_credentials",
        sa.Column(
            "causa_id",
            sa.Integer(),
            sa.ForeignKey("causas.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "credential_id",
            sa.Integer(),
            sa.ForeignKey("credentials.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "linked_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_causa_credentials_credential_id",
        "causa_credentials",
        ["credential_id"],
    )

    # movimientos
    op.create_table(
        "movimientos",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "causa_id",
            sa.Integer(),
            sa.ForeignKey("causas.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("fecha", sa.Date()),
        sa.Column("tipo", sa.String(length=255)),
        sa.Column("detalle", sa.Text()),
        sa.Column("url", sa.Text()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("causa_id", "key", name="uq_movimientos_causa_key"),
    )
    op.create_index("ix_movimientos_causa_id", "movimientos", ["causa_id"])

    # folders
    op.create_table(
        "folders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "causa_id",
            sa.Integer(),
            sa.ForeignKey("causas.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("source", sa.String(length=20), nullable=False, server_default=sa.text("'user'")),
        sa.Column("fuero", sa.String(length=10), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("incidente", sa.String(length=20), nullable=False, server_default=sa.text("''")),
        sa.Column("caratula", sa.Text()),
        sa.Column("pjn_not_found", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pjn_not_found_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_folders_user_id", "folders", ["user_id"])
    op.create_index("ix_folders_causa_id", "folders", ["causa_id"])

    # sync_runs
    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "credential_id",
            sa.Integer(),
            sa.ForeignKey("credentials.id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'in_progress'"),
        ),
        sa.Column("phase", sa.String(length=20), nullable=False),
        sa.Column(
            "triggered_by",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'manager'"),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True)),
        sa.Column("duration_seconds", sa.Float()),
        _counter("total_causas"),
        _counter("causas_processed"),
        _counter("causas_updated"),
        _counter("causas_skipped"),
        _counter("causas_error"),
        _counter("new_movimientos"),
        sa.Column("is_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("planned_causa_ids", sa.JSON()),
        sa.Column("causas_detail", sa.JSON()),
        _counter("resume_attempts"),
        sa.Column("is_first_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_resumed_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("worker_pid", sa.Integer()),
        sa.Column("instance_name", sa.String(length=100)),
        sa.Column("config_snapshot", sa.JSON()),
        sa.Column("error_message", sa.Text()),
        sa.Column("error_code", sa.String(length=50)),
        sa.Column("error_phase", sa.String(length=50)),
        *_timestamps(),
    )
    op.create_index("ix_sync_runs_credential_id", "sync_runs", ["credential_id"])
    op.create_index("ix_sync_runs_status", "sync_runs", ["status"])
    op.create_index("ix_sync_runs_heartbeat_at", "sync_runs", ["heartbeat_at"])

    # config_documents
    op.create_table(
        "config_documents",
        sa.Column("name", sa.String(length=100), primary_key=True),
        sa.Column("version", sa.String(length=50), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("updated_by", sa.String(length=100)),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    # manager_status
    op.create_table(
        "manager_status",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("is_running", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("global_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("service_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("maintenance_message", sa.Text()),
        sa.Column("config_version", sa.String(length=50)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("last_poll", sa.DateTime(timezone=True)),
        _counter("cycle_count"),
        sa.Column("workers", sa.JSON()),
        sa.Column("scale_actions", sa.JSON()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    # manager_snapshots
    op.create_table(
        "manager_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("taken_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("workers", sa.JSON(), nullable=False),
    )
    op.create_index("ix_manager_snapshots_taken_at", "manager_snapshots", ["taken_at"])

    # worker_heartbeats
    op.create_table(
        "worker_heartbeats",
        sa.Column("instance_name", sa.String(length=100), primary_key=True),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("pid", sa.Integer()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processing_since", sa.DateTime(timezone=True)),
        sa.Column("current_credential_id", sa.Integer()),
        sa.Column("memory_mb", sa.Float()),
    )
    op.create_index("ix_worker_heartbeats_kind", "worker_heartbeats", ["kind"])


def downgrade() -> None:
    op.drop_index("ix_worker_heartbeats_kind", table_name="worker_heartbeats")
    op.drop_table("worker_heartbeats")

    op.drop_index("ix_manager_snapshots_taken_at", table_name="manager_snapshots")
    op.drop_table("manager_snapshots")

    op.drop_table("manager_status")
    op.drop_table("config_documents")

    op.drop_index("ix_sync_runs_heartbeat_at", table_name="sync_runs")
    op.drop_index("ix_sync_runs_status", table_name="sync_runs")
    op.drop_index("ix_sync_runs_credential_id", table_name="sync_runs")
    op.drop_table("sync_runs")

    op.drop_index("ix_folders_causa_id", table_name="folders")
    op.drop_index("ix_folders_user_id", table_name="folders")
    op.drop_table("folders")

    op.drop_index("ix_movimientos_causa_id", table_name="movimientos")
    op.drop_table("movimientos")

    op.drop_index("ix_causa_credentials_credential_id", table_name="causa_credentials")
    op.drop_table("causa_credentials")

    op.drop_index("ix_causas_last_update", table_name="causas")
    op.drop_index("ix_causas_source", table_name="causas")
    op.drop_index("ix_causas_fuero", table_name="causas")
    op.drop_table("causas")

    op.drop_index("ix_excluded_causas_credential_id", table_name="excluded_causas")
    op.drop_table("excluded_causas")

    op.drop_index("ix_credentials_initial_movements_sync", table_name="credentials")
    op.drop_index("ix_credentials_sync_status", table_name="credentials")
    op.drop_index("ix_credentials_cuil", table_name="credentials")
    op.drop_index("ix_credentials_user_id", table_name="credentials")
    op.drop_table("credentials")
