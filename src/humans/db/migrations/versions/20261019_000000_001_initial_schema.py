"""Initial schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates all tables for Humans:
- users, profiles, role_assignments (members)
- teams, team_members (teams)
- legal_documents, document_versions, consent_records (legal)
- outbox_events (external sync outbox)
- audit_log (audit)

Also installs triggers that make consent_records and audit_log append-only.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

IMMUTABLE_TABLES = {
    "consent_records": "prevent_consent_record_modification",
    "audit_log": "prevent_audit_log_modification",
}


def _uuid_pk(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    """Apply migration: initial schema."""
    system_team_type = postgresql.ENUM(
        "none", "volunteers", "metaleads", "board", name="system_team_type", create_type=False
    )
    system_team_type.create(op.get_bind(), checkfirst=True)

    team_member_role = postgresql.ENUM(
        "member", "metalead", name="team_member_role", create_type=False
    )
    team_member_role.create(op.get_bind(), checkfirst=True)

    outbox_event_type = postgresql.ENUM(
        "add_user_to_team_resources",
        "remove_user_from_team_resources",
        name="outbox_event_type",
        create_type=False,
    )
    outbox_event_type.create(op.get_bind(), checkfirst=True)

    sync_source = postgresql.ENUM(
        "team_member_joined",
        "team_member_left",
        "manual_sync",
        "scheduled_sync",
        "suspension",
        "system_team_sync",
        name="sync_source",
        create_type=False,
    )
    sync_source.create(op.get_bind(), checkfirst=True)

    audit_action = postgresql.ENUM(
        "team_member_added",
        "team_member_removed",
        "member_suspended",
        "member_unsuspended",
        "member_approved",
        "role_assigned",
        "role_ended",
        "consent_recorded",
        name="audit_action",
        create_type=False,
    )
    audit_action.create(op.get_bind(), checkfirst=True)

    # =========================================================================
    # Members domain
    # =========================================================================
    op.create_table(
        "users",
        _uuid_pk("user_id"),
        _timestamp("created_at"),
        sa.Column("display_name", sa.String(256), nullable=False),
        sa.Column("email", sa.String(256), nullable=True),
        sa.PrimaryKeyConstraint("user_id", name=op.f("pk_users")),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "profiles",
        _uuid_pk("profile_id"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_suspended", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.user_id"],
            name=op.f("fk_profiles_user_id_users"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("profile_id", name=op.f("pk_profiles")),
    )
    op.create_index(op.f("ix_profiles_user_id"), "profiles", ["user_id"], unique=True)

    op.create_table(
        "role_assignments",
        _uuid_pk("role_assignment_id"),
        _timestamp("created_at"),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("role_name", sa.String(256), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.String(2000), nullable=True),
        sa.Column("created_by_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.CheckConstraint(
            "valid_to IS NULL OR valid_to > valid_from",
            name=op.f("ck_role_assignments_valid_window"),
        ),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.user_id"],
            name=op.f("fk_role_assignments_user_id_users"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["created_by_user_id"],
            ["users.user_id"],
            name=op.f("fk_role_assignments_created_by_user_id_users"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("role_assignment_id", name=op.f("pk_role_assignments")),
    )
    op.create_index(
        op.f("ix_role_assignments_user_id"), "role_assignments", ["user_id"], unique=False
    )
    op.create_index(
        op.f("ix_role_assignments_role_name"), "role_assignments", ["role_name"], unique=False
    )
    op.create_index(
        op.f("ix_role_assignments_user_role_window"),
        "role_assignments",
        ["user_id", "role_name", "valid_from", "valid_to"],
        unique=False,
    )

    # =========================================================================
    # Teams domain
    # =========================================================================
    op.create_table(
        "teams",
        _uuid_pk("team_id"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("slug", sa.String(256), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "system_team_type",
            system_team_type,
            nullable=False,
            server_default="none",
        ),
        sa.PrimaryKeyConstraint("team_id", name=op.f("pk_teams")),
    )
    op.create_index(op.f("ix_teams_slug"), "teams", ["slug"], unique=True)
    op.create_index(
        op.f("ix_teams_system_team_type"),
        "teams",
        ["system_team_type"],
        unique=True,
        postgresql_where=sa.text("system_team_type <> 'none'"),
    )

    op.create_table(
        "team_members",
        _uuid_pk("team_member_id"),
        sa.Column("team_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("role", team_member_role, nullable=False, server_default="member"),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["team_id"],
            ["teams.team_id"],
            name=op.f("fk_team_members_team_id_teams"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.user_id"],
            name=op.f("fk_team_members_user_id_users"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("team_member_id", name=op.f("pk_team_members")),
    )
    op.create_index(
        op.f("ix_team_members_active_team_user"),
        "team_members",
        ["team_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("left_at IS NULL"),
    )
    op.create_index(op.f("ix_team_members_user_id"), "team_members", ["user_id"], unique=False)

    # =========================================================================
    # Legal domain
    # =========================================================================
    op.create_table(
        "legal_documents",
        _uuid_pk("legal_document_id"),
        _timestamp("created_at"),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("team_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("grace_period_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("source_path", sa.String(512), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["team_id"],
            ["teams.team_id"],
            name=op.f("fk_legal_documents_team_id_teams"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("legal_document_id", name=op.f("pk_legal_documents")),
    )
    op.create_index(
        op.f("ix_legal_documents_scope_active"),
        "legal_documents",
        ["team_id", "is_active", "is_required"],
        unique=False,
    )

    op.create_table(
        "document_versions",
        _uuid_pk("document_version_id"),
        _timestamp("created_at"),
        sa.Column("legal_document_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("version_number", sa.String(50), nullable=False),
        sa.Column("commit_sha", sa.String(40), nullable=True),
        sa.Column("effective_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "requires_re_consent", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("changes_summary", sa.String(2000), nullable=True),
        sa.ForeignKeyConstraint(
            ["legal_document_id"],
            ["legal_documents.legal_document_id"],
            name=op.f("fk_document_versions_legal_document_id_legal_documents"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("document_version_id", name=op.f("pk_document_versions")),
    )
    op.create_index(
        op.f("ix_document_versions_document_effective_from"),
        "document_versions",
        ["legal_document_id", "effective_from"],
        unique=True,
    )

    op.create_table(
        "consent_records",
        _uuid_pk("consent_record_id"),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("document_version_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("consented_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("explicit_consent", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("ip_address", sa.String(45), nullable=False),
        sa.Column("user_agent", sa.String(1024), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.user_id"],
            name=op.f("fk_consent_records_user_id_users"),
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["document_version_id"],
            ["document_versions.document_version_id"],
            name=op.f("fk_consent_records_document_version_id_document_versions"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("consent_record_id", name=op.f("pk_consent_records")),
    )
    op.create_index(
        op.f("ix_consent_records_user_version"),
        "consent_records",
        ["user_id", "document_version_id"],
        unique=True,
    )
    op.create_index(
        op.f("ix_consent_records_consented_at"),
        "consent_records",
        ["consented_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_consent_records_document_version_id"),
        "consent_records",
        ["document_version_id"],
        unique=False,
    )

    # =========================================================================
    # Outbox
    # =========================================================================
    op.create_table(
        "outbox_events",
        _uuid_pk("event_id"),
        sa.Column("event_type", outbox_event_type, nullable=False),
        sa.Column("team_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("abandoned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(4000), nullable=True),
        sa.Column("deduplication_key", sa.String(200), nullable=False),
        sa.Column("sync_source", sync_source, nullable=True),
        sa.PrimaryKeyConstraint("event_id", name=op.f("pk_outbox_events")),
    )
    op.create_index(
        op.f("ix_outbox_events_processed_occurred"),
        "outbox_events",
        ["processed_at", "occurred_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_outbox_events_team_user_processed"),
        "outbox_events",
        ["team_id", "user_id", "processed_at"],
        unique=False,
    )
    op.create_index(
        op.f("ix_outbox_events_pending_deduplication_key"),
        "outbox_events",
        ["deduplication_key"],
        unique=True,
        postgresql_where=sa.text("processed_at IS NULL AND abandoned_at IS NULL"),
    )

    # =========================================================================
    # Audit
    # =========================================================================
    op.create_table(
        "audit_log",
        _uuid_pk("entry_id"),
        sa.Column("action", audit_action, nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("description", sa.String(4000), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("actor_name", sa.String(200), nullable=False),
        sa.Column("related_entity_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("related_entity_type", sa.String(100), nullable=True),
        sa.Column("sync_source", sync_source, nullable=True),
        sa.ForeignKeyConstraint(
            ["actor_user_id"],
            ["users.user_id"],
            name=op.f("fk_audit_log_actor_user_id_users"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("entry_id", name=op.f("pk_audit_log")),
    )
    op.create_index(
        op.f("ix_audit_log_entity"), "audit_log", ["entity_type", "entity_id"], unique=False
    )
    op.create_index(
        op.f("ix_audit_log_related_entity"),
        "audit_log",
        ["related_entity_type", "related_entity_id"],
        unique=False,
    )
    op.create_index(op.f("ix_audit_log_occurred_at"), "audit_log", ["occurred_at"], unique=False)
    op.create_index(op.f("ix_audit_log_action"), "audit_log", ["action"], unique=False)

    # =========================================================================
    # Append-only enforcement
    # =========================================================================
    # ON DELETE SET NULL on audit_log.actor_user_id is itself an UPDATE, so the
    # audit trigger lets through updates that only clear actor_user_id.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_consent_record_modification()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'consent_records is append-only: % is not allowed', TG_OP;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_audit_log_modification()
        RETURNS TRIGGER AS $$
        BEGIN
            IF TG_OP = 'UPDATE'
               AND NEW.actor_user_id IS NULL
               AND OLD.actor_user_id IS NOT NULL
               AND (to_jsonb(NEW) - 'actor_user_id') = (to_jsonb(OLD) - 'actor_user_id') THEN
                RETURN NEW;
            END IF;
            RAISE EXCEPTION 'audit_log is append-only: % is not allowed', TG_OP;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    for table, function in IMMUTABLE_TABLES.items():
        op.execute(
            f"CREATE TRIGGER trg_{table}_immutable "
            f"BEFORE UPDATE OR DELETE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION {function}()"
        )


def downgrade() -> None:
    """Revert migration: drop all tables, triggers and enum types."""
    for table, function in IMMUTABLE_TABLES.items():
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_immutable ON {table}")
        op.execute(f"DROP FUNCTION IF EXISTS {function}()")

    op.drop_table("audit_log")
    op.drop_table("outbox_events")
    op.drop_table("consent_records")
    op.drop_table("document_versions")
    op.drop_table("legal_documents")
    op.drop_table("team_members")
    op.drop_table("teams")
    op.drop_table("role_assignments")
    op.drop_table("profiles")
    op.drop_table("users")

    op.execute("DROP TYPE IF EXISTS audit_action")
    op.execute("DROP TYPE IF EXISTS sync_source")
    op.execute("DROP TYPE IF EXISTS outbox_event_type")
    op.execute("DROP TYPE IF EXISTS team_member_role")
    op.execute("DROP TYPE IF EXISTS system_team_type")
