"""create attribution engine schema

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "3f2a9c1d7e40"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def upgrade() -> None:
    # -----------------------------------------------------
    # 1) Identity and territory
    # -----------------------------------------------------
    op.create_table(
        "users",
        sa.Column("id", UUID, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column("must_change_password", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("company_id", UUID, nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_company_id", "users", ["company_id"])

    op.create_table(
        "licensees",
        sa.Column("id", UUID, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("revenue_share_bps", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        _ts("created_at"),
        sa.CheckConstraint(
            "revenue_share_bps >= 0 AND revenue_share_bps <= 10000",
            name="ck_licensees_revenue_share_range",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_licensees"),
    )

    op.create_table(
        "regions",
        sa.Column("id", UUID, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column("licensee_id", UUID, nullable=True),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        _ts("created_at"),
        sa.ForeignKeyConstraint(
            ["licensee_id"], ["licensees.id"], name="fk_regions_licensee_id_licensees", ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_regions"),
        sa.UniqueConstraint("name", name="uq_regions_name"),
    )
    op.create_index("ix_regions_licensee_id", "regions", ["licensee_id"])

    op.create_table(
        "consultants",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("role", sa.String(length=20), server_default="SALES_AGENT", nullable=False),
        sa.Column("region_id", UUID, nullable=True),
        sa.Column("licensee_id", UUID, nullable=True),
        sa.Column("commission_rate_bps", sa.Integer(), server_default="1000", nullable=False),
        sa.Column("payout_account_id", sa.String(length=64), nullable=True),
        sa.Column("payouts_enabled", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        _ts("created_at"),
        sa.CheckConstraint(
            "commission_rate_bps >= 0 AND commission_rate_bps <= 10000",
            name="ck_consultants_commission_rate_range",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_consultants_user_id_users", ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["region_id"], ["regions.id"], name="fk_consultants_region_id_regions", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["licensee_id"], ["licensees.id"], name="fk_consultants_licensee_id_licensees", ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_consultants"),
    )
    op.create_index("ix_consultants_user_id", "consultants", ["user_id"], unique=True)
    op.create_index("ix_consultants_region_id", "consultants", ["region_id"])
    op.create_index("ix_consultants_licensee_id", "consultants", ["licensee_id"])

    op.create_table(
        "platform_memberships",
        sa.Column("id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("licensee_id", UUID, nullable=True),
        sa.Column("consultant_id", UUID, nullable=True),
        sa.Column(
            "permissions",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        _ts("created_at"),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_platform_memberships_user_id_users", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["licensee_id"],
            ["licensees.id"],
            name="fk_platform_memberships_licensee_id_licensees",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["consultant_id"],
            ["consultants.id"],
            name="fk_platform_memberships_consultant_id_consultants",
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_platform_memberships"),
    )
    op.create_index("ix_platform_memberships_user_id", "platform_memberships", ["user_id"], unique=True)

    # -----------------------------------------------------
    # 2) Lead pipeline
    # -----------------------------------------------------
    op.create_table(
        "leads",
        sa.Column("id", UUID, nullable=False),
        sa.Column("company_name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("website", sa.String(length=255), nullable=True),
        sa.Column("country", sa.String(length=2), nullable=False),
        sa.Column("budget", sa.String(length=100), nullable=True),
        sa.Column("timeline", sa.String(length=100), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), server_default="NEW", nullable=False),
        sa.Column("region_id", UUID, nullable=True),
        sa.Column("agent_id", UUID, nullable=True),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.ForeignKeyConstraint(["region_id"], ["regions.id"], name="fk_leads_region_id_regions", ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["agent_id"], ["consultants.id"], name="fk_leads_agent_id_consultants", ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_leads"),
    )
    op.create_index("ix_leads_email", "leads", ["email"])
    op.create_index("ix_leads_region_id", "leads", ["region_id"])
    op.create_index("ix_leads_agent_id", "leads", ["agent_id"])
    op.create_index("ix_leads_status_created_at", "leads", ["status", "created_at"])

    op.create_table(
        "companies",
        sa.Column("id", UUID, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("name_key", sa.String(length=200), nullable=False),
        sa.Column("domain", sa.String(length=255), nullable=True),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column("lead_id", UUID, nullable=True),
        sa.Column("region_id", UUID, nullable=True),
        sa.Column("licensee_id", UUID, nullable=True),
        sa.Column("attribution_owner_id", UUID, nullable=True),
        sa.Column("attribution_status", sa.String(length=10), server_default="OPEN", nullable=False),
        _ts("attribution_locked_at", nullable=True),
        _ts("locked_until", nullable=True),
        _ts("attribution_expired_at", nullable=True),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        _ts("created_at"),
        sa.CheckConstraint(
            "attribution_status <> 'LOCKED' OR attribution_owner_id IS NOT NULL",
            name="ck_companies_locked_requires_owner",
        ),
        sa.ForeignKeyConstraint(["lead_id"], ["leads.id"], name="fk_companies_lead_id_leads", ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["region_id"], ["regions.id"], name="fk_companies_region_id_regions", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["licensee_id"], ["licensees.id"], name="fk_companies_licensee_id_licensees", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["attribution_owner_id"],
            ["consultants.id"],
            name="fk_companies_attribution_owner_id_consultants",
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_companies"),
        sa.UniqueConstraint("name_key", name="uq_companies_name_key"),
        sa.UniqueConstraint("lead_id", name="uq_companies_lead_id"),
    )
    op.create_index("ix_companies_region_id", "companies", ["region_id"])
    op.create_index("ix_companies_licensee_id", "companies", ["licensee_id"])
    op.create_index("ix_companies_attribution_owner_id", "companies", ["attribution_owner_id"])

    op.create_table(
        "conversion_requests",
        sa.Column("id", UUID, nullable=False),
        sa.Column("lead_id", UUID, nullable=False),
        sa.Column("agent_id", UUID, nullable=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("company_name", sa.String(length=200), nullable=False),
        sa.Column("country", sa.String(length=2), nullable=False),
        sa.Column("domain", sa.String(length=255), nullable=True),
        sa.Column("agent_notes", sa.Text(), nullable=True),
        sa.Column("temp_password_hash", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), server_default="PENDING", nullable=False),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("decline_reason", sa.Text(), nullable=True),
        sa.Column("decided_by", UUID, nullable=True),
        _ts("decided_at", nullable=True),
        sa.Column("company_id", UUID, nullable=True),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        _ts("created_at"),
        sa.ForeignKeyConstraint(
            ["lead_id"], ["leads.id"], name="fk_conversion_requests_lead_id_leads", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["agent_id"], ["consultants.id"], name="fk_conversion_requests_agent_id_consultants", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["company_id"], ["companies.id"], name="fk_conversion_requests_company_id_companies", ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_conversion_requests"),
    )
    op.create_index("ix_conversion_requests_agent_id", "conversion_requests", ["agent_id"])
    op.create_index("ix_conversion_requests_lead_created_at", "conversion_requests", ["lead_id", "created_at"])
    op.create_index("ix_conversion_requests_status", "conversion_requests", ["status"])
    # at most one PENDING request per lead
    op.create_index(
        "uq_conversion_requests_pending_lead",
        "conversion_requests",
        ["lead_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    # -----------------------------------------------------
    # 3) Region-owned work
    # -----------------------------------------------------
    for table in ("jobs", "invoices", "opportunities"):
        columns = [
            sa.Column("id", UUID, nullable=False),
            sa.Column("company_id", UUID, nullable=table == "opportunities"),
            sa.Column("region_id", UUID, nullable=True),
            sa.Column("licensee_id", UUID, nullable=True),
        ]
        if table == "jobs":
            columns += [
                sa.Column("consultant_id", UUID, nullable=True),
                sa.Column("title", sa.String(length=200), nullable=False),
                sa.Column("status", sa.String(length=10), server_default="OPEN", nullable=False),
                sa.ForeignKeyConstraint(
                    ["consultant_id"], ["consultants.id"], name="fk_jobs_consultant_id_consultants", ondelete="SET NULL"
                ),
            ]
        elif table == "invoices":
            columns += [
                sa.Column("amount", sa.BigInteger(), nullable=False),
                sa.Column("currency", sa.String(length=3), server_default="USD", nullable=False),
                sa.Column("status", sa.String(length=10), server_default="OPEN", nullable=False),
            ]
        else:
            columns += [
                sa.Column("name", sa.String(length=200), nullable=False),
                sa.Column("stage", sa.String(length=20), server_default="PROSPECTING", nullable=False),
                sa.Column("amount", sa.BigInteger(), server_default="0", nullable=False),
            ]
        op.create_table(
            table,
            *columns,
            _ts("created_at"),
            sa.ForeignKeyConstraint(
                ["company_id"], ["companies.id"], name=f"fk_{table}_company_id_companies", ondelete="CASCADE"
            ),
            sa.ForeignKeyConstraint(
                ["region_id"], ["regions.id"], name=f"fk_{table}_region_id_regions", ondelete="SET NULL"
            ),
            sa.ForeignKeyConstraint(
                ["licensee_id"], ["licensees.id"], name=f"fk_{table}_licensee_id_licensees", ondelete="SET NULL"
            ),
            sa.PrimaryKeyConstraint("id", name=f"pk_{table}"),
        )
        op.create_index(f"ix_{table}_company_id", table, ["company_id"])
        op.create_index(f"ix_{table}_region_id", table, ["region_id"])
        if table != "opportunities":
            op.create_index(f"ix_{table}_licensee_id", table, ["licensee_id"])

    # -----------------------------------------------------
    # 4) Money
    # -----------------------------------------------------
    op.create_table(
        "revenue_events",
        sa.Column("id", UUID, nullable=False),
        sa.Column("source_event_id", sa.String(length=120), nullable=False),
        sa.Column("company_id", UUID, nullable=False),
        sa.Column("event_type", sa.String(length=20), nullable=False),
        sa.Column("value", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), server_default="USD", nullable=False),
        sa.Column("region_id", UUID, nullable=True),
        sa.Column("licensee_id", UUID, nullable=True),
        sa.Column("consultant_id", UUID, nullable=True),
        _ts("occurred_at"),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _ts("created_at"),
        sa.ForeignKeyConstraint(
            ["company_id"], ["companies.id"], name="fk_revenue_events_company_id_companies", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_revenue_events"),
        sa.UniqueConstraint("source_event_id", name="uq_revenue_events_source_event_id"),
    )
    op.create_index("ix_revenue_events_licensee_occurred", "revenue_events", ["licensee_id", "occurred_at"])
    op.create_index("ix_revenue_events_company_occurred", "revenue_events", ["company_id", "occurred_at"])

    op.create_table(
        "commission_entries",
        sa.Column("id", UUID, nullable=False),
        sa.Column("consultant_id", UUID, nullable=False),
        sa.Column("company_id", UUID, nullable=False),
        sa.Column("region_id", UUID, nullable=True),
        sa.Column("source_event_id", sa.String(length=120), nullable=False),
        sa.Column("commission_type", sa.String(length=20), nullable=False),
        sa.Column("base_value", sa.BigInteger(), nullable=False),
        sa.Column("rate_bps", sa.Integer(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), server_default="USD", nullable=False),
        sa.Column("status", sa.String(length=10), server_default="PENDING", nullable=False),
        _ts("confirmed_at", nullable=True),
        _ts("paid_at", nullable=True),
        sa.Column("payment_reference", sa.String(length=120), nullable=True),
        _ts("created_at"),
        sa.CheckConstraint("amount >= 0", name="ck_commission_entries_amount_non_negative"),
        sa.ForeignKeyConstraint(
            ["consultant_id"],
            ["consultants.id"],
            name="fk_commission_entries_consultant_id_consultants",
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["company_id"], ["companies.id"], name="fk_commission_entries_company_id_companies", ondelete="RESTRICT"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commission_entries"),
        sa.UniqueConstraint("source_event_id", name="uq_commission_entries_source_event_id"),
    )
    op.create_index("ix_commission_entries_region_id", "commission_entries", ["region_id"])
    op.create_index("ix_commission_entries_consultant_status", "commission_entries", ["consultant_id", "status"])
    op.create_index("ix_commission_entries_company", "commission_entries", ["company_id"])

    op.create_table(
        "withdrawals",
        sa.Column("id", UUID, nullable=False),
        sa.Column("consultant_id", UUID, nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), server_default="USD", nullable=False),
        sa.Column(
            "commission_ids",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("status", sa.String(length=12), server_default="PENDING", nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=80), nullable=False),
        sa.Column("payment_reference", sa.String(length=120), nullable=True),
        sa.Column("payout_attempts", sa.Integer(), server_default="0", nullable=False),
        _ts("created_at"),
        _ts("processed_at", nullable=True),
        sa.ForeignKeyConstraint(
            ["consultant_id"], ["consultants.id"], name="fk_withdrawals_consultant_id_consultants", ondelete="RESTRICT"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_withdrawals"),
        sa.UniqueConstraint("idempotency_key", name="uq_withdrawals_idempotency_key"),
    )
    op.create_index("ix_withdrawals_consultant_status", "withdrawals", ["consultant_id", "status"])

    op.create_table(
        "withdrawal_claims",
        sa.Column("id", UUID, nullable=False),
        sa.Column("commission_entry_id", UUID, nullable=False),
        sa.Column("withdrawal_id", UUID, nullable=False),
        _ts("created_at"),
        sa.ForeignKeyConstraint(
            ["commission_entry_id"],
            ["commission_entries.id"],
            name="fk_withdrawal_claims_commission_entry_id_commission_entries",
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["withdrawal_id"], ["withdrawals.id"], name="fk_withdrawal_claims_withdrawal_id_withdrawals", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_withdrawal_claims"),
        # one live claim per commission entry
        sa.UniqueConstraint("commission_entry_id", name="uq_withdrawal_claims_commission_entry_id"),
    )
    op.create_index("ix_withdrawal_claims_withdrawal_id", "withdrawal_claims", ["withdrawal_id"])

    op.create_table(
        "settlements",
        sa.Column("id", UUID, nullable=False),
        sa.Column("licensee_id", UUID, nullable=False),
        sa.Column("region_id", UUID, nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_revenue", sa.BigInteger(), nullable=False),
        sa.Column("licensee_share", sa.BigInteger(), nullable=False),
        sa.Column("hrm8_share", sa.BigInteger(), nullable=False),
        sa.Column("revenue_share_bps", sa.Integer(), nullable=False),
        sa.Column("event_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("currency", sa.String(length=3), server_default="USD", nullable=False),
        sa.Column("status", sa.String(length=10), server_default="PENDING", nullable=False),
        _ts("payment_date", nullable=True),
        sa.Column("payment_reference", sa.String(length=120), nullable=True),
        _ts("generated_at"),
        sa.Column("generated_by", UUID, nullable=True),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        sa.CheckConstraint("hrm8_share + licensee_share = total_revenue", name="ck_settlements_shares_sum_to_total"),
        sa.CheckConstraint("period_start < period_end", name="ck_settlements_period_order"),
        sa.ForeignKeyConstraint(
            ["licensee_id"], ["licensees.id"], name="fk_settlements_licensee_id_licensees", ondelete="RESTRICT"
        ),
        sa.ForeignKeyConstraint(
            ["region_id"], ["regions.id"], name="fk_settlements_region_id_regions", ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_settlements"),
    )
    op.create_index("ix_settlements_licensee_period", "settlements", ["licensee_id", "period_start", "period_end"])
    op.create_index("ix_settlements_status", "settlements", ["status"])

    # -----------------------------------------------------
    # 5) Audit log (append-only, hash-chained per entity)
    # -----------------------------------------------------
    op.create_table(
        "audit_log_entries",
        sa.Column("id", UUID, nullable=False),
        sa.Column("entity_type", sa.String(length=40), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("performed_by", sa.String(length=64), nullable=True),
        sa.Column("performed_by_role", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "changes",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("prev_hash", sa.String(length=80), nullable=True),
        sa.Column("entry_hash", sa.String(length=80), nullable=False),
        _ts("performed_at"),
        sa.PrimaryKeyConstraint("id", name="pk_audit_log_entries"),
        sa.UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_audit_log_entity_sequence"),
    )
    op.create_index("ix_audit_log_performed_at", "audit_log_entries", ["performed_at"])
    op.create_index("ix_audit_log_action", "audit_log_entries", ["action"])


def downgrade() -> None:
    for table in (
        "audit_log_entries",
        "settlements",
        "withdrawal_claims",
        "withdrawals",
        "commission_entries",
        "revenue_events",
        "opportunities",
        "invoices",
        "jobs",
        "conversion_requests",
        "companies",
        "leads",
        "platform_memberships",
        "consultants",
        "regions",
        "licensees",
        "users",
    ):
        op.drop_table(table)
