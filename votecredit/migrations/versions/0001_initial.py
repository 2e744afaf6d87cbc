"""accounts, payment ledger, credit authorizations and voting tables

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


def _ensure_index(inspector, table: str, name: str, columns: list[str], unique: bool = False) -> None:
    existing = {index['name'] for index in inspector.get_indexes(table)}
    if name not in existing:
        op.create_index(name, table, columns, unique=unique)


def _has_table(inspector, name: str) -> bool:
    return inspector.has_table(name)


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _has_table(inspector, "accounts"):
        op.create_table(
            "accounts",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("display_name", sa.String(), nullable=False),
            sa.Column("email", sa.String(), nullable=True, unique=True),
            sa.Column("phone_number", sa.String(), nullable=True),
            sa.Column("shared_credit_balance", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("shared_credit_balance >= 0", name="ck_accounts_balance_non_negative"),
        )
    _ensure_index(inspector, "accounts", "ix_accounts_id", ["id"])
    _ensure_index(inspector, "accounts", "ix_accounts_phone_number", ["phone_number"])

    if not _has_table(inspector, "unlimited_packages"):
        op.create_table(
            "unlimited_packages",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
            sa.Column("transaction_id", sa.String(), nullable=True),
            sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
            sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("valid_until > valid_from", name="ck_unlimited_packages_window"),
        )
    _ensure_index(inspector, "unlimited_packages", "ix_unlimited_packages_id", ["id"])
    _ensure_index(inspector, "unlimited_packages", "ix_unlimited_packages_account_id", ["account_id"])

    if not _has_table(inspector, "legacy_credit_grants"):
        op.create_table(
            "legacy_credit_grants",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
            sa.Column("plan_code", sa.String(), nullable=True),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("remaining", sa.Integer(), nullable=False),
            sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("remaining >= 0", name="ck_legacy_grants_remaining_non_negative"),
            sa.CheckConstraint("remaining <= amount", name="ck_legacy_grants_remaining_le_amount"),
        )
    _ensure_index(inspector, "legacy_credit_grants", "ix_legacy_credit_grants_id", ["id"])
    _ensure_index(inspector, "legacy_credit_grants", "ix_legacy_credit_grants_account_id", ["account_id"])

    if not _has_table(inspector, "pricing_plans"):
        op.create_table(
            "pricing_plans",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("code", sa.String(), nullable=False, unique=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("price", sa.Integer(), nullable=False),
            sa.Column("voter_limit", sa.Integer(), nullable=False),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        )
    _ensure_index(inspector, "pricing_plans", "ix_pricing_plans_id", ["id"])
    _ensure_index(inspector, "pricing_plans", "ix_pricing_plans_price", ["price"])

    if not _has_table(inspector, "payment_transactions"):
        op.create_table(
            "payment_transactions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("transaction_id", sa.String(), nullable=False, unique=True),
            sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=True),
            sa.Column("phone_number", sa.String(), nullable=True),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
            sa.Column("credited", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("credits_granted", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("plan_code", sa.String(), nullable=True),
            sa.Column("raw_payload", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        )
    _ensure_index(inspector, "payment_transactions", "ix_payment_transactions_id", ["id"])
    _ensure_index(inspector, "payment_transactions", "ix_payment_transactions_phone_number", ["phone_number"])
    _ensure_index(inspector, "payment_transactions", "ix_payment_transactions_created_at", ["created_at"])
    _ensure_index(
        inspector,
        "payment_transactions",
        "ix_payment_transactions_account_status",
        ["account_id", "status"],
    )

    if not _has_table(inspector, "elections"):
        op.create_table(
            "elections",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("organizer_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
            sa.Column("organization_id", sa.String(), nullable=True),
            sa.Column("title", sa.String(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(), nullable=False, server_default="DRAFT"),
            sa.Column("plan_type", sa.String(), nullable=True),
            sa.Column("voter_limit", sa.Integer(), nullable=False),
            sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
    _ensure_index(inspector, "elections", "ix_elections_id", ["id"])
    _ensure_index(inspector, "elections", "ix_elections_status", ["status"])
    _ensure_index(inspector, "elections", "ix_elections_organization_id", ["organization_id"])
    _ensure_index(inspector, "elections", "ix_elections_organizer_status", ["organizer_id", "status"])

    if not _has_table(inspector, "credit_ledger_entries"):
        op.create_table(
            "credit_ledger_entries",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
            sa.Column("entry_type", sa.String(), nullable=False),
            sa.Column("credits", sa.Integer(), nullable=False),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("transaction_id", sa.String(), nullable=True),
            sa.Column("election_id", sa.Integer(), sa.ForeignKey("elections.id"), nullable=True),
            sa.Column("description", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
    _ensure_index(inspector, "credit_ledger_entries", "ix_credit_ledger_entries_id", ["id"])
    _ensure_index(inspector, "credit_ledger_entries", "ix_credit_ledger_entries_account_id", ["account_id"])
    _ensure_index(inspector, "credit_ledger_entries", "ix_credit_ledger_entries_transaction_id", ["transaction_id"])

    if not _has_table(inspector, "credit_authorizations"):
        op.create_table(
            "credit_authorizations",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
            sa.Column("election_id", sa.Integer(), sa.ForeignKey("elections.id"), nullable=True, unique=True),
            sa.Column("source", sa.String(), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("debited", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        )
    _ensure_index(inspector, "credit_authorizations", "ix_credit_authorizations_id", ["id"])
    _ensure_index(inspector, "credit_authorizations", "ix_credit_authorizations_account_id", ["account_id"])

    if not _has_table(inspector, "credit_authorization_parts"):
        op.create_table(
            "credit_authorization_parts",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column(
                "authorization_id",
                sa.Integer(),
                sa.ForeignKey("credit_authorizations.id"),
                nullable=False,
            ),
            sa.Column("legacy_grant_id", sa.Integer(), sa.ForeignKey("legacy_credit_grants.id"), nullable=True),
            sa.Column("unlimited_package_id", sa.Integer(), sa.ForeignKey("unlimited_packages.id"), nullable=True),
            sa.Column("amount", sa.Integer(), nullable=False),
        )
    _ensure_index(inspector, "credit_authorization_parts", "ix_credit_authorization_parts_id", ["id"])
    _ensure_index(
        inspector,
        "credit_authorization_parts",
        "ix_credit_authorization_parts_authorization_id",
        ["authorization_id"],
    )

    if not _has_table(inspector, "allowed_voters"):
        op.create_table(
            "allowed_voters",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("election_id", sa.Integer(), sa.ForeignKey("elections.id"), nullable=False),
            sa.Column("student_id", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=True),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("election_id", "student_id", name="uq_allowed_voters_election_student"),
        )
    _ensure_index(inspector, "allowed_voters", "ix_allowed_voters_id", ["id"])

    if not _has_table(inspector, "candidates"):
        op.create_table(
            "candidates",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("election_id", sa.Integer(), sa.ForeignKey("elections.id"), nullable=False),
            sa.Column("position", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("manifesto", sa.Text(), nullable=True),
            sa.Column("vote_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("vote_count >= 0", name="ck_candidates_vote_count_non_negative"),
        )
    _ensure_index(inspector, "candidates", "ix_candidates_id", ["id"])
    _ensure_index(inspector, "candidates", "ix_candidates_election_position", ["election_id", "position"])

    if not _has_table(inspector, "votes"):
        op.create_table(
            "votes",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("election_id", sa.Integer(), sa.ForeignKey("elections.id"), nullable=False),
            sa.Column("voter_id", sa.String(), nullable=False),
            sa.Column("candidate_id", sa.Integer(), sa.ForeignKey("candidates.id"), nullable=False),
            sa.Column("position", sa.String(), nullable=False),
            sa.Column("ip_address", sa.String(), nullable=True),
            sa.Column("user_agent", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("election_id", "voter_id", "position", name="uq_votes_election_voter_position"),
        )
    _ensure_index(inspector, "votes", "ix_votes_id", ["id"])
    _ensure_index(inspector, "votes", "ix_votes_created_at", ["created_at"])
    _ensure_index(inspector, "votes", "ix_votes_election_position", ["election_id", "position"])
    _ensure_index(inspector, "votes", "ix_votes_election_candidate", ["election_id", "candidate_id"])

    if not _has_table(inspector, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("actor", sa.String(), nullable=True),
            sa.Column("action", sa.String(), nullable=False),
            sa.Column("target_entity_type", sa.String(), nullable=True),
            sa.Column("target_entity_id", sa.String(), nullable=True),
            sa.Column("before", sa.Text(), nullable=True),
            sa.Column("after", sa.Text(), nullable=True),
        )
    _ensure_index(inspector, "audit_logs", "ix_audit_logs_id", ["id"])


def downgrade() -> None:
    for table in (
        "audit_logs",
        "votes",
        "candidates",
        "allowed_voters",
        "credit_authorization_parts",
        "credit_authorizations",
        "credit_ledger_entries",
        "elections",
        "payment_transactions",
        "pricing_plans",
        "legacy_credit_grants",
        "unlimited_packages",
        "accounts",
    ):
        op.drop_table(table)
