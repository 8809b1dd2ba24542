"""Create billing engine tables.

Revision ID: 7c1e2a9d4b30
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "7c1e2a9d4b30"
down_revision = None
branch_labels = None
depends_on = None


_ENUMS = {
    "subscriptionstatus": ("active", "past_due", "suspended", "canceled"),
    "plankey": ("basico", "medio", "pro"),
    "paymentmethodtype": ("direct_debit", "qr", "checkout"),
    "paymentmethodstatus": ("pending", "active", "inactive"),
    "mandatestatus": ("pending", "pending_bank", "active", "rejected", "revoked"),
    "adjustmentkind": ("addon", "discount"),
    "adjustmentmode": ("percent", "absolute"),
    "chargestatus": ("pending", "paid", "failed", "canceled"),
    "attemptchannel": ("direct_debit", "fallback"),
    "attemptstatus": ("pending", "processing", "paid", "rejected", "error", "canceled"),
    "fiscaldocumenttype": ("invoice_a", "invoice_b", "invoice_c"),
    "fiscaldocumentstatus": ("pending", "issued", "failed"),
    "fallbackintentstatus": ("pending", "paid", "expired", "canceled"),
    "filebatchdirection": ("outbound", "inbound"),
    "filebatchstatus": ("ready", "exported", "processing", "imported", "failed"),
    "filebatchitemstatus": ("presented", "paid", "rejected", "error", "unknown", "unmatched"),
    "billingjobstatus": ("running", "success", "partial", "failed", "no_op", "skipped_locked"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=True)]
    if with_updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True))
    return columns


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in _ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "billing_subscriptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("agency_id", _uuid(), nullable=False),
        sa.Column("status", _enum("subscriptionstatus"), nullable=True),
        sa.Column("plan_key", _enum("plankey"), nullable=True),
        sa.Column("billing_users", sa.Integer(), nullable=True),
        sa.Column("anchor_day", sa.Integer(), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("direct_debit_discount_pct", sa.Numeric(5, 2), nullable=True),
        sa.Column("next_anchor_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_billing_subscriptions_agency_id", "billing_subscriptions", ["agency_id"]
    )

    op.create_table(
        "billing_payment_methods",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "subscription_id",
            _uuid(),
            sa.ForeignKey("billing_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("method_type", _enum("paymentmethodtype"), nullable=True),
        sa.Column("status", _enum("paymentmethodstatus"), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=True),
        sa.Column("holder_name", sa.String(160), nullable=True),
        sa.Column("holder_tax_id", sa.String(32), nullable=True),
        sa.Column("account_last4", sa.String(4), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "subscription_id", "method_type", name="uq_billing_payment_methods_sub_type"
        ),
    )

    op.create_table(
        "billing_mandates",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "payment_method_id",
            _uuid(),
            sa.ForeignKey("billing_payment_methods.id"),
            nullable=False,
        ),
        sa.Column("status", _enum("mandatestatus"), nullable=True),
        sa.Column("bank_reference", sa.String(120), nullable=True),
        sa.Column("rejection_code", sa.String(40), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_status_check_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "billing_adjustments",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "subscription_id",
            _uuid(),
            sa.ForeignKey("billing_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("kind", _enum("adjustmentkind"), nullable=True),
        sa.Column("mode", _enum("adjustmentmode"), nullable=True),
        sa.Column("label", sa.String(120), nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("starts_on", sa.Date(), nullable=True),
        sa.Column("ends_on", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "billing_fx_rates",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("fx_type", sa.String(40), nullable=True),
        sa.Column("rate_date", sa.Date(), nullable=False),
        sa.Column("ars_per_usd", sa.Numeric(14, 4), nullable=False),
        sa.Column("source", sa.String(80), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("fx_type", "rate_date", name="uq_billing_fx_rates_type_date"),
    )

    op.create_table(
        "billing_cycles",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "subscription_id",
            _uuid(),
            sa.ForeignKey("billing_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("agency_id", _uuid(), nullable=False),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("plan_key", sa.String(40), nullable=False),
        sa.Column("billing_users", sa.Integer(), nullable=True),
        sa.Column("base_price_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("addons_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("pre_discount_net_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("discount_pct", sa.Numeric(5, 2), nullable=True),
        sa.Column("discount_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("net_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("vat_rate", sa.Numeric(5, 4), nullable=True),
        sa.Column("vat_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("total_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("fx_rate", sa.Numeric(14, 4), nullable=False),
        sa.Column("fx_rate_date", sa.Date(), nullable=False),
        sa.Column("total_ars", sa.Numeric(14, 2), nullable=True),
        sa.Column("snapshot", sa.JSON(), nullable=True),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint(
            "subscription_id", "anchor_date", name="uq_billing_cycles_sub_anchor"
        ),
    )

    op.create_table(
        "billing_charges",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("agency_id", _uuid(), nullable=False),
        sa.Column(
            "subscription_id",
            _uuid(),
            sa.ForeignKey("billing_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("cycle_id", _uuid(), sa.ForeignKey("billing_cycles.id"), nullable=True),
        sa.Column("idempotency_key", sa.String(160), nullable=False),
        sa.Column("purpose", sa.String(40), nullable=True),
        sa.Column("status", _enum("chargestatus"), nullable=True),
        sa.Column("amount_usd_due", sa.Numeric(12, 2), nullable=True),
        sa.Column("amount_ars_due", sa.Numeric(14, 2), nullable=True),
        sa.Column("amount_ars_paid", sa.Numeric(14, 2), nullable=True),
        sa.Column("fx_rate", sa.Numeric(14, 4), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_reference", sa.String(120), nullable=True),
        sa.Column("paid_via_channel", _enum("attemptchannel"), nullable=True),
        sa.Column("dunning_stage", sa.Integer(), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "agency_id", "idempotency_key", name="uq_billing_charges_agency_idempotency"
        ),
    )
    op.create_index("ix_billing_charges_agency_id", "billing_charges", ["agency_id"])

    op.create_table(
        "billing_attempts",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("charge_id", _uuid(), sa.ForeignKey("billing_charges.id"), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("channel", _enum("attemptchannel"), nullable=True),
        sa.Column(
            "payment_method_id",
            _uuid(),
            sa.ForeignKey("billing_payment_methods.id"),
            nullable=True,
        ),
        sa.Column("status", _enum("attemptstatus"), nullable=True),
        sa.Column("external_reference", sa.String(64), nullable=False, unique=True),
        sa.Column("amount_ars", sa.Numeric(14, 2), nullable=True),
        sa.Column("scheduled_for", sa.Date(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_reference", sa.String(120), nullable=True),
        sa.Column("result_code", sa.String(40), nullable=True),
        sa.Column("result_message", sa.Text(), nullable=True),
        sa.Column("detailed_reason", sa.String(40), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("charge_id", "attempt_no", name="uq_billing_attempts_charge_no"),
    )

    op.create_table(
        "billing_fiscal_documents",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("charge_id", _uuid(), sa.ForeignKey("billing_charges.id"), nullable=False),
        sa.Column("agency_id", _uuid(), nullable=False),
        sa.Column("document_type", _enum("fiscaldocumenttype"), nullable=True),
        sa.Column("status", _enum("fiscaldocumentstatus"), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("point_of_sale", sa.Integer(), nullable=True),
        sa.Column("voucher_type", sa.Integer(), nullable=True),
        sa.Column("document_number", sa.String(40), nullable=True),
        sa.Column("external_reference", sa.String(120), nullable=True),
        sa.Column("cae", sa.String(40), nullable=True),
        sa.Column("cae_due_date", sa.Date(), nullable=True),
        sa.Column("request_payload", sa.JSON(), nullable=True),
        sa.Column("response_payload", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "charge_id", "document_type", name="uq_billing_fiscal_documents_charge_type"
        ),
    )

    op.create_table(
        "billing_fallback_intents",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("charge_id", _uuid(), sa.ForeignKey("billing_charges.id"), nullable=False),
        sa.Column("attempt_id", _uuid(), sa.ForeignKey("billing_attempts.id"), nullable=True),
        sa.Column("agency_id", _uuid(), nullable=False),
        sa.Column("provider", sa.String(40), nullable=False),
        sa.Column("status", _enum("fallbackintentstatus"), nullable=True),
        sa.Column("provider_status", sa.String(40), nullable=True),
        sa.Column("provider_payment_id", sa.String(120), nullable=True),
        sa.Column("external_reference", sa.String(80), nullable=False, unique=True),
        sa.Column("idempotency_key", sa.String(160), nullable=False, unique=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("payment_url", sa.String(500), nullable=True),
        sa.Column("qr_payload", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "billing_file_batches",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("direction", _enum("filebatchdirection"), nullable=False),
        sa.Column("adapter", sa.String(40), nullable=False),
        sa.Column("business_date", sa.Date(), nullable=False),
        sa.Column("status", _enum("filebatchstatus"), nullable=True),
        sa.Column(
            "parent_batch_id",
            _uuid(),
            sa.ForeignKey("billing_file_batches.id"),
            nullable=True,
        ),
        sa.Column("file_name", sa.String(200), nullable=False),
        sa.Column("storage_key", sa.String(300), nullable=True),
        sa.Column("sha256", sa.String(64), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=True),
        sa.Column("amount_total", sa.Numeric(14, 2), nullable=True),
        sa.Column("checksum", sa.String(64), nullable=True),
        sa.Column("validation_errors", sa.JSON(), nullable=True),
        sa.Column("warnings", sa.JSON(), nullable=True),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("exported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("imported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(120), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "direction", "sha256", name="uq_billing_file_batches_direction_sha"
        ),
    )

    op.create_table(
        "billing_file_batch_items",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "batch_id", _uuid(), sa.ForeignKey("billing_file_batches.id"), nullable=False
        ),
        sa.Column("attempt_id", _uuid(), sa.ForeignKey("billing_attempts.id"), nullable=True),
        sa.Column("line_no", sa.Integer(), nullable=True),
        sa.Column("external_reference", sa.String(64), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("raw_hash", sa.String(64), nullable=False),
        sa.Column("status", _enum("filebatchitemstatus"), nullable=True),
        sa.Column("result_code", sa.String(40), nullable=True),
        sa.Column("result_message", sa.Text(), nullable=True),
        sa.Column("detailed_reason", sa.String(40), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trace_id", sa.String(80), nullable=True),
        sa.Column("operation_id", sa.String(80), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint(
            "batch_id", "attempt_id", name="uq_billing_file_batch_items_attempt"
        ),
    )
    op.create_index(
        "ix_billing_file_batch_items_raw_hash", "billing_file_batch_items", ["raw_hash"]
    )

    op.create_table(
        "billing_events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("event_id", _uuid(), nullable=False, unique=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("agency_id", _uuid(), nullable=True),
        sa.Column("subscription_id", _uuid(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor", sa.String(255), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_billing_events_event_type", "billing_events", ["event_type"])
    op.create_index("ix_billing_events_agency_id", "billing_events", ["agency_id"])
    op.create_index("ix_billing_events_subscription_id", "billing_events", ["subscription_id"])

    op.create_table(
        "billing_job_runs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("job_name", sa.String(80), nullable=False),
        sa.Column("lock_key", sa.String(160), nullable=True),
        sa.Column("status", _enum("billingjobstatus"), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("params", sa.JSON(), nullable=True),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("triggered_by", sa.String(120), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_billing_job_runs_job_name", "billing_job_runs", ["job_name"])

    op.create_table(
        "billing_job_locks",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("lock_key", sa.String(160), nullable=False, unique=True),
        sa.Column("owner_run_id", _uuid(), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    for table in (
        "billing_job_locks",
        "billing_job_runs",
        "billing_events",
        "billing_file_batch_items",
        "billing_file_batches",
        "billing_fallback_intents",
        "billing_fiscal_documents",
        "billing_attempts",
        "billing_charges",
        "billing_cycles",
        "billing_fx_rates",
        "billing_adjustments",
        "billing_mandates",
        "billing_payment_methods",
        "billing_subscriptions",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(_ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
