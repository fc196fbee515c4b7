"""budget_workflow_initial

Reference tables (created only when the host system has not), budgets and
items, the workflow template store, per-item steps, audit events, chat and
the scheduler/email bookkeeping tables.

Revision ID: 0001_budget_workflow
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "0001_budget_workflow"
down_revision = None
branch_labels = None
depends_on = None

AMOUNT = sa.Numeric(14, 2, asdecimal=False)


def _reference_tables(existing):
    if "schools" not in existing:
        op.create_table(
            "schools",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("school_name", sa.String(length=200), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    if "departments" not in existing:
        op.create_table(
            "departments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("department_name", sa.String(length=150), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("department_name"),
        )
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False, server_default="user"),
            sa.Column("school_id", sa.Integer(), nullable=True),
            sa.Column("department_id", sa.Integer(), nullable=True),
            sa.Column("budget_mod", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("moderator_id", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["school_id"], ["schools.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["moderator_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_users_email", "users", ["email"])
        op.create_index("ix_users_school_id", "users", ["school_id"])
        op.create_index("ix_users_department_id", "users", ["department_id"])
    if "sub_accounts" not in existing:
        op.create_table(
            "sub_accounts",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    if "item_types" not in existing:
        op.create_table(
            "item_types",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    if "catalog_items" not in existing:
        op.create_table(
            "catalog_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("type_id", sa.Integer(), nullable=True),
            sa.Column("unit", sa.String(length=30), nullable=True),
            sa.ForeignKeyConstraint(["type_id"], ["item_types.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_catalog_items_type_id", "catalog_items", ["type_id"])


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())
    _reference_tables(existing)

    # ── Budgets ──────────────────────────────────────────────────────────
    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("school_id", sa.Integer(), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("budget_status", sa.String(length=40), nullable=False, server_default="draft"),
        sa.Column("request_type", sa.String(length=20), nullable=False, server_default="new"),
        sa.Column("submitted_role", sa.String(length=30), nullable=True),
        sa.Column("submission_draft_id", sa.Integer(), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notified_principal_submitted", sa.Boolean(), nullable=False,
                  server_default=sa.false()),
        sa.Column("notified_complete_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["school_id"], ["schools.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_budgets_user_id", "budgets", ["user_id"])
    op.create_index("ix_budgets_school_id", "budgets", ["school_id"])
    op.create_index("ix_budget_status", "budgets", ["budget_status"])
    op.create_index(
        "uq_budget_school_period_new",
        "budgets",
        ["school_id", "period"],
        unique=True,
        postgresql_where=sa.text("request_type = 'new'"),
        sqlite_where=sa.text("request_type = 'new'"),
    )

    op.create_table(
        "budget_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("budget_id", sa.Integer(), nullable=False),
        sa.Column("sub_account_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=True),
        sa.Column("item_name", sa.String(length=255), nullable=False),
        sa.Column("itemdescription", sa.Text(), nullable=True),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("quantity", AMOUNT, nullable=False),
        sa.Column("cost", AMOUNT, nullable=False),
        sa.Column("unit", sa.String(length=30), nullable=True),
        sa.Column("period_months", sa.Integer(), nullable=False, server_default="12"),
        sa.Column("storage_status", sa.String(length=30), nullable=True),
        sa.Column("storage_provided_qty", AMOUNT, nullable=True),
        sa.Column("storage_reviewed_by", sa.Integer(), nullable=True),
        sa.Column("storage_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("needed_status", sa.Integer(), nullable=True),
        sa.Column("needed_reviewed_by", sa.Integer(), nullable=True),
        sa.Column("needed_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("needed_note", sa.Text(), nullable=True),
        sa.Column("needed_noted_by", sa.Integer(), nullable=True),
        sa.Column("needed_noted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("purchase_cost", AMOUNT, nullable=True),
        sa.Column("purchasing_note", sa.Text(), nullable=True),
        sa.Column("purchasing_reviewed_by", sa.Integer(), nullable=True),
        sa.Column("purchasing_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_purchase_cost", AMOUNT, nullable=True),
        sa.Column("final_quantity", AMOUNT, nullable=True),
        sa.Column("final_purchase_status", sa.String(length=20), nullable=True),
        sa.Column("final_purchase_status_display", sa.String(length=60), nullable=True),
        sa.Column("coordinator_reviewed_by", sa.Integer(), nullable=True),
        sa.Column("coordinator_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("workflow_done", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("route_template_id", sa.Integer(), nullable=True),
        sa.Column("revision_state", sa.String(length=20), nullable=False, server_default="none"),
        sa.Column("item_revised", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("revise_reason", sa.Text(), nullable=True),
        sa.Column("revised_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("answer_id", sa.Integer(), nullable=True),
        sa.Column("revised_answered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("removedInItemRevision", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cursor_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("period_months BETWEEN 1 AND 12", name="ck_item_period_months"),
        sa.ForeignKeyConstraint(["budget_id"], ["budgets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sub_account_id"], ["sub_accounts.id"]),
        sa.ForeignKeyConstraint(["item_id"], ["catalog_items.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_budget_items_budget_id", "budget_items", ["budget_id"])
    op.create_index("ix_item_budget_account", "budget_items", ["budget_id", "sub_account_id"])

    op.create_table(
        "budget_item_baselines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("budget_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("sub_account_id", sa.Integer(), nullable=False),
        sa.Column("item_name", sa.String(length=255), nullable=False),
        sa.Column("itemdescription", sa.Text(), nullable=True),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("quantity", AMOUNT, nullable=False),
        sa.Column("cost", AMOUNT, nullable=False),
        sa.Column("period_months", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["budget_id"], ["budgets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("budget_id", "item_id", name="uq_baseline_budget_item"),
    )
    op.create_index("ix_budget_item_baselines_budget_id", "budget_item_baselines", ["budget_id"])

    op.create_table(
        "revision_answers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("budget_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=False),
        sa.Column("quantity", AMOUNT, nullable=True),
        sa.Column("cost", AMOUNT, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["budget_id"], ["budgets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["item_id"], ["budget_items.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_revision_answers_budget_id", "revision_answers", ["budget_id"])
    op.create_index("ix_revision_answers_item_id", "revision_answers", ["item_id"])

    op.create_table(
        "budget_drafts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("school_id", sa.Integer(), nullable=True),
        sa.Column("period", sa.String(length=7), nullable=True),
        sa.Column("request_type", sa.String(length=20), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_by", sa.Integer(), nullable=True),
        sa.Column("budget_id_submitted", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["school_id"], ["schools.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_budget_drafts_user_id", "budget_drafts", ["user_id"])
    op.create_index(
        "uq_budget_draft_active_user",
        "budget_drafts",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("active"),
        sqlite_where=sa.text("active = 1"),
    )

    # ── Workflow template store ──────────────────────────────────────────
    op.create_table(
        "workflow_templates",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_table(
        "workflow_template_stages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.Integer(), nullable=False),
        sa.Column("stage", sa.String(length=60), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("owner_department_id", sa.Integer(), nullable=True),
        sa.Column("owner_type", sa.String(length=20), nullable=False, server_default="department"),
        sa.Column("assigned_user_id", sa.Integer(), nullable=True),
        sa.Column("allow_revise", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("skip_type_ids", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["owner_department_id"], ["departments.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("template_id", "sort_order", name="uq_template_stage_order"),
    )
    op.create_index("ix_workflow_template_stages_template_id", "workflow_template_stages",
                    ["template_id"])
    op.create_table(
        "workflow_bindings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.Integer(), nullable=False),
        sa.Column("school_id", sa.Integer(), nullable=True),
        sa.Column("sub_account_id", sa.Integer(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["school_id"], ["schools.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sub_account_id"], ["sub_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("template_id", "school_id", "sub_account_id",
                            name="uq_binding_template_school_account"),
    )
    op.create_index("ix_workflow_bindings_template_id", "workflow_bindings", ["template_id"])
    op.create_index("ix_workflow_bindings_school_id", "workflow_bindings", ["school_id"])
    op.create_index("ix_workflow_bindings_sub_account_id", "workflow_bindings", ["sub_account_id"])

    # ── Per-item steps, decisions, events ────────────────────────────────
    op.create_table(
        "steps",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("budget_id", sa.Integer(), nullable=False),
        sa.Column("sub_account_id", sa.Integer(), nullable=False),
        sa.Column("budget_item_id", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.Integer(), nullable=False),
        sa.Column("stage_id", sa.Integer(), nullable=True),
        sa.Column("step_name", sa.String(length=60), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("step_status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("owner_of_step", sa.Integer(), nullable=True),
        sa.Column("owner_type", sa.String(length=20), nullable=False, server_default="department"),
        sa.Column("assigned_user_id", sa.Integer(), nullable=True),
        sa.Column("can_revise", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_skipped", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["budget_id"], ["budgets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["budget_item_id"], ["budget_items.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["stage_id"], ["workflow_template_stages.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_step_item_current", "steps", ["budget_item_id", "is_current"])
    op.create_index("ix_step_budget_current", "steps", ["budget_id", "is_current"])

    op.create_table(
        "budget_item_step_states",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("budget_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("template_step_id", sa.Integer(), nullable=True),
        sa.Column("stage", sa.String(length=60), nullable=False),
        sa.Column("decision", sa.String(length=40), nullable=True),
        sa.Column("provided_qty", AMOUNT, nullable=True),
        sa.Column("numeric_value", AMOUNT, nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("actor_department_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["budget_id"], ["budgets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["item_id"], ["budget_items.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["template_step_id"], ["workflow_template_stages.id"],
                                ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_budget_item_step_states_budget_id", "budget_item_step_states", ["budget_id"])
    op.create_index("ix_step_state_item_step", "budget_item_step_states",
                    ["item_id", "template_step_id"])

    op.create_table(
        "budget_item_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("budget_id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=True),
        sa.Column("stage", sa.String(length=60), nullable=False),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("value_json", sa.JSON(), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("actor_department_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["budget_id"], ["budgets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["item_id"], ["budget_items.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_event_budget_created", "budget_item_events", ["budget_id", "created_at"])
    op.create_index("ix_event_item_stage", "budget_item_events", ["item_id", "stage"])

    # ── Chat ─────────────────────────────────────────────────────────────
    op.create_table(
        "chat_threads",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("budget_id", sa.Integer(), nullable=False),
        sa.Column("sub_account_id", sa.Integer(), nullable=True),
        sa.Column("stage", sa.String(length=60), nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["item_id"], ["budget_items.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["budget_id"], ["budgets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("item_id", "stage", name="uq_chat_thread_item_stage"),
    )
    op.create_index("ix_chat_threads_budget_id", "chat_threads", ["budget_id"])
    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("thread_id", sa.Integer(), nullable=False),
        sa.Column("sender_id", sa.Integer(), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("attachments", sa.JSON(), nullable=True),
        sa.Column("client_nonce", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("edited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["thread_id"], ["chat_threads.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sender_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_chat_message_thread", "chat_messages", ["thread_id", "id"])
    op.create_table(
        "chat_read_receipts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("thread_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("last_read_message_id", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["thread_id"], ["chat_threads.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("thread_id", "user_id", name="uq_chat_receipt_thread_user"),
    )
    op.create_index("ix_chat_read_receipts_user_id", "chat_read_receipts", ["user_id"])
    op.create_table(
        "chat_first_message_notifs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("thread_id", sa.Integer(), nullable=False),
        sa.Column("sender_id", sa.Integer(), nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["thread_id"], ["chat_threads.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("thread_id", "sender_id", name="uq_chat_first_msg_thread_sender"),
    )

    # ── Scheduler / email bookkeeping ────────────────────────────────────
    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("schedule_config", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_status", sa.String(length=20), nullable=True),
        sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_run_result", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=True),
        sa.Column("failure_count", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_name"),
    )
    op.create_table(
        "email_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("recipient", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=500), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("mode", sa.String(length=20), nullable=False, server_default="smtp"),
        sa.Column("category", sa.String(length=40), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_email_logs_recipient", "email_logs", ["recipient"])


def downgrade():
    for table in (
        "email_logs",
        "scheduled_jobs",
        "chat_first_message_notifs",
        "chat_read_receipts",
        "chat_messages",
        "chat_threads",
        "budget_item_events",
        "budget_item_step_states",
        "steps",
        "workflow_bindings",
        "workflow_template_stages",
        "workflow_templates",
        "budget_drafts",
        "revision_answers",
        "budget_item_baselines",
        "budget_items",
        "budgets",
    ):
        op.drop_table(table)
