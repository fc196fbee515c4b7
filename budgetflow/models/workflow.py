"""
School Budget Workflow
Workflow models.

Models:
    - WorkflowTemplate / WorkflowTemplateStage: named, ordered stage chains
    - WorkflowBinding: (school?, sub-account?) → template with a priority
    - Step: instantiation of a template stage for one budget item
    - BudgetItemStepState: last decision snapshot per (item, template stage)
    - BudgetItemEvent: append-only audit log
"""

from datetime import datetime, timezone

from budgetflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STAGE_LOGISTICS = "logistics"
STAGE_NEEDED = "needed"
STAGE_COST = "cost"
STAGE_REQUEST_CONTROL = "request_control_edit_confirm"
STAGE_COORDINATOR = "coordinator"

STAGE_KINDS = (
    STAGE_LOGISTICS,
    STAGE_NEEDED,
    STAGE_COST,
    STAGE_REQUEST_CONTROL,
    STAGE_COORDINATOR,
)

STEP_PENDING = "pending"
STEP_CONFIRMED = "confirmed"
STEP_SKIPPED = "skipped"
STEP_REVISION_REQUESTED = "revision_requested"
STEP_STATUSES = {STEP_PENDING, STEP_CONFIRMED, STEP_SKIPPED, STEP_REVISION_REQUESTED}

OWNER_TYPES = {"department", "user"}

EVENT_ACTIONS = {
    "created", "status_change", "confirm", "revision_requested",
    "storage_update", "needed_update", "cost_update", "final_decision",
    "item_update", "item_deleted", "revise", "answer", "delete_removed",
    "skipped", "note",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class WorkflowTemplate(db.Model):
    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False, unique=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    stages = db.relationship(
        "WorkflowTemplateStage",
        back_populates="template",
        lazy="select",
        cascade="all, delete-orphan",
        order_by="WorkflowTemplateStage.sort_order",
    )

    def to_dict(self, include_stages=False):
        d = {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }
        if include_stages:
            d["stages"] = [s.to_dict() for s in self.stages]
        return d

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.name}>"


class WorkflowTemplateStage(db.Model):
    """One ordered entry of a template.

    ``skip_type_ids`` holds the item-type ids for which this stage is skipped;
    it is stored as a sorted, de-duplicated JSON array.
    """

    __tablename__ = "workflow_template_stages"
    __table_args__ = (
        db.UniqueConstraint("template_id", "sort_order", name="uq_template_stage_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    stage = db.Column(db.String(60), nullable=False,
                      comment="logistics, needed, cost, request_control_edit_confirm, coordinator")
    sort_order = db.Column(db.Integer, nullable=False)
    owner_department_id = db.Column(db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"),
                                    nullable=True)
    owner_type = db.Column(db.String(20), nullable=False, default="department",
                           comment="department, user")
    assigned_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                                 nullable=True)
    allow_revise = db.Column(db.Boolean, nullable=False, default=False)
    skip_type_ids = db.Column(db.JSON, nullable=False, default=list)

    template = db.relationship("WorkflowTemplate", back_populates="stages")
    department = db.relationship("Department", lazy="joined")

    def to_dict(self):
        return {
            "template_step_id": self.id,
            "template_id": self.template_id,
            "stage": self.stage,
            "sort_order": self.sort_order,
            "department_id": self.owner_department_id,
            "department_name": self.department.department_name if self.department else None,
            "owner_type": self.owner_type,
            "assigned_user_id": self.assigned_user_id,
            "allow_revise": bool(self.allow_revise),
            "skip_type_ids": list(self.skip_type_ids or []),
        }

    def __repr__(self):
        return f"<WorkflowTemplateStage {self.id} tpl={self.template_id} {self.stage}@{self.sort_order}>"


class WorkflowBinding(db.Model):
    __tablename__ = "workflow_bindings"
    __table_args__ = (
        db.UniqueConstraint("template_id", "school_id", "sub_account_id",
                            name="uq_binding_template_school_account"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id", ondelete="CASCADE"),
                          nullable=True, index=True)
    sub_account_id = db.Column(db.Integer, db.ForeignKey("sub_accounts.id", ondelete="CASCADE"),
                               nullable=True, index=True)
    priority = db.Column(db.Integer, nullable=False, default=100)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    template = db.relationship("WorkflowTemplate", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "template_name": self.template.name if self.template else None,
            "school_id": self.school_id,
            "sub_account_id": self.sub_account_id,
            "account_id": self.sub_account_id,
            "priority": self.priority,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return (f"<WorkflowBinding {self.id} tpl={self.template_id} "
                f"school={self.school_id} account={self.sub_account_id} p={self.priority}>")


class Step(db.Model):
    """A template stage instantiated for one budget item.

    At most one step per item is ``is_current``; ``notified_at`` is the
    dispatcher watermark.
    """

    __tablename__ = "steps"
    __table_args__ = (
        db.Index("ix_step_item_current", "budget_item_id", "is_current"),
        db.Index("ix_step_budget_current", "budget_id", "is_current"),
    )

    id = db.Column(db.Integer, primary_key=True)
    budget_id = db.Column(db.Integer, db.ForeignKey("budgets.id", ondelete="CASCADE"),
                          nullable=False)
    sub_account_id = db.Column(db.Integer, nullable=False)
    budget_item_id = db.Column(db.Integer, db.ForeignKey("budget_items.id", ondelete="CASCADE"),
                               nullable=False)
    template_id = db.Column(db.Integer, nullable=False)
    stage_id = db.Column(db.Integer, db.ForeignKey("workflow_template_stages.id", ondelete="SET NULL"),
                         nullable=True, comment="workflow_template_stages.id")
    step_name = db.Column(db.String(60), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False)
    step_status = db.Column(db.String(30), nullable=False, default=STEP_PENDING,
                            comment="pending, confirmed, skipped, revision_requested")
    owner_of_step = db.Column(db.Integer, nullable=True,
                              comment="department_id, or user_id when owner_type=user")
    owner_type = db.Column(db.String(20), nullable=False, default="department")
    assigned_user_id = db.Column(db.Integer, nullable=True)
    can_revise = db.Column(db.Boolean, nullable=False, default=False)
    is_current = db.Column(db.Boolean, nullable=False, default=False)
    is_skipped = db.Column(db.Boolean, nullable=False, default=False)
    notified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    item = db.relationship("BudgetItem", back_populates="steps")

    def to_dict(self):
        return {
            "id": self.id,
            "budget_id": self.budget_id,
            "sub_account_id": self.sub_account_id,
            "budget_item_id": self.budget_item_id,
            "template_id": self.template_id,
            "stage_id": self.stage_id,
            "step_name": self.step_name,
            "sort_order": self.sort_order,
            "step_status": self.step_status,
            "owner_of_step": self.owner_of_step,
            "owner_type": self.owner_type,
            "assigned_user_id": self.assigned_user_id,
            "can_revise": self.can_revise,
            "is_current": self.is_current,
            "is_skipped": self.is_skipped,
            "notified_at": _iso(self.notified_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        flag = "*" if self.is_current else ""
        return f"<Step {self.id} item={self.budget_item_id} {self.step_name}{flag} [{self.step_status}]>"


class BudgetItemStepState(db.Model):
    """Decision snapshot on a template stage; read by the migration engine."""

    __tablename__ = "budget_item_step_states"
    __table_args__ = (
        db.Index("ix_step_state_item_step", "item_id", "template_step_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    budget_id = db.Column(db.Integer, db.ForeignKey("budgets.id", ondelete="CASCADE"),
                          nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("budget_items.id", ondelete="CASCADE"),
                        nullable=False)
    template_step_id = db.Column(db.Integer,
                                 db.ForeignKey("workflow_template_stages.id", ondelete="SET NULL"),
                                 nullable=True)
    stage = db.Column(db.String(60), nullable=False)
    decision = db.Column(db.String(40), nullable=True)
    provided_qty = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=True)
    numeric_value = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=True)
    actor_user_id = db.Column(db.Integer, nullable=True)
    actor_department_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "budget_id": self.budget_id,
            "item_id": self.item_id,
            "template_step_id": self.template_step_id,
            "stage": self.stage,
            "decision": self.decision,
            "provided_qty": self.provided_qty,
            "numeric_value": self.numeric_value,
            "actor_user_id": self.actor_user_id,
            "actor_department_id": self.actor_department_id,
            "created_at": _iso(self.created_at),
        }


class BudgetItemEvent(db.Model):
    """Append-only audit log. Rows are never updated or deleted."""

    __tablename__ = "budget_item_events"
    __table_args__ = (
        db.Index("ix_event_budget_created", "budget_id", "created_at"),
        db.Index("ix_event_item_stage", "item_id", "stage"),
    )

    id = db.Column(db.Integer, primary_key=True)
    budget_id = db.Column(db.Integer, db.ForeignKey("budgets.id", ondelete="CASCADE"),
                          nullable=False)
    item_id = db.Column(db.Integer, db.ForeignKey("budget_items.id", ondelete="SET NULL"),
                        nullable=True)
    stage = db.Column(db.String(60), nullable=False)
    action = db.Column(db.String(40), nullable=False)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    note = db.Column(db.Text, nullable=True)
    value_json = db.Column(db.JSON, nullable=True)
    actor_user_id = db.Column(db.Integer, nullable=True)
    actor_department_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "budget_id": self.budget_id,
            "item_id": self.item_id,
            "stage": self.stage,
            "action": self.action,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "note": self.note,
            "value_json": self.value_json,
            "actor_user_id": self.actor_user_id,
            "actor_department_id": self.actor_department_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<BudgetItemEvent {self.id} budget={self.budget_id} {self.stage}/{self.action}>"
