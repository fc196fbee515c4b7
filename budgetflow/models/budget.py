"""
School Budget Workflow
Budget models.

Models:
    - Budget: one submission per (school, period, request_type)
    - BudgetItem: a requested line under one sub-account
    - BudgetItemBaseline: immutable snapshot captured at submission
    - RevisionAnswer: requester's answer to an item-level revision
    - BudgetDraft: requester-side work in progress, one active per user
"""

from datetime import datetime, timezone

from budgetflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

REQUEST_TYPES = {"new", "additional"}
FINAL_STATUSES = {"approved", "adjusted", "rejected", "revised", "removed"}
DECIDED_FINAL_STATUSES = {"approved", "adjusted", "rejected"}
REVISION_STATES = {"none", "pending", "answered"}
STORAGE_STATUSES = {"in_stock", "in_partial", "out_of_stock"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class Budget(db.Model):
    """A periodic budget request of one school.

    Only one ``new`` budget may exist per (school, period); additional
    requests are unrestricted.
    """

    __tablename__ = "budgets"
    __table_args__ = (
        db.Index(
            "uq_budget_school_period_new", "school_id", "period",
            unique=True,
            sqlite_where=db.text("request_type = 'new'"),
            postgresql_where=db.text("request_type = 'new'"),
        ),
        db.Index("ix_budget_status", "budget_status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                        nullable=True, index=True, comment="Requester")
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=False, index=True)
    period = db.Column(db.String(7), nullable=False, comment="MM-YYYY")
    title = db.Column(db.String(255), nullable=True)
    description = db.Column(db.Text, nullable=True)
    budget_status = db.Column(db.String(40), nullable=False, default="draft",
                              comment="draft, submitted, in_review, review_been_completed, "
                                      "approved_by_finance, revision_requested, workflow_complete")
    request_type = db.Column(db.String(20), nullable=False, default="new",
                             comment="new, additional")
    submitted_role = db.Column(db.String(30), nullable=True)
    submission_draft_id = db.Column(db.Integer, nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notified_principal_submitted = db.Column(db.Boolean, nullable=False, default=False)
    notified_complete_at = db.Column(db.DateTime(timezone=True), nullable=True,
                                     comment="Watermark of the completion email")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    items = db.relationship(
        "BudgetItem",
        back_populates="budget",
        lazy="select",
        cascade="all, delete-orphan",
        order_by="BudgetItem.id",
    )
    school = db.relationship("School", lazy="joined")
    requester = db.relationship("User", lazy="joined", foreign_keys=[user_id])

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "user_id": self.user_id,
            "school_id": self.school_id,
            "period": self.period,
            "title": self.title,
            "description": self.description,
            "budget_status": self.budget_status,
            "request_type": self.request_type,
            "submitted_role": self.submitted_role,
            "submission_draft_id": self.submission_draft_id,
            "closed_at": _iso(self.closed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d

    def __repr__(self):
        return f"<Budget {self.id} school={self.school_id} {self.period} [{self.budget_status}]>"


class BudgetItem(db.Model):
    """One requested line.

    Carries the requested numbers plus the scratch fields each stage writes
    (storage, needed, purchasing, final coordinator decision).
    """

    __tablename__ = "budget_items"
    __table_args__ = (
        db.CheckConstraint("period_months BETWEEN 1 AND 12", name="ck_item_period_months"),
        db.Index("ix_item_budget_account", "budget_id", "sub_account_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    budget_id = db.Column(db.Integer, db.ForeignKey("budgets.id", ondelete="CASCADE"),
                          nullable=False, index=True)
    sub_account_id = db.Column(db.Integer, db.ForeignKey("sub_accounts.id"), nullable=False)
    item_id = db.Column(db.Integer, db.ForeignKey("catalog_items.id", ondelete="SET NULL"),
                        nullable=True, comment="Catalog item; gives the line its type")
    item_name = db.Column(db.String(255), nullable=False)
    itemdescription = db.Column(db.Text, nullable=True)
    notes = db.Column(db.String(500), nullable=True)
    quantity = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=False)
    cost = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=False)
    unit = db.Column(db.String(30), nullable=True)
    period_months = db.Column(db.Integer, nullable=False, default=12)

    # Logistics
    storage_status = db.Column(db.String(30), nullable=True,
                               comment="in_stock, in_partial, out_of_stock")
    storage_provided_qty = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=True)
    storage_reviewed_by = db.Column(db.Integer, nullable=True)
    storage_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Needed
    needed_status = db.Column(db.Integer, nullable=True, comment="1 needed, 0 not needed")
    needed_reviewed_by = db.Column(db.Integer, nullable=True)
    needed_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    needed_note = db.Column(db.Text, nullable=True)
    needed_noted_by = db.Column(db.Integer, nullable=True)
    needed_noted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Purchasing (cost)
    purchase_cost = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=True)
    purchasing_note = db.Column(db.Text, nullable=True)
    purchasing_reviewed_by = db.Column(db.Integer, nullable=True)
    purchasing_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Coordinator (final)
    final_purchase_cost = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=True)
    final_quantity = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=True)
    final_purchase_status = db.Column(db.String(20), nullable=True,
                                      comment="approved, adjusted, rejected, revised, removed")
    final_purchase_status_display = db.Column(db.String(60), nullable=True)
    coordinator_reviewed_by = db.Column(db.Integer, nullable=True)
    coordinator_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    workflow_done = db.Column(db.Boolean, nullable=False, default=False)
    route_template_id = db.Column(db.Integer, nullable=True)

    # Item-level revision
    revision_state = db.Column(db.String(20), nullable=False, default="none",
                               comment="none, pending, answered")
    item_revised = db.Column(db.Boolean, nullable=False, default=False)
    revise_reason = db.Column(db.Text, nullable=True)
    revised_at = db.Column(db.DateTime(timezone=True), nullable=True)
    answer_id = db.Column(db.Integer, nullable=True)
    revised_answered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    removed_in_item_revision = db.Column("removedInItemRevision", db.Boolean,
                                         nullable=False, default=False)
    cursor_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    budget = db.relationship("Budget", back_populates="items")
    catalog_item = db.relationship("CatalogItem", lazy="joined")
    sub_account = db.relationship("SubAccount", lazy="joined")
    steps = db.relationship(
        "Step",
        back_populates="item",
        lazy="select",
        cascade="all, delete-orphan",
        order_by="Step.sort_order",
    )
    step_states = db.relationship(
        "BudgetItemStepState",
        lazy="select",
        cascade="all, delete-orphan",
    )

    @property
    def type_id(self):
        return self.catalog_item.type_id if self.catalog_item else None

    @property
    def is_removed(self) -> bool:
        return bool(self.removed_in_item_revision) or self.final_purchase_status == "removed"

    def to_dict(self):
        return {
            "id": self.id,
            "budget_id": self.budget_id,
            "sub_account_id": self.sub_account_id,
            "account_id": self.sub_account_id,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "itemdescription": self.itemdescription,
            "notes": self.notes,
            "quantity": self.quantity,
            "cost": self.cost,
            "unit": self.unit,
            "period_months": self.period_months,
            "storage_status": self.storage_status,
            "storage_provided_qty": self.storage_provided_qty,
            "needed_status": self.needed_status,
            "needed_reviewed_by": self.needed_reviewed_by,
            "needed_note": self.needed_note,
            "purchase_cost": self.purchase_cost,
            "purchasing_note": self.purchasing_note,
            "final_purchase_cost": self.final_purchase_cost,
            "final_quantity": self.final_quantity,
            "final_purchase_status": self.final_purchase_status,
            "final_purchase_status_display": self.final_purchase_status_display,
            "coordinator_reviewed_by": self.coordinator_reviewed_by,
            "coordinator_reviewed_at": _iso(self.coordinator_reviewed_at),
            "workflow_done": self.workflow_done,
            "route_template_id": self.route_template_id,
            "revision_state": self.revision_state,
            "item_revised": self.item_revised,
            "revise_reason": self.revise_reason,
            "revised_at": _iso(self.revised_at),
            "answer_id": self.answer_id,
            "revised_answered_at": _iso(self.revised_answered_at),
            "removedInItemRevision": self.removed_in_item_revision,
        }

    def __repr__(self):
        return f"<BudgetItem {self.id} budget={self.budget_id} {self.item_name!r}>"


class BudgetItemBaseline(db.Model):
    """Snapshot of an item at submission. Rows are written once per submit."""

    __tablename__ = "budget_item_baselines"
    __table_args__ = (
        db.UniqueConstraint("budget_id", "item_id", name="uq_baseline_budget_item"),
    )

    id = db.Column(db.Integer, primary_key=True)
    budget_id = db.Column(db.Integer, db.ForeignKey("budgets.id", ondelete="CASCADE"),
                          nullable=False, index=True)
    item_id = db.Column(db.Integer, nullable=False, comment="budget_items.id at capture time")
    sub_account_id = db.Column(db.Integer, nullable=False)
    item_name = db.Column(db.String(255), nullable=False)
    itemdescription = db.Column(db.Text, nullable=True)
    notes = db.Column(db.String(500), nullable=True)
    quantity = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=False)
    cost = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=False)
    period_months = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "item_id": self.item_id,
            "sub_account_id": self.sub_account_id,
            "item_name": self.item_name,
            "itemdescription": self.itemdescription,
            "notes": self.notes,
            "quantity": self.quantity,
            "cost": self.cost,
            "period_months": self.period_months,
        }


class RevisionAnswer(db.Model):
    __tablename__ = "revision_answers"

    id = db.Column(db.Integer, primary_key=True)
    budget_id = db.Column(db.Integer, db.ForeignKey("budgets.id", ondelete="CASCADE"),
                          nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("budget_items.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    comment = db.Column(db.Text, nullable=False)
    quantity = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=True)
    cost = db.Column(db.Numeric(14, 2, asdecimal=False), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "budget_id": self.budget_id,
            "item_id": self.item_id,
            "user_id": self.user_id,
            "comment": self.comment,
            "quantity": self.quantity,
            "cost": self.cost,
            "created_at": _iso(self.created_at),
        }


class BudgetDraft(db.Model):
    """Unsubmitted editor state of a requester.

    ``data`` is the editor payload as the client saved it
    (``{"rows": [{account_id, subitems: [...]}, ...]}``). A user holds at
    most one active draft; submitting a budget with ``draft_id`` closes it.
    """

    __tablename__ = "budget_drafts"
    __table_args__ = (
        db.Index(
            "uq_budget_draft_active_user", "user_id",
            unique=True,
            sqlite_where=db.text("active = 1"),
            postgresql_where=db.text("active"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=True)
    period = db.Column(db.String(7), nullable=True, comment="MM-YYYY")
    request_type = db.Column(db.String(20), nullable=True, comment="new, additional")
    data = db.Column(db.JSON, nullable=False, default=dict)
    active = db.Column(db.Boolean, nullable=False, default=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by = db.Column(db.Integer, nullable=True)
    budget_id_submitted = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def summary(self) -> dict:
        rows = (self.data or {}).get("rows") or []
        items, total = 0, 0.0
        for row in rows:
            for sub in row.get("subitems") or []:
                items += 1
                try:
                    total += float(sub.get("quantity") or 0) * float(sub.get("cost") or 0)
                except (TypeError, ValueError):
                    continue
        return {"accounts": len(rows), "items": items, "total": round(total, 2)}

    def to_dict(self, include_data=True):
        d = {
            "id": self.id,
            "user_id": self.user_id,
            "school_id": self.school_id,
            "period": self.period,
            "request_type": self.request_type,
            "active": self.active,
            "closed_at": _iso(self.closed_at),
            "closed_by": self.closed_by,
            "budget_id_submitted": self.budget_id_submitted,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_data:
            d["data"] = self.data
        else:
            d["summary"] = self.summary()
        return d

    def __repr__(self):
        return f"<BudgetDraft {self.id} user={self.user_id} active={self.active}>"
