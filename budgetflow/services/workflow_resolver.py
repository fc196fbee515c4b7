"""
Workflow resolver.

Picks the single template that applies to a (school, sub-account) pair and
expands it into the ordered stage chain for an item type.

Binding precedence (first wins):
    school-specific  >  sub-account-specific  >  higher priority  >  more recent
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from sqlalchemy import case, or_, select

from budgetflow.core.exceptions import NoTemplateError
from budgetflow.models import db
from budgetflow.models.workflow import WorkflowBinding, WorkflowTemplateStage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainStage:
    template_step_id: int
    template_id: int
    stage: str
    sort_order: int
    department_id: int | None
    department_name: str | None
    owner_type: str
    assigned_user_id: int | None
    allow_revise: bool
    skip_type_ids: tuple
    should_skip: bool

    @property
    def owner_of_step(self):
        if self.owner_type == "user":
            return self.assigned_user_id
        return self.department_id

    def to_dict(self) -> dict:
        return {
            "template_step_id": self.template_step_id,
            "template_id": self.template_id,
            "stage": self.stage,
            "sort_order": self.sort_order,
            "department_id": self.department_id,
            "department_name": self.department_name,
            "owner_type": self.owner_type,
            "assigned_user_id": self.assigned_user_id,
            "allow_revise": self.allow_revise,
            "skip_type_ids": list(self.skip_type_ids),
            "should_skip": self.should_skip,
        }


def normalize_skip_ids(value) -> list[int]:
    """Sorted, de-duplicated integer list from a list or a JSON string."""
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    if not isinstance(value, (list, tuple, set)):
        return []
    out = set()
    for v in value:
        if isinstance(v, bool):
            continue
        try:
            out.add(int(v))
        except (TypeError, ValueError):
            continue
    return sorted(out)


def find_template_id(school_id, sub_account_id) -> int | None:
    """Return the winning template id, or None."""
    stmt = (
        select(WorkflowBinding.template_id)
        .where(or_(WorkflowBinding.school_id.is_(None), WorkflowBinding.school_id == school_id))
        .where(or_(WorkflowBinding.sub_account_id.is_(None),
                   WorkflowBinding.sub_account_id == sub_account_id))
        .order_by(
            case((WorkflowBinding.school_id.isnot(None), 1), else_=0).desc(),
            case((WorkflowBinding.sub_account_id.isnot(None), 1), else_=0).desc(),
            WorkflowBinding.priority.desc(),
            WorkflowBinding.created_at.desc(),
            WorkflowBinding.id.desc(),
        )
        .limit(1)
    )
    return db.session.execute(stmt).scalar()


def resolve_template_id(school_id, sub_account_id) -> int:
    """Like find_template_id but raises NoTemplateError on a miss."""
    template_id = find_template_id(school_id, sub_account_id)
    if template_id is None:
        raise NoTemplateError(school_id, sub_account_id)
    return template_id


def load_chain(template_id: int, type_id: int | None = None) -> list[ChainStage]:
    """Ordered stages of a template, tagged with should_skip for the item type."""
    rows = (
        WorkflowTemplateStage.query
        .filter_by(template_id=template_id)
        .order_by(WorkflowTemplateStage.sort_order, WorkflowTemplateStage.id)
        .all()
    )
    chain = []
    for r in rows:
        skip_ids = tuple(normalize_skip_ids(r.skip_type_ids))
        chain.append(ChainStage(
            template_step_id=r.id,
            template_id=r.template_id,
            stage=r.stage,
            sort_order=r.sort_order,
            department_id=r.owner_department_id,
            department_name=r.department.department_name if r.department else None,
            owner_type=r.owner_type or "department",
            assigned_user_id=r.assigned_user_id,
            allow_revise=bool(r.allow_revise),
            skip_type_ids=skip_ids,
            should_skip=type_id is not None and type_id in skip_ids,
        ))
    return chain


def resolve_chain(school_id, sub_account_id, type_id=None) -> tuple[int, list[ChainStage]]:
    template_id = resolve_template_id(school_id, sub_account_id)
    return template_id, load_chain(template_id, type_id)
