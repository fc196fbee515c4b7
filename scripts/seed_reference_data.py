"""
Seed reference data: schools, departments, users, sub-accounts, catalog
and a default five-stage workflow template bound to every school.

Usage:
    python scripts/seed_reference_data.py              # Uses development DB
    python scripts/seed_reference_data.py --env production # Uses production DB

This script is idempotent; rows that already exist are left untouched.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from budgetflow import create_app
from budgetflow.models import db
from budgetflow.models.directory import (
    CatalogItem,
    Department,
    ItemType,
    School,
    SubAccount,
    User,
)
from budgetflow.models.workflow import WorkflowBinding, WorkflowTemplate
from budgetflow.services import template_service


# ═══════════════════════════════════════════════════════════════
# REFERENCE DATA
# ═══════════════════════════════════════════════════════════════
SCHOOLS = [
    (1, "Central Secondary School"),
    (2, "Riverside Primary School"),
]

DEPARTMENTS = [
    (1, "Logistics"),
    (2, "Needs Assessment"),
    (3, "Purchasing"),
    (4, "Request Control"),
    (5, "Coordination"),
]

SUB_ACCOUNTS = [
    (1, "Stationery"),
    (2, "Laboratory"),
    (3, "Cleaning"),
]

ITEM_TYPES = [
    (1, "Goods"),
    (2, "Services"),
]

CATALOG = [
    (1, "A4 paper", 1, "pack"),
    (2, "Whiteboard marker", 1, "box"),
    (3, "Microscope slide", 1, "box"),
    (4, "Cleaning service", 2, "month"),
]

# (email, name, role, school_id, department_id, budget_mod)
USERS = [
    ("admin@budget.local", "HQ Admin", "admin", None, None, False),
    ("coordinator@budget.local", "Coordinator", "coordinator", None, 5, False),
    ("logistics@budget.local", "Logistics Officer", "user", None, 1, False),
    ("needs@budget.local", "Needs Officer", "user", None, 2, False),
    ("purchasing@budget.local", "Purchasing Officer", "user", None, 3, False),
    ("principal1@budget.local", "Principal (Central)", "principal", 1, 4, False),
    ("principal2@budget.local", "Principal (Riverside)", "principal", 2, 4, False),
    ("requester1@budget.local", "Requester (Central)", "user", 1, None, False),
    ("moderator1@budget.local", "Budget Moderator (Central)", "moderator", 1, None, True),
]

DEFAULT_TEMPLATE = "Default"
DEFAULT_STAGES = [
    {"stage": "logistics", "sort_order": 10, "owner_department_id": 1},
    {"stage": "needed", "sort_order": 20, "owner_department_id": 2, "skip_type_ids": [2]},
    {"stage": "cost", "sort_order": 30, "owner_department_id": 3},
    {"stage": "request_control_edit_confirm", "sort_order": 40, "owner_department_id": 4,
     "allow_revise": True},
    {"stage": "coordinator", "sort_order": 50, "owner_department_id": 5},
]


def _seed_simple(model, rows, build):
    created = 0
    for row in rows:
        if db.session.get(model, row[0]) is None:
            db.session.add(build(*row))
            created += 1
    db.session.flush()
    return created


def seed_directory():
    counts = {
        "schools": _seed_simple(School, SCHOOLS, lambda i, n: School(id=i, school_name=n)),
        "departments": _seed_simple(Department, DEPARTMENTS,
                                    lambda i, n: Department(id=i, department_name=n)),
        "sub_accounts": _seed_simple(SubAccount, SUB_ACCOUNTS, lambda i, n: SubAccount(id=i, name=n)),
        "item_types": _seed_simple(ItemType, ITEM_TYPES, lambda i, n: ItemType(id=i, name=n)),
        "catalog": _seed_simple(CatalogItem, CATALOG,
                                lambda i, n, t, u: CatalogItem(id=i, name=n, type_id=t, unit=u)),
    }

    users = 0
    for email, name, role, school_id, dept_id, budget_mod in USERS:
        if User.query.filter_by(email=email).first():
            continue
        db.session.add(User(
            email=email, name=name, role=role, school_id=school_id,
            department_id=dept_id, budget_mod=budget_mod,
        ))
        users += 1
    counts["users"] = users
    db.session.commit()
    return counts


def seed_workflow():
    tpl = WorkflowTemplate.query.filter_by(name=DEFAULT_TEMPLATE).first()
    if tpl is None:
        tpl = template_service.create_template({"name": DEFAULT_TEMPLATE, "stages": DEFAULT_STAGES})
    bound = 0
    for school_id, _name in SCHOOLS:
        exists = WorkflowBinding.query.filter_by(
            template_id=tpl.id, school_id=school_id, sub_account_id=None
        ).first()
        if exists is None:
            template_service.create_binding({"template_id": tpl.id, "school_id": school_id})
            bound += 1
    return tpl, bound


def main():
    parser = argparse.ArgumentParser(description="Seed school budget reference data")
    parser.add_argument("--env", default="development",
                        choices=["development", "testing", "production"],
                        help="Config environment")
    args = parser.parse_args()

    app = create_app(args.env)
    with app.app_context():
        db.create_all()
        counts = seed_directory()
        tpl, bound = seed_workflow()
        tpl_label = f"{tpl.name} (id={tpl.id})"

    print("═" * 50)
    for key, value in counts.items():
        print(f"  {key:<14} +{value}")
    print(f"  template       {tpl_label}")
    print(f"  bindings       +{bound}")
    print("═" * 50)


if __name__ == "__main__":
    main()
