"""
School Budget Workflow
Reference data models.

These tables are owned by the surrounding administration system; the
workflow engine only reads them:
    - School, Department, User
    - SubAccount (the budget bucket an item is requested under)
    - ItemType, CatalogItem (the catalog gives an item its type)
"""

from datetime import datetime, timezone

from budgetflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

USER_ROLES = {
    "user", "principal", "moderator", "accountant",
    "coordinator", "admin", "hq_admin",
}


class School(db.Model):
    __tablename__ = "schools"

    id = db.Column(db.Integer, primary_key=True)
    school_name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {"id": self.id, "school_name": self.school_name}

    def __repr__(self):
        return f"<School {self.id}: {self.school_name}>"


class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    department_name = db.Column(db.String(150), nullable=False, unique=True)

    def to_dict(self):
        return {"id": self.id, "department_name": self.department_name}

    def __repr__(self):
        return f"<Department {self.id}: {self.department_name}>"


class User(db.Model):
    """Platform user.

    ``role`` drives the principal/moderator rules of the status machine;
    ``department_id`` drives step ownership; ``moderator_id`` points to the
    budget moderator who answers for this user's revisions.
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), nullable=True, index=True)
    role = db.Column(db.String(30), nullable=False, default="user",
                     comment="user, principal, moderator, accountant, coordinator, admin, hq_admin")
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id", ondelete="SET NULL"),
                          nullable=True, index=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"),
                              nullable=True, index=True)
    budget_mod = db.Column(db.Boolean, nullable=False, default=False,
                           comment="School budget moderator; receives submission mails")
    moderator_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                             nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    school = db.relationship("School", lazy="joined")
    department = db.relationship("Department", lazy="joined")

    @property
    def is_principal(self) -> bool:
        return self.role == "principal"

    @property
    def is_moderator(self) -> bool:
        return self.role == "moderator"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "school_id": self.school_id,
            "department_id": self.department_id,
            "budget_mod": self.budget_mod,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.name} [{self.role}]>"


class SubAccount(db.Model):
    __tablename__ = "sub_accounts"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)

    def to_dict(self):
        return {"id": self.id, "name": self.name}

    def __repr__(self):
        return f"<SubAccount {self.id}: {self.name}>"


class ItemType(db.Model):
    __tablename__ = "item_types"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)

    def __repr__(self):
        return f"<ItemType {self.id}: {self.name}>"


class CatalogItem(db.Model):
    __tablename__ = "catalog_items"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    type_id = db.Column(db.Integer, db.ForeignKey("item_types.id", ondelete="SET NULL"),
                        nullable=True, index=True)
    unit = db.Column(db.String(30), nullable=True)

    def to_dict(self):
        return {"id": self.id, "name": self.name, "type_id": self.type_id, "unit": self.unit}

    def __repr__(self):
        return f"<CatalogItem {self.id}: {self.name}>"
