# ops_app/models/user.py

from flask_login import UserMixin

from .base import BaseModel, db

USER_ROLES = ("admin", "manager", "viewer")


class User(UserMixin, BaseModel):
    """Dashboard operator account."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="viewer")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_super_admin = db.Column(db.Boolean, nullable=False, default=False)
    last_login = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def display_name(self):
        full_name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return full_name or self.username

    def __repr__(self):
        return f"<User {self.username}>"
