# ops_app/models/ambassador.py

from .base import BaseModel, db


class Ambassador(BaseModel):
    """Field representative who works events and collects sign-ups."""

    __tablename__ = "ambassadors"

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False, default="")
    email = db.Column(db.String(255), nullable=True, unique=True)
    status = db.Column(db.String(20), nullable=False, default="active")
    notes = db.Column(db.Text, nullable=True)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_full_name(cls, name, **kwargs):
        """Split a free-text name into first and last name parts."""
        parts = (name or "").split()
        first_name = parts[0] if parts else ""
        last_name = " ".join(parts[1:])
        return cls(first_name=first_name, last_name=last_name, **kwargs)

    def __repr__(self):
        return f"<Ambassador {self.full_name}>"
