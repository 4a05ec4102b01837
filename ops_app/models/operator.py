# ops_app/models/operator.py

from .base import BaseModel, db


class Operator(BaseModel):
    """Partner operator whose customers ambassadors sign up."""

    __tablename__ = "operators"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<Operator {self.name}>"
