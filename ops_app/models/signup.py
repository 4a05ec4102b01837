# ops_app/models/signup.py

from sqlalchemy import Index

from .base import BaseModel, db


class SignUp(BaseModel):
    """Customer sign-up collected by an ambassador for an operator."""

    __tablename__ = "signups"

    id = db.Column(db.Integer, primary_key=True)
    ambassador_id = db.Column(db.Integer, db.ForeignKey("ambassadors.id"), nullable=False, index=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id"), nullable=False, index=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=True, index=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_first_name = db.Column(db.String(100), nullable=True)
    customer_last_name = db.Column(db.String(100), nullable=True)
    customer_state = db.Column(db.String(50), nullable=True)
    signup_date = db.Column(db.Date, nullable=False)
    cpa = db.Column(db.Numeric(10, 2, asdecimal=False), nullable=True)
    rate_label = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    import_id = db.Column(db.String(36), nullable=True, index=True)

    ambassador = db.relationship("Ambassador")
    operator = db.relationship("Operator")
    event = db.relationship("Event")

    __table_args__ = (Index("idx_signups_dedupe", "customer_email", "operator_id", "signup_date"),)
