# ops_app/models/payroll.py

import enum

from sqlalchemy import Enum

from .base import BaseModel, db


class PayrollStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class PayrollEntry(BaseModel):
    """One ambassador pay line for a worked event or day."""

    __tablename__ = "payroll_entries"

    id = db.Column(db.Integer, primary_key=True)
    ambassador_id = db.Column(db.Integer, db.ForeignKey("ambassadors.id"), nullable=True, index=True)
    ambassador_name = db.Column(db.String(200), nullable=False)
    event_name = db.Column(db.String(200), nullable=True)
    work_date = db.Column(db.Date, nullable=True, index=True)
    scheduled_hours = db.Column(db.Numeric(8, 2, asdecimal=False), nullable=True)
    hours = db.Column(db.Numeric(8, 2, asdecimal=False), nullable=True)
    solos = db.Column(db.Numeric(10, 2, asdecimal=False), nullable=True)
    bonus = db.Column(db.Numeric(10, 2, asdecimal=False), nullable=True)
    reimbursements = db.Column(db.Numeric(10, 2, asdecimal=False), nullable=True)
    other = db.Column(db.Numeric(10, 2, asdecimal=False), nullable=True)
    total = db.Column(db.Numeric(12, 2, asdecimal=False), nullable=False)
    status = db.Column(Enum(PayrollStatus, name="payroll_status_enum"), nullable=False, default=PayrollStatus.PENDING)
    pay_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    source = db.Column(db.String(20), nullable=False, default="manual")
    import_id = db.Column(db.String(36), nullable=True, index=True)

    ambassador = db.relationship("Ambassador")
