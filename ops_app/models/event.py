# ops_app/models/event.py

import enum

from sqlalchemy import Enum, Index

from .base import BaseModel, db


class EventType(str, enum.Enum):
    ACTIVATION = "activation"
    WATCH_PARTY = "watch_party"
    PROMOTION = "promotion"
    OTHER = "other"


class EventStatus(str, enum.Enum):
    PLANNED = "planned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Event(BaseModel):
    """Live event staffed by ambassadors, with budget and actuals."""

    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False, index=True)
    event_date = db.Column(db.Date, nullable=True, index=True)
    event_type = db.Column(Enum(EventType, name="event_type_enum"), nullable=False, default=EventType.OTHER)
    status = db.Column(Enum(EventStatus, name="event_status_enum"), nullable=False, default=EventStatus.PLANNED)
    description = db.Column(db.Text, nullable=True)

    # Budget and actuals, populated by historical imports
    budget = db.Column(db.Numeric(12, 2, asdecimal=False), nullable=True)
    actual_cost = db.Column(db.Numeric(12, 2, asdecimal=False), nullable=True)
    signup_goal = db.Column(db.Integer, nullable=True)
    actual_attendance = db.Column(db.Integer, nullable=True)

    __table_args__ = (Index("idx_events_title_date", "title", "event_date"),)

    @staticmethod
    def infer_type(title):
        lowered = (title or "").lower()
        if "bar" in lowered:
            return EventType.ACTIVATION
        if "tailgate" in lowered:
            return EventType.WATCH_PARTY
        if "solo" in lowered:
            return EventType.PROMOTION
        return EventType.OTHER

    def __repr__(self):
        return f"<Event {self.title} {self.event_date}>"
