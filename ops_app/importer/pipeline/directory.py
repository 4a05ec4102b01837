"""
Canonical entity directory used by reconciliation and execution.

Wraps the ambassador, event and operator tables behind one lookup surface so
the reconciler can score names without knowing how each entity stores them.
Candidate lists are loaded once per directory instance; callers create one
directory per pipeline stage.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from ops_app.models import Ambassador, Event, Operator, db

from .matching import CanonicalEntity, EntityType, normalize_name

_MODELS = {
    EntityType.AMBASSADOR: Ambassador,
    EntityType.EVENT: Event,
    EntityType.OPERATOR: Operator,
}


def _display_name(entity_type: EntityType, model: Any) -> str:
    if entity_type is EntityType.AMBASSADOR:
        return model.full_name
    if entity_type is EntityType.EVENT:
        return model.title
    return model.name


class CanonicalEntityDirectory:
    """Lookup and creation of canonical ambassadors, events and operators."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session
        self._cache: dict[EntityType, list[CanonicalEntity]] = {}

    def candidates(self, entity_type: EntityType | str) -> list[CanonicalEntity]:
        """
        All canonical names for a type. Recurring events share a title, so
        events are collapsed to the most recent record per normalized title.
        """

        entity_type = EntityType(entity_type)
        if entity_type not in self._cache:
            self._cache[entity_type] = self._load(entity_type)
        return self._cache[entity_type]

    def get(self, entity_type: EntityType | str, entity_id: str | int) -> Any | None:
        model = _MODELS[EntityType(entity_type)]
        try:
            return self.session.get(model, int(entity_id))
        except (TypeError, ValueError):
            return None

    def find_exact(self, entity_type: EntityType | str, name: str) -> Any | None:
        normalized = normalize_name(name)
        if not normalized:
            return None
        for candidate in self.candidates(entity_type):
            if normalize_name(candidate.name) == normalized:
                return self.get(entity_type, candidate.entity_id)
        return None

    def find_event(self, title: str, event_date: date | None) -> Event | None:
        """Event with a case-insensitive title on a given date."""
        query = self.session.query(Event).filter(db.func.lower(Event.title) == (title or "").strip().lower())
        if event_date is None:
            query = query.filter(Event.event_date.is_(None))
        else:
            query = query.filter(Event.event_date == event_date)
        return query.order_by(Event.id.asc()).first()

    def create(self, entity_type: EntityType | str, name: str, **attributes: Any) -> Any:
        entity_type = EntityType(entity_type)
        if entity_type is EntityType.AMBASSADOR:
            model = Ambassador.from_full_name(name, **attributes)
        elif entity_type is EntityType.EVENT:
            attributes.setdefault("event_type", Event.infer_type(name))
            model = Event(title=name.strip(), **attributes)
        else:
            model = Operator(name=name.strip(), **attributes)
        self.session.add(model)
        self.session.flush()
        self.remember(entity_type, model)
        return model

    def remember(self, entity_type: EntityType | str, model: Any) -> None:
        entity_type = EntityType(entity_type)
        if entity_type in self._cache:
            self._cache[entity_type].append(self._to_canonical(entity_type, model))

    def forget(self, entity_type: EntityType | str, entity_ids) -> None:
        """Drop cached entities whose rows were rolled back."""
        entity_type = EntityType(entity_type)
        dropped = {str(entity_id) for entity_id in entity_ids}
        if entity_type in self._cache and dropped:
            self._cache[entity_type] = [
                candidate for candidate in self._cache[entity_type] if candidate.entity_id not in dropped
            ]

    # ------------------------------------------------------------------

    def _load(self, entity_type: EntityType) -> list[CanonicalEntity]:
        model = _MODELS[entity_type]
        if entity_type is EntityType.EVENT:
            records = self.session.query(Event).order_by(Event.event_date.desc(), Event.id.desc()).all()
            latest: dict[str, CanonicalEntity] = {}
            for record in records:
                key = normalize_name(record.title)
                if key and key not in latest:
                    latest[key] = self._to_canonical(entity_type, record)
            return list(latest.values())
        records = self.session.query(model).order_by(model.id.asc()).all()
        return [self._to_canonical(entity_type, record) for record in records]

    @staticmethod
    def _to_canonical(entity_type: EntityType, model: Any) -> CanonicalEntity:
        attributes: dict[str, Any] = {}
        if entity_type is EntityType.EVENT and model.event_date:
            attributes["event_date"] = model.event_date.isoformat()
        if entity_type is EntityType.AMBASSADOR and model.email:
            attributes["email"] = model.email
        return CanonicalEntity(
            entity_id=str(model.id),
            name=_display_name(entity_type, model),
            entity_type=entity_type,
            attributes=attributes,
        )
