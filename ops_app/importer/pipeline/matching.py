from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from rapidfuzz import fuzz, utils
from rapidfuzz.distance import JaroWinkler

# Defaults mirrored in config (IMPORTER_RECONCILE_*)
REVIEW_THRESHOLD = 0.80
MAX_CANDIDATES = 5

_WHITESPACE = re.compile(r"\s+")
EXACT_REASON = "Exact name match"


class EntityType(str, enum.Enum):
    AMBASSADOR = "ambassador"
    EVENT = "event"
    OPERATOR = "operator"


class MatchOutcome(str, enum.Enum):
    EXACT = "exact"
    AMBIGUOUS = "ambiguous"
    NEW = "new"


@dataclass(frozen=True)
class CanonicalEntity:
    """Name-bearing canonical record offered to the matcher."""

    entity_id: str
    name: str
    entity_type: EntityType
    attributes: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class CandidateMatch:
    entity_id: str
    entity_name: str
    entity_type: str
    similarity_score: float
    reason: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "entity_type": self.entity_type,
            "similarity_score": self.similarity_score,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class MatchResult:
    outcome: MatchOutcome
    text: str
    normalized: str
    entity: CandidateMatch | None = None
    candidates: tuple[CandidateMatch, ...] = ()


def normalize_name(value: object | None) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""

    if value is None:
        return ""
    processed = utils.default_process(str(value))
    return _WHITESPACE.sub(" ", processed).strip()


def name_similarity(left: str, right: str) -> tuple[float, str]:
    """
    Similarity of two normalized names (0..1) and the signal that produced it.

    Jaro-Winkler catches typos and prefix variants; token sort ratio catches
    reordered names ("Smith John").
    """

    if not left or not right:
        return 0.0, "Name similarity"
    if left == right:
        return 1.0, EXACT_REASON
    jaro = JaroWinkler.normalized_similarity(left, right)
    token = fuzz.token_sort_ratio(left, right) / 100.0
    if token > jaro:
        return float(min(1.0, token)), "Token overlap"
    return float(max(0.0, min(1.0, jaro))), "Name similarity"


def match_name(
    text: str,
    candidates: Sequence[CanonicalEntity],
    *,
    review_threshold: float = REVIEW_THRESHOLD,
    max_candidates: int = MAX_CANDIDATES,
) -> MatchResult:
    """
    Classify a free-text name against canonical entities.

    Exactly one entity with the same normalized name is an exact match.
    Otherwise every entity scoring at least ``review_threshold`` (duplicate
    exact names included) becomes a ranked candidate of an ambiguous match.
    No plausible entity means new.
    """

    normalized = normalize_name(text)
    if not normalized:
        return MatchResult(outcome=MatchOutcome.NEW, text=text, normalized=normalized)

    scored: list[CandidateMatch] = []
    exact: list[CandidateMatch] = []
    for entity in candidates:
        score, reason = name_similarity(normalized, normalize_name(entity.name))
        if score < review_threshold:
            continue
        candidate = CandidateMatch(
            entity_id=str(entity.entity_id),
            entity_name=entity.name,
            entity_type=entity.entity_type.value,
            similarity_score=round(score, 4),
            reason=reason,
        )
        scored.append(candidate)
        if reason == EXACT_REASON:
            exact.append(candidate)

    if len(exact) == 1:
        return MatchResult(outcome=MatchOutcome.EXACT, text=text, normalized=normalized, entity=exact[0])
    if not scored:
        return MatchResult(outcome=MatchOutcome.NEW, text=text, normalized=normalized)

    ranked = sorted(scored, key=lambda item: (-item.similarity_score, item.entity_name.lower(), item.entity_id))
    return MatchResult(
        outcome=MatchOutcome.AMBIGUOUS,
        text=text,
        normalized=normalized,
        candidates=tuple(ranked[: max(1, max_candidates)]),
    )
