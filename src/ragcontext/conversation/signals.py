"""Rule-based intent, entity and sentiment signals for chat turns."""

from __future__ import annotations

import re
from typing import Mapping, Sequence

_WORD = re.compile(r"[a-z]+")

INTENT_RULES: Sequence[tuple[str, Sequence[str]]] = (
    ("scholarship", ("scholarship", "funding")),
    ("roadmap", ("roadmap", "learn")),
    ("career", ("career", "job")),
)
DEFAULT_INTENT = "general"

ENTITY_TERMS: Mapping[str, Sequence[str]] = {
    "scholarship": ("scholarship", "grant", "fellowship", "funding", "financial aid"),
    "career": ("career", "job", "internship", "work", "profession"),
    "skills": ("skill", "learn", "study", "course", "training"),
}

POSITIVE_WORDS = frozenset({"good", "great", "excellent", "amazing", "helpful", "thank", "thanks"})
NEGATIVE_WORDS = frozenset({"bad", "terrible", "awful", "confused", "frustrated", "difficult"})
SENTIMENT_STEP = 0.1


def detect_intent(text: str) -> str:
    lowered = text.lower()
    for intent, terms in INTENT_RULES:
        if any(term in lowered for term in terms):
            return intent
    return DEFAULT_INTENT


def extract_entities(text: str) -> tuple[str, ...]:
    lowered = text.lower()
    return tuple(entity for entity, terms in ENTITY_TERMS.items() if any(term in lowered for term in terms))


def score_sentiment(text: str) -> float:
    """Word-count sentiment in [-1, 1]; each polar word moves the score by 0.1."""

    score = 0.0
    for word in _WORD.findall(text.lower()):
        if word in POSITIVE_WORDS:
            score += SENTIMENT_STEP
        elif word in NEGATIVE_WORDS:
            score -= SENTIMENT_STEP
    return max(-1.0, min(1.0, round(score, 6)))
