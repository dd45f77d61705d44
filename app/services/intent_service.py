from dataclasses import dataclass
from enum import Enum


class Intent(str, Enum):
    GREETING = "greeting"
    SUPPORT = "support"
    PRICING = "pricing"
    HANDOFF = "handoff"  # Contact asks for a human operator
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class IntentMatch:
    intent: Intent
    confidence: float

    def as_dict(self) -> dict:
        return {"intent": self.intent.value, "confidence": self.confidence}


# Checked in order, first keyword hit wins
INTENT_KEYWORDS: list[tuple[Intent, tuple[str, ...], float]] = [
    (Intent.GREETING, ("hello", "hi", "hey", "مرحبا", "السلام"), 0.65),
    (Intent.SUPPORT, ("help", "issue", "problem", "support", "مشكلة", "دعم"), 0.7),
    (Intent.PRICING, ("price", "cost", "plan", "subscription", "سعر", "تكلفة"), 0.72),
    (Intent.HANDOFF, ("agent", "human", "representative", "بشري", "موظف"), 0.8),
]

NO_TEXT_CONFIDENCE = 0.0
NO_MATCH_CONFIDENCE = 0.3


def detect_intent(text: str | None) -> IntentMatch:
    """Keyword intent classifier. Substring match on the lower-cased text."""
    lowered = (text or "").lower()
    if not lowered.strip():
        return IntentMatch(Intent.UNKNOWN, NO_TEXT_CONFIDENCE)

    for intent, keywords, confidence in INTENT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return IntentMatch(intent, confidence)
    return IntentMatch(Intent.UNKNOWN, NO_MATCH_CONFIDENCE)


def needs_human(match: IntentMatch) -> bool:
    return match.intent == Intent.HANDOFF
