"""Pluggable classification of user replies to a pending task."""

import re
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, Field


class ReplyIntent(str, Enum):
    PROCEED = "proceed"
    ROLLBACK = "rollback"
    ABORT = "abort"
    MODIFY = "modify"
    UNKNOWN = "unknown"


class IntentClassification(BaseModel):
    intent: ReplyIntent
    confidence: float = Field(ge=0.0, le=1.0)
    matched: str | None = None


class IntentClassifier(Protocol):
    """Anything that tags a reply; a model-based classifier can replace the default."""

    async def classify(self, text: str) -> IntentClassification: ...


_PATTERNS: tuple[tuple[ReplyIntent, re.Pattern[str], float], ...] = (
    (ReplyIntent.ABORT, re.compile(r"\b(abort|stop|cancel|quit|never ?mind)\b", re.I), 0.9),
    (ReplyIntent.ROLLBACK, re.compile(r"\b(roll ?back|undo|revert|restore)\b", re.I), 0.9),
    (
        ReplyIntent.MODIFY,
        re.compile(r"\b(instead|change|use|modify|rather|but|only)\b", re.I),
        0.6,
    ),
    (
        ReplyIntent.PROCEED,
        re.compile(r"^\s*(y|yes|ok|okay|sure|proceed|continue|go ahead|confirm(ed)?|do it)\b", re.I),
        0.9,
    ),
)


class KeywordIntentClassifier:
    """Keyword classifier. Short replies matching one pattern are confident;
    longer free text that only hints at a change is treated as a modification."""

    async def classify(self, text: str) -> IntentClassification:
        stripped = text.strip()
        if not stripped:
            return IntentClassification(intent=ReplyIntent.UNKNOWN, confidence=0.0)
        for intent, pattern, confidence in _PATTERNS:
            match = pattern.search(stripped)
            if match is None:
                continue
            if intent == ReplyIntent.PROCEED and len(stripped.split()) > 6:
                # A long reply that starts with "ok" usually carries instructions
                return IntentClassification(
                    intent=ReplyIntent.MODIFY, confidence=0.5, matched=match.group(0)
                )
            return IntentClassification(
                intent=intent, confidence=confidence, matched=match.group(0)
            )
        if len(stripped.split()) >= 3:
            return IntentClassification(intent=ReplyIntent.MODIFY, confidence=0.4)
        return IntentClassification(intent=ReplyIntent.UNKNOWN, confidence=0.2)
