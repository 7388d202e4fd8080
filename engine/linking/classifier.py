"""
Keyword classification of patient replies to followups

Rules are checked in order and the first lexicon hit wins, so a reply such as
"sudah, tadi belum" resolves to confirmed. Matching is substring-based on the
lowercased, trimmed text.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class ResponseType(Enum):
    CONFIRMED = "confirmed"
    MISSED = "missed"
    LATER = "later"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassificationRule:
    response_type: ResponseType
    keywords: Tuple[str, ...]
    confidence: float


@dataclass(frozen=True)
class ClassificationResult:
    type: ResponseType
    confidence: float
    matched_keyword: Optional[str] = None

    @property
    def is_confirmed(self) -> bool:
        return self.type == ResponseType.CONFIRMED


CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        ResponseType.CONFIRMED,
        ("sudah", "selesai", "ya", "yes", "oke", "ok", "done", "baik", "hadir"),
        0.9,
    ),
    ClassificationRule(
        ResponseType.MISSED,
        ("belum", "tidak", "lupa", "skip", "terlambat"),
        0.8,
    ),
    ClassificationRule(
        ResponseType.LATER,
        ("nanti", "sebentar", "tunggu"),
        0.7,
    ),
)

UNKNOWN_CONFIDENCE = 0.3

# Longer phrases first so the most specific keyword is reported
EMERGENCY_KEYWORDS: Tuple[str, ...] = (
    "sesak napas",
    "sesak nafas",
    "muntah darah",
    "nyeri dada",
    "pingsan",
    "darurat",
    "emergency",
    "gawat",
    "tolong",
    "bantuan",
    "alergi",
    "muntah",
    "sakit",
    "mual",
)


def normalize(text: Optional[str]) -> str:
    return (text or "").strip().lower()


def detect_emergency(text: Optional[str]) -> Optional[str]:
    """Return the emergency keyword found in text, if any"""
    normalized = normalize(text)
    if not normalized:
        return None
    for keyword in EMERGENCY_KEYWORDS:
        if keyword in normalized:
            return keyword
    return None


class ResponseClassifier:
    """Pure, deterministic reply classifier"""

    def __init__(self, rules: Tuple[ClassificationRule, ...] = CLASSIFICATION_RULES):
        self.rules = rules

    def classify(self, text: Optional[str]) -> ClassificationResult:
        normalized = normalize(text)
        if normalized:
            for rule in self.rules:
                for keyword in rule.keywords:
                    if keyword in normalized:
                        return ClassificationResult(rule.response_type, rule.confidence, keyword)
        return ClassificationResult(ResponseType.UNKNOWN, UNKNOWN_CONFIDENCE)
