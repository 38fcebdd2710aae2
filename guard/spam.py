"""Heuristic spam scorer for free-text content.

Stateless and deterministic: the same content always yields the same
score.  Each triggered heuristic adds to the score and contributes one
human-readable reason.

    keyword hit          +10 each
    suspicious pattern   +15 each
    uppercase ratio      +20 when > 30% of letters
    repeated !/? runs    +15 when more than two runs
"""

import re
from dataclasses import dataclass, field

SPAM_KEYWORDS = (
    "viagra", "cialis", "lottery", "winner", "congratulations",
    "urgent", "act now", "limited time", "free money", "click here",
    "make money fast", "work from home", "guaranteed", "risk free",
)

# (description, compiled pattern).  Run against the original-case text so
# uppercase runs stay visible.
SUSPICIOUS_PATTERNS = (
    ("credit card number", re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")),
    ("money amount", re.compile(r"\$\d+[,\d]*(\.\d{2})?")),
    ("uppercase run", re.compile(r"\b[A-Z]{2,}\b")),
    ("repeated exclamation or question marks", re.compile(r"[!?]{2,}")),
    ("call to action", re.compile(r"\b(click|buy|order|call)\s+(now|today|immediately)\b",
                                  re.IGNORECASE)),
)

_PUNCTUATION_RUN = re.compile(r"[!?]{2,}")

SPAM_THRESHOLD = 50
_CAPS_RATIO = 0.3
_MAX_PUNCTUATION_RUNS = 2


@dataclass(frozen=True)
class SpamScoreResult:
    is_spam: bool
    score: int
    confidence: float
    reasons: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "is_spam": self.is_spam,
            "score": self.score,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
        }


class SpamScorer:

    def __init__(self, keywords=SPAM_KEYWORDS, patterns=SUSPICIOUS_PATTERNS,
                 threshold: int = SPAM_THRESHOLD):
        self.keywords = tuple(keywords)
        self.patterns = tuple(patterns)
        self.threshold = threshold

    def score(self, content: str, subject: str | None = None) -> SpamScoreResult:
        content = content or ""
        full_text = f"{subject or ''} {content}"
        lowered = full_text.lower()
        score = 0
        reasons = []

        for keyword in self.keywords:
            if keyword in lowered:
                score += 10
                reasons.append(f"Contains spam keyword: {keyword}")

        for description, pattern in self.patterns:
            if pattern.search(full_text):
                score += 15
                reasons.append(f"Matches suspicious pattern: {description}")

        letters = [c for c in content if c.isalpha()]
        if letters:
            upper = sum(1 for c in letters if c.isupper())
            if upper / len(letters) > _CAPS_RATIO:
                score += 20
                reasons.append("Excessive use of capital letters")

        if len(_PUNCTUATION_RUN.findall(content)) > _MAX_PUNCTUATION_RUNS:
            score += 15
            reasons.append("Excessive punctuation")

        score = min(score, 100)
        return SpamScoreResult(
            is_spam=score >= self.threshold,
            score=score,
            confidence=min(score / 100, 1.0),
            reasons=reasons,
        )
