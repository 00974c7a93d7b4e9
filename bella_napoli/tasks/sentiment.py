"""Review sentiment scoring.

Scoring is pluggable: anything with ``score(text) -> float`` in ``[-1, 1]``
works. ``LexiconScorer`` is a small word-list scorer for offline runs.
"""

from __future__ import annotations

import re
from typing import Protocol

POSITIVE_THRESHOLD = 0.3
NEGATIVE_THRESHOLD = -0.3

_WORD_RE = re.compile(r"[a-z']+")

POSITIVE_WORDS = frozenset(
    {
        "amazing",
        "authentic",
        "best",
        "delicious",
        "excellent",
        "fantastic",
        "fresh",
        "friendly",
        "great",
        "hot",
        "love",
        "loved",
        "perfect",
        "quick",
        "recommend",
        "tasty",
        "wonderful",
    }
)
NEGATIVE_WORDS = frozenset(
    {
        "awful",
        "bad",
        "burnt",
        "cold",
        "disappointed",
        "disappointing",
        "greasy",
        "late",
        "never",
        "overpriced",
        "rude",
        "slow",
        "soggy",
        "terrible",
        "wrong",
        "worst",
    }
)
NEGATIONS = frozenset({"not", "no", "never", "isn't", "wasn't", "didn't"})

TOPIC_KEYWORDS = {
    "food": ("pizza", "crust", "cheese", "sauce", "pasta", "wings", "dessert", "toppings"),
    "service": ("service", "staff", "server", "waiter", "rude", "friendly"),
    "delivery": ("delivery", "driver", "late", "cold", "arrived"),
    "price": ("price", "overpriced", "expensive", "value", "cheap"),
    "wait_time": ("wait", "slow", "quick", "fast", "minutes"),
}


class SentimentScorer(Protocol):
    def score(self, text: str) -> float: ...


class LexiconScorer:
    def score(self, text: str) -> float:
        words = _WORD_RE.findall(text.lower())
        pos = neg = 0
        for i, word in enumerate(words):
            negated = i > 0 and words[i - 1] in NEGATIONS
            if word in POSITIVE_WORDS:
                if negated:
                    neg += 1
                else:
                    pos += 1
            elif word in NEGATIVE_WORDS:
                if negated and word != "never":
                    pos += 1
                else:
                    neg += 1
        if pos + neg == 0:
            return 0.0
        return round((pos - neg) / (pos + neg), 4)


def sentiment_label(score: float) -> str:
    if score >= POSITIVE_THRESHOLD:
        return "POSITIVE"
    if score <= NEGATIVE_THRESHOLD:
        return "NEGATIVE"
    return "NEUTRAL"


def extract_topics(text: str) -> list[str]:
    words = set(_WORD_RE.findall(text.lower()))
    return [topic for topic, keys in TOPIC_KEYWORDS.items() if words.intersection(keys)]
