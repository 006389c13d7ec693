# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Natural-language query parsing, validation and rule-based intent
classification.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Sequence
from dataclasses import dataclass

from .errors import QueryValidationError, ValidationReason
from .models import ParsedQuery, QueryComplexity, QueryIntent

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 1000
DEFAULT_INTENT_CONFIDENCE = 0.55

_WORD = re.compile(r"\w+")
_CJK_RANGES = (
    (0x3400, 0x4DBF),
    (0x4E00, 0x9FFF),
    (0xF900, 0xFAFF),
    (0x20000, 0x2A6DF),
)
_LATIN_EXTENDED = (0x00C0, 0x024F)
_COMPLEXITY_CUES = ("?", ",")


def _is_cjk(ch: str) -> bool:
    cp = ord(ch)
    return any(lo <= cp <= hi for lo, hi in _CJK_RANGES)


def detect_query_language(text: str) -> str:
    """Coarse script heuristic: "zh" for CJK, "es" for accented Latin, else "en"."""
    lo, hi = _LATIN_EXTENDED
    has_latin_extended = False
    for ch in text:
        if _is_cjk(ch):
            return "zh"
        if lo <= ord(ch) <= hi:
            has_latin_extended = True
    return "es" if has_latin_extended else "en"


def tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    for match in _WORD.finditer(text):
        word = match.group(0)
        start, end = 0, len(word)
        while start < end and not word[start].isalnum():
            start += 1
        while end > start and not word[end - 1].isalnum():
            end -= 1
        word = word[start:end]
        if not word:
            continue
        if any(_is_cjk(ch) for ch in word):
            # Ideographs have no spaces between words; index them one by one.
            run = ""
            for ch in word:
                if _is_cjk(ch):
                    if run:
                        tokens.append(run)
                        run = ""
                    tokens.append(ch)
                else:
                    run += ch
            if run:
                tokens.append(run)
        else:
            tokens.append(word)
    return tokens


def classify_complexity(tokens: Sequence[str], text: str) -> QueryComplexity:
    count = len(tokens)
    if count <= 4:
        return QueryComplexity.SIMPLE
    if count <= 9:
        if any(cue in text for cue in _COMPLEXITY_CUES) or "how" in tokens:
            return QueryComplexity.COMPLEX
        return QueryComplexity.MODERATE
    if count <= 20:
        return QueryComplexity.COMPLEX
    return QueryComplexity.VERY_COMPLEX


class QueryParser:
    def __init__(self, max_length: int = DEFAULT_MAX_LENGTH):
        self.max_length = max_length

    def _check_length(self, text: str) -> None:
        if len(text) > self.max_length:
            raise QueryValidationError(
                ValidationReason.TOO_LONG,
                f"Query length {len(text)} exceeds maximum of {self.max_length} characters",
            )

    def parse(self, raw_text: str) -> ParsedQuery:
        original = raw_text.strip()
        if not original:
            raise QueryValidationError(ValidationReason.EMPTY, "Query is empty")
        self._check_length(original)

        normalized = unicodedata.normalize("NFC", original)
        normalized = "".join(
            ch for ch in normalized if not unicodedata.category(ch).startswith("C")
        )
        normalized = normalized.lower()
        tokens = tokenize(normalized)

        return ParsedQuery(
            original=original,
            normalized=normalized,
            tokens=tuple(tokens),
            language=detect_query_language(normalized),
            complexity=classify_complexity(tokens, normalized),
        )

    def validate(self, parsed: ParsedQuery) -> None:
        """Second gate for queries not necessarily built by ``parse``."""
        self._check_length(parsed.original)
        if not parsed.tokens:
            raise QueryValidationError(
                ValidationReason.INVALID_CHARACTERS,
                "Query contains no searchable words",
            )


@dataclass(frozen=True)
class IntentRule:
    intent: QueryIntent
    keywords: tuple[str, ...]
    confidence: float


@dataclass(frozen=True)
class IntentClassification:
    intent: QueryIntent
    confidence: float
    match_count: int = 0


def default_intent_rules() -> list[IntentRule]:
    """The built-in rule table, in evaluation order."""
    return [
        IntentRule(
            QueryIntent.CODE_SEARCH,
            ("function", "class", "method", "implementation", "implement",
             "code", "variable", "struct"),
            0.8,
        ),
        IntentRule(
            QueryIntent.API_SEARCH,
            ("api", "endpoint", "request", "response", "http", "route", "sdk"),
            0.85,
        ),
        IntentRule(
            QueryIntent.DOCUMENTATION_SEARCH,
            ("guide", "tutorial", "readme", "manual", "reference"),
            0.75,
        ),
        IntentRule(
            QueryIntent.BUG_REPORT_SEARCH,
            ("bug", "error", "exception", "crash", "fail", "broken", "issue", "traceback"),
            0.9,
        ),
    ]


class IntentClassifier:
    def __init__(
        self,
        rules: Sequence[IntentRule] | None = None,
        default_confidence: float = DEFAULT_INTENT_CONFIDENCE,
    ):
        self.rules = list(rules) if rules is not None else default_intent_rules()
        self.default_confidence = default_confidence

    def classify_with_confidence(self, parsed: ParsedQuery) -> IntentClassification:
        text = parsed.normalized
        if "documentation" in text or "docs" in text:
            return IntentClassification(QueryIntent.DOCUMENTATION_SEARCH, 1.0, 1)

        tokens = set(parsed.tokens)
        best: IntentClassification | None = None
        for rule in self.rules:
            # A keyword can count twice: once as a substring, once as a token.
            matches = 0
            for keyword in rule.keywords:
                if keyword in text:
                    matches += 1
                if keyword in tokens:
                    matches += 1
            if not matches:
                continue
            if best is None or (rule.confidence, matches) > (best.confidence, best.match_count):
                best = IntentClassification(rule.intent, rule.confidence, matches)

        if best is None:
            return IntentClassification(QueryIntent.GENERAL_SEARCH, self.default_confidence, 0)
        return best

    def classify(self, parsed: ParsedQuery) -> QueryIntent:
        return self.classify_with_confidence(parsed).intent
