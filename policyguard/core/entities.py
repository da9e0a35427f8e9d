"""Default entity recognizer.

:class:`RegexEntityRecognizer` satisfies the
:class:`~policyguard.core.contracts.EntityRecognizer` protocol with a small
table of regular expressions, one per entity category.  It is a placeholder
for a real NER backend: anything with an async ``detect_entities(text)``
method returning ``{category: [values]}`` can be injected into the pipeline
instead.

Values in each category are de-duplicated, keeping first-occurrence order.

Usage::

    from policyguard.core.entities import RegexEntityRecognizer

    entities = await RegexEntityRecognizer().detect_entities(text)
    entities["roles"]   # ["Principal", "Teacher"]
"""

from __future__ import annotations

import re
from typing import Mapping

ENTITY_PATTERNS: dict[str, re.Pattern[str]] = {
    "organizations": re.compile(
        r"\b[A-Z][a-z]+ (?:University|College|School|District|Institute)\b"
    ),
    "policies": re.compile(r"\b[A-Z][a-z]+ (?:Policy|Procedure|Guidelines?)\b"),
    "dates": re.compile(r"\b\d{1,2}/\d{1,2}/\d{4}\b"),
    "roles": re.compile(
        r"\b(?:Principal|Superintendent|Teacher|Student|Administrator|Director)\b"
    ),
    "technologies": re.compile(
        r"\b(?:AI|artificial intelligence|machine learning|ChatGPT|Google|Microsoft|Apple|Zoom)\b",
        re.IGNORECASE,
    ),
}


class RegexEntityRecognizer:
    """Pattern-table entity recognizer.

    Args:
        patterns: Category to compiled pattern mapping.  Defaults to
            :data:`ENTITY_PATTERNS`.
    """

    def __init__(self, patterns: Mapping[str, re.Pattern[str]] | None = None) -> None:
        self._patterns = dict(patterns or ENTITY_PATTERNS)

    async def detect_entities(self, text: str) -> dict[str, list[str]]:
        return {
            category: list(dict.fromkeys(m.group(0) for m in pattern.finditer(text)))
            for category, pattern in self._patterns.items()
        }
