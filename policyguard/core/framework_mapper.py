"""Default framework mapper.

:class:`KeywordFrameworkMapper` decides which compliance frameworks apply to a
document by scoring every entry of :data:`FRAMEWORKS`:

* ``+0.3`` when the institution type is listed (or the framework lists
  ``"ALL"``),
* ``+0.2`` when the document type is listed,
* ``+0.3 x`` the fraction of framework keywords found (case-insensitive
  substring match),
* ``+0.2 x`` the fraction of content patterns that match at least once.

Scores are capped at ``1.0``.  Frameworks scoring above
:data:`APPLICABILITY_THRESHOLD` are returned, highest score first.

Usage::

    from policyguard.core.framework_mapper import KeywordFrameworkMapper

    frameworks = await KeywordFrameworkMapper().map_frameworks(text, "policy", "K12")
    # ["FERPA", "NIST AI RMF", "COPPA", ...]
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Sequence

logger = logging.getLogger(__name__)

APPLICABILITY_THRESHOLD = 0.3

_INSTITUTION_WEIGHT = 0.3
_DOCUMENT_TYPE_WEIGHT = 0.2
_KEYWORD_WEIGHT = 0.3
_PATTERN_WEIGHT = 0.2


@dataclass(frozen=True)
class FrameworkDefinition:
    name: str
    version: str
    institutions: frozenset[str]
    document_types: frozenset[str]
    keywords: tuple[str, ...]
    patterns: tuple[re.Pattern[str], ...]


@dataclass(frozen=True)
class FrameworkMapping:
    """Score of one framework against one document."""

    framework: str
    confidence: float
    reasons: tuple[str, ...] = ()
    applicable_sections: tuple[str, ...] = field(default_factory=tuple)


def _patterns(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(s, re.IGNORECASE) for s in sources)


FRAMEWORKS: tuple[FrameworkDefinition, ...] = (
    FrameworkDefinition(
        name="NIST AI RMF",
        version="1.0",
        institutions=frozenset({"K12", "HigherEd", "ALL"}),
        document_types=frozenset({"policy", "handbook", "contract"}),
        keywords=(
            "artificial intelligence", "AI", "machine learning", "algorithmic",
            "automated decision", "risk management", "bias", "fairness",
            "transparency", "accountability", "governance", "oversight",
        ),
        patterns=_patterns(
            r"AI\s+risk\s+management",
            r"algorithmic\s+bias",
            r"automated\s+decisions?",
            r"AI\s+governance",
            r"trustworthy\s+AI",
        ),
    ),
    FrameworkDefinition(
        name="FERPA",
        version="2023.1",
        institutions=frozenset({"K12", "HigherEd"}),
        document_types=frozenset({"policy", "handbook", "contract"}),
        keywords=(
            "student records", "educational records", "personally identifiable information",
            "PII", "directory information", "consent", "disclosure", "privacy",
            "FERPA", "Family Educational Rights", "student data",
        ),
        patterns=_patterns(
            r"student\s+(?:records?|data|information)",
            r"educational\s+records?",
            r"personally\s+identifiable\s+information",
            r"directory\s+information",
            r"FERPA",
        ),
    ),
    FrameworkDefinition(
        name="COPPA",
        version="2023.2",
        institutions=frozenset({"K12"}),
        document_types=frozenset({"policy", "contract"}),
        keywords=(
            "children", "under 13", "parental consent", "COPPA",
            "child privacy", "personal information", "collection",
            "FTC", "Children's Online Privacy Protection",
        ),
        patterns=_patterns(
            r"children\s+(?:under\s+)?13",
            r"parental\s+consent",
            r"COPPA",
            r"child(?:ren)?\s+privacy",
        ),
    ),
    FrameworkDefinition(
        name="ED AI Guidance",
        version="2023.1",
        institutions=frozenset({"K12", "HigherEd"}),
        document_types=frozenset({"policy", "handbook"}),
        keywords=(
            "Department of Education", "AI in education", "educational AI",
            "student learning", "equity", "accessibility", "bias",
            "educational technology", "learning analytics",
        ),
        patterns=_patterns(
            r"AI\s+in\s+education",
            r"educational\s+AI",
            r"learning\s+analytics",
            r"educational\s+technology",
        ),
    ),
    FrameworkDefinition(
        name="State AI Policy",
        version="2023.1",
        institutions=frozenset({"K12", "HigherEd"}),
        document_types=frozenset({"policy"}),
        keywords=(
            "state policy", "state guidance", "state requirements",
            "local education agency", "LEA", "state education department",
        ),
        patterns=_patterns(
            r"state\s+(?:policy|guidance|requirements)",
            r"local\s+education\s+agency",
            r"state\s+education\s+department",
        ),
    ),
)


def score_framework(
    definition: FrameworkDefinition,
    text: str,
    document_type: str,
    institution_type: str,
) -> FrameworkMapping:
    confidence = 0.0
    reasons: list[str] = []

    if institution_type in definition.institutions or "ALL" in definition.institutions:
        confidence += _INSTITUTION_WEIGHT
        reasons.append(f"Applicable to {institution_type} institutions")

    if document_type in definition.document_types or "ALL" in definition.document_types:
        confidence += _DOCUMENT_TYPE_WEIGHT
        reasons.append(f"Relevant to {document_type} documents")

    lowered = text.lower()
    keyword_hits = [k for k in definition.keywords if k.lower() in lowered]
    if definition.keywords:
        confidence += min(len(keyword_hits) / len(definition.keywords), 1.0) * _KEYWORD_WEIGHT
    if keyword_hits:
        reasons.append(f"Contains relevant keywords: {', '.join(keyword_hits[:3])}")

    sections: list[str] = []
    pattern_hits = 0
    for pattern in definition.patterns:
        matches = [m.group(0) for m in pattern.finditer(text)]
        if matches:
            pattern_hits += 1
            sections.extend(matches[:2])
    if definition.patterns:
        confidence += min(pattern_hits / len(definition.patterns), 1.0) * _PATTERN_WEIGHT

    return FrameworkMapping(
        framework=definition.name,
        confidence=min(confidence, 1.0),
        reasons=tuple(reasons),
        applicable_sections=tuple(sections),
    )


class KeywordFrameworkMapper:
    """Table-driven framework mapper.

    Args:
        frameworks: Framework definitions to score.  Defaults to
            :data:`FRAMEWORKS`.
        threshold: Minimum score (exclusive) for a framework to apply.
    """

    def __init__(
        self,
        frameworks: Sequence[FrameworkDefinition] = FRAMEWORKS,
        *,
        threshold: float = APPLICABILITY_THRESHOLD,
    ) -> None:
        self._frameworks = tuple(frameworks)
        self._threshold = threshold

    def score(self, text: str, document_type: str, institution_type: str) -> list[FrameworkMapping]:
        """Return every applicable mapping, highest confidence first."""
        mappings = [
            score_framework(d, text, document_type, institution_type) for d in self._frameworks
        ]
        applicable = [m for m in mappings if m.confidence > self._threshold]
        applicable.sort(key=lambda m: m.confidence, reverse=True)
        return applicable

    async def map_frameworks(self, text: str, document_type: str, institution_type: str) -> list[str]:
        mappings = self.score(text, document_type, institution_type)
        logger.debug(
            "Framework mapping: institution_type=%s document_type=%s frameworks=%s",
            institution_type,
            document_type,
            [f"{m.framework}:{m.confidence:.2f}" for m in mappings],
        )
        return [m.framework for m in mappings]
