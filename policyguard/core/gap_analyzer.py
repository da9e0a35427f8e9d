"""Default gap analyzer.

:class:`RequirementGapAnalyzer` checks a document against the requirement
table of every applicable framework (:data:`REQUIREMENTS`) and reports a
:class:`~policyguard.core.contracts.GapAnalysis` for each requirement whose
coverage score is below :data:`COVERAGE_THRESHOLD`.

Coverage of one requirement::

    score = min(1, 0.2 * keyword_hits + 0.3 * pattern_hits + 0.5 * word_overlap)

where a keyword hit is a sentence containing the keyword, a pattern hit is a
regex match (at most two per pattern) and ``word_overlap`` is the Jaccard
similarity of the document and requirement vocabularies.  Confidence grows
with the amount of evidence found.

Gaps are ordered by risk level (critical first), then by confidence.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Sequence

from policyguard.core.contracts import GapAnalysis

logger = logging.getLogger(__name__)

COVERAGE_THRESHOLD = 0.7

_MAX_EVIDENCE = 5
_WORD_SPLIT_RE = re.compile(r"\W+")

RISK_ORDER: dict[str, int] = {"critical": 4, "high": 3, "medium": 2, "low": 1}

REMEDIATION_ACTIONS: dict[str, tuple[str, ...]] = {
    "governance": (
        "Establish governance framework",
        "Define roles and responsibilities",
        "Create oversight mechanisms",
    ),
    "risk-management": (
        "Implement risk assessment procedures",
        "Define risk tolerance levels",
        "Create mitigation strategies",
    ),
    "privacy": (
        "Strengthen data protection measures",
        "Implement consent mechanisms",
        "Create data handling procedures",
    ),
    "transparency": (
        "Improve system transparency",
        "Create user notification processes",
        "Document decision-making criteria",
    ),
}


@dataclass(frozen=True)
class Requirement:
    id: str
    section: str
    text: str
    category: str
    mandatory: bool
    keywords: tuple[str, ...]
    patterns: tuple[re.Pattern[str], ...]
    mandatory_elements: tuple[str, ...]


@dataclass(frozen=True)
class Coverage:
    score: float
    confidence: float
    evidence: tuple[str, ...]
    current_state: str


def _patterns(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(s, re.IGNORECASE) for s in sources)


REQUIREMENTS: dict[str, tuple[Requirement, ...]] = {
    "NIST AI RMF": (
        Requirement(
            id="GOVERN-1.1",
            section="AI Governance",
            text="Establish AI governance and oversight structure",
            category="governance",
            mandatory=True,
            keywords=("governance", "oversight", "leadership", "responsibility", "accountability"),
            patterns=_patterns(r"AI\s+governance", r"oversight\s+structure"),
            mandatory_elements=("governance structure", "roles and responsibilities", "oversight mechanisms"),
        ),
        Requirement(
            id="MAP-1.1",
            section="AI System Inventory",
            text="Maintain comprehensive inventory of AI systems",
            category="risk-management",
            mandatory=True,
            keywords=("inventory", "catalog", "AI systems", "documentation"),
            patterns=_patterns(r"AI\s+(?:inventory|catalog|systems)"),
            mandatory_elements=("system inventory", "documentation"),
        ),
        Requirement(
            id="MEASURE-2.1",
            section="Bias Testing",
            text="Implement bias testing and monitoring",
            category="risk-management",
            mandatory=True,
            keywords=("bias", "testing", "monitoring", "fairness", "discrimination"),
            patterns=_patterns(r"bias\s+(?:testing|monitoring)", r"fairness\s+assessment"),
            mandatory_elements=("bias testing", "monitoring procedures"),
        ),
        Requirement(
            id="MANAGE-3.1",
            section="Incident Response",
            text="Establish AI incident response procedures",
            category="risk-management",
            mandatory=True,
            keywords=("incident", "response", "procedures", "escalation"),
            patterns=_patterns(r"incident\s+response"),
            mandatory_elements=("incident response", "escalation procedures"),
        ),
    ),
    "FERPA": (
        Requirement(
            id="FERPA-1",
            section="Student Record Access",
            text="Provide students and parents access to educational records",
            category="privacy",
            mandatory=True,
            keywords=("student records", "access rights", "educational records", "parent access"),
            patterns=_patterns(r"student\s+(?:record|data)\s+access"),
            mandatory_elements=("access procedures", "notification requirements"),
        ),
        Requirement(
            id="FERPA-2",
            section="Consent for Disclosure",
            text="Obtain consent before disclosing personally identifiable information",
            category="privacy",
            mandatory=True,
            keywords=("consent", "disclosure", "PII", "authorization"),
            patterns=_patterns(r"consent\s+(?:for\s+)?disclosure"),
            mandatory_elements=("consent procedures", "disclosure authorization"),
        ),
    ),
    "COPPA": (
        Requirement(
            id="COPPA-1",
            section="Parental Consent",
            text="Obtain verifiable parental consent for children under 13",
            category="privacy",
            mandatory=True,
            keywords=("parental consent", "children under 13", "verifiable consent"),
            patterns=_patterns(r"parental\s+consent", r"(?:children\s+)?under\s+13"),
            mandatory_elements=("parental consent", "age verification"),
        ),
    ),
    "ED AI Guidance": (
        Requirement(
            id="ED-1",
            section="Educational Equity",
            text="Ensure AI systems promote educational equity and accessibility",
            category="transparency",
            mandatory=True,
            keywords=("equity", "accessibility", "inclusive", "fair access"),
            patterns=_patterns(r"educational\s+equity", r"accessibility"),
            mandatory_elements=("equity measures", "accessibility features"),
        ),
    ),
}


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def _keyword_evidence(text: str, keywords: Sequence[str]) -> list[str]:
    """Return the first sentence containing each keyword that occurs in *text*."""
    lowered = text.lower()
    evidence: list[str] = []
    for keyword in keywords:
        if keyword.lower() not in lowered:
            continue
        sentence = re.search(rf"\b[^.]*{re.escape(keyword)}[^.]*\.", text, re.IGNORECASE)
        if sentence:
            evidence.append(sentence.group(0).strip())
    return evidence


def _pattern_evidence(text: str, patterns: Sequence[re.Pattern[str]]) -> list[str]:
    evidence: list[str] = []
    for pattern in patterns:
        evidence.extend(m.group(0) for m in list(pattern.finditer(text))[:2])
    return evidence


def word_overlap(text: str, other: str) -> float:
    """Jaccard similarity of the lower-cased word sets of *text* and *other*."""
    words = {w for w in _WORD_SPLIT_RE.split(text.lower()) if w}
    other_words = {w for w in _WORD_SPLIT_RE.split(other.lower()) if w}
    union = words | other_words
    if not union:
        return 0.0
    return len(words & other_words) / len(union)


def _describe_current_state(requirement: Requirement, evidence: Sequence[str]) -> str:
    if not evidence:
        return f"No evidence found of {requirement.section.lower()} implementation."
    if len(evidence) == 1:
        return f"Limited coverage found: {evidence[0][:100]}..."
    return (
        f"Partial coverage found with {len(evidence)} relevant sections addressing "
        f"{requirement.section.lower()}."
    )


def assess_coverage(text: str, requirement: Requirement) -> Coverage:
    keyword_hits = _keyword_evidence(text, requirement.keywords)
    pattern_hits = _pattern_evidence(text, requirement.patterns)
    evidence = keyword_hits + pattern_hits

    score = (
        len(keyword_hits) * 0.2
        + len(pattern_hits) * 0.3
        + word_overlap(text, requirement.text) * 0.5
    )
    return Coverage(
        score=min(score, 1.0),
        confidence=min(len(evidence) * 0.3, 1.0),
        evidence=tuple(evidence[:_MAX_EVIDENCE]),
        current_state=_describe_current_state(requirement, evidence),
    )


def assess_risk_level(requirement: Requirement, coverage_score: float) -> str:
    if requirement.mandatory and coverage_score < 0.3:
        return "critical"
    if requirement.mandatory and coverage_score < 0.6:
        return "high"
    if coverage_score < 0.4:
        return "medium"
    return "low"


def remediation_for(requirement: Requirement) -> str:
    actions = REMEDIATION_ACTIONS.get(
        requirement.category,
        (f"Address {requirement.section} requirements comprehensively",),
    )
    return "; ".join(actions) + "."


# ---------------------------------------------------------------------------
# RequirementGapAnalyzer
# ---------------------------------------------------------------------------


class RequirementGapAnalyzer:
    """Requirement-coverage gap analyzer.

    Frameworks without an entry in the requirement table are skipped.

    Args:
        requirements: Framework name to requirement mapping.  Defaults to
            :data:`REQUIREMENTS`.
        coverage_threshold: Requirements scoring below this are gaps.
    """

    def __init__(
        self,
        requirements: Mapping[str, Sequence[Requirement]] | None = None,
        *,
        coverage_threshold: float = COVERAGE_THRESHOLD,
    ) -> None:
        self._requirements = dict(requirements or REQUIREMENTS)
        self._threshold = coverage_threshold

    async def analyze(
        self,
        text: str,
        frameworks: Sequence[str],
        entities: dict[str, list[str]],
    ) -> list[GapAnalysis]:
        gaps: list[GapAnalysis] = []
        for framework in frameworks:
            for requirement in self._requirements.get(framework, ()):
                gap = self._analyze_requirement(text, framework, requirement)
                if gap is not None:
                    gaps.append(gap)

        gaps.sort(key=lambda g: (RISK_ORDER.get(g.risk_level, 0), g.confidence), reverse=True)
        logger.debug(
            "Gap analysis: frameworks=%d gaps=%d entity_categories=%d",
            len(frameworks),
            len(gaps),
            len(entities),
        )
        return gaps

    def _analyze_requirement(
        self,
        text: str,
        framework: str,
        requirement: Requirement,
    ) -> GapAnalysis | None:
        coverage = assess_coverage(text, requirement)
        if coverage.score >= self._threshold:
            return None

        lowered = text.lower()
        missing = [e for e in requirement.mandatory_elements if e.lower() not in lowered]
        if missing:
            description = f"Missing required elements: {', '.join(missing)}"
        else:
            description = f"Insufficient detail in addressing {requirement.section} requirements"

        return GapAnalysis(
            framework=framework,
            section=requirement.section,
            requirement=requirement.text,
            current_state=coverage.current_state,
            gap=description,
            risk_level=assess_risk_level(requirement, coverage.score),
            remediation=remediation_for(requirement),
            confidence=coverage.confidence,
            evidence=coverage.evidence,
        )
