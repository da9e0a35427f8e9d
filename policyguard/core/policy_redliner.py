"""Default policy redliner.

:class:`TemplatePolicyRedliner` turns gap-analysis findings into suggested
policy text.  Each gap produces one
:class:`~policyguard.core.contracts.PolicyRedline`: the clause template for
the gap's section (or a generic "shall" clause built from the requirement)
is proposed either as a replacement for the sentence that partially covers
the requirement or, when the document has no such sentence, as an insertion
(``original_text == ""``).
"""

from __future__ import annotations

import logging
from typing import Mapping, Sequence

from policyguard.core.contracts import GapAnalysis, PolicyRedline

logger = logging.getLogger(__name__)

CLAUSE_TEMPLATES: dict[str, str] = {
    "AI Governance": (
        "The institution shall establish an AI governance committee with defined roles "
        "and responsibilities and documented oversight mechanisms for every AI system in use."
    ),
    "AI System Inventory": (
        "The institution shall maintain a current inventory of all AI systems in use, "
        "including their purpose, data sources and responsible owner, and review it at least annually."
    ),
    "Bias Testing": (
        "AI systems that affect students or staff shall undergo bias testing before deployment "
        "and continuous monitoring afterwards, following documented monitoring procedures."
    ),
    "Incident Response": (
        "The institution shall maintain AI incident response and escalation procedures "
        "covering detection, containment, notification and review of AI-related incidents."
    ),
    "Student Record Access": (
        "Students and parents may inspect and review educational records; the institution "
        "shall publish access procedures and notification requirements for such requests."
    ),
    "Consent for Disclosure": (
        "Personally identifiable information from educational records shall not be disclosed "
        "without written consent, except as permitted by law, following documented consent procedures."
    ),
    "Parental Consent": (
        "Before any AI service collects personal information from children under 13, the "
        "institution shall obtain verifiable parental consent and perform age verification."
    ),
    "Educational Equity": (
        "AI systems shall be evaluated for their effect on educational equity and shall meet "
        "accessibility requirements so that every student has fair access."
    ),
}

CONFIDENCE_BY_RISK: dict[str, float] = {
    "critical": 0.9,
    "high": 0.8,
    "medium": 0.7,
    "low": 0.6,
}


class TemplatePolicyRedliner:
    """Clause-template redliner.

    Args:
        templates: Section name to suggested clause mapping.
        max_redlines: Upper bound on suggestions per document.
    """

    def __init__(
        self,
        templates: Mapping[str, str] | None = None,
        *,
        max_redlines: int = 20,
    ) -> None:
        self._templates = dict(templates or CLAUSE_TEMPLATES)
        self._max_redlines = max_redlines

    def suggested_clause(self, gap: GapAnalysis) -> str:
        template = self._templates.get(gap.section)
        if template:
            return template
        requirement = gap.requirement.rstrip(".")
        return f"The institution shall {requirement[:1].lower()}{requirement[1:]}."

    async def generate_redlines(
        self,
        text: str,
        frameworks: Sequence[str],
        gap_analyses: Sequence[GapAnalysis],
    ) -> list[PolicyRedline]:
        applicable = set(frameworks)
        redlines: list[PolicyRedline] = []

        for gap in gap_analyses:
            if gap.framework not in applicable:
                continue
            original = next((e for e in gap.evidence if e in text and e.endswith(".")), "")
            redlines.append(
                PolicyRedline(
                    section=gap.section,
                    original_text=original,
                    suggested_text=self.suggested_clause(gap),
                    rationale=f"{gap.gap}. Addresses {gap.framework} requirement: {gap.requirement}.",
                    framework=gap.framework,
                    confidence_score=CONFIDENCE_BY_RISK.get(gap.risk_level, 0.5),
                )
            )
            if len(redlines) >= self._max_redlines:
                break

        logger.debug("Policy redlining: gaps=%d redlines=%d", len(gap_analyses), len(redlines))
        return redlines
