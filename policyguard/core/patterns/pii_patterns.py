"""Built-in PII regex pattern library for PolicyGuard.

This module holds every table the PII scanner consults:

* ``BUILTIN_PATTERNS`` - pre-compiled detection patterns per :class:`PiiType`
* ``SEVERITY_BY_TYPE`` - fixed severity for each type
* ``REDACTION_PLACEHOLDERS`` - replacement token for each type
* ``FALSE_POSITIVE_RULES`` - well-known dummy values that are never reported

Patterns whose :attr:`PatternDefinition.confidence` is ``None`` are scored by
:func:`~policyguard.core.pii_scanner.calculate_confidence` from the matched
text; the others carry a fixed confidence.

Additional institution-specific patterns can be supplied via a JSON config
file (see :func:`load_custom_patterns`).  They are appended after the
built-ins; no regex compilation happens at scan time.

**JSON config format** (array of objects at the root):

.. code-block:: json

    [
        {
            "type": "student_id",
            "pattern": "STU-\\\\d{7}",
            "confidence": 0.85
        }
    ]

``type`` must be one of the :class:`PiiType` values.  ``confidence`` is
optional and defaults to the type's computed confidence.

Usage::

    from policyguard.core.patterns.pii_patterns import get_patterns

    patterns = get_patterns()                           # built-ins only
    patterns = get_patterns("/path/to/custom.json")     # built-ins + custom
"""

from __future__ import annotations

import enum
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class PiiType(str, enum.Enum):
    SSN = "ssn"
    EMAIL = "email"
    PHONE = "phone"
    CREDIT_CARD = "credit_card"
    STUDENT_ID = "student_id"
    NAME = "name"
    ADDRESS = "address"
    DATE_OF_BIRTH = "date_of_birth"
    MEDICAL_RECORD = "medical_record"
    BANK_ACCOUNT = "bank_account"
    PASSPORT = "passport"
    DRIVERS_LICENSE = "drivers_license"


# ---------------------------------------------------------------------------
# Per-type tables
# ---------------------------------------------------------------------------

SEVERITY_BY_TYPE: dict[PiiType, str] = {
    PiiType.SSN: "critical",
    PiiType.CREDIT_CARD: "critical",
    PiiType.BANK_ACCOUNT: "critical",
    PiiType.MEDICAL_RECORD: "critical",
    PiiType.STUDENT_ID: "high",
    PiiType.DATE_OF_BIRTH: "high",
    PiiType.DRIVERS_LICENSE: "high",
    PiiType.PASSPORT: "high",
    PiiType.EMAIL: "medium",
    PiiType.PHONE: "medium",
    PiiType.NAME: "medium",
    PiiType.ADDRESS: "medium",
}

DEFAULT_SEVERITY = "low"

REDACTION_PLACEHOLDERS: dict[PiiType, str] = {
    PiiType.SSN: "[SSN REDACTED]",
    PiiType.EMAIL: "[EMAIL REDACTED]",
    PiiType.PHONE: "[PHONE REDACTED]",
    PiiType.CREDIT_CARD: "[CREDIT CARD REDACTED]",
    PiiType.STUDENT_ID: "[STUDENT ID REDACTED]",
    PiiType.NAME: "[NAME REDACTED]",
    PiiType.ADDRESS: "[ADDRESS REDACTED]",
    PiiType.DATE_OF_BIRTH: "[DOB REDACTED]",
    PiiType.MEDICAL_RECORD: "[MEDICAL RECORD REDACTED]",
    PiiType.BANK_ACCOUNT: "[BANK ACCOUNT REDACTED]",
    PiiType.PASSPORT: "[PASSPORT REDACTED]",
    PiiType.DRIVERS_LICENSE: "[DRIVERS LICENSE REDACTED]",
}

DEFAULT_PLACEHOLDER = "[PII REDACTED]"


# ---------------------------------------------------------------------------
# False-positive rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FalsePositiveRule:
    """A known dummy value that must never be reported.

    Attributes:
        pii_type: Type the rule applies to.
        kind: ``"exact"`` (whole match equals *value*), ``"prefix"`` (the
            match's digits start with *value*) or ``"contains"`` (the
            lower-cased match contains *value*).
        value: Literal compared against the match.
    """

    pii_type: PiiType
    kind: str
    value: str

    def matches(self, pii_type: PiiType, text: str) -> bool:
        if pii_type is not self.pii_type:
            return False
        if self.kind == "exact":
            return text == self.value
        if self.kind == "prefix":
            return re.sub(r"\D", "", text).startswith(self.value)
        if self.kind == "contains":
            return self.value in text.lower()
        raise ValueError(f"Unknown false-positive rule kind {self.kind!r}")


FALSE_POSITIVE_RULES: tuple[FalsePositiveRule, ...] = (
    FalsePositiveRule(PiiType.SSN, "exact", "000-00-0000"),
    # 555 is the fictional-number area code.
    FalsePositiveRule(PiiType.PHONE, "prefix", "555"),
    FalsePositiveRule(PiiType.EMAIL, "contains", "example.com"),
)


# ---------------------------------------------------------------------------
# Name detector word lists
# ---------------------------------------------------------------------------

COMMON_FIRST_NAMES: frozenset[str] = frozenset({
    "john", "jane", "michael", "sarah", "david", "lisa", "robert", "maria",
    "james", "jennifer", "william", "elizabeth", "richard", "susan", "joseph",
    "karen", "thomas", "nancy", "christopher", "betty", "daniel", "helen",
    "matthew", "sandra", "anthony", "donna", "mark", "carol", "donald", "ruth",
})

COMMON_LAST_NAMES: frozenset[str] = frozenset({
    "smith", "johnson", "williams", "brown", "jones", "garcia", "miller",
    "davis", "rodriguez", "martinez", "hernandez", "lopez", "gonzalez",
    "wilson", "anderson", "thomas", "taylor", "moore", "jackson", "martin",
})


# ---------------------------------------------------------------------------
# Built-in raw pattern strings
# ---------------------------------------------------------------------------

_MONTHS = (
    "January|February|March|April|May|June|July|August|"
    "September|October|November|December"
)

# Label-anchored identifiers must contain at least one digit so ordinary
# prose such as "patient record keeping" is not reported.
_ALNUM_ID = r"(?=[A-Z0-9]*\d)[A-Z0-9]"

_STREET_SUFFIX = (
    r"(?:Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Lane|Ln|"
    r"Boulevard|Blvd|Way|Court|Ct|Place|Pl)"
)


@dataclass(frozen=True)
class PatternDefinition:
    """An immutable, pre-compiled PII pattern.

    Attributes:
        pii_type: Type reported for every match of this pattern.
        regex: Pre-compiled regular expression.
        confidence: Fixed confidence for matches, or ``None`` to score each
            match with the type's confidence rule.
    """

    pii_type: PiiType
    regex: re.Pattern  # type: ignore[type-arg]
    confidence: float | None = None


def _p(pii_type: PiiType, raw: str, flags: int = 0, confidence: float | None = None) -> PatternDefinition:
    return PatternDefinition(pii_type=pii_type, regex=re.compile(raw, flags), confidence=confidence)


BUILTIN_PATTERNS: tuple[PatternDefinition, ...] = (
    _p(PiiType.SSN, r"\b\d{3}-\d{2}-\d{4}\b"),
    _p(PiiType.SSN, r"\b\d{3} \d{2} \d{4}\b"),
    _p(PiiType.SSN, r"\b\d{9}\b"),
    _p(PiiType.EMAIL, r"\b[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}\b"),
    _p(PiiType.PHONE, r"\b\d{3}-\d{3}-\d{4}\b"),
    _p(PiiType.PHONE, r"(?<!\w)\(\d{3}\)\s?\d{3}-\d{4}\b"),
    _p(PiiType.PHONE, r"\b\d{10}\b"),
    _p(PiiType.CREDIT_CARD, r"\b\d{4}[\s\-]?\d{4}[\s\-]?\d{4}[\s\-]?\d{4}\b"),
    _p(PiiType.STUDENT_ID, r"\b[Ss]tudent\s?[Ii][Dd]:?\s?\d{6,10}\b"),
    _p(PiiType.STUDENT_ID, r"\b[Ii][Dd]\s?[Nn]umber:?\s?\d{6,10}\b"),
    _p(PiiType.DATE_OF_BIRTH, r"\b\d{1,2}/\d{1,2}/\d{4}\b"),
    _p(PiiType.DATE_OF_BIRTH, r"\b\d{4}-\d{2}-\d{2}\b"),
    _p(PiiType.DATE_OF_BIRTH, rf"\b(?:{_MONTHS})\s\d{{1,2}},\s\d{{4}}\b", re.IGNORECASE),
    _p(PiiType.BANK_ACCOUNT, r"\b[Aa]ccount\s?[Nn]umber:?\s?\d{8,17}\b"),
    _p(PiiType.BANK_ACCOUNT, r"\b[Rr]outing\s?[Nn]umber:?\s?\d{9}\b"),
    _p(
        PiiType.ADDRESS,
        rf"\b\d{{1,5}}\s+(?:[A-Z][a-z]+\s+){{1,3}}{_STREET_SUFFIX}\b",
        confidence=0.75,
    ),
    _p(
        PiiType.MEDICAL_RECORD,
        rf"\b(?:medical|mrn|patient)\s*(?:record|number|id)[\s:#]*{_ALNUM_ID}{{6,15}}\b",
        re.IGNORECASE,
        confidence=0.85,
    ),
    _p(
        PiiType.DRIVERS_LICENSE,
        rf"\b(?:driver'?s?\s+license|license|dl)\s*(?:number|no\.?|#)[\s:]*{_ALNUM_ID}{{6,15}}\b",
        re.IGNORECASE,
        confidence=0.85,
    ),
    _p(
        PiiType.PASSPORT,
        rf"\bpassport\s*(?:number|no\.?|#)?[\s:]*{_ALNUM_ID}{{6,9}}\b",
        re.IGNORECASE,
        confidence=0.85,
    ),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_custom_patterns(path: str | Path) -> list[PatternDefinition]:
    """Load additional PII patterns from a JSON config file.

    Malformed entries (missing keys, unknown type, out-of-range confidence,
    un-compilable regex) are skipped with a warning so that the application
    can start with the valid patterns even when the config contains errors.

    This function never raises.  Filesystem and JSON errors are logged and
    yield an empty list.

    Args:
        path: Filesystem path to a JSON array of pattern objects.

    Returns:
        The valid custom patterns in file order.
    """
    config_path = Path(path)

    if not config_path.exists():
        logger.warning("Custom PII pattern config not found: %s; using built-in patterns only", config_path)
        return []

    try:
        entries = json.loads(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        logger.error("Cannot read custom PII pattern config %s: %s", config_path, exc)
        return []
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON in custom PII pattern config %s: %s", config_path, exc)
        return []

    if not isinstance(entries, list):
        logger.error(
            "Custom PII pattern config %s must contain a JSON array at the root (got %s)",
            config_path,
            type(entries).__name__,
        )
        return []

    patterns: list[PatternDefinition] = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning("Custom PII pattern entry at index %d is not a JSON object; skipping", i)
            continue

        raw_type = entry.get("type")
        raw_pattern = entry.get("pattern")
        confidence = entry.get("confidence")

        try:
            pii_type = PiiType(raw_type)
        except ValueError:
            logger.warning("Custom PII pattern at index %d has unknown type %r; skipping", i, raw_type)
            continue

        if not raw_pattern or not isinstance(raw_pattern, str):
            logger.warning("Custom PII pattern at index %d missing valid 'pattern'; skipping", i)
            continue

        if confidence is not None and (
            not isinstance(confidence, (int, float)) or not 0.0 <= confidence <= 1.0
        ):
            logger.warning(
                "Custom PII pattern at index %d has invalid confidence %r; skipping", i, confidence
            )
            continue

        try:
            compiled = re.compile(raw_pattern, re.IGNORECASE)
        except re.error as exc:
            logger.error(
                "Custom PII pattern at index %d has invalid regex %r: %s; skipping", i, raw_pattern, exc
            )
            continue

        patterns.append(
            PatternDefinition(
                pii_type=pii_type,
                regex=compiled,
                confidence=float(confidence) if confidence is not None else None,
            )
        )

    logger.info("Loaded %d custom PII pattern(s) from %s", len(patterns), config_path)
    return patterns


def get_patterns(custom_patterns_path: Optional[str | Path] = None) -> list[PatternDefinition]:
    """Return the built-in patterns followed by any custom patterns.

    Args:
        custom_patterns_path: Optional JSON config file; see
            :func:`load_custom_patterns`.

    Returns:
        A new list in stable order: built-ins first, then custom entries.
    """
    patterns = list(BUILTIN_PATTERNS)
    if custom_patterns_path is not None:
        patterns.extend(load_custom_patterns(custom_patterns_path))
    return patterns
