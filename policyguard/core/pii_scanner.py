"""PiiScanner - PII detection and de-identification for extracted document text.

:class:`PiiScanner` runs the compiled pattern table plus a lightweight
:class:`NameDetector` against a text, filters well-known false positives and
low-confidence matches, and returns a :class:`PiiScanResult` holding the
surviving findings and a redacted copy of the text.

**Design notes**

* The scanner is a pure function of its input: equal text gives an equal
  result, and the instance holds no per-scan state, so it can be shared
  across concurrent pipeline runs.
* Confidence is scored per type by :func:`calculate_confidence` unless the
  pattern carries a fixed confidence.  Credit-card matches are validated
  with the Luhn checksum (:func:`is_valid_credit_card`).
* Findings report ``start``/``end`` offsets into the original text, even
  though ``redacted_text`` has different offsets.
* ``redacted_text`` is ``None`` when no PII survives filtering.

Usage::

    from policyguard.core.pii_scanner import PiiScanner

    scanner = PiiScanner()
    result = scanner.scan("Contact Jane Smith at 212-555-0147")
    result.has_pii            # True
    result.redacted_text      # "Contact [NAME REDACTED] at [PHONE REDACTED]"
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Sequence

from policyguard.core.patterns.pii_patterns import (
    COMMON_FIRST_NAMES,
    COMMON_LAST_NAMES,
    DEFAULT_SEVERITY,
    FALSE_POSITIVE_RULES,
    SEVERITY_BY_TYPE,
    FalsePositiveRule,
    PatternDefinition,
    PiiType,
    get_patterns,
)
from policyguard.core.redaction import RedactionEngine

if TYPE_CHECKING:
    from policyguard.config import Settings

logger = logging.getLogger(__name__)

_CONTEXT_RADIUS = 50
_NAME_CONTEXT_RADIUS = 30
_NAME_CONFIDENCE = 0.7

_FORMATTED_SSN_RE = re.compile(r"\d{3}-\d{2}-\d{4}")
_FORMATTED_PHONE_RE = re.compile(r"\d{3}-\d{3}-\d{4}|\(\d{3}\)\s?\d{3}-\d{4}")
_NON_DIGIT_RE = re.compile(r"\D")
_NON_WORD_RE = re.compile(r"[^\w]")
_TOKEN_RE = re.compile(r"\S+")
_CAPITALIZED_RE = re.compile(r"[A-Z][a-z]+")
_LEADING_PUNCT_RE = re.compile(r"^\W*")
_TRAILING_PUNCT_RE = re.compile(r"\W*$")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PiiFinding:
    """A single PII detection.

    Attributes:
        type: Detected :class:`PiiType`.
        text: The exact matched substring.  Callers must not log or persist
            this field outside of the de-identification workflow.
        start: Offset of the first matched character in the original text.
        end: Offset one past the last matched character.
        confidence: Detection confidence in ``[0, 1]``.
        context: Surrounding snippet of the original text.
        severity: ``"low"``, ``"medium"``, ``"high"`` or ``"critical"``.
    """

    type: PiiType
    text: str
    start: int
    end: int
    confidence: float
    context: str
    severity: str


@dataclass(frozen=True)
class PiiSummary:
    total_findings: int
    critical_findings: int
    types_found: tuple[str, ...]


@dataclass(frozen=True)
class PiiScanResult:
    """Outcome of one :meth:`PiiScanner.scan` call.

    ``has_pii`` is derived from ``findings`` so the two can never disagree.
    """

    confidence: float
    findings: tuple[PiiFinding, ...]
    summary: PiiSummary
    redacted_text: str | None = None

    @property
    def has_pii(self) -> bool:
        return bool(self.findings)


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def is_valid_credit_card(number: str) -> bool:
    """Return ``True`` if the digits of *number* pass the Luhn checksum.

    Non-digit characters are ignored.  Starting from the rightmost digit,
    every second digit is doubled (subtracting 9 when the result exceeds 9)
    and all digits are summed; the number is valid when the sum is divisible
    by 10.  A string without digits is not valid.
    """
    digits = _NON_DIGIT_RE.sub("", number)
    if not digits:
        return False

    total = 0
    for position, char in enumerate(reversed(digits)):
        digit = int(char)
        if position % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def calculate_confidence(pii_type: PiiType, text: str) -> float:
    """Return the base confidence for a *pii_type* match of *text*."""
    if pii_type is PiiType.SSN:
        return 0.95 if _FORMATTED_SSN_RE.fullmatch(text) else 0.7
    if pii_type is PiiType.EMAIL:
        return 0.9
    if pii_type is PiiType.PHONE:
        return 0.9 if _FORMATTED_PHONE_RE.fullmatch(text) else 0.7
    if pii_type is PiiType.CREDIT_CARD:
        return 0.95 if is_valid_credit_card(text) else 0.6
    return 0.8


def severity_for(pii_type: PiiType) -> str:
    return SEVERITY_BY_TYPE.get(pii_type, DEFAULT_SEVERITY)


def _context(text: str, position: int, radius: int) -> str:
    return text[max(0, position - radius): min(len(text), position + radius)]


def _overall_confidence(findings: Sequence[PiiFinding]) -> float:
    if not findings:
        return 0.0
    mean = sum(f.confidence for f in findings) / len(findings)
    # Half-up rounding to two decimals.
    return math.floor(mean * 100 + 0.5) / 100


# ---------------------------------------------------------------------------
# NameDetector
# ---------------------------------------------------------------------------


class NameDetector:
    """Heuristic person-name detector.

    Walks whitespace-delimited tokens and flags a bigram as a name when the
    first token is a known first name and the second is a known last name or
    simply capitalized.  Reported offsets are the real token positions with
    surrounding punctuation trimmed, so repeated names are each reported at
    their own location.

    Args:
        first_names: Lower-case first-name set.
        last_names: Lower-case last-name set.
    """

    def __init__(
        self,
        first_names: Iterable[str] = COMMON_FIRST_NAMES,
        last_names: Iterable[str] = COMMON_LAST_NAMES,
    ) -> None:
        self._first_names = frozenset(n.lower() for n in first_names)
        self._last_names = frozenset(n.lower() for n in last_names)

    def find_names(self, text: str) -> list[PiiFinding]:
        tokens = list(_TOKEN_RE.finditer(text))
        findings: list[PiiFinding] = []

        for first, second in zip(tokens, tokens[1:]):
            if _normalise_token(first.group()) not in self._first_names:
                continue
            if not (
                _normalise_token(second.group()) in self._last_names
                or _is_capitalized(second.group())
            ):
                continue

            start = first.start() + _leading_punctuation(first.group())
            end = second.end() - _trailing_punctuation(second.group())
            findings.append(
                PiiFinding(
                    type=PiiType.NAME,
                    text=text[start:end],
                    start=start,
                    end=end,
                    confidence=_NAME_CONFIDENCE,
                    context=_context(text, start, _NAME_CONTEXT_RADIUS),
                    severity=severity_for(PiiType.NAME),
                )
            )

        return findings


def _normalise_token(token: str) -> str:
    return _NON_WORD_RE.sub("", token).lower()


def _is_capitalized(token: str) -> bool:
    return _CAPITALIZED_RE.fullmatch(_NON_WORD_RE.sub("", token)) is not None


def _leading_punctuation(token: str) -> int:
    return len(_LEADING_PUNCT_RE.match(token).group(0))  # type: ignore[union-attr]


def _trailing_punctuation(token: str) -> int:
    return len(_TRAILING_PUNCT_RE.search(token).group(0))  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# PiiScanner
# ---------------------------------------------------------------------------


class PiiScanner:
    """Stateless PII scanning engine.

    Args:
        patterns: Explicit pattern list.  When ``None`` the built-in table is
            used, extended with *custom_patterns_path* when given.
        custom_patterns_path: JSON custom-pattern file merged with the
            built-ins.  Ignored when *patterns* is supplied.
        name_detector: Name heuristic; pass ``None`` to use the default.
        min_confidence: Findings with confidence at or below this value are
            discarded.
        false_positive_rules: Dummy values that are never reported.
        redaction_engine: Engine that produces ``redacted_text``.
    """

    def __init__(
        self,
        patterns: Sequence[PatternDefinition] | None = None,
        *,
        custom_patterns_path: str | Path | None = None,
        name_detector: NameDetector | None = None,
        min_confidence: float = 0.6,
        false_positive_rules: Sequence[FalsePositiveRule] = FALSE_POSITIVE_RULES,
        redaction_engine: RedactionEngine | None = None,
    ) -> None:
        if patterns is not None:
            self._patterns: list[PatternDefinition] = list(patterns)
        else:
            self._patterns = get_patterns(custom_patterns_path)
        self._name_detector = name_detector or NameDetector()
        self._min_confidence = min_confidence
        self._false_positive_rules = tuple(false_positive_rules)
        self._redaction_engine = redaction_engine or RedactionEngine()

        logger.debug("PiiScanner initialised with %d pattern(s)", len(self._patterns))

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PiiScanner":
        return cls(
            custom_patterns_path=settings.pii_custom_patterns_path,
            min_confidence=settings.pii_min_confidence,
        )

    def detect(self, text: str) -> list[PiiFinding]:
        """Return every raw match, before false-positive filtering."""
        findings: list[PiiFinding] = []
        for definition in self._patterns:
            for match in definition.regex.finditer(text):
                matched = match.group(0)
                if not matched:
                    continue
                confidence = (
                    definition.confidence
                    if definition.confidence is not None
                    else calculate_confidence(definition.pii_type, matched)
                )
                findings.append(
                    PiiFinding(
                        type=definition.pii_type,
                        text=matched,
                        start=match.start(),
                        end=match.end(),
                        confidence=confidence,
                        context=_context(text, match.start(), _CONTEXT_RADIUS),
                        severity=severity_for(definition.pii_type),
                    )
                )
        findings.extend(self._name_detector.find_names(text))
        return findings

    def scan(self, text: str) -> PiiScanResult:
        """Scan *text* and return filtered findings plus a redacted copy.

        Empty input is a no-op: the result has no findings and no redacted
        text.
        """
        raw = self.detect(text) if text else []
        findings = sorted(self._filter(raw), key=lambda f: (f.start, f.end))

        summary = PiiSummary(
            total_findings=len(findings),
            critical_findings=sum(1 for f in findings if f.severity == "critical"),
            types_found=tuple(dict.fromkeys(f.type.value for f in findings)),
        )
        redacted = self._redaction_engine.redact(text, findings) if findings else None

        if findings:
            logger.info(
                "PII scan: findings=%d critical=%d types=%s (filtered %d)",
                summary.total_findings,
                summary.critical_findings,
                ",".join(summary.types_found),
                len(raw) - len(findings),
            )

        return PiiScanResult(
            confidence=_overall_confidence(findings),
            findings=tuple(findings),
            summary=summary,
            redacted_text=redacted,
        )

    def _filter(self, findings: Iterable[PiiFinding]) -> list[PiiFinding]:
        kept: list[PiiFinding] = []
        for finding in findings:
            if any(rule.matches(finding.type, finding.text) for rule in self._false_positive_rules):
                continue
            if finding.confidence <= self._min_confidence:
                continue
            kept.append(finding)
        return kept
