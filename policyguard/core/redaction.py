"""RedactionEngine - position-safe PII redaction.

:class:`RedactionEngine` takes the original text plus the PII findings produced
by :class:`~policyguard.core.pii_scanner.PiiScanner` and returns a copy of the
text with every finding replaced by its per-type placeholder token
(``[SSN REDACTED]``, ``[EMAIL REDACTED]``, ...).

**Offsets**: findings carry ``start``/``end`` offsets into the *original*
text.  The engine never rewrites them; only the returned string has shifted
positions.

**Overlap handling**: different patterns can match overlapping spans (a
nine-digit student ID is also an unformatted SSN).  Spans are selected
greedily by earliest start, longest first; a span that overlaps an already
selected one is not substituted separately.  The finding itself is kept by
the scanner.

**Substitution order**: replacements are applied from the highest start
offset down, so a replacement never moves the position of one that is still
to be applied.

Usage::

    from policyguard.core.redaction import RedactionEngine

    engine = RedactionEngine()
    redacted = engine.redact("SSN 123-45-6789 on file", findings)
    # "SSN [SSN REDACTED] on file"
"""

from __future__ import annotations

import logging
from typing import Mapping, Protocol, Sequence

from policyguard.core.patterns.pii_patterns import (
    DEFAULT_PLACEHOLDER,
    REDACTION_PLACEHOLDERS,
    PiiType,
)

logger = logging.getLogger(__name__)


class RedactableSpan(Protocol):
    type: PiiType
    start: int
    end: int


class RedactionEngine:
    """Stateless span redaction engine.

    Args:
        placeholders: Mapping from :class:`PiiType` to replacement token.
            Defaults to :data:`~policyguard.core.patterns.pii_patterns.REDACTION_PLACEHOLDERS`.
    """

    def __init__(self, placeholders: Mapping[PiiType, str] | None = None) -> None:
        self._placeholders = dict(placeholders or REDACTION_PLACEHOLDERS)

    def placeholder_for(self, pii_type: PiiType) -> str:
        return self._placeholders.get(pii_type, DEFAULT_PLACEHOLDER)

    def redact(self, text: str, findings: Sequence[RedactableSpan]) -> str:
        """Return *text* with each selected finding span replaced.

        Args:
            text: The original text the findings were detected in.
            findings: Objects with ``type``, ``start`` and ``end`` attributes.

        Returns:
            The redacted string; *text* unchanged when there are no findings.
        """
        if not text or not findings:
            return text

        spans = self._select_spans(text, findings)
        redacted = self._apply(text, spans)

        logger.debug(
            "RedactionEngine.redact: findings=%d spans=%d chars_in=%d chars_out=%d",
            len(findings),
            len(spans),
            len(text),
            len(redacted),
        )
        return redacted

    def _select_spans(
        self,
        text: str,
        findings: Sequence[RedactableSpan],
    ) -> list[tuple[int, int, PiiType]]:
        """Pick non-overlapping ``(start, end, type)`` spans, earliest and longest first."""
        ordered = sorted(
            (f for f in findings if 0 <= f.start < f.end <= len(text)),
            key=lambda f: (f.start, -(f.end - f.start)),
        )
        selected: list[tuple[int, int, PiiType]] = []
        last_end = -1
        for finding in ordered:
            if finding.start < last_end:
                continue
            selected.append((finding.start, finding.end, finding.type))
            last_end = finding.end
        return selected

    def _apply(self, text: str, spans: list[tuple[int, int, PiiType]]) -> str:
        redacted = text
        for start, end, pii_type in sorted(spans, key=lambda s: s[0], reverse=True):
            redacted = redacted[:start] + self.placeholder_for(pii_type) + redacted[end:]
        return redacted
