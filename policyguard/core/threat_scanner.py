"""ThreatScanner - layered malware and content-risk detection for uploaded files.

:class:`ThreatScanner` inspects a raw file buffer and returns a
:class:`ThreatScanResult`.  Detection layers are applied unconditionally and
their detections are unioned:

1. **hash match**     - SHA-256 of the buffer against the known-bad set
2. **content**        - suspicious patterns in the leading content window
3. **structure**      - header/declared-type mismatch, embedded executables,
   macro-heavy documents
4. **external engine** - optional :class:`~policyguard.core.av_engine.AVEngineAdapter`

``infected`` is derived from the detections: it is ``True`` exactly when at
least one detection is ``high`` or ``critical``.

**Fail-closed contract**: :meth:`ThreatScanner.scan` never raises for the
content it is given.  If any layer raises, the scanner returns a result with a
single high-severity ``"Scan Error"`` detection (action ``block``), so content
that cannot be scanned is treated as unsafe.

All signature tables live in an immutable :class:`ThreatScannerConfig`
injected at construction, which lets tests run the scanner against a
controlled signature set.

Usage::

    from policyguard.core.threat_scanner import ThreatScanner, ThreatScannerConfig

    scanner = ThreatScanner(ThreatScannerConfig())
    result = await scanner.scan(file_bytes, declared_mime_type="application/pdf")
    if result.infected:
        ...
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Literal

from policyguard.core.av_engine import AVEngineAdapter
from policyguard.core.patterns.threat_signatures import (
    CONTENT_PATTERNS,
    EXECUTABLE_SIGNATURES,
    FILE_SIGNATURES,
    KNOWN_MALWARE_HASHES,
    MACRO_INDICATORS,
    ContentPattern,
    ExecutableSignature,
    FileSignature,
    find_file_signature,
    load_known_hashes,
)

if TYPE_CHECKING:
    from policyguard.config import Settings

logger = logging.getLogger(__name__)

Severity = Literal["low", "medium", "high", "critical"]
ThreatCategory = Literal["virus", "malware", "trojan", "suspicious"]
ThreatAction = Literal["quarantine", "delete", "block"]

ENGINE_NAME = "PolicyGuard Threat Scanner v1.0"

_INFECTED_SEVERITIES: frozenset[str] = frozenset({"high", "critical"})
_ACTIONABLE: frozenset[str] = frozenset({"quarantine", "block"})


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ThreatDetection:
    """One detection produced by a scanner layer.

    Attributes:
        name: Detection name, e.g. ``"Known Malware"``.  Internal: shown to
            operators, not to end users.
        category: ``"virus"``, ``"malware"``, ``"trojan"`` or ``"suspicious"``.
        severity: ``"low"``, ``"medium"``, ``"high"`` or ``"critical"``.
        description: Human-readable explanation.
        action: Recommended action: ``"quarantine"``, ``"delete"`` or ``"block"``.
    """

    name: str
    category: ThreatCategory
    severity: Severity
    description: str
    action: ThreatAction


@dataclass(frozen=True)
class ThreatScanResult:
    """Outcome of one :meth:`ThreatScanner.scan` call.

    Attributes:
        engine: Scanner identifier.
        scan_time_ms: Wall-clock duration of the scan.
        file_hash: Lowercase hex SHA-256 of the buffer.
        file_size: Buffer length in bytes.
        scanned_at: UTC time the scan finished.
        threats: All detections, in layer order.
    """

    engine: str
    scan_time_ms: int
    file_hash: str
    file_size: int
    scanned_at: datetime
    threats: tuple[ThreatDetection, ...] = ()

    @property
    def infected(self) -> bool:
        return any(t.severity in _INFECTED_SEVERITIES for t in self.threats)

    @property
    def recommended_actions(self) -> tuple[str, ...]:
        """Distinct recommended actions, in first-seen order."""
        return tuple(dict.fromkeys(t.action for t in self.threats))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ThreatScannerConfig:
    """Immutable signature set and thresholds for :class:`ThreatScanner`.

    Attributes:
        known_hashes: SHA-256 digests that are always ``critical``.
        content_patterns: Patterns searched in the content window.
        executable_signatures: Magic bytes searched anywhere in the buffer.
        macro_indicators: Strings counted (case-insensitively) for the
            macro-heavy check.
        macro_threshold: Distinct indicators needed to raise a detection.
        content_window_bytes: Leading bytes decoded for content matching.
        file_signatures: Expected magic bytes per declared MIME type.
        external_engine_fail_closed: When ``True`` an unavailable external
            engine is a ``high``/``block`` detection instead of
            ``medium``/``quarantine``.
    """

    known_hashes: frozenset[str] = KNOWN_MALWARE_HASHES
    content_patterns: tuple[ContentPattern, ...] = CONTENT_PATTERNS
    executable_signatures: tuple[ExecutableSignature, ...] = EXECUTABLE_SIGNATURES
    macro_indicators: tuple[str, ...] = MACRO_INDICATORS
    macro_threshold: int = 3
    content_window_bytes: int = 10_240
    file_signatures: tuple[FileSignature, ...] = field(default=FILE_SIGNATURES)
    external_engine_fail_closed: bool = False

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ThreatScannerConfig":
        """Build a config from application settings, merging any hash list file."""
        return cls(
            known_hashes=KNOWN_MALWARE_HASHES | load_known_hashes(settings.threat_hash_list_path),
            macro_threshold=settings.threat_macro_threshold,
            content_window_bytes=settings.threat_content_window_bytes,
            external_engine_fail_closed=settings.external_engine_fail_closed,
        )


# ---------------------------------------------------------------------------
# ThreatScanner
# ---------------------------------------------------------------------------


class ThreatScanner:
    """Stateless layered threat scanner.

    Safe to share between concurrent pipeline runs: all state lives in the
    immutable config and the optional engine adapter.

    Args:
        config: Signature tables and thresholds.  Defaults to the built-ins.
        av_engine: Optional external engine whose verdicts are unioned in.
    """

    def __init__(
        self,
        config: ThreatScannerConfig | None = None,
        *,
        av_engine: AVEngineAdapter | None = None,
    ) -> None:
        self._config = config or ThreatScannerConfig()
        self._av_engine = av_engine

    @property
    def config(self) -> ThreatScannerConfig:
        return self._config

    async def scan(self, buffer: bytes, declared_mime_type: str | None = None) -> ThreatScanResult:
        """Scan *buffer* and return the unioned detections.

        Args:
            buffer: Raw file bytes.
            declared_mime_type: MIME type the uploader claimed, used for the
                header-mismatch check.  Optional.

        Returns:
            A :class:`ThreatScanResult`.  Never raises for scan failures;
            see the module docstring for the fail-closed contract.
        """
        start_ms = int(time.monotonic() * 1000)
        file_hash = ""

        try:
            file_hash = hashlib.sha256(buffer).hexdigest()
            threats: list[ThreatDetection] = []
            threats.extend(self._match_hash(file_hash))
            threats.extend(self._match_content(buffer))
            threats.extend(self._analyze_structure(buffer, declared_mime_type))
            if self._av_engine is not None:
                threats.extend(await self._scan_external(self._av_engine, buffer))
        except Exception as exc:
            logger.error("Threat scan failed; failing closed: file_hash=%s error=%r", file_hash, exc)
            return self._fail_closed_result(buffer, file_hash, start_ms)

        result = ThreatScanResult(
            engine=ENGINE_NAME,
            scan_time_ms=int(time.monotonic() * 1000) - start_ms,
            file_hash=file_hash,
            file_size=len(buffer),
            scanned_at=datetime.now(tz=timezone.utc),
            threats=tuple(threats),
        )

        if result.threats:
            logger.warning(
                "Threat scan detections: file_hash=%s infected=%s threats=%d",
                file_hash,
                result.infected,
                len(result.threats),
            )
            self._log_security_event(result)
        else:
            logger.debug("Threat scan clean: file_hash=%s duration_ms=%d", file_hash, result.scan_time_ms)

        return result

    @staticmethod
    def validate_file_type(buffer: bytes, expected_mime_type: str) -> bool:
        """Return ``True`` if *buffer* starts with the magic bytes of *expected_mime_type*.

        MIME types without a registered signature (plain text, unknown types)
        always validate.
        """
        signature = find_file_signature(expected_mime_type)
        if signature is None or not signature.magics:
            return True
        return any(buffer.startswith(magic) for magic in signature.magics)

    # ------------------------------------------------------------------
    # Detection layers
    # ------------------------------------------------------------------

    def _match_hash(self, file_hash: str) -> list[ThreatDetection]:
        if file_hash not in self._config.known_hashes:
            return []
        return [
            ThreatDetection(
                name="Known Malware",
                category="malware",
                severity="critical",
                description="File matches known malware signature",
                action="block",
            )
        ]

    def _match_content(self, buffer: bytes) -> list[ThreatDetection]:
        window = buffer[: self._config.content_window_bytes].decode("utf-8", errors="replace")
        return [
            ThreatDetection(
                name="Suspicious Content",
                category="suspicious",
                severity="medium",
                description=f"File contains suspicious pattern: {pattern.name}",
                action="quarantine",
            )
            for pattern in self._config.content_patterns
            if pattern.regex.search(window)
        ]

    def _analyze_structure(self, buffer: bytes, declared_mime_type: str | None) -> list[ThreatDetection]:
        threats: list[ThreatDetection] = []

        malformed = self._malformed_label(buffer, declared_mime_type)
        if malformed is not None:
            threats.append(
                ThreatDetection(
                    name=f"Malformed {malformed}",
                    category="suspicious",
                    severity="medium",
                    description=f"{malformed} file has incorrect header structure",
                    action="quarantine",
                )
            )

        matched = [sig.name for sig in self._config.executable_signatures if sig.magic in buffer]
        if matched:
            logger.debug("Executable signatures present: %s", matched)
            threats.append(
                ThreatDetection(
                    name="Embedded Executable",
                    category="suspicious",
                    severity="high",
                    description="Document contains embedded executable code",
                    action="block",
                )
            )

        if self._count_macro_indicators(buffer) >= self._config.macro_threshold:
            threats.append(
                ThreatDetection(
                    name="Macro Heavy Document",
                    category="suspicious",
                    severity="medium",
                    description="Document contains unusually large macro content",
                    action="quarantine",
                )
            )

        return threats

    def _malformed_label(self, buffer: bytes, declared_mime_type: str | None) -> str | None:
        """Return the format label whose header is missing, or ``None``.

        Content that names PDF in its first 16 bytes without starting with
        ``%PDF`` is malformed regardless of the declared type.  Otherwise the
        declared MIME type's registered magic bytes must lead the buffer.
        """
        if len(buffer) > 4 and not buffer.startswith(b"%PDF") and b"PDF" in buffer[:16]:
            return "PDF"

        signature = self._declared_signature(declared_mime_type)
        if signature is None or not signature.magics:
            return None
        if any(buffer.startswith(magic) for magic in signature.magics):
            return None
        return signature.label

    def _declared_signature(self, declared_mime_type: str | None) -> FileSignature | None:
        if not declared_mime_type:
            return None
        normalised = declared_mime_type.split(";", 1)[0].strip().lower()
        for candidate in self._config.file_signatures:
            if candidate.mime_type == normalised:
                return candidate
        return None

    def _count_macro_indicators(self, buffer: bytes) -> int:
        content = buffer.decode("ascii", errors="ignore").lower()
        return sum(1 for indicator in self._config.macro_indicators if indicator.lower() in content)

    async def _scan_external(self, engine: AVEngineAdapter, buffer: bytes) -> list[ThreatDetection]:
        try:
            result = await engine.scan_bytes(buffer)
        except Exception as exc:
            logger.error("External engine raised during scan: %r", exc)
            return [self._external_error_detection()]

        if result.status == "rejected":
            logger.warning("External engine %s rejected the scan", result.engine)
            return [self._external_error_detection()]

        return [
            ThreatDetection(
                name=finding.signature,
                category="virus",
                severity=finding.severity,
                description=f"{result.engine} signature match ({finding.family})",
                action="block",
            )
            for finding in result.findings
        ]

    def _external_error_detection(self) -> ThreatDetection:
        if self._config.external_engine_fail_closed:
            return ThreatDetection(
                name="External Scanner Error",
                category="suspicious",
                severity="high",
                description="External antivirus scanner unavailable",
                action="block",
            )
        return ThreatDetection(
            name="External Scanner Error",
            category="suspicious",
            severity="medium",
            description="External antivirus scanner unavailable",
            action="quarantine",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fail_closed_result(self, buffer: bytes, file_hash: str, start_ms: int) -> ThreatScanResult:
        try:
            size = len(buffer)
        except TypeError:
            size = 0
        return ThreatScanResult(
            engine=ENGINE_NAME,
            scan_time_ms=int(time.monotonic() * 1000) - start_ms,
            file_hash=file_hash,
            file_size=size,
            scanned_at=datetime.now(tz=timezone.utc),
            threats=(
                ThreatDetection(
                    name="Scan Error",
                    category="suspicious",
                    severity="high",
                    description="Unable to complete security scan",
                    action="block",
                ),
            ),
        )

    @staticmethod
    def _log_security_event(result: ThreatScanResult) -> None:
        if not _ACTIONABLE.intersection(result.recommended_actions):
            return
        logger.warning(
            json.dumps({
                "event": "security_event",
                "type": "THREAT_DETECTED",
                "file_hash": result.file_hash,
                "file_size": result.file_size,
                "infected": result.infected,
                "actions": list(result.recommended_actions),
                "threats": [
                    {"name": t.name, "category": t.category, "severity": t.severity}
                    for t in result.threats
                ],
                "scanned_at": result.scanned_at.isoformat(),
            })
        )
