"""Built-in threat signature tables for the PolicyGuard threat scanner.

The scanner never hard-codes what it looks for.  Every detection layer reads
one of the tables below through :class:`~policyguard.core.threat_scanner.ThreatScannerConfig`,
so deployments and tests can substitute their own signature sets.

Tables
------
``KNOWN_MALWARE_HASHES``
    SHA-256 digests of files that are always rejected.  Ships with the EICAR
    anti-malware test file only; extend it with :func:`load_known_hashes`.
``CONTENT_PATTERNS``
    Regular expressions matched against the leading window of the file
    decoded as text (script blocks, dynamic-evaluation calls, server-side
    template delimiters).
``EXECUTABLE_SIGNATURES``
    Magic byte sequences of native executables, searched for anywhere in the
    buffer.
``MACRO_INDICATORS``
    Strings that appear in Office documents carrying VBA projects.
``FILE_SIGNATURES``
    Expected leading magic bytes per declared MIME type.

Usage::

    from policyguard.core.patterns.threat_signatures import load_known_hashes

    extra = load_known_hashes("/etc/policyguard/bad-hashes.txt")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


# ---------------------------------------------------------------------------
# Table entry types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContentPattern:
    """A suspicious text pattern.

    Attributes:
        name: Stable identifier reported in detection descriptions.
        regex: Pre-compiled pattern searched in the decoded content window.
    """

    name: str
    regex: re.Pattern  # type: ignore[type-arg]


@dataclass(frozen=True)
class ExecutableSignature:
    name: str
    magic: bytes


@dataclass(frozen=True)
class FileSignature:
    """Leading magic bytes expected for a declared MIME type.

    Attributes:
        mime_type: Declared MIME type the signature applies to.
        label: Short format label used in detection names (``"PDF"``).
        magics: Accepted leading byte sequences.  An empty tuple means the
            format has no signature and is never considered malformed.
    """

    mime_type: str
    label: str
    magics: tuple[bytes, ...]


# ---------------------------------------------------------------------------
# Built-in tables
# ---------------------------------------------------------------------------

# SHA-256 of the 68-byte EICAR standard anti-virus test file.
EICAR_SHA256 = "275a021bbfb6489e54d471899f7db9d1663fc695ec2fe2a2c4538aabf651fd0f"

KNOWN_MALWARE_HASHES: frozenset[str] = frozenset({EICAR_SHA256})

CONTENT_PATTERNS: tuple[ContentPattern, ...] = (
    ContentPattern("embedded-script", re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)),
    ContentPattern("eval-call", re.compile(r"eval\s*\(", re.IGNORECASE)),
    ContentPattern("exec-call", re.compile(r"exec\s*\(", re.IGNORECASE)),
    ContentPattern("system-call", re.compile(r"system\s*\(", re.IGNORECASE)),
    ContentPattern("php-block", re.compile(r"<\?php[\s\S]*?\?>", re.IGNORECASE)),
    ContentPattern("asp-block", re.compile(r"<%[\s\S]*?%>")),
)

EXECUTABLE_SIGNATURES: tuple[ExecutableSignature, ...] = (
    ExecutableSignature("pe", b"MZ"),
    ExecutableSignature("elf", b"\x7fELF"),
    ExecutableSignature("mach-o-32", b"\xfe\xed\xfa\xce"),
    ExecutableSignature("mach-o-64", b"\xfe\xed\xfa\xcf"),
)

MACRO_INDICATORS: tuple[str, ...] = (
    "vbaProject.bin",
    "macros/",
    "Module1",
    "ThisDocument",
    "Auto_Open",
    "Document_Open",
)

DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

FILE_SIGNATURES: tuple[FileSignature, ...] = (
    FileSignature("application/pdf", "PDF", (b"%PDF",)),
    FileSignature("application/msword", "DOC", (b"\xd0\xcf\x11\xe0",)),
    FileSignature(DOCX_MIME_TYPE, "DOCX", (b"PK",)),
    FileSignature("text/plain", "TXT", ()),
)


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def find_file_signature(mime_type: str | None) -> FileSignature | None:
    """Return the :class:`FileSignature` registered for *mime_type*, if any."""
    if not mime_type:
        return None
    normalised = mime_type.split(";", 1)[0].strip().lower()
    for signature in FILE_SIGNATURES:
        if signature.mime_type == normalised:
            return signature
    return None


def load_known_hashes(path: Optional[str | Path]) -> frozenset[str]:
    """Load extra known-bad SHA-256 digests from a newline-delimited file.

    Blank lines and lines starting with ``#`` are ignored.  Digests are
    lower-cased; anything that is not 64 hex characters is skipped with a
    warning.

    Like the PII pattern loader, this function never raises: a missing or
    unreadable file is logged and yields an empty set so the scanner still
    starts with its built-in signatures.

    Args:
        path: File to read, or ``None`` to load nothing.

    Returns:
        The set of valid digests found in the file.
    """
    if path is None:
        return frozenset()

    hash_path = Path(path)
    if not hash_path.exists():
        logger.warning("Known-hash list not found: %s; using built-in hashes only", hash_path)
        return frozenset()

    try:
        lines = hash_path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        logger.error("Cannot read known-hash list %s: %s", hash_path, exc)
        return frozenset()

    digests: set[str] = set()
    for lineno, line in enumerate(lines, start=1):
        value = line.strip().lower()
        if not value or value.startswith("#"):
            continue
        if not _SHA256_RE.match(value):
            logger.warning(
                "Known-hash list %s line %d is not a SHA-256 digest; skipping",
                hash_path,
                lineno,
            )
            continue
        digests.add(value)

    logger.info("Loaded %d known-bad hash(es) from %s", len(digests), hash_path)
    return frozenset(digests)
