"""Detection pattern tables for PolicyGuard.

Provides the built-in PII pattern set, threat signature tables and loaders
for operator-supplied extensions.
"""

from policyguard.core.patterns.pii_patterns import (
    BUILTIN_PATTERNS,
    PatternDefinition,
    get_patterns,
    load_custom_patterns,
)
from policyguard.core.patterns.threat_signatures import (
    CONTENT_PATTERNS,
    EXECUTABLE_SIGNATURES,
    KNOWN_MALWARE_HASHES,
    MACRO_INDICATORS,
    load_known_hashes,
)

__all__ = [
    "BUILTIN_PATTERNS",
    "CONTENT_PATTERNS",
    "EXECUTABLE_SIGNATURES",
    "KNOWN_MALWARE_HASHES",
    "MACRO_INDICATORS",
    "PatternDefinition",
    "get_patterns",
    "load_custom_patterns",
    "load_known_hashes",
]
