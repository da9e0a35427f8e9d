"""External AV engine adapter interface and its result types.

The threat scanner's heuristic layers run in-process.  An optional external
anti-virus engine (see :class:`~policyguard.core.clamav_adapter.ClamAVAdapter`)
can be plugged in as a fourth layer; its verdicts are unioned into the
scanner's detections.

Adapters must **never** raise from :meth:`AVEngineAdapter.scan_bytes`.  An
unreachable daemon, timeout or unexpected reply is reported as
``EngineScanResult(status="rejected", ...)`` and the threat scanner decides
how severe an unavailable engine is.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Literal

EngineStatus = Literal["clean", "flagged", "rejected"]


@dataclass(frozen=True)
class EngineFinding:
    """A single signature hit reported by an external engine.

    Attributes:
        signature: Raw signature name (e.g. ``"Win.Test.EICAR_HDB-1"``).
        family: First two dot-separated components of *signature*.
        severity: Engines rarely grade hits, so adapters default to
            ``"high"``.
    """

    signature: str
    family: str
    severity: Literal["low", "medium", "high", "critical"] = "high"


@dataclass(frozen=True)
class EngineScanResult:
    """Verdict from one external engine call.

    Attributes:
        status: ``"clean"``, ``"flagged"`` (one or more findings) or
            ``"rejected"`` (the engine could not complete the scan).
        findings: Signature hits; empty unless ``status == "flagged"``.
        duration_ms: Wall-clock time of the call.
        engine: Engine name, e.g. ``"clamav"``.
    """

    status: EngineStatus
    findings: tuple[EngineFinding, ...] = field(default_factory=tuple)
    duration_ms: int = 0
    engine: str = "unknown"


class AVEngineAdapter(abc.ABC):
    """Abstract base class for external AV engine adapters."""

    @abc.abstractmethod
    async def scan_bytes(self, data: bytes) -> EngineScanResult:
        """Scan in-memory *data* and return a verdict.

        Implementations **must** return ``status="rejected"`` rather than
        raise on any engine failure.
        """

    @abc.abstractmethod
    async def ping(self) -> bool:
        """Return ``True`` if the engine is reachable and healthy."""
