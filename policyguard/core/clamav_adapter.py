"""ClamAV clamd adapter used as the threat scanner's external engine.

Implements :class:`~policyguard.core.av_engine.AVEngineAdapter` by streaming
file bytes to a running ``clamd`` daemon with the ``INSTREAM`` command, so the
worker and the daemon need not share a filesystem.

The ``clamd`` library is synchronous.  Every call is dispatched to
:func:`asyncio.to_thread` so the event loop is never blocked.

Any connection failure, socket timeout or ``ERROR`` reply yields
``EngineScanResult(status="rejected", ...)``.  Whether a rejected engine scan
blocks the upload is decided by the threat scanner configuration
(``external_engine_fail_closed``), not here.

Usage::

    from policyguard.config import get_settings
    from policyguard.core.clamav_adapter import ClamAVAdapter

    settings = get_settings()
    adapter = ClamAVAdapter(host=settings.clamav_host, port=settings.clamav_port)
    result = await adapter.scan_bytes(file_bytes)
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from typing import Any

import clamd

from policyguard.core.av_engine import AVEngineAdapter, EngineFinding, EngineScanResult

logger = logging.getLogger(__name__)


def _signature_family(signature: str) -> str:
    """Return the first two components of a dotted ClamAV signature name.

    ``"Win.Test.EICAR_HDB-1"`` becomes ``"Win.Test"``; names with fewer than
    two components are returned unchanged.
    """
    parts = signature.split(".")
    if len(parts) >= 2:
        return ".".join(parts[:2])
    return signature


def _parse_clamd_response(
    response: dict[str, tuple[str, str | None]],
) -> tuple[str, list[EngineFinding]]:
    """Turn a clamd reply into a ``(status, findings)`` pair.

    clamd maps each scanned item (``"stream"`` for ``INSTREAM``) to a
    ``(result_code, detail)`` tuple: ``("OK", None)``, ``("FOUND", name)`` or
    ``("ERROR", message)``.  Any ``ERROR`` makes the whole verdict
    ``"rejected"``.
    """
    findings: list[EngineFinding] = []

    for item, (result_code, detail) in response.items():
        if result_code == "FOUND" and detail:
            findings.append(EngineFinding(signature=detail, family=_signature_family(detail)))
        elif result_code == "ERROR":
            logger.warning("ClamAV reported ERROR for item=%s detail=%s; treating as rejected", item, detail)
            return "rejected", []

    if findings:
        return "flagged", findings
    return "clean", []


class ClamAVAdapter(AVEngineAdapter):
    """External engine adapter talking to clamd over TCP.

    A fresh connection is opened per call; clamd does not multiplex
    requests on one connection.

    Args:
        host: clamd hostname.  Defaults to ``"clamav"``.
        port: clamd TCP port.  Defaults to ``3310``.
        timeout: Socket timeout in seconds.
    """

    ENGINE_NAME = "clamav"

    def __init__(self, host: str = "clamav", port: int = 3310, timeout: float = 30.0) -> None:
        self._host = host
        self._port = port
        self._timeout = timeout

    async def scan_bytes(self, data: bytes) -> EngineScanResult:
        start_ms = int(time.monotonic() * 1000)

        try:
            response: dict[str, tuple[str, str | None]] = await asyncio.to_thread(
                self._sync_instream, data
            )
        except Exception as exc:
            elapsed_ms = int(time.monotonic() * 1000) - start_ms
            logger.error("ClamAV instream scan error error=%r duration_ms=%d", exc, elapsed_ms)
            return EngineScanResult(status="rejected", duration_ms=elapsed_ms, engine=self.ENGINE_NAME)

        elapsed_ms = int(time.monotonic() * 1000) - start_ms
        status, findings = _parse_clamd_response(response)

        logger.info(
            "ClamAV instream scan complete status=%s findings=%d duration_ms=%d",
            status,
            len(findings),
            elapsed_ms,
        )
        return EngineScanResult(
            status=status,  # type: ignore[arg-type]
            findings=tuple(findings),
            duration_ms=elapsed_ms,
            engine=self.ENGINE_NAME,
        )

    async def ping(self) -> bool:
        try:
            response: str = await asyncio.to_thread(self._sync_ping)
            return response == "PONG"
        except Exception as exc:
            logger.warning("ClamAV ping failed: %r", exc)
            return False

    # ------------------------------------------------------------------
    # Synchronous helpers (run inside asyncio.to_thread)
    # ------------------------------------------------------------------

    def _client(self) -> clamd.ClamdNetworkSocket:
        return clamd.ClamdNetworkSocket(host=self._host, port=self._port, timeout=self._timeout)

    def _sync_instream(self, data: bytes) -> dict[str, tuple[str, Any]]:
        return self._client().instream(io.BytesIO(data))  # type: ignore[return-value]

    def _sync_ping(self) -> str:
        return self._client().ping()  # type: ignore[return-value]
