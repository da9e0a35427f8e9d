"""Processing stage state machine.

A pipeline run moves through eight fixed stages (:class:`StageName`), in
order.  Each stage follows its own small state machine::

    pending --start--> running --complete--> completed
                               \\--fail-----> failed

:func:`next_status` is the complete transition table: every
``(status, event)`` pair either yields the next status or raises
:class:`StageTransitionError`.  :class:`StageTracker` adds the run-level
rules on top: a stage may only start once every earlier stage has completed,
and at most one stage is running at any time.  Skipping, re-ordering and
re-entering a failed stage therefore all raise.

Usage::

    from policyguard.core.stages import StageName, StageTracker

    tracker = StageTracker()
    tracker.start(StageName.VIRUS_SCAN)
    tracker.complete(StageName.VIRUS_SCAN)
    tracker.snapshot()[0].status   # StageStatus.COMPLETED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime, timezone


class StageTransitionError(Exception):
    """Raised when a stage transition is not allowed by the state machine."""


class StageName(str, enum.Enum):
    VIRUS_SCAN = "virus-scan"
    TEXT_EXTRACTION = "text-extraction"
    PII_DETECTION = "pii-detection"
    ENTITY_RECOGNITION = "entity-recognition"
    FRAMEWORK_MAPPING = "framework-mapping"
    GAP_ANALYSIS = "gap-analysis"
    POLICY_REDLINING = "policy-redlining"
    ARTIFACT_GENERATION = "artifact-generation"


STAGE_ORDER: tuple[StageName, ...] = tuple(StageName)


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StageEvent(str, enum.Enum):
    START = "start"
    COMPLETE = "complete"
    FAIL = "fail"


_TRANSITIONS: dict[tuple[StageStatus, StageEvent], StageStatus] = {
    (StageStatus.PENDING, StageEvent.START): StageStatus.RUNNING,
    (StageStatus.RUNNING, StageEvent.COMPLETE): StageStatus.COMPLETED,
    (StageStatus.RUNNING, StageEvent.FAIL): StageStatus.FAILED,
}


def next_status(current: StageStatus, event: StageEvent) -> StageStatus:
    """Return the status reached from *current* on *event*.

    Raises:
        StageTransitionError: For any pair not in the transition table.
    """
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError:
        raise StageTransitionError(
            f"Cannot apply '{event.value}' to a stage in status '{current.value}'"
        ) from None


@dataclass(frozen=True)
class ProcessingStage:
    """Point-in-time view of one stage.

    Attributes:
        name: The stage.
        status: Current :class:`StageStatus`.
        started_at: UTC time the stage started running.
        ended_at: UTC time the stage completed or failed.
        error: Failure message, set only for failed stages.
        progress: Percentage; ``100`` once completed.
    """

    name: StageName
    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    progress: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "error": self.error,
            "progress": self.progress,
        }


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class StageTracker:
    """Tracks the stages of one pipeline run.

    Owned by a single run; not shared between runs.
    """

    def __init__(self) -> None:
        self._stages: dict[StageName, ProcessingStage] = {
            name: ProcessingStage(name=name) for name in STAGE_ORDER
        }

    def get(self, name: StageName) -> ProcessingStage:
        return self._stages[name]

    @property
    def running(self) -> ProcessingStage | None:
        """The stage currently running, if any."""
        for stage in self._stages.values():
            if stage.status is StageStatus.RUNNING:
                return stage
        return None

    def start(self, name: StageName) -> ProcessingStage:
        """Move *name* from pending to running.

        Raises:
            StageTransitionError: If another stage is running, an earlier
                stage has not completed, or *name* is not pending.
        """
        running = self.running
        if running is not None:
            raise StageTransitionError(
                f"Cannot start '{name.value}' while '{running.name.value}' is running"
            )
        for earlier in STAGE_ORDER[: STAGE_ORDER.index(name)]:
            if self._stages[earlier].status is not StageStatus.COMPLETED:
                raise StageTransitionError(
                    f"Cannot start '{name.value}' before '{earlier.value}' has completed"
                )
        return self._transition(name, StageEvent.START, started_at=_utcnow())

    def complete(self, name: StageName) -> ProcessingStage:
        return self._transition(name, StageEvent.COMPLETE, ended_at=_utcnow(), progress=100)

    def fail(self, name: StageName, error: str) -> ProcessingStage:
        return self._transition(name, StageEvent.FAIL, ended_at=_utcnow(), error=error)

    def snapshot(self) -> tuple[ProcessingStage, ...]:
        """Return the stages in pipeline order.

        Stages are immutable, so later transitions never alter a snapshot.
        """
        return tuple(self._stages[name] for name in STAGE_ORDER)

    def _transition(self, name: StageName, event: StageEvent, **changes: object) -> ProcessingStage:
        stage = self._stages[name]
        updated = replace(stage, status=next_status(stage.status, event), **changes)
        self._stages[name] = updated
        return updated
