"""Job state machine and the per-job record the orchestrator keeps in memory."""

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum

from services.shared.errors import InvalidTransition
from services.shared.schema import AuditEntry, Decision, JobRequest, JobState, StageName

TERMINAL_STATES = frozenset({JobState.DONE, JobState.FAILED, JobState.CANCELLED})

TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.EXTRACTING, JobState.FAILED, JobState.CANCELLED}),
    JobState.EXTRACTING: frozenset({JobState.ANALYZING, JobState.FAILED, JobState.CANCELLED}),
    JobState.ANALYZING: frozenset(
        {JobState.WAITING_PAYMENT, JobState.AGGREGATING, JobState.FAILED, JobState.CANCELLED}
    ),
    JobState.WAITING_PAYMENT: frozenset(
        {JobState.AGGREGATING, JobState.FAILED, JobState.CANCELLED}
    ),
    JobState.AGGREGATING: frozenset({JobState.DONE, JobState.FAILED, JobState.CANCELLED}),
    JobState.DONE: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


class JobLookup(StrEnum):
    """Non-decision answers from ``Orchestrator.get_decision``."""

    PENDING = "PENDING"
    CANCELLED = "CANCELLED"
    NOT_FOUND = "NOT_FOUND"


def check_transition(current: JobState, target: JobState) -> None:
    """Raise InvalidTransition unless ``current -> target`` is allowed."""
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(f"Invalid job transition {current} -> {target}")


@dataclass
class JobRecord:
    """In-flight bookkeeping for one run of a job.

    ``sequence`` continues from the audit entries already stored for the job,
    so a reprocessed job keeps a single ordered audit trail.
    """

    job: JobRequest
    version: int = 1
    sequence: int = 0
    state: JobState = JobState.QUEUED
    task: asyncio.Task | None = None
    decision: Decision | None = None
    audit: list[AuditEntry] = field(default_factory=list)
    # Set while a terminal decision is being saved; cancellation is refused
    committing: bool = False

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def record(
        self, event: str, *, stage: StageName | None = None, detail: str | None = None
    ) -> AuditEntry:
        entry = AuditEntry(
            job_id=self.job_id,
            sequence=self.sequence,
            event=event,
            state=self.state,
            stage=stage,
            detail=detail,
        )
        self.sequence += 1
        self.audit.append(entry)
        return entry

    def transition(
        self, target: JobState, *, stage: StageName | None = None, detail: str | None = None
    ) -> AuditEntry:
        """Move to ``target`` and return the audit entry for the change.

        Raises:
            InvalidTransition: If the state machine does not allow the move
        """
        return self.apply(self.prepare(target, stage=stage, detail=detail))

    def prepare(
        self, target: JobState, *, stage: StageName | None = None, detail: str | None = None
    ) -> AuditEntry:
        """Build the audit entry for ``target`` without moving.

        Used when the entry must be part of a decision that is saved before
        the transition takes effect.

        Raises:
            InvalidTransition: If the state machine does not allow the move
        """
        check_transition(self.state, target)
        return AuditEntry(
            job_id=self.job_id,
            sequence=self.sequence,
            event="STATE_CHANGED",
            state=target,
            stage=stage,
            detail=detail,
        )

    def apply(self, entry: AuditEntry) -> AuditEntry:
        """Apply a prepared transition entry.

        Raises:
            InvalidTransition: If the state or sequence moved since it was prepared
        """
        check_transition(self.state, entry.state)  # type: ignore[arg-type]
        if entry.sequence != self.sequence:
            raise InvalidTransition(
                f"Stale transition entry {entry.sequence}; record is at {self.sequence}"
            )
        self.state = entry.state
        self.sequence += 1
        self.audit.append(entry)
        return entry
