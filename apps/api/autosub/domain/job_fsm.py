"""Job lifecycle transition rules."""

from autosub.errors import JobTerminalImmutable, JobTransitionInvalid
from autosub.schemas.job import JobStatus

TERMINAL_STATES: frozenset[JobStatus] = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
        JobStatus.REFUNDED,
    }
)

_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.IDLE: {JobStatus.VALIDATING, JobStatus.CANCELLED},
    JobStatus.VALIDATING: {JobStatus.CREDITS_RESERVED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.CREDITS_RESERVED: {JobStatus.UPLOADING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.UPLOADING: {JobStatus.QUEUED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.QUEUED: {
        JobStatus.QUEUED,
        JobStatus.PROCESSING,
        JobStatus.DOWNLOADING,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    },
    JobStatus.PROCESSING: {
        JobStatus.PROCESSING,
        JobStatus.QUEUED,
        JobStatus.DOWNLOADING,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    },
    JobStatus.DOWNLOADING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    # A failed attempt re-enters validation when it is retried.
    JobStatus.FAILED: {JobStatus.VALIDATING, JobStatus.REFUNDED},
    JobStatus.CANCELLED: {JobStatus.REFUNDED},
    JobStatus.COMPLETED: set(),
    JobStatus.REFUNDED: set(),
}


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATES


def allowed_next_statuses(status: JobStatus) -> list[JobStatus]:
    """Return deterministically ordered allowed successors for a status."""
    return sorted(_ALLOWED_TRANSITIONS.get(status, set()), key=lambda s: s.value)


def ensure_transition(old_status: JobStatus, new_status: JobStatus) -> None:
    """Validate transition according to lifecycle rules."""
    allowed = _ALLOWED_TRANSITIONS.get(old_status, set())
    if not allowed:
        raise JobTerminalImmutable(
            current_status=old_status,
            attempted_status=new_status,
            allowed_next_statuses=[],
        )

    if new_status not in allowed:
        raise JobTransitionInvalid(
            current_status=old_status,
            attempted_status=new_status,
            allowed_next_statuses=allowed_next_statuses(old_status),
        )
