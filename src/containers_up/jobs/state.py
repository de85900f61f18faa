"""Job state machine.

Every status change a job goes through is an action applied to its current
status (``None`` when the job does not exist yet). The table below is the
complete set of allowed changes; anything else raises
``InvalidTransitionError``.
"""

from __future__ import annotations

from enum import StrEnum

from containers_up.errors import InvalidTransitionError
from containers_up.models import JobStatus


class JobAction(StrEnum):
    """Things that happen to a job."""

    OPEN = "open"  # PR opened or update detected by a scan
    CLOSE = "close"  # PR closed without merging
    QUEUE = "queue"  # merged, but another job is running on the host
    START = "start"  # merged and the host is free
    COMPLETE = "complete"  # pull and restart succeeded
    FAIL = "fail"  # pull and restart raised
    TIMEOUT = "timeout"  # the queue wait ran out


_RESTARTABLE = (None, JobStatus.OPEN, JobStatus.CLOSED, JobStatus.FAILED, JobStatus.COMPLETED)

TRANSITIONS: dict[tuple[JobStatus | None, JobAction], JobStatus] = {
    **{(status, JobAction.OPEN): JobStatus.OPEN for status in _RESTARTABLE},
    **{
        (status, JobAction.CLOSE): JobStatus.CLOSED
        for status in (None, JobStatus.OPEN, JobStatus.CLOSED, JobStatus.FAILED)
    },
    **{(status, JobAction.QUEUE): JobStatus.QUEUED for status in _RESTARTABLE},
    (JobStatus.QUEUED, JobAction.QUEUE): JobStatus.QUEUED,
    **{(status, JobAction.START): JobStatus.RUNNING for status in _RESTARTABLE},
    (JobStatus.QUEUED, JobAction.START): JobStatus.RUNNING,
    (JobStatus.RUNNING, JobAction.COMPLETE): JobStatus.COMPLETED,
    (JobStatus.RUNNING, JobAction.FAIL): JobStatus.FAILED,
    (JobStatus.QUEUED, JobAction.TIMEOUT): JobStatus.FAILED,
}


def next_status(current: JobStatus | None, action: JobAction) -> JobStatus:
    """Return the status *action* moves a job in *current* to."""
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        state = current.value if current else "new"
        raise InvalidTransitionError(f"Cannot {action.value} a {state} job") from None


def can_apply(current: JobStatus | None, action: JobAction) -> bool:
    return (current, action) in TRANSITIONS
