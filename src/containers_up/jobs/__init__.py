"""Update jobs: storage, state machine and webhook admission."""

from containers_up.jobs.state import JobAction, next_status
from containers_up.jobs.store import HostProvider, JobStore, LogStore, MemoryStore

__all__ = [
    "HostProvider",
    "JobAction",
    "JobStore",
    "LogStore",
    "MemoryStore",
    "next_status",
]
