"""Per-host runtime state.

Everything the pipeline mutates per host inside this process lives in one
``HostRegistry`` owned by the application: the admission lock, the scan
in-flight flag and the pending squash timer. All read-modify-write
operations here are synchronous so they are atomic on the event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field

from containers_up.logging import get_logger

log = get_logger("containers_up.hosts")


@dataclass
class HostState:
    """Mutable runtime state for one host."""

    admission_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    scanning: bool = False
    squash_task: asyncio.Task[None] | None = None


class HostRegistry:
    """Owns the runtime state of every host the process has touched."""

    def __init__(self) -> None:
        self._states: dict[int, HostState] = {}
        self._closed = False

    def state(self, host_id: int) -> HostState:
        state = self._states.get(host_id)
        if state is None:
            state = self._states[host_id] = HostState()
        return state

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Scan flag
    # ------------------------------------------------------------------

    def try_begin_scan(self, host_id: int) -> bool:
        """Mark *host_id* as scanning; False if a scan is already in flight."""
        state = self.state(host_id)
        if state.scanning:
            return False
        state.scanning = True
        return True

    def end_scan(self, host_id: int) -> None:
        self.state(host_id).scanning = False

    def is_scanning(self, host_id: int) -> bool:
        return self.state(host_id).scanning

    # ------------------------------------------------------------------
    # Squash timer
    # ------------------------------------------------------------------

    def pending_squash(self, host_id: int) -> asyncio.Task[None] | None:
        task = self.state(host_id).squash_task
        return task if task is not None and not task.done() else None

    def replace_squash_task(self, host_id: int, task: asyncio.Task[None]) -> bool:
        """Register *task* as the host's squash timer, cancelling the previous one.

        Returns True if a pending timer was replaced.
        """
        state = self.state(host_id)
        previous = state.squash_task
        state.squash_task = task
        if previous is not None and previous is not task and not previous.done():
            previous.cancel()
            return True
        return False

    def clear_squash_task(self, host_id: int, task: asyncio.Task[None]) -> None:
        """Forget *task* if it is still the host's registered timer."""
        state = self.state(host_id)
        if state.squash_task is task:
            state.squash_task = None

    async def close(self) -> None:
        """Cancel pending squash timers; in-flight remote commands are left to finish."""
        self._closed = True
        pending = [
            state.squash_task
            for state in self._states.values()
            if state.squash_task is not None and not state.squash_task.done()
        ]
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if pending:
            log.info("squash_timers_cancelled", count=len(pending))
