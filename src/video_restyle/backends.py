"""Load-balanced, per-backend serialized job dispatch with failover."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, List, Sequence, TypeVar

from src.video_restyle.errors import BackendFailure, NoLiveBackendsError

__all__ = [
    "Backend",
    "BackendPool",
    "JobRunner",
]

logger = logging.getLogger(__name__)

JobT = TypeVar("JobT")
ResultT = TypeVar("ResultT")

JobRunner = Callable[["Backend", JobT], Awaitable[ResultT]]
"""Coroutine that executes one job on one backend, raising BackendFailure on error."""


@dataclass(eq=False)
class Backend:
    """One generation service instance."""

    index: int
    endpoint: str
    depth: int = 0
    alive: bool = True
    completed: int = 0
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def label(self) -> str:
        return f"backend {self.index} ({self.endpoint})"


class BackendPool(Generic[JobT, ResultT]):
    """
    Tracks live/dead backends and their in-flight queue depth.

    Jobs on one backend run strictly one at a time in submission order; the
    per-backend ``asyncio.Lock`` wakes waiters first-in first-out. Depth is
    incremented when a job is dispatched and decremented once it leaves the
    backend, whether it succeeded or failed, so counters never go negative.
    """

    def __init__(self, endpoints: Sequence[str], runner: JobRunner) -> None:
        if not endpoints:
            raise ValueError("BackendPool requires at least one endpoint")
        self.backends: List[Backend] = [
            Backend(index=idx, endpoint=endpoint) for idx, endpoint in enumerate(endpoints)
        ]
        self._runner = runner

    @property
    def live(self) -> List[Backend]:
        return [backend for backend in self.backends if backend.alive]

    def select(self) -> Backend:
        """Return the live backend with the smallest depth (ties go to the lowest index)."""

        best: Backend | None = None
        for backend in self.backends:
            if not backend.alive:
                continue
            if best is None or backend.depth < best.depth:
                best = backend
        if best is None:
            raise NoLiveBackendsError("all generation backends are dead")
        return best

    def mark_dead(self, backend: Backend) -> None:
        if backend.alive:
            logger.warning("Marking %s as dead", backend.label)
        backend.alive = False

    async def dispatch(self, backend: Backend, job: JobT) -> ResultT:
        """
        Queue ``job`` behind any job already on ``backend`` and run it.

        Raises :class:`BackendFailure` when the job fails, or when the backend
        died while the job was still waiting its turn.
        """

        backend.depth += 1
        try:
            async with backend._lock:
                if not backend.alive:
                    raise BackendFailure(
                        f"{backend.label} died before the job started",
                        endpoint=backend.endpoint,
                    )
                result = await self._runner(backend, job)
                backend.completed += 1
                return result
        finally:
            backend.depth -= 1

    async def run(self, job: JobT) -> ResultT:
        """Run ``job`` on the least-loaded live backend, failing over until one succeeds."""

        while True:
            backend = self.select()
            try:
                return await self.dispatch(backend, job)
            except BackendFailure as exc:
                if backend.alive:
                    logger.warning("%s failed: %s; resubmitting job", backend.label, exc)
                self.mark_dead(backend)

    def snapshot(self) -> list[dict[str, object]]:
        """Plain-data view of each backend for reporting."""

        return [
            {
                "index": backend.index,
                "endpoint": backend.endpoint,
                "depth": backend.depth,
                "alive": backend.alive,
                "completed": backend.completed,
            }
            for backend in self.backends
        ]
