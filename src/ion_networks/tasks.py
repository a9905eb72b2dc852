from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from joblib import Parallel, delayed

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Stage name -> progress reached when the stage is done.
STAGES: Tuple[Tuple[str, float], ...] = (
    ("correlation", 0.5),
    ("grouping", 0.6),
    ("ms2_similarity", 0.8),
    ("annotation", 0.95),
    ("refinement", 1.0),
)


class TaskMonitor:
    """
    Progress and cancellation sink shared by all phases.

    Progress is the end of the previous stage plus the current stage's span times
    its fraction done; it never decreases. Cancellation is cooperative: workers
    poll `is_canceled()` before each unit of work.
    """

    def __init__(self, on_progress: Optional[Callable[[float], None]] = None):
        self._lock = threading.Lock()
        self._canceled = threading.Event()
        self._stage_index = -1
        self._stage_fraction = 0.0
        self._progress = 0.0
        self._on_progress = on_progress

    def cancel(self) -> None:
        self._canceled.set()

    def is_canceled(self) -> bool:
        return self._canceled.is_set()

    @property
    def stage(self) -> Optional[str]:
        if self._stage_index < 0:
            return None
        return STAGES[self._stage_index][0]

    @property
    def progress(self) -> float:
        return self._progress

    def set_stage(self, name: str) -> None:
        names = [s[0] for s in STAGES]
        if name not in names:
            raise ValueError(f"Unknown stage: {name!r} (expected one of {names}).")
        with self._lock:
            self._stage_index = names.index(name)
            self._stage_fraction = 0.0
            self._update()
        logger.debug("Stage %s started at %.3f", name, self._progress)

    def add_stage_progress(self, delta: float) -> None:
        with self._lock:
            self._stage_fraction = min(1.0, self._stage_fraction + max(0.0, float(delta)))
            self._update()

    def set_stage_progress(self, fraction: float) -> None:
        with self._lock:
            self._stage_fraction = min(1.0, max(self._stage_fraction, float(fraction)))
            self._update()

    def _update(self) -> None:
        if self._stage_index < 0:
            return
        prev = 0.0 if self._stage_index == 0 else STAGES[self._stage_index - 1][1]
        end = STAGES[self._stage_index][1]
        value = prev + (end - prev) * self._stage_fraction
        if value > self._progress:
            self._progress = value
            if self._on_progress is not None:
                self._on_progress(value)


def is_canceled(monitor: Optional[TaskMonitor]) -> bool:
    return monitor is not None and monitor.is_canceled()


def run_parallel(func: Callable[[T], R], items: Sequence[T] | Iterable[T], *, n_jobs: int = 1) -> List[R]:
    """Map `func` over independent work units on a thread pool (sequential for n_jobs=1)."""
    items = list(items)
    if not items:
        return []
    n_jobs = int(n_jobs) if n_jobs else 1
    if n_jobs == 1 or len(items) == 1:
        return [func(x) for x in items]
    return list(Parallel(n_jobs=n_jobs, prefer="threads")(delayed(func)(x) for x in items))
