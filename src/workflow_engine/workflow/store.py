"""In-memory instance store with per-instance mutation locks.

All writes to an instance happen inside ``locked(instance_id)``. Side effects
of a write (action handlers, event listeners) are queued with ``after_release``
and run once the thread leaves its outermost locked block, so slow handlers
never hold an instance lock. Readers get deep copies taken under the same lock,
so they never observe a half-applied change.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from .clock import Clock
from .errors import NotFoundError
from .models import WorkflowInstance


def history_timestamp(clock: Clock, instance: WorkflowInstance) -> datetime:
    """Current time, clamped so an instance's history never goes backwards."""

    now = clock.now()
    if instance.history and instance.history[-1].timestamp > now:
        return instance.history[-1].timestamp
    return now


class InstanceStore:
    def __init__(self) -> None:
        self._instances: dict[str, WorkflowInstance] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()
        self._local = threading.local()

    def add(self, instance: WorkflowInstance) -> None:
        with self._guard:
            self._instances[instance.id] = instance
            self._locks.setdefault(instance.id, threading.RLock())

    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    def after_release(self, effect: Callable[[], object]) -> None:
        """Run ``effect`` once this thread holds no instance lock (now, if it holds none)."""

        if self._depth() == 0:
            effect()
            return
        self._local.effects.append(effect)

    def _run_effects(self) -> None:
        while self._local.effects:
            effects, self._local.effects = self._local.effects, []
            for effect in effects:
                effect()

    @contextmanager
    def locked(self, instance_id: str) -> Iterator[WorkflowInstance]:
        """Yield the live instance while holding its mutation lock."""

        with self._guard:
            lock = self._locks.get(instance_id)
        if lock is None:
            raise NotFoundError("workflow instance", instance_id)
        depth = self._depth()
        if depth == 0:
            self._local.effects = []
        self._local.depth = depth + 1
        try:
            with lock:
                with self._guard:
                    instance = self._instances.get(instance_id)
                if instance is None:
                    raise NotFoundError("workflow instance", instance_id)
                yield instance
        finally:
            self._local.depth = depth
            # Writes already applied stay applied, so their effects run even on error.
            if depth == 0:
                self._run_effects()

    def snapshot(self, instance_id: str) -> WorkflowInstance | None:
        try:
            with self.locked(instance_id) as instance:
                return instance.model_copy(deep=True)
        except NotFoundError:
            return None

    def snapshots(self) -> list[WorkflowInstance]:
        out: list[WorkflowInstance] = []
        for instance_id in self.ids():
            snap = self.snapshot(instance_id)
            if snap is not None:
                out.append(snap)
        return out

    def ids(self) -> list[str]:
        with self._guard:
            return list(self._instances)

    def remove_if(self, instance_id: str, predicate: Callable[[WorkflowInstance], bool]) -> bool:
        try:
            with self.locked(instance_id) as instance:
                if not predicate(instance):
                    return False
                with self._guard:
                    del self._instances[instance_id]
                    del self._locks[instance_id]
                return True
        except NotFoundError:
            return False

    def count(self, predicate: Callable[[WorkflowInstance], bool]) -> int:
        with self._guard:
            instances = list(self._instances.values())
        return sum(1 for instance in instances if predicate(instance))

    def __len__(self) -> int:
        with self._guard:
            return len(self._instances)
