"""Optimistic mutations against cached views.

Every mutation snapshots the views it touches, applies a local guess,
performs the durable call and then either commits the authoritative
result or puts the snapshot back exactly as it was. Mutations that share
an entity key or any view run one at a time in submission order.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from tripboard.errors import is_stale_error


logger = logging.getLogger(__name__)


@dataclass
class CachedView:
    data: Any
    stale: bool = False


class ViewCache:
    """Keyed view data shared with readers. Reads return copies."""

    def __init__(self) -> None:
        self._views: dict[str, CachedView] = {}
        self._lock = threading.RLock()

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._views

    def read(self, key: str, default: Any = None) -> Any:
        with self._lock:
            view = self._views.get(key)
            if view is None:
                return default
            return copy.deepcopy(view.data)

    def is_stale(self, key: str) -> bool:
        with self._lock:
            view = self._views.get(key)
            return view is None or view.stale

    def write(self, key: str, data: Any, *, stale: bool = False) -> None:
        with self._lock:
            self._views[key] = CachedView(data=copy.deepcopy(data), stale=stale)

    def invalidate(self, keys: list[str]) -> None:
        with self._lock:
            for key in keys:
                view = self._views.get(key)
                if view is not None:
                    view.stale = True

    def snapshot(self, keys: list[str]) -> dict[str, CachedView | None]:
        with self._lock:
            return {key: copy.deepcopy(self._views.get(key)) for key in keys}

    def restore(self, snapshot: dict[str, CachedView | None]) -> None:
        with self._lock:
            for key, view in snapshot.items():
                if view is None:
                    self._views.pop(key, None)
                else:
                    self._views[key] = copy.deepcopy(view)


class EntityGate:
    """FIFO admission per entity key."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        # key -> [next ticket to hand out, ticket now being served]
        self._tickets: dict[str, list[int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._cond:
            state = self._tickets.setdefault(key, [0, 0])
            ticket = state[0]
            state[0] += 1
            while state[1] != ticket:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                state[1] += 1
                if state[0] == state[1]:
                    del self._tickets[key]
                self._cond.notify_all()

    def in_flight(self, key: str) -> int:
        with self._cond:
            state = self._tickets.get(key)
            return 0 if state is None else state[0] - state[1]


ViewTransform = Callable[[Any], Any]
CommitFn = Callable[[Any, dict[str, Any]], dict[str, Any]]


@dataclass
class MutationSpec:
    entity_key: str
    durable: Callable[[], Any]
    speculative: dict[str, ViewTransform] = field(default_factory=dict)
    commit: CommitFn | None = None
    invalidate: list[str] = field(default_factory=list)
    label: str = ""

    @property
    def affected_keys(self) -> list[str]:
        keys: list[str] = []
        for key in list(self.speculative) + list(self.invalidate):
            if key not in keys:
                keys.append(key)
        return keys


class OptimisticMutationCoordinator:
    def __init__(
        self,
        cache: ViewCache | None = None,
        on_stale: Callable[[list[str]], None] | None = None,
    ) -> None:
        self.cache = cache or ViewCache()
        self.on_stale = on_stale
        self.gate = EntityGate()

    def in_flight(self, entity_key: str) -> int:
        return self.gate.in_flight(entity_key)

    def refresh(self, key: str, fetch: Callable[[], Any]) -> Any:
        """Replace a view with freshly fetched data once no mutation holds it."""
        with self.gate.hold(key):
            data = fetch()
            self.cache.write(key, data)
            return self.cache.read(key)

    def read(self, key: str, fetch: Callable[[], Any] | None = None) -> Any:
        if fetch is not None and self.cache.is_stale(key):
            return self.refresh(key, fetch)
        return self.cache.read(key)

    def apply(self, spec: MutationSpec) -> Any:
        # Views are shared across entities, so they are gated too. Keys are
        # taken in sorted order so overlapping mutations cannot deadlock.
        try:
            with ExitStack() as stack:
                for key in sorted({spec.entity_key, *spec.affected_keys}):
                    stack.enter_context(self.gate.hold(key))
                return self._run(spec)
        except Exception as exc:
            if is_stale_error(exc) and self.on_stale is not None:
                self.on_stale(spec.affected_keys)
            raise

    def _run(self, spec: MutationSpec) -> Any:
        keys = spec.affected_keys
        snapshot = self.cache.snapshot(keys)
        try:
            for key, transform in spec.speculative.items():
                if snapshot.get(key) is None:
                    continue
                self.cache.write(key, transform(self.cache.read(key)), stale=self.cache.is_stale(key))
            result = spec.durable()
        except Exception as exc:
            self.cache.restore(snapshot)
            logger.info("mutation %s on %s rolled back: %s", spec.label or "?", spec.entity_key, exc)
            raise

        try:
            if spec.commit is not None:
                current = {key: self.cache.read(key) for key in keys if self.cache.has(key)}
                updates = spec.commit(result, current)
                for key, data in (updates or {}).items():
                    if key not in keys:
                        raise ValueError(f"commit for {spec.entity_key} touched undeclared view {key}")
                    self.cache.write(key, data)
        finally:
            self.cache.invalidate(keys)
        return result
