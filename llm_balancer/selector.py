from __future__ import annotations

import logging
import random
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from llm_balancer.config import BackendConfig, SelectionMode
from llm_balancer.envelope import is_auto_model

logger = logging.getLogger("uvicorn.error")

__all__ = [
    "BackendSelector",
    "RandomSource",
    "RoutingDecision",
    "SelectionState",
    "weighted_pick",
]


class RandomSource(Protocol):
    def randrange(self, stop: int, /) -> int: ...


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    backend: BackendConfig
    model: str


class SelectionState:
    """Round-robin cursor shared by every request in the process."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = 0

    def take_next_index(self, size: int) -> int:
        if size <= 0:
            raise ValueError("size must be positive")
        with self._lock:
            index = self._counter % size
            self._counter += 1
        return index


def weighted_pick(
    backends: Sequence[BackendConfig], random_source: RandomSource
) -> BackendConfig:
    total_weight = sum(backend.effective_weight for backend in backends)
    remainder = random_source.randrange(total_weight)
    for backend in backends:
        remainder -= backend.effective_weight
        if remainder < 0:
            return backend
    return backends[0]


class BackendSelector:
    def __init__(
        self,
        backends: Sequence[BackendConfig],
        mode: SelectionMode = SelectionMode.WEIGHTED_RANDOM,
        *,
        random_source: RandomSource | None = None,
        state: SelectionState | None = None,
    ) -> None:
        self._backends = tuple(backends)
        self._mode = mode
        # SystemRandom keeps no generator state, so concurrent draws are safe.
        self._random = random_source or random.SystemRandom()
        self._state = state or SelectionState()

    @property
    def backends(self) -> tuple[BackendConfig, ...]:
        return self._backends

    @property
    def mode(self) -> SelectionMode:
        return self._mode

    def route(self, requested_model: str) -> RoutingDecision | None:
        if is_auto_model(requested_model):
            return self.select_next()
        return self.select_for_model(requested_model)

    def select_for_model(self, requested_model: str) -> RoutingDecision | None:
        if not self._backends:
            return None

        for backend in self._backends:
            if requested_model in backend.models:
                return RoutingDecision(backend=backend, model=requested_model)

        backend = weighted_pick(self._backends, self._random)
        decision = RoutingDecision(backend=backend, model=backend.resolved_default_model())
        logger.info(
            "route_model_substituted requested_model=%s backend=%s resolved_model=%s",
            requested_model,
            backend.name,
            decision.model,
        )
        return decision

    def select_next(self, excluding: Iterable[str] = ()) -> RoutingDecision | None:
        """Pick by the configured rotation policy, skipping excluded names.

        Returns ``None`` when the registry is empty or every backend is
        excluded.
        """
        excluded = set(excluding)
        candidates = [b for b in self._backends if b.name not in excluded]
        if not candidates:
            return None

        if self._mode == SelectionMode.ROUND_ROBIN:
            backend = self._next_round_robin(excluded) or candidates[0]
        else:
            backend = weighted_pick(candidates, self._random)
        return RoutingDecision(backend=backend, model=backend.resolved_default_model())

    def _next_round_robin(self, excluded: set[str]) -> BackendConfig | None:
        # Concurrent callers advance the same cursor, so one pass can miss
        # the last untried backend.
        size = len(self._backends)
        for _ in range(size):
            backend = self._backends[self._state.take_next_index(size)]
            if backend.name not in excluded:
                return backend
        return None
