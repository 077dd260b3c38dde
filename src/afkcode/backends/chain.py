from __future__ import annotations

import logging
import time
from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass
from typing import Any

from afkcode.backends.base import BackendDescriptor, TurnOutcome

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]

DEFAULT_SQUELCH_SECONDS = 300.0


@dataclass(slots=True)
class BackendState:
    squelched_until: float | None = None


class BackendChain:
    """Ordered backend preference list with per-backend rate-limit squelching.

    Each chain owns its squelch state; chains are never shared between instances.
    Selection always restarts from the most preferred backend.
    """

    def __init__(
        self,
        descriptors: Sequence[BackendDescriptor],
        *,
        squelch_seconds: float = DEFAULT_SQUELCH_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        if not descriptors:
            raise ValueError("Backend chain requires at least one backend.")
        names = [descriptor.name for descriptor in descriptors]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate backends in chain: {', '.join(names)}")
        self.descriptors = list(descriptors)
        self.squelch_seconds = squelch_seconds
        self.clock = clock
        self.event_hook = event_hook
        self._states = {descriptor.name: BackendState() for descriptor in descriptors}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @property
    def names(self) -> list[str]:
        return [descriptor.name for descriptor in self.descriptors]

    def squelched_until(self, name: str) -> float | None:
        return self._state(name).squelched_until

    def is_available(self, name: str) -> bool:
        until = self._state(name).squelched_until
        return until is None or self.clock() > until

    def next_backend(self, exclude: Collection[str] = ()) -> BackendDescriptor | None:
        now = self.clock()
        for descriptor in self.descriptors:
            if descriptor.name in exclude:
                continue
            state = self._states[descriptor.name]
            if state.squelched_until is None:
                return descriptor
            if now > state.squelched_until:
                state.squelched_until = None
                self._emit({"event": "backend_squelch_cleared", "backend": descriptor.name})
                return descriptor
        return None

    def report_outcome(self, name: str, outcome: TurnOutcome) -> None:
        state = self._state(name)
        if outcome is TurnOutcome.RATE_LIMITED:
            candidate = self.clock() + self.squelch_seconds
            if state.squelched_until is None or candidate > state.squelched_until:
                state.squelched_until = candidate
            logger.warning(
                "Backend %s rate limited; squelched for %.0fs", name, self.squelch_seconds
            )
            self._emit(
                {
                    "event": "backend_squelched",
                    "backend": name,
                    "squelch_seconds": self.squelch_seconds,
                }
            )
        elif outcome is TurnOutcome.SUCCESS:
            if state.squelched_until is not None:
                self._emit({"event": "backend_squelch_cleared", "backend": name})
            state.squelched_until = None

    def _state(self, name: str) -> BackendState:
        try:
            return self._states[name]
        except KeyError as exc:
            raise ValueError(f"Backend not in chain: {name}") from exc
