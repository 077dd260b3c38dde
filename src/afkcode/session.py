from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from afkcode.backends.base import AgentBackend
from afkcode.backends.catalog import build_backend, build_descriptors, parse_backend_order
from afkcode.backends.chain import BackendChain
from afkcode.backends.executor import TurnExecutor
from afkcode.config import AfkcodeConfig
from afkcode.coordinator import CoordinatorSummary, ParallelCoordinator
from afkcode.events import EventLog, instance_log_path
from afkcode.leasing.registry import WorkLeasingRegistry
from afkcode.leasing.scanner import has_incomplete_items
from afkcode.leasing.selector import LeaseFilters
from afkcode.loop import LoopEngine, LoopSettings
from afkcode.shutdown import ShutdownReason, ShutdownSignal
from afkcode.verifier import SpiralController, SpiralOutcome, Verifier

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
BackendFactory = Callable[[str, EventHook], AgentBackend]

FORCE_EXIT_WINDOW_SECONDS = 5.0


def _resolve(base: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def default_backend_factory(config: AfkcodeConfig, working_directory: Path) -> BackendFactory:
    def factory(name: str, hook: EventHook) -> AgentBackend:
        return build_backend(
            name,
            working_directory=working_directory,
            warp_api_key=config.backends.warp_api_key,
            warp_api_base=config.backends.warp_api_base,
            event_hook=hook,
        )

    return factory


@dataclass(slots=True)
class RunSession:
    """Everything one ``afkcode run`` needs, built from configuration."""

    config: AfkcodeConfig
    checklist: Path | None
    working_directory: Path
    shutdown: ShutdownSignal
    backend_factory: BackendFactory
    registry: WorkLeasingRegistry | None = None

    @classmethod
    def create(
        cls,
        config: AfkcodeConfig,
        checklist: Path | None,
        *,
        working_directory: Path,
        backend_factory: BackendFactory | None = None,
        shutdown: ShutdownSignal | None = None,
    ) -> RunSession:
        config.validate()
        config.backends.order = parse_backend_order(config.backends.order)
        if config.loop.mode == "controller" and checklist is None:
            raise ValueError("Controller mode needs a checklist file.")

        if backend_factory is None:
            backend_factory = default_backend_factory(config, working_directory)

        session = cls(
            config=config,
            checklist=checklist,
            working_directory=working_directory,
            shutdown=shutdown or ShutdownSignal(),
            backend_factory=backend_factory,
        )
        if config.leasing.enabled and session.leasing_root.exists():
            session.registry = WorkLeasingRegistry(
                session.leasing_root,
                checklist_name=config.leasing.checklist_name,
                filters=LeaseFilters(
                    incomplete=True,
                    unverified=config.leasing.include_unverified,
                    blocked=config.leasing.include_blocked,
                ),
                lock_timeout=config.leasing.lock_timeout_seconds,
                event_hook=session.event_log("leasing"),
            )
        return session

    @property
    def leasing_root(self) -> Path:
        return _resolve(self.working_directory, self.config.leasing.base_path)

    @property
    def multi_checklist(self) -> bool:
        return self.checklist is None

    def event_log(self, source: str) -> EventLog:
        log_file = self.config.logging.log_file
        if not log_file:
            return EventLog(None, source=source)
        base = _resolve(self.working_directory, log_file)
        return EventLog(instance_log_path(base, source), source=source)

    def build_turn_stack(self, hook: EventHook) -> tuple[BackendChain, TurnExecutor]:
        backends = self.config.backends
        chain = BackendChain(
            build_descriptors(backends.order, backends.models),
            squelch_seconds=backends.squelch_seconds,
            event_hook=hook,
        )
        executor = TurnExecutor(
            {name: self.backend_factory(name, hook) for name in backends.order},
            timeout_seconds=backends.timeout_seconds or None,
        )
        return chain, executor

    def work_remaining(self) -> bool:
        return has_incomplete_items(self.leasing_root, self.config.leasing.checklist_name)

    def build_engine(self, instance_id: str) -> LoopEngine:
        hook = self.event_log(instance_id)
        chain, executor = self.build_turn_stack(hook)
        return LoopEngine(
            instance_id,
            LoopSettings.from_config(self.config, self.checklist),
            chain,
            executor,
            shutdown=self.shutdown,
            registry=self.registry,
            work_remaining=self.work_remaining if self.multi_checklist else None,
            event_hook=hook,
        )

    def build_verifier(self) -> Verifier:
        hook = self.event_log("verifier")
        chain, executor = self.build_turn_stack(hook)
        template = None
        if self.config.verify.prompt_path:
            prompt_path = _resolve(self.working_directory, self.config.verify.prompt_path)
            template = prompt_path.read_text(encoding="utf-8")
        return Verifier(
            self.leasing_root,
            chain,
            executor,
            completion_token=self.config.loop.completion_token,
            checklist_name=self.config.leasing.checklist_name,
            prompt_template=template,
            event_hook=hook,
        )

    async def run_workers(self) -> CoordinatorSummary:
        coordinator = ParallelCoordinator(
            self.build_engine,
            num_instances=self.config.parallel.num_instances,
            warmup_delay=self.config.parallel.warmup_delay,
            shutdown=self.shutdown,
            event_hook=self.event_log("coordinator"),
        )
        summary = await coordinator.run_workers()
        logger.info("Worker phase finished: %s", summary.counts())
        return summary

    async def run(self) -> SpiralOutcome:
        controller = SpiralController(
            self.run_workers,
            shutdown=self.shutdown,
            verifier_factory=self.build_verifier if self.config.verify.enabled else None,
            spiral=self.config.verify.spiral,
            max_spirals=self.config.verify.max_spirals,
            work_remaining=self.work_remaining if self.multi_checklist else None,
        )
        return await controller.run()


class InterruptHandler:
    """First interrupt stops the run gracefully; a second one within five seconds exits."""

    def __init__(
        self,
        shutdown: ShutdownSignal,
        *,
        clock: Callable[[], float] = time.monotonic,
        force_exit: Callable[[int], None] = os._exit,
    ) -> None:
        self.shutdown = shutdown
        self.clock = clock
        self.force_exit = force_exit
        self._first_at: float | None = None

    def __call__(self) -> None:
        now = self.clock()
        if self._first_at is not None and now - self._first_at <= FORCE_EXIT_WINDOW_SECONDS:
            logger.warning("Second interrupt received; exiting immediately")
            self.force_exit(130)
            return
        self._first_at = now
        logger.warning(
            "Interrupt received; finishing current turns. Press Ctrl+C again within %.0fs "
            "to force exit.",
            FORCE_EXIT_WINDOW_SECONDS,
        )
        self.shutdown.trigger(ShutdownReason.INTERRUPT)


@contextmanager
def interrupt_handlers(shutdown: ShutdownSignal) -> Iterator[InterruptHandler]:
    loop = asyncio.get_running_loop()
    handler = InterruptHandler(shutdown)
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handler)
            installed.append(signum)
        except (NotImplementedError, RuntimeError, ValueError):
            # Only the main thread of a Unix event loop may install handlers.
            continue
    try:
        yield handler
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
