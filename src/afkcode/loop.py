from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from afkcode.backends.base import AllBackendsExhaustedError, BackendDescriptor, TurnOutcome
from afkcode.backends.chain import BackendChain
from afkcode.backends.executor import TurnExecutor, TurnResult, run_with_fallback
from afkcode.config import AfkcodeConfig, LoopMode
from afkcode.leasing.items import WorkItem
from afkcode.prompts import (
    DEFAULT_COMPLETION_TOKEN,
    DEFAULT_CONTROLLER_PROMPT,
    DEFAULT_WORKER_PROMPT,
    MULTI_CHECKLIST_WORKER_PROMPT,
    append_work_items,
    build_confirmation_prompt,
    build_prompt,
    mentions_token,
)
from afkcode.shutdown import ShutdownReason, ShutdownSignal

if TYPE_CHECKING:
    from afkcode.leasing.registry import WorkLeasingRegistry

logger = logging.getLogger(__name__)

LoopEventHook = Callable[[dict[str, Any]], None]

# Floor for re-checking leases while peers hold every open item.
LEASE_POLL_SECONDS = 0.1


class CompletionState(StrEnum):
    RUNNING = "running"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"


class InstanceOutcome(StrEnum):
    CONFIRMED = "confirmed"
    STOPPED_BY_PEER = "stopped_by_peer"
    INTERRUPTED = "interrupted"
    EXHAUSTED = "exhausted"
    CRASHED = "crashed"


@dataclass(slots=True)
class InstanceResult:
    instance_id: str
    outcome: InstanceOutcome
    iterations: int = 0
    detail: str = ""

    @property
    def abnormal(self) -> bool:
        return self.outcome in (InstanceOutcome.EXHAUSTED, InstanceOutcome.CRASHED)


@dataclass(slots=True)
class LoopSettings:
    mode: LoopMode = "worker"
    checklist: Path | None = None
    completion_token: str = DEFAULT_COMPLETION_TOKEN
    sleep_seconds: float = 15.0
    max_crash_retries: int = 1
    worker_prompt: str = DEFAULT_WORKER_PROMPT
    controller_prompt: str = DEFAULT_CONTROLLER_PROMPT
    items_per_instance: int = 1

    @property
    def multi_checklist(self) -> bool:
        return self.checklist is None

    @classmethod
    def from_config(cls, config: AfkcodeConfig, checklist: Path | None) -> LoopSettings:
        worker_prompt = config.loop.worker_prompt
        if checklist is None and worker_prompt == DEFAULT_WORKER_PROMPT:
            worker_prompt = MULTI_CHECKLIST_WORKER_PROMPT
        return cls(
            mode=config.loop.mode,
            checklist=checklist,
            completion_token=config.loop.completion_token,
            sleep_seconds=config.loop.sleep_seconds,
            max_crash_retries=config.loop.max_crash_retries,
            worker_prompt=worker_prompt,
            controller_prompt=config.loop.controller_prompt,
            items_per_instance=config.leasing.items_per_instance,
        )


class LoopEngine:
    """Drives one instance's turns until completion is confirmed or the instance stops.

    Worker mode checks every worker reply for the completion token. Controller mode
    alternates controller and worker turns and only checks controller replies. A token
    moves the instance to ``PENDING_CONFIRMATION`` and triggers exactly one
    confirmation turn; only a second token confirms. In multi-checklist mode the
    token is never requested and ``work_remaining`` decides completion instead.
    """

    def __init__(
        self,
        instance_id: str,
        settings: LoopSettings,
        chain: BackendChain,
        executor: TurnExecutor,
        *,
        shutdown: ShutdownSignal,
        registry: WorkLeasingRegistry | None = None,
        work_remaining: Callable[[], bool] | None = None,
        event_hook: LoopEventHook | None = None,
    ) -> None:
        if settings.mode == "controller" and settings.checklist is None:
            raise ValueError("Controller mode requires a checklist.")
        self.instance_id = instance_id
        self.settings = settings
        self.chain = chain
        self.executor = executor
        self.shutdown = shutdown
        self.registry = registry
        self.work_remaining = work_remaining
        self.event_hook = event_hook
        self.state = CompletionState.RUNNING
        self.consecutive_crashes = 0
        self.held_items: list[WorkItem] = []
        self.crashed_backends: set[str] = set()
        self.waiting = False

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            payload = {"instance": self.instance_id}
            payload.update(event)
            self.event_hook(payload)

    async def run(self) -> InstanceResult:
        iteration = 0
        try:
            while True:
                if self.shutdown.is_set:
                    return self._stopped(iteration)
                await self._refresh_leases()
                if self.registry is not None and not self.held_items:
                    if self.settings.multi_checklist and not await self._has_remaining_work():
                        return self._confirm(
                            iteration, reason="no incomplete checklist items remain"
                        )
                    if await self._peers_hold_work():
                        if await self._wait_for_items(iteration):
                            return self._stopped(iteration)
                        continue
                self.waiting = False
                iteration += 1
                if self.settings.mode == "controller" and iteration % 2 == 1:
                    result = await self._controller_iteration(iteration)
                else:
                    result = await self._worker_iteration(iteration)
                if result is not None:
                    return result
                if self.shutdown.is_set:
                    return self._stopped(iteration)
                logger.debug(
                    "Instance %s sleeping %.0fs before next prompt",
                    self.instance_id,
                    self.settings.sleep_seconds,
                )
                if await self.shutdown.sleep(self.settings.sleep_seconds):
                    return self._stopped(iteration)
        except AllBackendsExhaustedError as exc:
            logger.error("Instance %s: %s", self.instance_id, exc)
            self._emit({"event": "backends_exhausted", "backends": self.chain.names})
            return InstanceResult(
                self.instance_id, InstanceOutcome.EXHAUSTED, iteration, str(exc)
            )

    async def _worker_iteration(self, iteration: int) -> InstanceResult | None:
        controller_mode = self.settings.mode == "controller"
        prompt = build_prompt(
            self.settings.worker_prompt,
            checklist=self.settings.checklist,
            completion_token=self.settings.completion_token,
            include_token_instruction=not controller_mode and not self.settings.multi_checklist,
        )
        prompt = append_work_items(prompt, self.held_items)
        result = await self._execute(prompt, label="worker", turn="normal", iteration=iteration)
        if result.outcome is TurnOutcome.CRASHED:
            return await self._on_crash(result, iteration)
        self._on_success(result, label="worker", iteration=iteration)

        if self.settings.multi_checklist:
            if await self._has_remaining_work():
                return None
            return self._confirm(iteration, reason="no incomplete checklist items remain")
        if controller_mode:
            return None
        if not mentions_token(result.output, self.settings.completion_token):
            return None
        return await self._confirmation_turn(result.output, iteration, controller_mode=False)

    async def _controller_iteration(self, iteration: int) -> InstanceResult | None:
        prompt = build_prompt(
            self.settings.controller_prompt,
            checklist=self.settings.checklist,
            completion_token=self.settings.completion_token,
        )
        result = await self._execute(
            prompt, label="controller", turn="normal", iteration=iteration
        )
        if result.outcome is TurnOutcome.CRASHED:
            return await self._on_crash(result, iteration)
        self._on_success(result, label="controller", iteration=iteration)
        if not mentions_token(result.output, self.settings.completion_token):
            return None
        return await self._confirmation_turn(result.output, iteration, controller_mode=True)

    async def _confirmation_turn(
        self, previous_output: str, iteration: int, *, controller_mode: bool
    ) -> InstanceResult | None:
        if self.shutdown.is_set:
            return self._stopped(iteration)
        self.state = CompletionState.PENDING_CONFIRMATION
        self._emit({"event": "completion_pending", "iteration": iteration})
        prompt = build_confirmation_prompt(
            previous_output,
            checklist=self.settings.checklist,
            completion_token=self.settings.completion_token,
            controller_mode=controller_mode,
        )
        label = "controller" if controller_mode else "worker"
        result = await self._execute(
            prompt, label=label, turn="confirmation", iteration=iteration, quick=True
        )
        if result.outcome is TurnOutcome.CRASHED:
            self.state = CompletionState.RUNNING
            return await self._on_crash(result, iteration)
        self._on_success(result, label=label, iteration=iteration)

        if mentions_token(result.output, self.settings.completion_token):
            return self._confirm(iteration, reason="completion token confirmed")
        self.state = CompletionState.RUNNING
        logger.info("Instance %s: completion not confirmed, continuing", self.instance_id)
        self._emit({"event": "completion_rejected", "iteration": iteration})
        return None

    def _confirm(self, iteration: int, *, reason: str) -> InstanceResult:
        self.state = CompletionState.CONFIRMED
        logger.info("Instance %s confirmed completion: %s", self.instance_id, reason)
        self._emit({"event": "completion_confirmed", "iteration": iteration, "reason": reason})
        return InstanceResult(self.instance_id, InstanceOutcome.CONFIRMED, iteration, reason)

    async def _execute(
        self,
        prompt: str,
        *,
        label: str,
        turn: str,
        iteration: int,
        quick: bool = False,
    ) -> TurnResult:
        def _selected(descriptor: BackendDescriptor) -> None:
            logger.info(
                "Instance %s mode=%s iteration=%d turn=%s backend=%s",
                self.instance_id,
                label,
                iteration,
                turn,
                descriptor.name,
            )
            self._emit(
                {
                    "event": "backend_selected",
                    "backend": descriptor.name,
                    "mode": label,
                    "iteration": iteration,
                    "turn": turn,
                }
            )

        return await run_with_fallback(
            self.chain,
            self.executor,
            prompt,
            quick=quick,
            avoid=self.crashed_backends,
            on_select=_selected,
        )

    def _on_success(self, result: TurnResult, *, label: str, iteration: int) -> None:
        self.consecutive_crashes = 0
        self.crashed_backends.clear()
        self._emit(
            {
                "event": "turn_completed",
                "backend": result.backend,
                "mode": label,
                "iteration": iteration,
                "duration_seconds": round(result.duration_seconds, 3),
                "output": result.output,
            }
        )

    async def _on_crash(self, result: TurnResult, iteration: int) -> InstanceResult | None:
        self.consecutive_crashes += 1
        self.crashed_backends.add(result.backend)
        logger.warning(
            "Instance %s: backend %s crashed (exit=%s): %s",
            self.instance_id,
            result.backend,
            result.exit_code,
            result.diagnostics[:200],
        )
        self._emit(
            {
                "event": "turn_crashed",
                "backend": result.backend,
                "iteration": iteration,
                "exit_code": result.exit_code,
                "error": result.diagnostics[:400],
                "consecutive": self.consecutive_crashes,
            }
        )
        await self.release_claims()
        if self.consecutive_crashes > self.settings.max_crash_retries:
            return InstanceResult(
                self.instance_id,
                InstanceOutcome.CRASHED,
                iteration,
                f"{result.backend} crashed {self.consecutive_crashes} times in a row",
            )
        return None

    async def _refresh_leases(self) -> None:
        if self.registry is None:
            return
        if self.held_items:
            finished = await asyncio.to_thread(self.registry.prune, self.instance_id)
            finished_ids = {item.checkout_id for item in finished}
            self.held_items = [
                item for item in self.held_items if item.checkout_id not in finished_ids
            ]
        if not self.held_items:
            self.held_items = await asyncio.to_thread(
                self.registry.claim, self.settings.items_per_instance, self.instance_id
            )

    async def _peers_hold_work(self) -> bool:
        # Multi-checklist workers only ever work leased items.
        if self.settings.multi_checklist or self.registry is None:
            return self.settings.multi_checklist
        return await asyncio.to_thread(self.registry.leased_by_others, self.instance_id)

    async def _wait_for_items(self, iteration: int) -> bool:
        if not self.waiting:
            self.waiting = True
            logger.info("Instance %s: no claimable items, waiting for peers", self.instance_id)
            self._emit({"event": "waiting_for_items", "iteration": iteration})
        return await self.shutdown.sleep(max(self.settings.sleep_seconds, LEASE_POLL_SECONDS))

    async def release_claims(self) -> dict[str, bool]:
        self.held_items = []
        if self.registry is None:
            return {}
        return await asyncio.to_thread(self.registry.release_all, self.instance_id)

    async def _has_remaining_work(self) -> bool:
        if self.work_remaining is None:
            return True
        return await asyncio.to_thread(self.work_remaining)

    def _stopped(self, iteration: int) -> InstanceResult:
        if self.shutdown.reason is ShutdownReason.PEER:
            return InstanceResult(self.instance_id, InstanceOutcome.STOPPED_BY_PEER, iteration)
        return InstanceResult(self.instance_id, InstanceOutcome.INTERRUPTED, iteration)
