from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from afkcode.leasing.errors import ClaimConflictError
from afkcode.loop import InstanceOutcome, InstanceResult, LoopEngine
from afkcode.shutdown import ShutdownReason, ShutdownSignal

logger = logging.getLogger(__name__)

EngineFactory = Callable[[str], LoopEngine]
CoordinatorEventHook = Callable[[dict[str, Any]], None]

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


class PhaseStatus(StrEnum):
    CONFIRMED = "confirmed"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


@dataclass(slots=True)
class CoordinatorSummary:
    results: list[InstanceResult] = field(default_factory=list)
    interrupted: bool = False

    @property
    def confirmed(self) -> bool:
        return any(result.outcome is InstanceOutcome.CONFIRMED for result in self.results)

    @property
    def overall(self) -> PhaseStatus:
        if self.confirmed:
            return PhaseStatus.CONFIRMED
        if self.interrupted:
            return PhaseStatus.INTERRUPTED
        return PhaseStatus.FAILED

    @property
    def exit_code(self) -> int:
        if self.overall is PhaseStatus.CONFIRMED:
            return EXIT_OK
        if self.overall is PhaseStatus.INTERRUPTED:
            return EXIT_INTERRUPTED
        return EXIT_FAILED

    def counts(self) -> dict[str, int]:
        return dict(Counter(str(result.outcome) for result in self.results))

    def describe(self) -> str:
        lines = [f"overall={self.overall}"]
        for result in self.results:
            detail = f" ({result.detail})" if result.detail else ""
            lines.append(
                f"instance {result.instance_id}: {result.outcome} "
                f"after {result.iterations} iteration(s){detail}"
            )
        return "\n".join(lines)


class ParallelCoordinator:
    """Runs ``num_instances`` loop engines concurrently with staggered launches.

    Every engine gets its own backend chain through ``engine_factory``. The first
    instance to confirm completion stops the others at their next iteration boundary.
    Claims held by an instance are released once it exits, whatever the reason.
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        *,
        num_instances: int,
        warmup_delay: float,
        shutdown: ShutdownSignal,
        event_hook: CoordinatorEventHook | None = None,
    ) -> None:
        if num_instances < 1:
            raise ValueError("num_instances must be at least 1.")
        self.engine_factory = engine_factory
        self.num_instances = num_instances
        self.warmup_delay = warmup_delay
        self.shutdown = shutdown
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run_workers(self) -> CoordinatorSummary:
        tasks: list[asyncio.Task[InstanceResult]] = []
        for index in range(self.num_instances):
            if index > 0 and self.warmup_delay > 0:
                logger.info("Waiting %.0fs before launching instance %d", self.warmup_delay, index)
                if await self.shutdown.sleep(self.warmup_delay):
                    logger.info("Stop signalled during warmup; instance %d not launched", index)
                    break
            if self.shutdown.is_set:
                break
            instance_id = str(index)
            engine = self.engine_factory(instance_id)
            tasks.append(
                asyncio.create_task(
                    self._run_instance(engine), name=f"afkcode-instance-{instance_id}"
                )
            )
            logger.info("Launched instance %s", instance_id)
            self._emit({"event": "instance_launched", "instance": instance_id})

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        results: list[InstanceResult] = []
        conflict: ClaimConflictError | None = None
        for outcome in outcomes:
            if isinstance(outcome, ClaimConflictError):
                conflict = conflict or outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        if conflict is not None:
            raise conflict

        return CoordinatorSummary(
            results=results,
            interrupted=self.shutdown.reason is ShutdownReason.INTERRUPT,
        )

    async def _run_instance(self, engine: LoopEngine) -> InstanceResult:
        try:
            result = await engine.run()
        except ClaimConflictError:
            logger.critical("Instance %s hit a claim conflict; stopping run", engine.instance_id)
            self.shutdown.trigger(ShutdownReason.ERROR)
            await self._release(engine, abnormal=True)
            raise
        except Exception as exc:
            logger.exception("Instance %s failed", engine.instance_id)
            result = InstanceResult(
                engine.instance_id,
                InstanceOutcome.CRASHED,
                detail=f"{type(exc).__name__}: {exc}",
            )

        await self._release(engine, abnormal=result.abnormal)
        if result.outcome is InstanceOutcome.CONFIRMED:
            if self.shutdown.trigger(ShutdownReason.PEER):
                logger.info(
                    "Instance %s confirmed completion; stopping remaining instances",
                    engine.instance_id,
                )
        self._emit(
            {
                "event": "instance_finished",
                "instance": engine.instance_id,
                "outcome": str(result.outcome),
                "iterations": result.iterations,
                "detail": result.detail,
            }
        )
        return result

    async def _release(self, engine: LoopEngine, *, abnormal: bool) -> None:
        try:
            released = await engine.release_claims()
        except Exception:
            logger.exception("Failed to release claims of instance %s", engine.instance_id)
            return
        restored = [checkout_id for checkout_id, ok in released.items() if ok]
        if restored and abnormal:
            logger.warning(
                "Instance %s exited abnormally; released %s",
                engine.instance_id,
                ", ".join(restored),
            )
