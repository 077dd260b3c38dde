from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from afkcode.backends.base import AllBackendsExhaustedError, TurnOutcome
from afkcode.backends.chain import BackendChain
from afkcode.backends.executor import TurnExecutor, run_with_fallback
from afkcode.coordinator import CoordinatorSummary, PhaseStatus
from afkcode.leasing.parser import DEFAULT_CHECKLIST_NAME
from afkcode.leasing.scanner import ScanResult, scan_all_checklists
from afkcode.prompts import DEFAULT_COMPLETION_TOKEN, DEFAULT_VERIFIER_PROMPT
from afkcode.shutdown import ShutdownReason, ShutdownSignal

logger = logging.getLogger(__name__)

VerifierEventHook = Callable[[dict[str, Any]], None]


class VerifierError(RuntimeError):
    """Raised when the verifier turn cannot be completed."""


class RunStatus(StrEnum):
    COMPLETE = "complete"
    BOUNDED_INCOMPLETE = "bounded_incomplete"
    INCOMPLETE = "incomplete"
    INTERRUPTED = "interrupted"
    FAILED = "failed"

    @property
    def exit_code(self) -> int:
        if self in (RunStatus.COMPLETE, RunStatus.BOUNDED_INCOMPLETE, RunStatus.INCOMPLETE):
            return 0
        if self is RunStatus.INTERRUPTED:
            return 130
        return 1


@dataclass(slots=True)
class VerifierResult:
    before: int
    after: int

    @property
    def found_work(self) -> int:
        return max(0, self.after - self.before)


def render_verifier_prompt(template: str, scan: ScanResult, completion_token: str) -> str:
    root_ref = f"@{scan.root_checklist}" if scan.root_checklist else "No root AGENTS.md found"
    components = "\n".join(f"@{path}" for path in scan.component_checklists)
    if not components:
        components = "No component AGENTS.md files found"
    return (
        template.replace("{root_agents_md}", root_ref)
        .replace("{root_checklist}", root_ref)
        .replace("{component_checklists}", components)
        .replace("{completion_token}", completion_token)
    )


class Verifier:
    """Audits finished checklists with one LLM turn and reports newly added items."""

    def __init__(
        self,
        base_path: Path,
        chain: BackendChain,
        executor: TurnExecutor,
        *,
        completion_token: str = DEFAULT_COMPLETION_TOKEN,
        checklist_name: str = DEFAULT_CHECKLIST_NAME,
        prompt_template: str | None = None,
        event_hook: VerifierEventHook | None = None,
    ) -> None:
        self.base_path = base_path
        self.chain = chain
        self.executor = executor
        self.completion_token = completion_token
        self.checklist_name = checklist_name
        self.prompt_template = prompt_template or DEFAULT_VERIFIER_PROMPT
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run(self) -> VerifierResult:
        before_scan = await asyncio.to_thread(
            scan_all_checklists, self.base_path, self.checklist_name
        )
        prompt = render_verifier_prompt(self.prompt_template, before_scan, self.completion_token)
        logger.info("Running verifier: %s", before_scan.summary())
        try:
            result = await run_with_fallback(self.chain, self.executor, prompt)
        except AllBackendsExhaustedError as exc:
            raise VerifierError(str(exc)) from exc
        if result.outcome is TurnOutcome.CRASHED:
            raise VerifierError(
                f"Verifier backend {result.backend} failed: {result.diagnostics[:200]}"
            )
        self._emit({"event": "turn_completed", "backend": result.backend, "output": result.output})

        after_scan = await asyncio.to_thread(
            scan_all_checklists, self.base_path, self.checklist_name
        )
        outcome = VerifierResult(
            before=before_scan.total_incomplete, after=after_scan.total_incomplete
        )
        self._emit(
            {
                "event": "verifier_finished",
                "before": outcome.before,
                "after": outcome.after,
                "found_work": outcome.found_work,
            }
        )
        return outcome


@dataclass(slots=True)
class SpiralOutcome:
    status: RunStatus
    spirals: int = 0
    phases: list[CoordinatorSummary] = field(default_factory=list)


class SpiralController:
    """Alternates worker passes and verifier audits until nothing new turns up.

    ``max_spirals`` bounds how many times new work triggers another worker pass;
    hitting it ends the run as ``BOUNDED_INCOMPLETE`` rather than a failure.
    """

    def __init__(
        self,
        run_workers: Callable[[], Awaitable[CoordinatorSummary]],
        *,
        shutdown: ShutdownSignal,
        verifier_factory: Callable[[], Verifier] | None = None,
        spiral: bool = False,
        max_spirals: int = 3,
        work_remaining: Callable[[], bool] | None = None,
    ) -> None:
        self.run_workers = run_workers
        self.shutdown = shutdown
        self.verifier_factory = verifier_factory
        self.spiral = spiral
        self.max_spirals = max_spirals
        self.work_remaining = work_remaining

    async def run(self) -> SpiralOutcome:
        outcome = SpiralOutcome(status=RunStatus.INCOMPLETE)
        while True:
            if self.shutdown.reason is ShutdownReason.INTERRUPT:
                outcome.status = RunStatus.INTERRUPTED
                return outcome
            if outcome.spirals:
                logger.info("Spiral iteration %d", outcome.spirals)

            if self.work_remaining is not None and not await asyncio.to_thread(
                self.work_remaining
            ):
                logger.info("Scanner: no incomplete items before worker phase")
                phase_status = PhaseStatus.CONFIRMED
            else:
                summary = await self.run_workers()
                outcome.phases.append(summary)
                phase_status = summary.overall

            if self.shutdown.reason is ShutdownReason.INTERRUPT:
                outcome.status = RunStatus.INTERRUPTED
                return outcome
            outcome.status = _phase_to_status(phase_status)

            if self.verifier_factory is None or phase_status is PhaseStatus.FAILED:
                return outcome

            try:
                verdict = await self.verifier_factory().run()
            except VerifierError as exc:
                logger.error("Verifier failed: %s", exc)
                return outcome

            if not verdict.found_work:
                logger.info("Verifier found no new work")
                return outcome

            outcome.spirals += 1
            logger.info(
                "Verifier found %d new work item(s) (spiral %d)",
                verdict.found_work,
                outcome.spirals,
            )
            if not self.spiral:
                outcome.status = RunStatus.INCOMPLETE
                return outcome
            if outcome.spirals >= self.max_spirals:
                logger.warning("Reached max spirals (%d)", self.max_spirals)
                outcome.status = RunStatus.BOUNDED_INCOMPLETE
                return outcome
            self.shutdown.rearm()


def _phase_to_status(phase: PhaseStatus) -> RunStatus:
    if phase is PhaseStatus.CONFIRMED:
        return RunStatus.COMPLETE
    if phase is PhaseStatus.INTERRUPTED:
        return RunStatus.INTERRUPTED
    return RunStatus.FAILED
