import asyncio
from pathlib import Path

import pytest

from afkcode.backends.base import AgentBackend, BackendReply
from afkcode.backends.catalog import build_descriptors
from afkcode.backends.chain import BackendChain
from afkcode.backends.executor import TurnExecutor
from afkcode.coordinator import CoordinatorSummary
from afkcode.leasing.scanner import scan_all_checklists
from afkcode.loop import InstanceOutcome, InstanceResult
from afkcode.shutdown import ShutdownReason, ShutdownSignal
from afkcode.verifier import (
    RunStatus,
    SpiralController,
    Verifier,
    VerifierError,
    VerifierResult,
    render_verifier_prompt,
)


class AuditBackend(AgentBackend):
    """Appends ``new_items`` open items to the checklist on every audit."""

    def __init__(self, checklist: Path, new_items: list[int], output: str = "audited") -> None:
        self.checklist = checklist
        self.new_items = list(new_items)
        self.output = output
        self.prompts: list[str] = []

    async def invoke(
        self, prompt: str, model: str | None = None, *, quick: bool = False
    ) -> BackendReply:
        _ = model, quick
        self.prompts.append(prompt)
        count = self.new_items.pop(0) if self.new_items else 0
        with self.checklist.open("a", encoding="utf-8") as handle:
            for index in range(count):
                handle.write(f"- [ ] follow-up {len(self.prompts)}.{index}\n")
        if self.output == "!crash":
            return BackendReply(output="", exit_code=2, diagnostics="verifier died")
        return BackendReply(output=self.output)


def _verifier(tmp_path: Path, backend: AgentBackend, template: str | None = None) -> Verifier:
    return Verifier(
        tmp_path,
        BackendChain(build_descriptors(["claude"])),
        TurnExecutor({"claude": backend}),
        prompt_template=template,
    )


def _phase(outcome: InstanceOutcome, *, interrupted: bool = False) -> CoordinatorSummary:
    return CoordinatorSummary(
        results=[InstanceResult("0", outcome, 1)], interrupted=interrupted
    )


class PhaseRunner:
    def __init__(self, outcomes: list[InstanceOutcome], shutdown: ShutdownSignal) -> None:
        self.outcomes = list(outcomes)
        self.shutdown = shutdown
        self.calls = 0

    async def __call__(self) -> CoordinatorSummary:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else InstanceOutcome.CONFIRMED
        if outcome is InstanceOutcome.CONFIRMED:
            self.shutdown.trigger(ShutdownReason.PEER)
        if outcome is InstanceOutcome.INTERRUPTED:
            self.shutdown.trigger(ShutdownReason.INTERRUPT)
            return _phase(outcome, interrupted=True)
        return _phase(outcome)


def test_render_verifier_prompt_references_checklists(tmp_path: Path) -> None:
    (tmp_path / "AGENTS.md").write_text("- [x] done\n", encoding="utf-8")
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "AGENTS.md").write_text("- [x] done\n", encoding="utf-8")

    prompt = render_verifier_prompt(
        "{root_agents_md}|{component_checklists}|{completion_token}",
        scan_all_checklists(tmp_path),
        "__DONE__",
    )

    assert prompt == f"@{tmp_path / 'AGENTS.md'}|@{tmp_path / 'pkg' / 'AGENTS.md'}|__DONE__"

    empty = render_verifier_prompt(
        "{root_checklist} / {component_checklists}", scan_all_checklists(tmp_path / "pkg"), "x"
    )
    assert empty.startswith("@")
    assert empty.endswith("No component AGENTS.md files found")


def test_verifier_reports_newly_added_items(tmp_path: Path) -> None:
    checklist = tmp_path / "AGENTS.md"
    checklist.write_text("- [x] done\n- [ ] leftover\n", encoding="utf-8")
    backend = AuditBackend(checklist, [2])

    result = asyncio.run(_verifier(tmp_path, backend).run())

    assert result == VerifierResult(before=1, after=3)
    assert result.found_work == 2
    assert "Root checklist:" in backend.prompts[0]


def test_verifier_crash_raises(tmp_path: Path) -> None:
    checklist = tmp_path / "AGENTS.md"
    checklist.write_text("- [x] done\n", encoding="utf-8")

    with pytest.raises(VerifierError, match="verifier died"):
        asyncio.run(_verifier(tmp_path, AuditBackend(checklist, [], output="!crash")).run())


def test_verifier_exhaustion_raises(tmp_path: Path) -> None:
    checklist = tmp_path / "AGENTS.md"
    checklist.write_text("- [x] done\n", encoding="utf-8")
    backend = AuditBackend(checklist, [], output="usage limit reached")

    with pytest.raises(VerifierError):
        asyncio.run(_verifier(tmp_path, backend).run())


def _spiral(
    tmp_path: Path,
    runner_outcomes: list[InstanceOutcome],
    audits: list[int],
    *,
    spiral: bool,
    max_spirals: int = 3,
):
    checklist = tmp_path / "AGENTS.md"
    checklist.write_text("- [x] done\n", encoding="utf-8")
    backend = AuditBackend(checklist, audits)

    async def _run():
        shutdown = ShutdownSignal()
        runner = PhaseRunner(runner_outcomes, shutdown)
        controller = SpiralController(
            runner,
            shutdown=shutdown,
            verifier_factory=lambda: _verifier(tmp_path, backend),
            spiral=spiral,
            max_spirals=max_spirals,
        )
        return await controller.run(), runner

    return asyncio.run(_run())


def test_spiral_reruns_workers_until_verifier_is_satisfied(tmp_path: Path) -> None:
    outcome, runner = _spiral(tmp_path, [], [2, 1, 0], spiral=True)

    assert outcome.status is RunStatus.COMPLETE
    assert outcome.spirals == 2
    assert runner.calls == 3
    assert len(outcome.phases) == 3


def test_spiral_is_bounded(tmp_path: Path) -> None:
    outcome, runner = _spiral(tmp_path, [], [1, 1, 1, 1], spiral=True, max_spirals=2)

    assert outcome.status is RunStatus.BOUNDED_INCOMPLETE
    assert outcome.status.exit_code == 0
    assert outcome.spirals == 2
    assert runner.calls == 2


def test_verify_without_spiral_reports_incomplete(tmp_path: Path) -> None:
    outcome, runner = _spiral(tmp_path, [], [3], spiral=False)

    assert outcome.status is RunStatus.INCOMPLETE
    assert outcome.spirals == 1
    assert runner.calls == 1


def test_failed_phase_skips_verifier(tmp_path: Path) -> None:
    outcome, _ = _spiral(tmp_path, [InstanceOutcome.CRASHED], [5], spiral=True)

    assert outcome.status is RunStatus.FAILED
    assert outcome.status.exit_code == 1
    assert "follow-up" not in (tmp_path / "AGENTS.md").read_text(encoding="utf-8")


def test_interrupted_phase_stops_spiral(tmp_path: Path) -> None:
    outcome, runner = _spiral(tmp_path, [InstanceOutcome.INTERRUPTED], [5], spiral=True)

    assert outcome.status is RunStatus.INTERRUPTED
    assert outcome.status.exit_code == 130
    assert runner.calls == 1


def test_no_remaining_work_skips_worker_phase(tmp_path: Path) -> None:
    async def _run():
        shutdown = ShutdownSignal()
        runner = PhaseRunner([], shutdown)
        controller = SpiralController(runner, shutdown=shutdown, work_remaining=lambda: False)
        return await controller.run(), runner

    outcome, runner = asyncio.run(_run())

    assert outcome.status is RunStatus.COMPLETE
    assert runner.calls == 0
