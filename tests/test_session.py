import asyncio
import json
from pathlib import Path

import pytest

from afkcode.config import AfkcodeConfig
from afkcode.events import EventLog, instance_log_path, read_events
from afkcode.session import InterruptHandler, RunSession
from afkcode.shutdown import ShutdownReason, ShutdownSignal


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_second_interrupt_within_window_forces_exit() -> None:
    shutdown = ShutdownSignal()
    clock = FakeClock()
    exits: list[int] = []
    handler = InterruptHandler(shutdown, clock=clock, force_exit=exits.append)

    handler()
    assert shutdown.reason is ShutdownReason.INTERRUPT
    assert exits == []

    clock.now += 4.0
    handler()
    assert exits == [130]


def test_late_second_interrupt_does_not_force_exit() -> None:
    shutdown = ShutdownSignal()
    clock = FakeClock()
    exits: list[int] = []
    handler = InterruptHandler(shutdown, clock=clock, force_exit=exits.append)

    handler()
    clock.now += 6.0
    handler()

    assert exits == []


def test_shutdown_signal_rearm_only_clears_peer_stop() -> None:
    async def _run() -> None:
        shutdown = ShutdownSignal()
        assert await shutdown.sleep(0.01) is False

        assert shutdown.trigger(ShutdownReason.PEER) is True
        assert shutdown.trigger(ShutdownReason.PEER) is False
        assert await shutdown.sleep(10) is True
        shutdown.rearm()
        assert not shutdown.is_set
        assert shutdown.reason is None

        shutdown.trigger(ShutdownReason.PEER)
        shutdown.trigger(ShutdownReason.INTERRUPT)
        assert shutdown.reason is ShutdownReason.INTERRUPT
        shutdown.rearm()
        assert shutdown.is_set

    asyncio.run(_run())


def test_event_log_appends_json_lines(tmp_path: Path) -> None:
    path = instance_log_path(tmp_path / "logs" / "afkcode.log", "2")
    hook = EventLog(path, source="2")

    hook({"event": "turn_completed", "backend": "claude", "output": "x" * 500})
    hook({"event": "item_released", "instance": "leasing", "checkout_id": "ab12"})

    assert path.name == "afkcode.log.2"
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["instance"] == "2"
    assert first["at"].endswith("+00:00")
    assert read_events(path)[1]["instance"] == "leasing"
    assert read_events(tmp_path / "missing.log") == []


def test_session_builds_registry_and_log_paths(tmp_path: Path) -> None:
    (tmp_path / "AGENTS.md").write_text("- [ ] task\n", encoding="utf-8")
    config = AfkcodeConfig.default()
    config.backends.order = ["Claude", "codex"]
    config.logging.log_file = "out/afkcode.log"

    session = RunSession.create(
        config,
        None,
        working_directory=tmp_path,
        backend_factory=lambda name, hook: None,
    )

    assert config.backends.order == ["claude", "codex"]
    assert session.registry is not None
    assert session.multi_checklist
    assert session.work_remaining() is True
    assert session.event_log("verifier").path == tmp_path / "out" / "afkcode.log.verifier"
    engine = session.build_engine("3")
    assert engine.instance_id == "3"
    assert engine.chain.names == ["claude", "codex"]
    assert engine.work_remaining is not None


def test_session_without_leasing_has_no_registry(tmp_path: Path) -> None:
    checklist = tmp_path / "TODO.md"
    checklist.write_text("- [ ] task\n", encoding="utf-8")
    config = AfkcodeConfig.default()
    config.leasing.enabled = False
    config.logging.log_file = ""

    session = RunSession.create(config, checklist, working_directory=tmp_path)

    assert session.registry is None
    assert session.build_engine("0").work_remaining is None


def test_session_rejects_controller_mode_without_checklist(tmp_path: Path) -> None:
    config = AfkcodeConfig.default()
    config.loop.mode = "controller"

    with pytest.raises(ValueError, match="Controller mode"):
        RunSession.create(config, None, working_directory=tmp_path)
