import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from afkcode.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendReply,
    TurnOutcome,
)
from afkcode.backends.catalog import (
    build_backend,
    build_descriptor,
    build_descriptors,
    parse_backend_order,
)
from afkcode.backends.claude import THINKING_DISABLED_PREFIX, ClaudeCodeBackend
from afkcode.backends.codex import CodexBackend
from afkcode.backends.executor import TurnExecutor, classify_reply
from afkcode.backends.gemini import GeminiBackend
from afkcode.backends.warp import WarpAgentBackend


class ReplyBackend(AgentBackend):
    def __init__(self, reply: BackendReply) -> None:
        self.reply = reply
        self.calls: list[tuple[str, str | None, bool]] = []

    async def invoke(
        self, prompt: str, model: str | None = None, *, quick: bool = False
    ) -> BackendReply:
        self.calls.append((prompt, model, quick))
        return self.reply


class RaisingBackend(AgentBackend):
    async def invoke(
        self, prompt: str, model: str | None = None, *, quick: bool = False
    ) -> BackendReply:
        _ = prompt, model, quick
        raise BackendExecutionError("spawn failed", backend="fake", exit_code=7)


class SlowBackend(AgentBackend):
    async def invoke(
        self, prompt: str, model: str | None = None, *, quick: bool = False
    ) -> BackendReply:
        _ = prompt, model, quick
        await asyncio.sleep(5)
        return BackendReply(output="late")


def test_gemini_build_command_shape() -> None:
    backend = GeminiBackend(binary="gemini", working_directory=Path("."))
    command = backend.build_command("implement feature", "gemini-2.5-pro")

    assert command == ["gemini", "--yolo", "-m", "gemini-2.5-pro", "implement feature"]
    assert backend.prompt_on_stdin is False


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex")

    assert backend.build_command("p", None) == ["codex", "exec"]
    quick = backend.build_command("p", "gpt-5-codex", quick=True)
    assert quick[0:4] == ["codex", "exec", "-m", "gpt-5-codex"]
    assert quick[-2:] == ["-c", 'model_reasoning_effort="minimal"']


def test_claude_build_command_and_quick_prompt() -> None:
    backend = ClaudeCodeBackend()
    command = backend.build_command("p", "opus")

    assert command == ["claude", "--print", "--dangerously-skip-permissions", "--model", "opus"]
    assert backend.render_prompt("confirm", quick=True) == THINKING_DISABLED_PREFIX + "confirm"
    assert backend.render_prompt("work") == "work"


def test_parse_backend_order_normalises_and_rejects_unknown() -> None:
    assert parse_backend_order(" Claude, codex,claude ") == ["claude", "codex"]
    assert parse_backend_order(["warp"]) == ["warp"]

    with pytest.raises(ValueError, match="Unknown backend"):
        parse_backend_order("claude,cursor")
    with pytest.raises(ValueError):
        parse_backend_order(" , ")


def test_build_descriptors_apply_models() -> None:
    descriptors = build_descriptors(["gemini", "claude"], {"claude": "sonnet"})

    assert [descriptor.name for descriptor in descriptors] == ["gemini", "claude"]
    assert descriptors[0].model is None
    assert descriptors[1].model == "sonnet"
    assert descriptors[1].kind == "process"
    assert build_descriptor("warp").kind == "http"


def test_build_backend_returns_matching_types(tmp_path: Path) -> None:
    assert isinstance(build_backend("gemini", working_directory=tmp_path), GeminiBackend)
    assert isinstance(build_backend("codex"), CodexBackend)
    assert isinstance(build_backend("claude"), ClaudeCodeBackend)
    assert isinstance(build_backend("warp", warp_api_key="key"), WarpAgentBackend)
    with pytest.raises(ValueError):
        build_backend("cursor")


def test_classify_reply_prefers_rate_limit_over_exit_code() -> None:
    claude = build_descriptor("claude")

    assert classify_reply(claude, BackendReply("done", 0)) is TurnOutcome.SUCCESS
    assert classify_reply(claude, BackendReply("", 1, "boom")) is TurnOutcome.CRASHED
    assert (
        classify_reply(claude, BackendReply("Usage limit reached. Try later", 0))
        is TurnOutcome.RATE_LIMITED
    )
    assert (
        classify_reply(claude, BackendReply("", 1, "HTTP 429 from upstream"))
        is TurnOutcome.RATE_LIMITED
    )


def test_executor_passes_model_and_quick_flag() -> None:
    backend = ReplyBackend(BackendReply("hello"))
    executor = TurnExecutor({"codex": backend})
    descriptor = build_descriptor("codex", "gpt-5")

    result = asyncio.run(executor.run(descriptor, "prompt", quick=True))
    override = asyncio.run(executor.run(descriptor, "prompt", "o3"))

    assert result.outcome is TurnOutcome.SUCCESS
    assert result.output == "hello"
    assert backend.calls[0] == ("prompt", "gpt-5", True)
    assert backend.calls[1] == ("prompt", "o3", False)


def test_executor_turns_backend_errors_into_crashes() -> None:
    executor = TurnExecutor({"gemini": RaisingBackend()})

    result = asyncio.run(executor.run(build_descriptor("gemini"), "prompt"))

    assert result.outcome is TurnOutcome.CRASHED
    assert result.exit_code == 7
    assert "spawn failed" in result.diagnostics


def test_executor_timeout_is_a_crash() -> None:
    executor = TurnExecutor({"gemini": SlowBackend()}, timeout_seconds=0.05)

    result = asyncio.run(executor.run(build_descriptor("gemini"), "prompt"))

    assert result.outcome is TurnOutcome.CRASHED
    assert result.exit_code is None
    assert "timed out" in result.diagnostics


def test_process_backend_feeds_prompt_on_stdin(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    captured: dict[str, Any] = {}

    class FakeProcess:
        pid = 4321
        returncode = 0

        async def communicate(self, payload: bytes | None) -> tuple[bytes, bytes]:
            captured["stdin"] = payload
            return b"all good\n", b"warning: slow\n"

        async def wait(self) -> int:
            return 0

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = list(args)
        captured["kwargs"] = kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    backend = ClaudeCodeBackend(working_directory=Path("/repo"), event_hook=events.append)
    reply = asyncio.run(backend.invoke("do work", "opus"))

    assert reply.output == "all good\n"
    assert reply.diagnostics == "warning: slow"
    assert reply.succeeded
    assert captured["args"][0] == "claude"
    assert captured["stdin"] == b"do work"
    assert captured["kwargs"]["cwd"] == "/repo"
    assert captured["kwargs"]["start_new_session"] is True
    assert [event["event"] for event in events] == [
        "backend_process_start",
        "backend_process_exit",
    ]


def test_process_backend_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> None:
        _ = args, kwargs
        raise FileNotFoundError("gemini")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendProcessError) as excinfo:
        asyncio.run(GeminiBackend().invoke("prompt"))

    assert excinfo.value.retriable is False
    assert excinfo.value.backend == "gemini"


def _warp_transport(handler_log: list[httpx.Request], task_states: list[dict[str, Any]]):
    states = iter(task_states)

    def handler(request: httpx.Request) -> httpx.Response:
        handler_log.append(request)
        if request.method == "POST" and request.url.path.endswith("/agent/run"):
            return httpx.Response(200, json={"task_id": "task-1"})
        if request.url.path.endswith("/agent/tasks/task-1"):
            return httpx.Response(200, json=next(states))
        return httpx.Response(404, text="not found")

    return httpx.MockTransport(handler)


def test_warp_backend_polls_until_success() -> None:
    requests: list[httpx.Request] = []
    transport = _warp_transport(
        requests,
        [
            {"state": "QUEUED"},
            {"state": "INPROGRESS"},
            {"state": "SUCCEEDED", "session_link": "https://app.warp.dev/session/1"},
        ],
    )
    backend = WarpAgentBackend("secret", poll_interval=0.0, transport=transport)

    reply = asyncio.run(backend.invoke("fix the build", "auto"))

    assert reply.succeeded
    assert reply.output == "https://app.warp.dev/session/1"
    create = requests[0]
    assert create.headers["Authorization"] == "Bearer secret"
    body = json.loads(create.content)
    assert body["prompt"] == "fix the build"
    assert body["config"] == {"model_id": "auto"}
    assert len(requests) == 4


def test_warp_backend_failed_task_and_http_errors() -> None:
    transport = _warp_transport([], [{"state": "FAILED", "status_message": "agent crashed"}])
    backend = WarpAgentBackend("secret", poll_interval=0.0, transport=transport)
    failed = asyncio.run(backend.invoke("prompt"))

    assert failed.exit_code == 1
    assert failed.output == "agent crashed"

    limited = WarpAgentBackend(
        "secret",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(429, text="slow down")
        ),
    )
    reply = asyncio.run(limited.invoke("prompt"))

    assert reply.exit_code == 1
    assert reply.output.startswith("HTTP 429")
    assert classify_reply(build_descriptor("warp"), reply) is TurnOutcome.RATE_LIMITED


def test_warp_backend_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WARP_API_KEY", raising=False)

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(WarpAgentBackend().invoke("prompt"))

    assert excinfo.value.retriable is False


def test_warp_backend_transport_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    backend = WarpAgentBackend("secret", transport=httpx.MockTransport(handler))

    with pytest.raises(BackendExecutionError, match="Warp request failed"):
        asyncio.run(backend.invoke("prompt"))
