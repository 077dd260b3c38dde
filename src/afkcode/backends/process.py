from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from collections.abc import Callable
from pathlib import Path
from typing import Any

from afkcode.backends.base import AgentBackend, BackendProcessError, BackendReply


class ProcessBackend(AgentBackend):
    """Runs a coding-agent CLI once per turn and captures its output.

    The child starts in its own session so a terminal interrupt reaches only the
    orchestrator; an in-flight turn is allowed to finish. Cancelling :meth:`invoke`
    (for example through a timeout) kills the whole process group.
    """

    name = "process"
    default_binary = ""
    prompt_on_stdin = True

    def __init__(
        self,
        binary: str | None = None,
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary or self.default_binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, prompt: str, model: str | None, *, quick: bool = False) -> list[str]:
        raise NotImplementedError

    def render_prompt(self, prompt: str, *, quick: bool = False) -> str:
        return prompt

    async def invoke(
        self,
        prompt: str,
        model: str | None = None,
        *,
        quick: bool = False,
    ) -> BackendReply:
        rendered = self.render_prompt(prompt, quick=quick)
        command = self.build_command(rendered, model, quick=quick)
        self._emit(
            {
                "event": "backend_process_start",
                "backend": self.name,
                "command": command[:3],
                "model": model,
                "quick": quick,
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=(
                    asyncio.subprocess.PIPE if self.prompt_on_stdin else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        payload = rendered.encode("utf-8") if self.prompt_on_stdin else None
        try:
            stdout, stderr = await process.communicate(payload)
        except asyncio.CancelledError:
            _kill_process_group(process)
            await process.wait()
            raise

        return_code = process.returncode if process.returncode is not None else -1
        self._emit(
            {"event": "backend_process_exit", "backend": self.name, "exit_code": return_code}
        )
        return BackendReply(
            output=(stdout or b"").decode("utf-8", errors="replace"),
            exit_code=return_code,
            diagnostics=(stderr or b"").decode("utf-8", errors="replace").strip(),
        )


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        process.kill()
