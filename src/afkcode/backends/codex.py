from __future__ import annotations

from afkcode.backends.process import ProcessBackend


class CodexBackend(ProcessBackend):
    name = "codex"
    default_binary = "codex"

    def build_command(self, prompt: str, model: str | None, *, quick: bool = False) -> list[str]:
        command = [self.binary, "exec"]
        if model:
            command.extend(["-m", model])
        if quick:
            command.extend(["-c", 'model_reasoning_effort="minimal"'])
        return command
