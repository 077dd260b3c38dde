from __future__ import annotations

from afkcode.backends.process import ProcessBackend


class GeminiBackend(ProcessBackend):
    name = "gemini"
    default_binary = "gemini"
    prompt_on_stdin = False

    def build_command(self, prompt: str, model: str | None, *, quick: bool = False) -> list[str]:
        command = [self.binary, "--yolo"]
        if model:
            command.extend(["-m", model])
        command.append(prompt)
        return command
