from __future__ import annotations

from afkcode.backends.process import ProcessBackend

THINKING_DISABLED_PREFIX = "<thinking_mode>disabled</thinking_mode>\n\n"


class ClaudeCodeBackend(ProcessBackend):
    name = "claude"
    default_binary = "claude"

    def build_command(self, prompt: str, model: str | None, *, quick: bool = False) -> list[str]:
        command = [self.binary, "--print", "--dangerously-skip-permissions"]
        if model:
            command.extend(["--model", model])
        return command

    def render_prompt(self, prompt: str, *, quick: bool = False) -> str:
        if quick:
            return THINKING_DISABLED_PREFIX + prompt
        return prompt
