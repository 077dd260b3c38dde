from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Literal

BackendKind = Literal["process", "http"]


class TurnOutcome(StrEnum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    CRASHED = "crashed"


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class AllBackendsExhaustedError(RuntimeError):
    """Raised when every backend in a chain is squelched at once."""


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    name: str
    kind: BackendKind
    rate_limit_phrases: tuple[str, ...]
    model: str | None = None

    def is_rate_limited(self, output: str) -> bool:
        lowered = output.lower()
        return any(phrase.lower() in lowered for phrase in self.rate_limit_phrases)

    def with_model(self, model: str | None) -> BackendDescriptor:
        return replace(self, model=model)


@dataclass(slots=True)
class BackendReply:
    output: str
    exit_code: int | None = 0
    diagnostics: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def combined(self) -> str:
        if not self.diagnostics:
            return self.output
        return f"{self.output}\n{self.diagnostics}"


class AgentBackend(ABC):
    name = "agent"

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        model: str | None = None,
        *,
        quick: bool = False,
    ) -> BackendReply:
        """Run one prompt-response turn.

        ``quick`` asks for a low-effort invocation where the backend supports one.
        Transport failures raise :class:`BackendExecutionError`.
        """
