from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

from afkcode.backends.base import AgentBackend, BackendDescriptor, BackendKind
from afkcode.backends.claude import ClaudeCodeBackend
from afkcode.backends.codex import CodexBackend
from afkcode.backends.gemini import GeminiBackend
from afkcode.backends.warp import WARP_API_BASE, WarpAgentBackend

RATE_LIMIT_PHRASES: dict[str, tuple[str, ...]] = {
    "gemini": (
        "rate limit",
        "quota exceeded",
        "429",
        "too many requests",
        "resource exhausted",
    ),
    "codex": (
        "rate limit reached",
        "rate_limit_error",
        "429",
        "too many requests",
    ),
    "claude": (
        "usage limit reached",
        "rate limit reached",
        "rate_limit_error",
        "429",
        "limit will reset",
    ),
    "warp": (
        "rate limit",
        "429",
        "too many requests",
        "quota exceeded",
    ),
}

BACKEND_KINDS: dict[str, BackendKind] = {
    "gemini": "process",
    "codex": "process",
    "claude": "process",
    "warp": "http",
}

KNOWN_BACKENDS = tuple(RATE_LIMIT_PHRASES)


def parse_backend_order(value: str | Iterable[str]) -> list[str]:
    if isinstance(value, str):
        names = [part.strip().lower() for part in value.split(",")]
    else:
        names = [str(part).strip().lower() for part in value]
    names = [name for name in names if name]
    if not names:
        raise ValueError("At least one backend must be configured.")
    unknown = [name for name in names if name not in RATE_LIMIT_PHRASES]
    if unknown:
        raise ValueError(
            f"Unknown backend(s): {', '.join(unknown)}. Known: {', '.join(KNOWN_BACKENDS)}"
        )
    seen: set[str] = set()
    ordered: list[str] = []
    for name in names:
        if name not in seen:
            seen.add(name)
            ordered.append(name)
    return ordered


def build_descriptor(name: str, model: str | None = None) -> BackendDescriptor:
    if name not in RATE_LIMIT_PHRASES:
        raise ValueError(f"Unknown backend: {name}")
    return BackendDescriptor(
        name=name,
        kind=BACKEND_KINDS[name],
        rate_limit_phrases=RATE_LIMIT_PHRASES[name],
        model=model or None,
    )


def build_descriptors(
    names: Iterable[str], models: Mapping[str, str] | None = None
) -> list[BackendDescriptor]:
    models = models or {}
    return [build_descriptor(name, models.get(name)) for name in names]


def build_backend(
    name: str,
    *,
    working_directory: Path | None = None,
    warp_api_key: str = "",
    warp_api_base: str = WARP_API_BASE,
    event_hook: Callable[[dict[str, Any]], None] | None = None,
) -> AgentBackend:
    if name == "gemini":
        return GeminiBackend(working_directory=working_directory, event_hook=event_hook)
    if name == "codex":
        return CodexBackend(working_directory=working_directory, event_hook=event_hook)
    if name == "claude":
        return ClaudeCodeBackend(working_directory=working_directory, event_hook=event_hook)
    if name == "warp":
        return WarpAgentBackend(
            warp_api_key or None, base_url=warp_api_base, event_hook=event_hook
        )
    raise ValueError(f"Unknown backend: {name}")
