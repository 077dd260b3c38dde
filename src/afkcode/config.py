from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from afkcode.backends.warp import WARP_API_BASE
from afkcode.prompts import (
    DEFAULT_COMPLETION_TOKEN,
    DEFAULT_CONTROLLER_PROMPT,
    DEFAULT_WORKER_PROMPT,
)

LoopMode = Literal["worker", "controller"]

DEFAULT_CONFIG_NAME = "afkcode.toml"


@dataclass(slots=True)
class BackendsConfig:
    order: list[str] = field(default_factory=lambda: ["gemini", "codex", "claude"])
    models: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 3600.0
    squelch_seconds: float = 300.0
    warp_api_key: str = ""
    warp_api_base: str = WARP_API_BASE


@dataclass(slots=True)
class LoopConfig:
    mode: LoopMode = "worker"
    completion_token: str = DEFAULT_COMPLETION_TOKEN
    sleep_seconds: float = 15.0
    max_crash_retries: int = 1
    worker_prompt: str = DEFAULT_WORKER_PROMPT
    controller_prompt: str = DEFAULT_CONTROLLER_PROMPT


@dataclass(slots=True)
class ParallelConfig:
    num_instances: int = 1
    warmup_delay: float = 30.0


@dataclass(slots=True)
class LeasingConfig:
    enabled: bool = True
    base_path: str = "."
    checklist_name: str = "AGENTS.md"
    items_per_instance: int = 1
    include_unverified: bool = False
    include_blocked: bool = False
    lock_timeout_seconds: float = 30.0


@dataclass(slots=True)
class VerifyConfig:
    enabled: bool = False
    spiral: bool = False
    max_spirals: int = 3
    prompt_path: str = ""


@dataclass(slots=True)
class LoggingConfig:
    log_file: str = "afkcode.log"
    level: str = "INFO"


@dataclass(slots=True)
class AfkcodeConfig:
    backends: BackendsConfig = field(default_factory=BackendsConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    leasing: LeasingConfig = field(default_factory=LeasingConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> AfkcodeConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AfkcodeConfig:
        return cls(
            backends=BackendsConfig(**data.get("backends", {})),
            loop=LoopConfig(**data.get("loop", {})),
            parallel=ParallelConfig(**data.get("parallel", {})),
            leasing=LeasingConfig(**data.get("leasing", {})),
            verify=VerifyConfig(**data.get("verify", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "backends": {
                "order": list(self.backends.order),
                "models": dict(self.backends.models),
                "timeout_seconds": self.backends.timeout_seconds,
                "squelch_seconds": self.backends.squelch_seconds,
                "warp_api_key": self.backends.warp_api_key,
                "warp_api_base": self.backends.warp_api_base,
            },
            "loop": {
                "mode": self.loop.mode,
                "completion_token": self.loop.completion_token,
                "sleep_seconds": self.loop.sleep_seconds,
                "max_crash_retries": self.loop.max_crash_retries,
                "worker_prompt": self.loop.worker_prompt,
                "controller_prompt": self.loop.controller_prompt,
            },
            "parallel": {
                "num_instances": self.parallel.num_instances,
                "warmup_delay": self.parallel.warmup_delay,
            },
            "leasing": {
                "enabled": self.leasing.enabled,
                "base_path": self.leasing.base_path,
                "checklist_name": self.leasing.checklist_name,
                "items_per_instance": self.leasing.items_per_instance,
                "include_unverified": self.leasing.include_unverified,
                "include_blocked": self.leasing.include_blocked,
                "lock_timeout_seconds": self.leasing.lock_timeout_seconds,
            },
            "verify": {
                "enabled": self.verify.enabled,
                "spiral": self.verify.spiral,
                "max_spirals": self.verify.max_spirals,
                "prompt_path": self.verify.prompt_path,
            },
            "logging": {
                "log_file": self.logging.log_file,
                "level": self.logging.level,
            },
        }

    def validate(self) -> None:
        if not self.backends.order:
            raise ValueError("At least one backend must be configured.")
        if self.loop.mode not in ("worker", "controller"):
            raise ValueError(f"Unknown loop mode: {self.loop.mode}")
        if not self.loop.completion_token.strip():
            raise ValueError("Completion token must not be empty.")
        if self.parallel.num_instances < 1:
            raise ValueError("num_instances must be at least 1.")
        if self.leasing.items_per_instance < 1:
            raise ValueError("items_per_instance must be at least 1.")
        if self.loop.max_crash_retries < 0:
            raise ValueError("max_crash_retries must not be negative.")
        if self.verify.max_spirals < 1:
            raise ValueError("max_spirals must be at least 1.")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        pairs = ", ".join(
            f"{json.dumps(str(key))} = {_toml_value(item)}" for key, item in value.items()
        )
        return "{ " + pairs + " }"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AfkcodeConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["backends", "loop", "parallel", "leasing", "verify", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AfkcodeConfig:
    if not path.exists():
        return AfkcodeConfig.default()
    return AfkcodeConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AfkcodeConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
