from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

WARNING_EVENTS = frozenset(
    {
        "backend_squelched",
        "backends_exhausted",
        "turn_crashed",
        "item_released",
    }
)
QUIET_EVENTS = frozenset(
    {
        "backend_process_start",
        "backend_process_exit",
        "warp_task_created",
    }
)
SUMMARY_SKIPPED_FIELDS = frozenset({"event", "at", "output"})


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def instance_log_path(log_file: str | Path, instance_id: str) -> Path:
    return Path(f"{log_file}.{instance_id}")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class EventLog:
    """Event hook that stamps events and appends them as JSON lines.

    Used as the ``event_hook`` of chains, executors, engines and the leasing
    registry. Each event is also summarised through :mod:`logging`.
    """

    def __init__(self, path: Path | None = None, *, source: str | None = None) -> None:
        self.path = path
        self.source = source
        self._lock = threading.Lock()
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)

    def __call__(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload["at"] = _utcnow_iso()
        if self.source is not None:
            payload.setdefault("instance", self.source)

        if self.path is not None:
            line = json.dumps(payload, ensure_ascii=False, default=str)
            with self._lock, self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

        name = str(payload.get("event", "event"))
        if name in WARNING_EVENTS:
            level = logging.WARNING
        elif name in QUIET_EVENTS:
            level = logging.DEBUG
        else:
            level = logging.INFO
        if logger.isEnabledFor(level):
            logger.log(level, "%s %s", name, _summarize(payload))


def _summarize(payload: dict[str, Any]) -> str:
    parts: list[str] = []
    for key, value in payload.items():
        if key in SUMMARY_SKIPPED_FIELDS:
            continue
        rendered = value if isinstance(value, str) else json.dumps(value, default=str)
        if len(rendered) > 120:
            rendered = rendered[:117] + "..."
        parts.append(f"{key}={rendered}")
    return " ".join(parts)


def read_events(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return events
