from __future__ import annotations

import logging
import os
import random
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

from afkcode.leasing.errors import ClaimConflictError
from afkcode.leasing.items import (
    CHECKOUT_ID_LENGTH,
    ITEM_PATTERN,
    WorkItem,
    checkout_marker,
    extract_checkout_id,
)
from afkcode.leasing.lock import ClaimLock
from afkcode.leasing.parser import DEFAULT_CHECKLIST_NAME, find_checklist_files, parse_all
from afkcode.leasing.selector import LeaseFilters, select

logger = logging.getLogger(__name__)

LeaseEventHook = Callable[[dict[str, Any]], None]

UNCLAIMED_MARKER = " "


class WorkLeasingRegistry:
    """Claims checklist items for worker instances by rewriting their markers.

    Checklist files are the persisted ledger: a claimed item reads ``[ip:ID]`` on disk.
    The in-memory index maps each live checkout id to the claimed item and the
    marker it replaced. Claim and release run under one :class:`ClaimLock`.
    """

    def __init__(
        self,
        base_path: Path,
        *,
        checklist_name: str = DEFAULT_CHECKLIST_NAME,
        filters: LeaseFilters | None = None,
        lock_timeout: float = 30.0,
        rng: random.Random | None = None,
        event_hook: LeaseEventHook | None = None,
    ) -> None:
        self.base_path = base_path
        self.checklist_name = checklist_name
        self.filters = filters or LeaseFilters()
        self.event_hook = event_hook
        self._rng = rng or random.Random()
        self._lock = ClaimLock(base_path, lock_timeout)
        self._index: dict[str, WorkItem] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def claim(self, n: int, instance_id: str) -> list[WorkItem]:
        with self._lock.hold():
            items = parse_all(self.base_path, self.checklist_name)
            selected = select(items, n, self.filters, self._rng)
            if not selected:
                return []

            lines_by_file: dict[Path, list[str]] = {}
            for item in selected:
                if item.file not in lines_by_file:
                    text = _read_text(item.file)
                    lines_by_file[item.file] = text.splitlines(keepends=True)
                _validate(item, lines_by_file[item.file])

            taken = set(self._index)
            for item in items:
                existing = extract_checkout_id(item.marker)
                if existing:
                    taken.add(existing)

            for item in selected:
                checkout_id = self._new_checkout_id(taken)
                taken.add(checkout_id)
                lines = lines_by_file[item.file]
                lines[item.line - 1] = _replace_marker(lines[item.line - 1], f"ip:{checkout_id}")
                item.original_marker = item.marker
                item.marker = f"ip:{checkout_id}"
                item.checkout_id = checkout_id
                item.claimed_by = instance_id

            for path, lines in lines_by_file.items():
                _atomic_write(path, "".join(lines))
            for item in selected:
                self._index[item.checkout_id] = item

        logger.info(
            "Instance %s claimed %s",
            instance_id,
            ", ".join(f"{item.checkout_id}@{item.location()}" for item in selected),
        )
        self._emit(
            {
                "event": "items_claimed",
                "instance": instance_id,
                "checkout_ids": [item.checkout_id for item in selected],
                "locations": [item.location() for item in selected],
            }
        )
        return selected

    def release(self, checkout_id: str) -> bool:
        """Restore the marker a claim replaced.

        Returns ``False`` when the id is unknown or its ``[ip:ID]`` anchor is gone,
        which is the normal case for an item the worker already finished.
        """
        with self._lock.hold():
            item = self._index.pop(checkout_id, None)
            if item is None:
                return False
            restored = restore_marker(
                item.file, checkout_id, item.original_marker or UNCLAIMED_MARKER
            )

        if restored:
            logger.warning(
                "Released checkout %s held by instance %s at %s",
                checkout_id,
                item.claimed_by,
                item.file,
            )
        self._emit(
            {
                "event": "item_released",
                "instance": item.claimed_by,
                "checkout_id": checkout_id,
                "file": str(item.file),
                "restored": restored,
            }
        )
        return restored

    def release_all(self, instance_id: str) -> dict[str, bool]:
        return {
            item.checkout_id: self.release(item.checkout_id)
            for item in self.held_by(instance_id)
            if item.checkout_id
        }

    def held_by(self, instance_id: str) -> list[WorkItem]:
        return [item for item in list(self._index.values()) if item.claimed_by == instance_id]

    def leased_by_others(self, instance_id: str) -> bool:
        """Whether any item below ``base_path`` carries a lease ``instance_id`` does not hold."""
        own = {item.checkout_id for item in self.held_by(instance_id)}
        for item in parse_all(self.base_path, self.checklist_name):
            checkout_id = extract_checkout_id(item.marker)
            if checkout_id and checkout_id not in own:
                return True
        return False

    def prune(self, instance_id: str) -> list[WorkItem]:
        """Forget claims of ``instance_id`` whose anchors no longer exist on disk."""
        finished: list[WorkItem] = []
        with self._lock.hold():
            for item in self.held_by(instance_id):
                if item.checkout_id and not anchor_present(item.file, item.checkout_id):
                    self._index.pop(item.checkout_id, None)
                    finished.append(item)
        for item in finished:
            self._emit(
                {
                    "event": "item_finished",
                    "instance": instance_id,
                    "checkout_id": item.checkout_id,
                    "file": str(item.file),
                }
            )
        return finished

    def _new_checkout_id(self, taken: set[str]) -> str:
        while True:
            candidate = f"{self._rng.getrandbits(4 * CHECKOUT_ID_LENGTH):0{CHECKOUT_ID_LENGTH}x}"
            if candidate not in taken:
                return candidate


def _validate(item: WorkItem, lines: list[str]) -> None:
    if item.line < 1 or item.line > len(lines):
        raise ClaimConflictError(f"{item.location()} no longer exists")
    match = ITEM_PATTERN.match(lines[item.line - 1].rstrip("\r\n"))
    if match is None or match.group(2) != item.marker:
        raise ClaimConflictError(
            f"{item.location()} no longer carries marker {item.marker_text}"
        )


def _replace_marker(line: str, marker: str) -> str:
    match = ITEM_PATTERN.match(line.rstrip("\r\n"))
    if match is None:
        raise ClaimConflictError(f"Not a checklist item: {line.rstrip()}")
    return line[: match.start(2)] + marker + line[match.end(2) :]


def _find_anchor_line(lines: list[str], checkout_id: str) -> int | None:
    wanted = f"ip:{checkout_id}"
    for index, line in enumerate(lines):
        if checkout_marker(checkout_id) not in line:
            continue
        match = ITEM_PATTERN.match(line.rstrip("\r\n"))
        if match is not None and match.group(2) == wanted:
            return index
    return None


def anchor_present(path: Path, checkout_id: str) -> bool:
    try:
        lines = _read_text(path).splitlines(keepends=True)
    except FileNotFoundError:
        return False
    return _find_anchor_line(lines, checkout_id) is not None


def restore_marker(path: Path, checkout_id: str, marker: str = UNCLAIMED_MARKER) -> bool:
    """Replace the ``[ip:ID]`` marker wherever it now sits in ``path``.

    The checkout id is the anchor, so edits elsewhere in the file do not matter.
    """
    try:
        lines = _read_text(path).splitlines(keepends=True)
    except FileNotFoundError:
        return False
    index = _find_anchor_line(lines, checkout_id)
    if index is None:
        logger.debug("Checkout %s not found in %s", checkout_id, path)
        return False
    lines[index] = _replace_marker(lines[index], marker)
    _atomic_write(path, "".join(lines))
    return True


def release_checkout(
    base_path: Path, checkout_id: str, checklist_name: str = DEFAULT_CHECKLIST_NAME
) -> Path | None:
    """Restore ``[ip:ID]`` to ``[ ]`` without a registry index; returns the file touched."""
    lock = ClaimLock(base_path)
    with lock.hold():
        for path in find_checklist_files(base_path, checklist_name):
            if restore_marker(path, checkout_id):
                return path
    return None


def _read_text(path: Path) -> str:
    return path.read_bytes().decode("utf-8")


def _atomic_write(path: Path, content: str) -> None:
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        os.chmod(temp_name, path.stat().st_mode & 0o777)
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise
