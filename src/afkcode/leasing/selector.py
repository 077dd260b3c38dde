from __future__ import annotations

import random
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from afkcode.leasing.items import MarkerType, WorkItem


@dataclass(frozen=True, slots=True)
class LeaseFilters:
    incomplete: bool = True
    unverified: bool = False
    blocked: bool = False

    def accepts(self, marker_type: MarkerType) -> bool:
        if marker_type in (MarkerType.INCOMPLETE, MarkerType.PARTIAL):
            return self.incomplete
        if marker_type is MarkerType.UNVERIFIED:
            return self.unverified
        if marker_type is MarkerType.BLOCKED:
            return self.blocked
        return False


def filter_items(items: Iterable[WorkItem], filters: LeaseFilters) -> list[WorkItem]:
    return [item for item in items if filters.accepts(item.marker_type)]


def select(
    items: Iterable[WorkItem],
    n: int,
    filters: LeaseFilters,
    rng: random.Random | None = None,
) -> list[WorkItem]:
    """Pick up to ``n`` eligible items, keeping a batch inside as few files as possible.

    Files are visited in random order and items within a file are shuffled, so
    concurrent instances spread across the pool instead of racing for the first line.
    """
    if n <= 0:
        return []
    candidates = filter_items(items, filters)
    if len(candidates) <= n:
        return candidates

    rng = rng or random.Random()
    groups: dict[Path, list[WorkItem]] = {}
    for item in candidates:
        groups.setdefault(item.file, []).append(item)

    ordered = list(groups.values())
    rng.shuffle(ordered)
    selected: list[WorkItem] = []
    for group in ordered:
        rng.shuffle(group)
        selected.extend(group[: n - len(selected)])
        if len(selected) >= n:
            break
    return selected
