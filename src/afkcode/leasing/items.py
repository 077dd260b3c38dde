from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

ITEM_PATTERN = re.compile(
    r"^(\s*)-\s*\[([ ~xV]|ip(?::[a-f0-9]+)?|BLOCKED(?::[^\]]*)?)\]\s*(.*)$"
)
SUB_ITEM_PATTERN = re.compile(r"^(\s+)-\s+(.*)$")
CHECKOUT_PATTERN = re.compile(r"\[ip:([a-f0-9]+)\]")

CHECKOUT_ID_LENGTH = 4


class MarkerType(StrEnum):
    INCOMPLETE = "incomplete"
    PARTIAL = "partial"
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"

    @classmethod
    def from_marker(cls, marker: str) -> MarkerType:
        if marker == " ":
            return cls.INCOMPLETE
        if marker == "~":
            return cls.PARTIAL
        if marker == "x":
            return cls.UNVERIFIED
        if marker == "V":
            return cls.VERIFIED
        if marker == "ip" or marker.startswith("ip:"):
            return cls.IN_PROGRESS
        if marker.startswith("BLOCKED"):
            return cls.BLOCKED
        raise ValueError(f"Unrecognised checklist marker: [{marker}]")


INCOMPLETE_TYPES = frozenset({MarkerType.INCOMPLETE, MarkerType.PARTIAL, MarkerType.IN_PROGRESS})


@dataclass(slots=True)
class WorkItem:
    file: Path
    line: int
    marker: str
    content: str
    indent: str = ""
    sub_items: list[str] = field(default_factory=list)
    checkout_id: str | None = None
    claimed_by: str | None = None
    original_marker: str | None = None

    @property
    def marker_type(self) -> MarkerType:
        return MarkerType.from_marker(self.marker)

    @property
    def marker_text(self) -> str:
        return f"[{self.marker}]"

    @property
    def is_incomplete(self) -> bool:
        return self.marker_type in INCOMPLETE_TYPES

    def location(self) -> str:
        return f"{self.file}:{self.line}"


def checkout_marker(checkout_id: str) -> str:
    return f"[ip:{checkout_id}]"


def extract_checkout_id(marker: str) -> str | None:
    if marker.startswith("ip:"):
        return marker[3:] or None
    return None


def checkout_ids_in(text: str) -> set[str]:
    return set(CHECKOUT_PATTERN.findall(text))
