from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from afkcode.leasing.parser import DEFAULT_CHECKLIST_NAME, find_checklist_files, parse_file


@dataclass(slots=True)
class ScanResult:
    root_checklist: Path | None = None
    component_checklists: list[Path] = field(default_factory=list)
    total_incomplete: int = 0
    incomplete_by_file: dict[Path, int] = field(default_factory=dict)

    @property
    def files_scanned(self) -> int:
        return len(self.component_checklists) + (1 if self.root_checklist else 0)

    @property
    def has_incomplete(self) -> bool:
        return self.total_incomplete > 0

    def summary(self) -> str:
        return (
            f"{self.total_incomplete} incomplete items across "
            f"{len(self.incomplete_by_file)} files ({self.files_scanned} files scanned)"
        )

    def to_dict(self) -> dict:
        return {
            "root_checklist": str(self.root_checklist) if self.root_checklist else None,
            "component_checklists": [str(path) for path in self.component_checklists],
            "total_incomplete": self.total_incomplete,
            "incomplete_by_file": {
                str(path): count for path, count in self.incomplete_by_file.items()
            },
        }


def scan_all_checklists(base_path: Path, name: str = DEFAULT_CHECKLIST_NAME) -> ScanResult:
    """Count open items (``[ ]``, ``[~]`` and ``[ip...]``) in every checklist below ``base_path``.

    The checklist directly in ``base_path`` is reported as the root checklist; the
    rest are component checklists.
    """
    result = ScanResult()
    root = base_path / name if base_path.is_dir() else base_path
    for path in find_checklist_files(base_path, name):
        if path == root:
            result.root_checklist = path
        else:
            result.component_checklists.append(path)
        incomplete = sum(1 for item in parse_file(path) if item.is_incomplete)
        if incomplete:
            result.incomplete_by_file[path] = incomplete
            result.total_incomplete += incomplete
    return result


def count_incomplete(base_path: Path, name: str = DEFAULT_CHECKLIST_NAME) -> int:
    return scan_all_checklists(base_path, name).total_incomplete


def has_incomplete_items(base_path: Path, name: str = DEFAULT_CHECKLIST_NAME) -> bool:
    return count_incomplete(base_path, name) > 0
