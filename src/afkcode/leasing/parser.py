from __future__ import annotations

from pathlib import Path

from afkcode.leasing.items import ITEM_PATTERN, SUB_ITEM_PATTERN, WorkItem

DEFAULT_CHECKLIST_NAME = "AGENTS.md"
SKIPPED_DIRECTORIES = frozenset({".git", "node_modules", "target", ".venv"})


def find_checklist_files(base_path: Path, name: str = DEFAULT_CHECKLIST_NAME) -> list[Path]:
    if base_path.is_file():
        return [base_path]
    files: list[Path] = []
    for candidate in base_path.rglob(name):
        relative_parts = candidate.relative_to(base_path).parts[:-1]
        if any(part in SKIPPED_DIRECTORIES for part in relative_parts):
            continue
        if candidate.is_file():
            files.append(candidate)
    return sorted(files)


def parse_text(text: str, path: Path) -> list[WorkItem]:
    """Parse checkbox items from checklist ``text``.

    Lines indented deeper than an item (nested bullets, wrapped text, fenced code)
    are attached to it as sub-items. A non-indented line closes the current item.
    """
    items: list[WorkItem] = []
    current: WorkItem | None = None
    current_indent = 0

    for line_number, line in enumerate(text.splitlines(), start=1):
        match = ITEM_PATTERN.match(line)
        if match is not None:
            if current is not None:
                items.append(current)
            indent, marker, content = match.groups()
            current = WorkItem(
                file=path,
                line=line_number,
                marker=marker,
                content=content,
                indent=indent,
            )
            current_indent = len(indent)
            continue

        if current is None:
            continue

        sub_match = SUB_ITEM_PATTERN.match(line)
        if sub_match is not None and len(sub_match.group(1)) > current_indent:
            current.sub_items.append(line)
            continue

        stripped = line.strip()
        leading = len(line) - len(line.lstrip())
        if stripped and leading >= current_indent + 2:
            current.sub_items.append(line)
            continue

        if not stripped and current.sub_items and _inside_code_fence(current.sub_items):
            current.sub_items.append(line)
            continue

        if stripped and not line.startswith((" ", "\t")):
            items.append(current)
            current = None

    if current is not None:
        items.append(current)
    return items


def parse_file(path: Path) -> list[WorkItem]:
    return parse_text(path.read_text(encoding="utf-8"), path)


def parse_all(base_path: Path, name: str = DEFAULT_CHECKLIST_NAME) -> list[WorkItem]:
    items: list[WorkItem] = []
    for path in find_checklist_files(base_path, name):
        items.extend(parse_file(path))
    return items


def _inside_code_fence(lines: list[str]) -> bool:
    return sum(1 for line in lines if "```" in line) % 2 == 1
