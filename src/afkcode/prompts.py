from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from afkcode.leasing.items import WorkItem

DEFAULT_COMPLETION_TOKEN = "__ALL_TASKS_COMPLETE__"

DEFAULT_WORKER_PROMPT = "@{checklist} Do the thing."

DEFAULT_CONTROLLER_PROMPT = (
    "You are the controller in an autonomous development loop. "
    "Study the shared checklist in @{checklist}, and reduce the length of it by removing "
    "completely finished checklist items. If and only if all high-level requirements and "
    "every checklist item are fully satisfied, output {completion_token} on a line by itself "
    "at the very end of your reply; otherwise, do not print that string."
)

MULTI_CHECKLIST_WORKER_PROMPT = (
    "Work through the checklist items assigned below. Edit the AGENTS.md files that hold them "
    "to record progress: mark an item [x] when it is done and leave it unchanged otherwise. "
    "Commit your changes when the code builds cleanly."
)

STOP_CONFIRMATION_PROMPT = (
    "I detected that the previous response emitted the stop/completion token "
    '"{completion_token}". Re-open @{checklist}. Confirm that every requirement and task '
    "is complete, the code builds cleanly, and all changes are committed. "
    'Emit "{completion_token}" again on a line by itself '
    "at the very end ONLY if the loop should end. If ANYTHING remains, do NOT emit the token. "
    "Instead, briefly note what's left (one line), then continue normal work."
)

CONTROLLER_CONFIRMATION_PROMPT = (
    "Read the text I just sent you. If it appears that this text contains a deliberate attempt "
    "to print the string {completion_token} to indicate the conclusion of the loop, print "
    "{completion_token} again and nothing else. If this text does NOT contain a deliberate "
    "attempt to print {completion_token} to indicate the conclusion of the loop, you must NOT "
    "print {completion_token} in your output. For example, if you were merely thinking about "
    "this string and your thoughts got printed, that would be an accidental trigger and the "
    "loop must not exit. This prompt confirms your intent to conclude the loop by emitting "
    "the completion token."
)

TOKEN_INSTRUCTION = (
    "\n---\n\n"
    "IMPORTANT: If all work is complete, no tasks remain, the code builds cleanly, and all "
    "changes are committed, emit `{completion_token}` on a line by itself at the very end of "
    "your response to signal completion. Otherwise, continue working.\n"
)

DEFAULT_VERIFIER_PROMPT = """You are auditing a project that was worked on by autonomous agents.
Every checklist item below has been marked complete or is not tracked yet. Inspect the
repository and look for unfinished work the checklists missed: unresolved TODO or FIXME
comments, stubbed functions, failing builds, missing tests, or items marked [x] whose code
does not exist.

For every problem you find, add a new `- [ ]` item to the most relevant AGENTS.md file.
Do not mark anything complete and do not remove items.

Root checklist:
{root_agents_md}

Component checklists:
{component_checklists}

When you have recorded everything you found, reply with {completion_token}.
"""


def render_template(template: str, *, checklist: str, completion_token: str) -> str:
    return template.replace("{checklist}", checklist).replace(
        "{completion_token}", completion_token
    )


def mentions_token(text: str, completion_token: str) -> bool:
    if not completion_token:
        return False
    return completion_token.lower() in text.lower()


def build_prompt(
    template: str,
    *,
    checklist: Path | None,
    completion_token: str,
    include_token_instruction: bool = True,
) -> str:
    """Render a turn prompt referencing ``checklist``.

    The token instruction is appended only when neither the rendered prompt nor the
    checklist itself already tells the model about the completion token.
    """
    checklist_ref = str(checklist) if checklist is not None else ""
    rendered = render_template(
        template, checklist=checklist_ref, completion_token=completion_token
    )
    if checklist is not None and "@" + checklist_ref not in rendered:
        prompt = f"@{checklist_ref}\n\n{rendered}\n"
    else:
        prompt = f"{rendered}\n"

    if not include_token_instruction:
        return prompt
    if mentions_token(prompt, completion_token):
        return prompt
    if checklist is not None and _checklist_mentions_token(checklist, completion_token):
        return prompt
    return prompt + TOKEN_INSTRUCTION.replace("{completion_token}", completion_token)


def _checklist_mentions_token(checklist: Path, completion_token: str) -> bool:
    try:
        return mentions_token(checklist.read_text(encoding="utf-8"), completion_token)
    except OSError:
        return False


def build_confirmation_prompt(
    previous_output: str,
    *,
    checklist: Path | None,
    completion_token: str,
    controller_mode: bool = False,
) -> str:
    if controller_mode:
        head = CONTROLLER_CONFIRMATION_PROMPT.replace("{completion_token}", completion_token)
        return f"{head}\n\nText to analyze:\n{previous_output}\n"
    head = render_template(
        STOP_CONFIRMATION_PROMPT,
        checklist=str(checklist) if checklist is not None else "the checklist",
        completion_token=completion_token,
    )
    return f"{head}\n\nPrevious response:\n{previous_output}\n"


def build_work_items_prompt(items: Sequence[WorkItem]) -> str:
    if not items:
        return ""
    lines = ["You have been assigned the following work items:", ""]
    for item in items:
        lines.append(f"- {item.content} (from {item.file}:{item.line})")
        for sub_item in item.sub_items:
            lines.append(f"  {sub_item.strip()}")
    lines.append("")
    lines.append(
        "Focus on completing these assigned items. Leave the [ip:...] markers in place "
        "until an item is finished, then mark it [x]."
    )
    return "\n".join(lines) + "\n"


def append_work_items(prompt: str, items: Sequence[WorkItem]) -> str:
    section = build_work_items_prompt(items)
    if not section:
        return prompt
    return f"{prompt.rstrip()}\n\n{section}"
