"""
Action Protocol
===============

Parser for task-creation requests embedded in model replies.

Grammar (line oriented, ``KEY: value`` per line)::

    block      := "ACTION: create_task" NEWLINE field*
    field      := key ":" SP value NEWLINE
    key        := "TITLE" | "DESCRIPTION" | "ASSIGNEE_ID" | "PRIORITY" | "MISSION_ID"

A block runs until the next ``ACTION: create_task`` marker or the end of
the text. TITLE, DESCRIPTION and ASSIGNEE_ID are required; blocks missing
any of them are rejected. PRIORITY defaults to 5 and is clamped to 1-10.
MISSION_ID defaults to ``mission-<epoch millis>``.
"""

import re
import time
import logging
from dataclasses import dataclass, field
from typing import Optional, List

logger = logging.getLogger(__name__)

CREATE_TASK_MARKER = "ACTION: create_task"
DEFAULT_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 10

REQUIRED_FIELDS = ("TITLE", "DESCRIPTION", "ASSIGNEE_ID")
_FIELD_PATTERNS = {
    key: re.compile(rf'^\s*{key}:[ \t]*(.*)$', re.MULTILINE)
    for key in ("TITLE", "DESCRIPTION", "ASSIGNEE_ID", "PRIORITY", "MISSION_ID")
}


@dataclass
class CreateTaskAction:
    title: str
    description: str
    assignee_id: str
    priority: int = DEFAULT_PRIORITY
    mission_id: str = ""


@dataclass
class RejectedBlock:
    text: str
    reason: str


@dataclass
class ParseResult:
    actions: List[CreateTaskAction] = field(default_factory=list)
    rejected: List[RejectedBlock] = field(default_factory=list)


def has_actions(text: str) -> bool:
    return CREATE_TASK_MARKER in text


def _field(block: str, key: str) -> Optional[str]:
    match = _FIELD_PATTERNS[key].search(block)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def _priority(raw: Optional[str]) -> int:
    if raw is None:
        return DEFAULT_PRIORITY
    match = re.match(r'-?\d+', raw)
    if not match:
        logger.warning(f"Unreadable PRIORITY '{raw}', using {DEFAULT_PRIORITY}")
        return DEFAULT_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(match.group(0))))


def parse_actions(text: str, now_ms: Optional[int] = None) -> ParseResult:
    """Extract every ``create_task`` block from a model reply."""
    result = ParseResult()
    if not has_actions(text):
        return result

    for block in text.split(CREATE_TASK_MARKER)[1:]:
        missing = [key for key in REQUIRED_FIELDS if not _field(block, key)]
        if missing:
            reason = f"missing {', '.join(missing)}"
            logger.warning(f"Dropped create_task block ({reason}): {block.strip()[:120]!r}")
            result.rejected.append(RejectedBlock(text=block, reason=reason))
            continue

        mission_id = _field(block, "MISSION_ID")
        if not mission_id:
            stamp = now_ms if now_ms is not None else int(time.time() * 1000)
            mission_id = f"mission-{stamp}"

        result.actions.append(CreateTaskAction(
            title=_field(block, "TITLE"),
            description=_field(block, "DESCRIPTION"),
            assignee_id=_field(block, "ASSIGNEE_ID"),
            priority=_priority(_field(block, "PRIORITY")),
            mission_id=mission_id
        ))

    return result
