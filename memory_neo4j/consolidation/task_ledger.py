"""
TASKS.md ledger maintenance.

The agent keeps a markdown task ledger in its workspace:

    ## Active
    - [ ] TASK-12: migrate the cron jobs (updated: 2026-02-06T10:00:00+00:00)

    ## Archived
    - [x] TASK-3: old thing (updated: ...)

Active tasks whose ``updated`` timestamp is older than the max age are moved
to the Archived section.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

TASKS_FILENAME = "TASKS.md"
DEFAULT_STALE_TASK_MAX_AGE_MS = 24 * 60 * 60 * 1000

ACTIVE_HEADING = "## Active"
ARCHIVED_HEADING = "## Archived"

_TASK_LINE = re.compile(
    r"^\s*-\s+\[(?P<done>[ xX])\]\s+(?P<id>[A-Za-z][\w-]*):\s*(?P<title>.*?)"
    r"(?:\s*\(updated:\s*(?P<updated>[^)]+)\))?\s*$"
)


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _section_bounds(lines: List[str], heading: str) -> Optional[tuple]:
    """(start, end) line indexes of a section's body, or None if absent."""
    start = None
    for i, line in enumerate(lines):
        if line.strip() == heading:
            start = i + 1
            continue
        if start is not None and line.startswith("## "):
            return start, i
    return (start, len(lines)) if start is not None else None


def review_and_archive_stale_tasks(
    workspace_dir: str,
    max_age_ms: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[Dict[str, object]]:
    """
    Archive stale active tasks in ``<workspace_dir>/TASKS.md``.

    Tasks without a parseable ``updated`` timestamp are left alone.

    Args:
        workspace_dir: Directory holding TASKS.md
        max_age_ms: Age after which an active task is stale (default 24h)
        now: Reference time (tests)

    Returns:
        ``{"staleCount", "archivedCount", "archivedIds"}``, or None when the
        ledger does not exist
    """
    path = Path(workspace_dir) / TASKS_FILENAME
    if not path.exists():
        return None

    max_age_ms = DEFAULT_STALE_TASK_MAX_AGE_MS if max_age_ms is None else max_age_ms
    now = now or datetime.now(timezone.utc)
    lines = path.read_text(encoding="utf-8").splitlines()

    active = _section_bounds(lines, ACTIVE_HEADING)
    if active is None:
        return {"staleCount": 0, "archivedCount": 0, "archivedIds": []}

    stale_indexes = []
    stale_ids = []
    for i in range(*active):
        match = _TASK_LINE.match(lines[i])
        if not match or not match.group("updated"):
            continue
        updated = _parse_timestamp(match.group("updated"))
        if updated is None:
            continue
        if (now - updated).total_seconds() * 1000 > max_age_ms:
            stale_indexes.append(i)
            stale_ids.append(match.group("id"))

    if not stale_indexes:
        return {"staleCount": 0, "archivedCount": 0, "archivedIds": []}

    moved = [lines[i] for i in stale_indexes]
    remaining = [line for i, line in enumerate(lines) if i not in set(stale_indexes)]

    archived = _section_bounds(remaining, ARCHIVED_HEADING)
    if archived is None:
        if remaining and remaining[-1].strip():
            remaining.append("")
        remaining.append(ARCHIVED_HEADING)
        remaining.extend(moved)
    else:
        insert_at = archived[1]
        while insert_at > archived[0] and not remaining[insert_at - 1].strip():
            insert_at -= 1
        remaining[insert_at:insert_at] = moved

    path.write_text("\n".join(remaining) + "\n", encoding="utf-8")
    logger.info(f"Archived {len(stale_ids)} stale tasks in {path}: {', '.join(stale_ids)}")
    return {"staleCount": len(stale_ids), "archivedCount": len(stale_ids), "archivedIds": stale_ids}
