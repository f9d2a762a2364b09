"""Splitting one content blob into ordered step segments."""
from __future__ import annotations

from typing import List, Optional

STEP_SEPARATOR = "--------"


def parse_task_steps(content: str) -> Optional[List[str]]:
    """Split *content* on :data:`STEP_SEPARATOR`.

    Segments are trimmed and empty ones dropped. Returns ``None`` when
    fewer than two segments remain, meaning the content is a single
    atomic step.
    """
    if not content or STEP_SEPARATOR not in content:
        return None
    segments = [part.strip() for part in content.split(STEP_SEPARATOR)]
    segments = [part for part in segments if part]
    if len(segments) < 2:
        return None
    return segments


def is_multi_step(content: str) -> bool:
    return parse_task_steps(content) is not None


def step_count(content: str) -> int:
    steps = parse_task_steps(content)
    return len(steps) if steps else 1
