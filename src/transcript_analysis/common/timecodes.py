"""Helpers for converting between seconds and transcript time markers."""

from __future__ import annotations

import re
from typing import Any, Optional

_MARKER_RE = re.compile(r"^\[?\s*(?:(\d+):)?(\d{1,2}):(\d{1,2}(?:\.\d+)?)\s*\]?$")


def format_marker(seconds: float) -> str:
    """Render ``seconds`` as ``[mm:ss]``, or ``[hh:mm:ss]`` once past one hour."""

    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"[{hours:02d}:{minutes:02d}:{secs:02d}]"
    return f"[{minutes:02d}:{secs:02d}]"


def parse_timecode(value: Any) -> Optional[float]:
    """
    Best-effort conversion of a model-supplied timestamp into seconds.

    Accepts numbers, numeric strings and ``mm:ss`` / ``hh:mm:ss`` markers with or
    without brackets.

    Args:
        value: Raw timestamp value from model output

    Returns:
        Seconds as float, or None when the value is missing or unparseable
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    try:
        number = float(text)
        return number if number >= 0 else None
    except ValueError:
        pass

    match = _MARKER_RE.match(text)
    if not match:
        return None
    hours = int(match.group(1) or 0)
    minutes = int(match.group(2))
    secs = float(match.group(3))
    return hours * 3600 + minutes * 60 + secs
