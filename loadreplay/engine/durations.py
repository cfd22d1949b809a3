from __future__ import annotations

import re
from typing import Any

from .errors import ConfigurationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any, field_name: str = "duration") -> float:
    """Convert ``"5m10s"``/``"500ms"``/``12`` style values into seconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{field_name}: expected a duration, got {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().replace(" ", "")
        if not text:
            raise ConfigurationError(f"{field_name}: empty duration")
        try:
            seconds = float(text)
        except ValueError:
            seconds = _parse_units(text, value, field_name)
    if seconds < 0:
        raise ConfigurationError(f"{field_name}: duration must be >= 0, got {value!r}")
    return seconds


def _parse_units(text: str, original: Any, field_name: str) -> float:
    position = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ConfigurationError(f"{field_name}: invalid duration {original!r}")
    return seconds
