from __future__ import annotations

import re

KB = 1000
MB = 1000 * KB
GB = 1000 * MB
TB = 1000 * GB

_SIZE_FACTORS = {"B": 1, "KB": KB, "MB": MB, "GB": GB, "TB": TB}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?B)?\s*$", re.IGNORECASE)
_DURATION_PATTERN = re.compile(r"(\d+)\s*([hms])", re.IGNORECASE)
_PERCENT_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*%\s*$")


def parse_size(value: str | int | float) -> int:
    """Return a size in bytes from ``2.5GB``-style text or a raw byte count."""
    if isinstance(value, bool):
        raise ValueError(f"invalid size: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"size must be >= 0: {value!r}")
        return int(value)

    match = _SIZE_PATTERN.match(value)
    if match is None:
        raise ValueError(f"invalid size: {value!r}")
    number, unit = match.groups()
    factor = _SIZE_FACTORS[(unit or "B").upper()]
    return round(float(number) * factor)


def format_size(size_bytes: int) -> str:
    if size_bytes < 0:
        raise ValueError("size_bytes must be >= 0")
    if size_bytes == 0:
        return "0GB"
    if size_bytes >= TB:
        return f"{_trim(size_bytes / TB)}TB"
    if size_bytes >= GB // 10:
        return f"{_trim(size_bytes / GB)}GB"
    if size_bytes >= MB:
        return f"{_trim(size_bytes / MB)}MB"
    return f"{size_bytes}B"


def parse_duration(value: str | int | float) -> int:
    """Return seconds from ``15m``, ``1h 30m``, ``45s`` or a raw number of seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"duration must be >= 0: {value!r}")
        return int(value)

    normalized = value.strip()
    if normalized.isdigit():
        return int(normalized)

    parts = _DURATION_PATTERN.findall(normalized)
    if not parts or _DURATION_PATTERN.sub("", normalized).strip():
        raise ValueError(f"invalid duration: {value!r}")

    multipliers = {"h": 3600, "m": 60, "s": 1}
    return sum(int(amount) * multipliers[unit.lower()] for amount, unit in parts)


def format_duration(seconds: int) -> str:
    if seconds < 0:
        raise ValueError("seconds must be >= 0")
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs:
        parts.append(f"{secs}s")
    return " ".join(parts) or "0m"


def parse_percentage(value: str | int | float) -> float:
    """Return a ratio in ``[0, 1]`` from ``65%`` or a raw ratio."""
    if isinstance(value, bool):
        raise ValueError(f"invalid percentage: {value!r}")
    if isinstance(value, str):
        match = _PERCENT_PATTERN.match(value)
        if match is None:
            raise ValueError(f"invalid percentage: {value!r}")
        ratio = float(match.group(1)) / 100
    else:
        ratio = float(value)

    if not 0.0 <= ratio <= 1.0:
        raise ValueError(f"percentage must be between 0% and 100%: {value!r}")
    return ratio


def format_percentage(ratio: float) -> str:
    return f"{_trim(ratio * 100, digits=0)}%"


def _trim(value: float, digits: int = 1) -> str:
    rendered = f"{value:.{digits}f}"
    if "." in rendered:
        rendered = rendered.rstrip("0").rstrip(".")
    return rendered
