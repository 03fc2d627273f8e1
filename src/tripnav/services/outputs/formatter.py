"""Human-readable ETA and distance strings for driver displays."""

from __future__ import annotations

from typing import Optional


def format_eta(seconds: Optional[float]) -> str:
    if seconds is None or seconds < 0:
        return "--"
    minutes = int(round(seconds / 60.0))
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes} mins"


def format_distance(meters: Optional[float]) -> str:
    if meters is None or meters < 0:
        return "--"
    if meters < 1000:
        return f"{int(round(meters))} m"
    return f"{meters / 1000:.1f} km"
