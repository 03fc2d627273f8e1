"""Route group exports."""

from . import health, navigation, sessions, trips

__all__ = ["health", "sessions", "trips", "navigation"]
