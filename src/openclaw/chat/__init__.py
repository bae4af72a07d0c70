"""Chat turn pipeline."""

from .relay import RelayState, StreamRelay
from .service import ChatService, PreparedTurn

__all__ = ["ChatService", "PreparedTurn", "RelayState", "StreamRelay"]
