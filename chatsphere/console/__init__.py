"""Operator console runtime: live updates, unread badges, call overlay and call log."""

from .api import ConsoleApi, MutationError
from .session import ConsoleSession, Notice

__all__ = ["ConsoleApi", "ConsoleSession", "MutationError", "Notice"]
