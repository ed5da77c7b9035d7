"""Shared runtime state for the recorder task service.

Holds the running TaskDispatcher so that request handlers can report
its status without importing `app` directly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .scheduler import TaskDispatcher

_dispatcher: Optional["TaskDispatcher"] = None


def get_dispatcher() -> Optional["TaskDispatcher"]:
    """Return the active dispatcher, if one has been started."""

    return _dispatcher


def set_dispatcher(instance: Optional["TaskDispatcher"]) -> None:
    global _dispatcher
    _dispatcher = instance


__all__ = ["get_dispatcher", "set_dispatcher"]
