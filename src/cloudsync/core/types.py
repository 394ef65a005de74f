"""Shared types for cloudsync."""

from __future__ import annotations

from enum import Enum


class EngineState(str, Enum):
    """Lifecycle state of the sync engine.

    Used by the engine itself and by the CLI status output.
    """

    STOPPED = "stopped"
    IDLE = "idle"
    SYNCING = "syncing"
    PAUSED = "paused"
    OFFLINE = "offline"
