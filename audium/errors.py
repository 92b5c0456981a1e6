#!/usr/bin/env python3
"""
Error taxonomy for the guide.

None of these are fatal to the process: the engine catches them at the seam
where they occur, records a status note and carries on.
"""

from typing import Optional


class AudiumError(Exception):
    """Base class for guide errors."""


class ConfigurationError(AudiumError):
    """The configuration file is unreadable or fails validation."""


class AssetUnavailable(AudiumError):
    """An audio clip referenced by a profile cannot be started."""

    def __init__(self, clip_id: str, reason: Optional[str] = None):
        message = f"Audio clip {clip_id} is unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.clip_id = clip_id
        self.reason = reason


class AdapterUnavailable(AudiumError):
    """The beacon source or audio output reported a fatal condition."""

    def __init__(self, adapter: str, reason: str):
        super().__init__(f"{adapter} unavailable: {reason}")
        self.adapter = adapter
        self.reason = reason
