"""
Error types shared by the display client services.

Data validity problems are never raised; they are coerced where they are
found. Only connectivity, command and playback failures travel as exceptions.
"""

from typing import Optional


class KDSError(Exception):
    """Base class for kitchen display errors."""


class ConnectivityError(KDSError):
    """The backend (or the database behind it) could not be reached."""


class CommandError(KDSError):
    """A server mutation was rejected. Carries the server's message when there is one."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PlaybackError(KDSError):
    """The audio output refused to play a sound."""
