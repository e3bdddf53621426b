"""
Exception hierarchy for the room synchronization core.

Errors are raised inside component seams (stores, the session adapter) and
converted to structured results at the lifecycle boundary.
"""

from typing import Optional


class RoomSyncError(Exception):
    """Base exception for all synchronization core errors."""

    def __init__(self, detail: str, error_code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.error_code = error_code or self.__class__.__name__


class StoreAttachError(RoomSyncError):
    """Raised when the local event store cannot be opened."""

    def __init__(self, detail: str, path: Optional[str] = None):
        if path:
            detail = f"{detail} (store: {path})"
        super().__init__(detail, error_code="STORE_ATTACH_ERROR")
        self.path = path


class SessionStartError(RoomSyncError):
    """Raised when the initial sync of a session fails."""

    def __init__(self, detail: str):
        super().__init__(f"Session start failed: {detail}", error_code="SESSION_START_ERROR")


class MatrixAuthenticationError(RoomSyncError):
    """Raised when Matrix password login fails."""

    def __init__(self, detail: str = "Authentication failed"):
        super().__init__(detail, error_code="AUTH_ERROR")
