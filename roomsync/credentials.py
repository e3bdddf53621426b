"""Persistence of the (homeserver, user id, access token) credential triple."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

import portalocker

from roomsync.models import Credentials

logger = logging.getLogger(__name__)

CREDENTIALS_KEY = "Matrix"


class CredentialStore:
    """Stores credentials under a fixed key in a small JSON document.

    The document has the shape ``{"Matrix": {"homeServer", "userId", "token"}}``.
    Writes are atomic (temp file + rename) with 0600 permissions, and a
    portalocker lock guards against concurrent writers.

    Attributes:
        path: Path to the credentials file
    """

    def __init__(self, path: str, lock_timeout: int = 10):
        """Initialize credential store.

        Args:
            path: Path to the credentials file
            lock_timeout: Seconds to wait for the file lock
        """
        self.path = Path(path)
        self._lock_path = self.path.with_suffix(".lock")
        self._lock_timeout = lock_timeout

    def _lock(self) -> portalocker.Lock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return portalocker.Lock(str(self._lock_path), timeout=self._lock_timeout)

    def load(self) -> Optional[Credentials]:
        """Load stored credentials.

        Returns:
            Credentials if all three keys are present, None otherwise
        """
        if not self.path.exists():
            logger.debug(f"Credentials file not found: {self.path}")
            return None

        try:
            with self._lock(), open(self.path, "r") as f:
                document = json.load(f)
        except (IOError, json.JSONDecodeError, portalocker.exceptions.LockException):
            logger.exception(f"Failed to read credentials from {self.path}")
            return None

        stored = document.get(CREDENTIALS_KEY) if isinstance(document, dict) else None
        if not isinstance(stored, dict):
            logger.debug(f"No '{CREDENTIALS_KEY}' entry in {self.path}")
            return None

        credentials = Credentials.from_storage_dict(stored)
        if credentials is None:
            logger.warning(f"Stored credentials in {self.path} are incomplete")
        return credentials

    def save(self, credentials: Credentials) -> None:
        """Atomically persist credentials.

        Args:
            credentials: Credentials to store

        Raises:
            Exception: If the write fails
        """
        document = {CREDENTIALS_KEY: credentials.to_storage_dict()}
        temp_file = self.path.with_suffix(".tmp")

        with self._lock():
            try:
                with open(temp_file, "w") as f:
                    json.dump(document, f, indent=2)

                # Set restrictive permissions before rename
                os.chmod(temp_file, 0o600)
                temp_file.replace(self.path)
            except Exception:
                logger.exception(f"Failed to save credentials to {self.path}")
                if temp_file.exists():
                    temp_file.unlink()
                raise

        logger.info(
            f"Credentials saved to {self.path} for {credentials.user_id} "
            f"(token: {redact_token(credentials.access_token)})"
        )

    def clear(self) -> None:
        """Remove stored credentials. Safe to call when nothing is stored."""
        with self._lock():
            if self.path.exists():
                self.path.unlink()
                logger.info(f"Credentials removed from {self.path}")


def redact_token(token: str) -> str:
    """Redact token for safe logging.

    Shows only first 10 characters to aid debugging while
    preventing token leakage in log files.

    Args:
        token: Access token string

    Returns:
        Redacted token (e.g., "MDAxOGxvY2...")
    """
    return f"{token[:10]}..." if len(token) > 10 else "***"
