"""Client-side persistence for the access and refresh tokens.

Both tokens live under fixed keys and are saved and cleared together.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from agrigrow.logging import get_logger

logger = get_logger(__name__)

AUTH_TOKEN_KEY = "auth_token"
REFRESH_TOKEN_KEY = "refresh_token"


class TokenStore(Protocol):
    def get_access_token(self) -> Optional[str]: ...

    def get_refresh_token(self) -> Optional[str]: ...

    def save(self, access_token: str, refresh_token: str) -> None: ...

    def set_access_token(self, access_token: str) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    def __init__(self) -> None:
        self._values: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_access_token(self) -> Optional[str]:
        with self._lock:
            return self._values.get(AUTH_TOKEN_KEY)

    def get_refresh_token(self) -> Optional[str]:
        with self._lock:
            return self._values.get(REFRESH_TOKEN_KEY)

    def save(self, access_token: str, refresh_token: str) -> None:
        with self._lock:
            self._values = {AUTH_TOKEN_KEY: access_token, REFRESH_TOKEN_KEY: refresh_token}

    def set_access_token(self, access_token: str) -> None:
        with self._lock:
            if REFRESH_TOKEN_KEY in self._values:
                self._values[AUTH_TOKEN_KEY] = access_token

    def clear(self) -> None:
        with self._lock:
            self._values = {}


class FileTokenStore:
    """Tokens kept in a JSON file readable only by the owner (0600)."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("token_file_unreadable", path=str(self.path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _write(self, values: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            try:
                os.fchmod(fd, 0o600)
                os.write(fd, json.dumps(values).encode())
            finally:
                os.close(fd)
            os.replace(tmp_path, self.path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def get_access_token(self) -> Optional[str]:
        with self._lock:
            return self._read().get(AUTH_TOKEN_KEY)

    def get_refresh_token(self) -> Optional[str]:
        with self._lock:
            return self._read().get(REFRESH_TOKEN_KEY)

    def save(self, access_token: str, refresh_token: str) -> None:
        with self._lock:
            self._write({AUTH_TOKEN_KEY: access_token, REFRESH_TOKEN_KEY: refresh_token})

    def set_access_token(self, access_token: str) -> None:
        with self._lock:
            values = self._read()
            if REFRESH_TOKEN_KEY not in values:
                return
            values[AUTH_TOKEN_KEY] = access_token
            self._write(values)

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
