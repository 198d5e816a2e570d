"""Key-value secret storage for API keys and the vault location."""

from __future__ import annotations

import base64
import binascii
import json
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

from .config import APP_DIR

SECRETS_PATH = APP_DIR / "secrets.json"
VAULT_PATH_KEY = "vault_path"


class SecretStoreError(RuntimeError):
    """Raised when the secret store cannot be read or written."""


class SecretStore(Protocol):
    """Named byte values. A missing key is not an error at this level."""

    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemorySecretStore:
    def __init__(self, initial: Optional[Dict[str, bytes]] = None) -> None:
        self._values: Dict[str, bytes] = dict(initial or {})

    def get(self, key: str) -> Optional[bytes]:
        return self._values.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class FileSecretStore:
    """Secrets kept in a user-only readable JSON file of base64 values."""

    def __init__(self, path: Path = SECRETS_PATH) -> None:
        self.path = path

    def get(self, key: str) -> Optional[bytes]:
        encoded = self._read().get(key)
        if encoded is None:
            return None
        try:
            return base64.b64decode(encoded)
        except binascii.Error as exc:
            raise SecretStoreError(f"Stored value for {key!r} is corrupt") from exc

    def set(self, key: str, value: bytes) -> None:
        data = self._read()
        data[key] = base64.b64encode(value).decode("ascii")
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise SecretStoreError(f"Failed to read secret store: {exc}") from exc

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            json.dump(data, fh, indent=2)


def get_text(store: SecretStore, key: str) -> Optional[str]:
    value = store.get(key)
    if not value:
        return None
    return value.decode("utf-8").strip() or None
