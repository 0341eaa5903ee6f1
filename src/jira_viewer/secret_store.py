"""Secret storage for OAuth tokens.

Secrets are kept per namespace in a TOML file that only the current user can
read. Every operation opens the file, acts and closes it again.
"""

import logging
import os
import tomllib
from pathlib import Path

import tomli_w

from jira_viewer.config import get_config_dir
from jira_viewer.exceptions import SecretStoreError

logger = logging.getLogger(__name__)

ACCESS_TOKEN = "accessToken"
REFRESH_TOKEN = "refreshToken"
TOKEN_EXPIRATION = "tokenExpiration"
USER_EMAIL = "userEmail"

TOKEN_KEYS = (ACCESS_TOKEN, REFRESH_TOKEN, TOKEN_EXPIRATION, USER_EMAIL)

DEFAULT_NAMESPACE = "jira-viewer"


class SecretStore:
    """Key/value secret persistence."""

    def save(self, key: str, value: str) -> None:
        raise NotImplementedError

    def retrieve(self, key: str) -> str | None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def delete_all(self) -> None:
        for key in TOKEN_KEYS:
            self.delete(key)


class MemorySecretStore(SecretStore):
    """Process-local store, used when nothing should touch the disk."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def save(self, key: str, value: str) -> None:
        self._values[key] = value

    def retrieve(self, key: str) -> str | None:
        return self._values.get(key)

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def delete_all(self) -> None:
        self._values.clear()


class FileSecretStore(SecretStore):
    """Secrets in ``secrets.toml`` under the configuration directory.

    The file holds one table per namespace so several services can share it;
    ``delete_all`` only clears this store's namespace.
    """

    def __init__(self, path: Path | None = None, namespace: str = DEFAULT_NAMESPACE) -> None:
        self.path = path or get_config_dir() / "secrets.toml"
        self.namespace = namespace

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise SecretStoreError(f"Cannot read secret store at {self.path}: {e}") from e

    def _write(self, data: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                tomli_w.dump(data, f)
        except OSError as e:
            raise SecretStoreError(f"Cannot write secret store at {self.path}: {e}") from e

    def save(self, key: str, value: str) -> None:
        data = self._read()
        data.setdefault(self.namespace, {})[key] = value
        self._write(data)

    def retrieve(self, key: str) -> str | None:
        value = self._read().get(self.namespace, {}).get(key)
        return str(value) if value is not None else None

    def delete(self, key: str) -> None:
        data = self._read()
        section = data.get(self.namespace)
        if not section or key not in section:
            return
        del section[key]
        self._write(data)

    def delete_all(self) -> None:
        data = self._read()
        if data.pop(self.namespace, None) is None:
            return
        self._write(data)
        logger.info("Cleared stored credentials for %s", self.namespace)
