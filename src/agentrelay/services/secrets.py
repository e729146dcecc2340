from __future__ import annotations

import os
from typing import Mapping, Protocol


class SecretResolver(Protocol):
    """Maps a secret *name* (stored on the project) to its value."""

    def resolve(self, secret_name: str | None) -> str | None: ...


class EnvSecretResolver:
    """Reads secrets from environment variables named after the secret."""

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = environ if environ is not None else os.environ

    def resolve(self, secret_name: str | None) -> str | None:
        if not secret_name:
            return None
        return self._environ.get(secret_name) or None


class StaticSecretResolver:
    """In-memory secrets, for tests and single-tenant setups."""

    def __init__(self, secrets: Mapping[str, str] | None = None):
        self._secrets = dict(secrets or {})

    def resolve(self, secret_name: str | None) -> str | None:
        if not secret_name:
            return None
        return self._secrets.get(secret_name)
