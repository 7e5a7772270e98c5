"""Lookup of API keys by reference.  Where keys are kept is up to the store."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import Mapping


class SecretStore(ABC):
    @abstractmethod
    def resolve(self, key_ref: str) -> str | None:
        """Return the secret for *key_ref*, or ``None`` if it is unknown."""
        ...


class EnvSecretStore(SecretStore):
    """Reads secrets from environment variables named by *key_ref*."""

    def resolve(self, key_ref: str) -> str | None:
        if not key_ref:
            return None
        return os.environ.get(key_ref) or None


class MappingSecretStore(SecretStore):
    def __init__(self, secrets: Mapping[str, str]) -> None:
        self._secrets = dict(secrets)

    def resolve(self, key_ref: str) -> str | None:
        return self._secrets.get(key_ref)
