"""Credential resolution for agent backends.

A credential (API key or OAuth access token) is looked up from an ordered set
of sources and the first non-empty value wins:

1. the encrypted secure store (see :class:`SecureCredentialStore`)
2. environment variables, in the order given
3. the platform credential source: the macOS keychain, then JSON credential files
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, Sequence

from .config_manager import ConfigManager

logger = logging.getLogger(__name__)

KEYCHAIN_TIMEOUT = 5.0


class CredentialStore(Protocol):
    def get(self, agent_id: str) -> str | None: ...


class SecureCredentialStore:
    """Fernet-encrypted per-agent credentials kept in the config file.

    The store is locked until a main password is supplied, either here, via
    ``unlock`` or through ``AGENTSHIFT_MAIN_PASSWORD``. A locked store has no
    credentials.
    """

    def __init__(self, config_manager: ConfigManager, password: str | None = None):
        self.config_manager = config_manager
        self._password = password if password is not None else os.environ.get("AGENTSHIFT_MAIN_PASSWORD")

    @property
    def unlocked(self) -> bool:
        return self._password is not None

    def unlock(self, password: str) -> bool:
        if self.config_manager.check_main_password(password):
            self._password = password
            return True
        return False

    def get(self, agent_id: str) -> str | None:
        if self._password is None:
            return None
        return self.config_manager.get_credential(agent_id, self._password)

    def set(self, agent_id: str, secret: str) -> None:
        if self._password is None:
            raise ValueError("Credential store is locked")
        self.config_manager.store_credential(agent_id, secret, self._password)


def lookup_key_path(data: Any, key_path: str | None) -> str | None:
    """Follow a dotted key path (``claudeAiOauth.accessToken``) through nested dicts."""
    if key_path is None:
        return data if isinstance(data, str) and data else None
    for part in key_path.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data if isinstance(data, str) and data else None


def read_json_credential(path: Path, key_path: str) -> str | None:
    """Read one string value from a JSON credential file.

    Missing files return None silently; unreadable or malformed files are
    logged and also return None.
    """
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read credential file %s: %s", path, e)
        return None
    return lookup_key_path(data, key_path)


class KeychainReader:
    """Reads generic passwords from the macOS keychain; a no-op elsewhere."""

    async def read(self, service: str) -> str | None:
        if sys.platform != "darwin":
            return None
        try:
            proc = await asyncio.create_subprocess_exec(
                "security",
                "find-generic-password",
                "-s",
                service,
                "-w",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=KEYCHAIN_TIMEOUT)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("Keychain lookup for %s failed: %s", service, e)
            return None
        if proc.returncode != 0:
            return None
        value = stdout.decode("utf-8", errors="replace").strip()
        return value or None


@dataclass(frozen=True)
class CredentialFile:
    path: Path
    key_path: str


@dataclass(frozen=True)
class KeychainEntry:
    service: str
    # Keychain values may hold a JSON document; None means the raw value is the secret
    key_path: str | None = None


@dataclass
class CredentialResolver:
    """Resolves one agent's credential from the store, environment, then platform sources."""

    agent_id: str
    env_vars: Sequence[str] = ()
    credential_files: Sequence[CredentialFile] = ()
    keychain_entry: KeychainEntry | None = None
    store: CredentialStore | None = None
    keychain: KeychainReader = field(default_factory=KeychainReader)

    async def resolve_with_source(self) -> tuple[str | None, str | None]:
        """Return ``(credential, source)``; both None when nothing is found."""
        if self.store is not None:
            value = self.store.get(self.agent_id)
            if value:
                return value, "secure-store"

        for name in self.env_vars:
            value = os.environ.get(name)
            if value:
                return value, f"env:{name}"

        if self.keychain_entry is not None:
            raw = await self.keychain.read(self.keychain_entry.service)
            if raw:
                value = self._parse_keychain_value(raw)
                if value:
                    return value, "keychain"

        for cred_file in self.credential_files:
            value = read_json_credential(cred_file.path, cred_file.key_path)
            if value:
                return value, f"file:{cred_file.path}"

        return None, None

    def _parse_keychain_value(self, raw: str) -> str | None:
        if self.keychain_entry is None or self.keychain_entry.key_path is None:
            return raw
        try:
            return lookup_key_path(json.loads(raw), self.keychain_entry.key_path)
        except json.JSONDecodeError:
            logger.warning("Keychain entry %s is not valid JSON", self.keychain_entry.service)
            return None

    async def resolve(self) -> str | None:
        value, source = await self.resolve_with_source()
        if source:
            logger.debug("Credential for %s resolved from %s", self.agent_id, source)
        return value
