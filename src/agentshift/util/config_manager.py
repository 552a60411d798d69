"""Configuration management including password hashing, credential encryption, and app settings."""

import base64
import getpass
import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Iterable

import bcrypt
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

# Base keys that may appear in the persisted config.
CONFIG_BASE_KEYS: set[str] = {
    "password_hash",
    "encryption_salt",
    "agent_credentials",  # agent id -> Fernet-encrypted API key or token
    "default_agent",
    "custom_paths",  # agent id -> executable path overriding auto-detection
    "max_concurrent_tasks",
    "max_task_duration_minutes",  # 0 = no limit
    "gemini_rate_tier",
    "usage_thresholds",  # {"warning": 0-100, "auto_stop": 0-100}
}

VALID_RATE_TIERS = ("FREE", "TIER_1", "TIER_2", "TIER_3")

DEFAULT_USAGE_THRESHOLDS: dict[str, int] = {"warning": 80, "auto_stop": 92}


class ConfigManager:
    """Manages application configuration: encrypted agent credentials and orchestration settings."""

    def __init__(self, config_path: Path | None = None):
        # Allow override via environment variable (for testing)
        env_config = os.environ.get("AGENTSHIFT_CONFIG")
        if env_config:
            self.config_path = Path(env_config)
        else:
            self.config_path = config_path or Path.home() / ".agentshift.conf"
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def _derive_encryption_key(self, password: str, salt: bytes) -> bytes:
        """Derive an encryption key from password using PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def hash_password(self, password: str) -> str:
        """Hash a password using bcrypt."""
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

    def verify_password(self, password: str, hashed: str) -> bool:
        return bcrypt.checkpw(password.encode(), hashed.encode())

    def encrypt_value(self, value: str, password: str, salt: bytes) -> str:
        """Encrypt a value using the main password.

        Returns:
            Encrypted value as base64 string
        """
        f = Fernet(self._derive_encryption_key(password, salt))
        return base64.urlsafe_b64encode(f.encrypt(value.encode())).decode()

    def decrypt_value(self, encrypted_value: str, password: str, salt: bytes) -> str:
        """Decrypt a value using the main password.

        Raises:
            cryptography.fernet.InvalidToken: If the password is wrong or the data is corrupted
        """
        f = Fernet(self._derive_encryption_key(password, salt))
        return f.decrypt(base64.urlsafe_b64decode(encrypted_value.encode())).decode()

    def load_config(self) -> dict[str, Any]:
        """Load configuration from file, or an empty dict if there is none."""
        if not self.config_path.exists():
            return {}

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Could not load config file %s: %s", self.config_path, e)
            return {}

    def save_config(self, config: dict[str, Any]) -> None:
        """Save configuration to file atomically (temp file + rename, mode 0600)."""
        validate_config_keys(config)
        fd, tmp_path = tempfile.mkstemp(dir=self.config_path.parent, prefix=".agentshift_config_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(config, f, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.config_path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def is_first_run(self) -> bool:
        return "password_hash" not in self.load_config()

    def initialize_main_password(self, password: str) -> None:
        """Set the main password, discarding any previously stored credentials."""
        config = self.load_config()
        config["password_hash"] = self.hash_password(password)
        config["encryption_salt"] = base64.urlsafe_b64encode(bcrypt.gensalt()).decode()
        config["agent_credentials"] = {}
        self.save_config(config)

    def check_main_password(self, password: str) -> bool:
        password_hash = self.load_config().get("password_hash")
        return bool(password_hash) and self.verify_password(password, password_hash)

    def setup_main_password(self) -> str:
        """Prompt the user to create a main password.

        Returns:
            The main password entered by the user
        """
        print("This password encrypts the agent credentials stored by agentshift.")
        print("If you forget it, stored credentials are lost.")

        while True:
            sys.stdout.flush()
            password = getpass.getpass("Enter main password: ")
            if len(password) < 8:
                print(f"WARNING: Your password is only {len(password)} character(s) long.")

            confirm = getpass.getpass("Confirm main password: ")
            if password != confirm:
                print("Error: Passwords do not match. Please try again.")
                continue
            break

        self.initialize_main_password(password)
        print("Main password configured.")
        return password

    def verify_main_password(self) -> str:
        """Prompt for the main password until it verifies.

        Raises:
            ValueError: If no main password is configured
        """
        if self.is_first_run():
            raise ValueError("No main password configured")

        while True:
            sys.stdout.flush()
            password = getpass.getpass("Enter main password: ")
            if self.check_main_password(password):
                return password
            print("Incorrect password.")

    def _salt(self, config: dict[str, Any]) -> bytes:
        return base64.urlsafe_b64decode(config["encryption_salt"].encode())

    def store_credential(self, agent_id: str, secret: str, password: str) -> None:
        """Encrypt and store a credential for an agent.

        Raises:
            ValueError: If no main password is configured or ``password`` is wrong
        """
        if not self.check_main_password(password):
            raise ValueError("Main password is not configured or incorrect")
        config = self.load_config()
        config.setdefault("agent_credentials", {})[agent_id] = self.encrypt_value(secret, password, self._salt(config))
        self.save_config(config)

    def get_credential(self, agent_id: str, password: str) -> str | None:
        """Decrypt the stored credential for an agent, or None if absent or undecryptable."""
        config = self.load_config()
        encrypted = config.get("agent_credentials", {}).get(agent_id)
        if not encrypted or "encryption_salt" not in config:
            return None
        try:
            return self.decrypt_value(encrypted, password, self._salt(config))
        except (InvalidToken, ValueError) as e:
            logger.warning("Could not decrypt credential for %s: %s", agent_id, type(e).__name__)
            return None

    def delete_credential(self, agent_id: str) -> None:
        config = self.load_config()
        if agent_id in config.get("agent_credentials", {}):
            del config["agent_credentials"][agent_id]
            self.save_config(config)

    def list_credential_agents(self) -> list[str]:
        return sorted(self.load_config().get("agent_credentials", {}))

    def _set(self, key: str, value: Any) -> None:
        config = self.load_config()
        config[key] = value
        self.save_config(config)

    def get_default_agent(self) -> str | None:
        return self.load_config().get("default_agent")

    def set_default_agent(self, agent_id: str) -> None:
        self._set("default_agent", agent_id)

    def get_custom_path(self, agent_id: str) -> str | None:
        return self.load_config().get("custom_paths", {}).get(agent_id)

    def set_custom_path(self, agent_id: str, path: str | None) -> None:
        """Set or clear (``None``) the executable override for an agent."""
        config = self.load_config()
        paths = config.setdefault("custom_paths", {})
        if path is None:
            paths.pop(agent_id, None)
        else:
            paths[agent_id] = path
        self.save_config(config)

    def get_max_concurrent_tasks(self) -> int:
        return self.load_config().get("max_concurrent_tasks", 1)

    def set_max_concurrent_tasks(self, count: int) -> None:
        if count < 1:
            raise ValueError("max_concurrent_tasks must be at least 1")
        self._set("max_concurrent_tasks", count)

    def get_max_task_duration_minutes(self) -> int:
        return self.load_config().get("max_task_duration_minutes", 15)

    def set_max_task_duration_minutes(self, minutes: int) -> None:
        """Set the per-task time limit.

        Args:
            minutes: Limit in minutes; 0 disables the limit

        Raises:
            ValueError: If minutes is negative
        """
        if minutes < 0:
            raise ValueError("max_task_duration_minutes must be 0 or greater")
        self._set("max_task_duration_minutes", minutes)

    def get_gemini_rate_tier(self) -> str:
        return self.load_config().get("gemini_rate_tier", "FREE")

    def set_gemini_rate_tier(self, tier: str) -> None:
        if tier not in VALID_RATE_TIERS:
            raise ValueError(f"Invalid gemini_rate_tier: {tier}. Must be one of {', '.join(VALID_RATE_TIERS)}")
        self._set("gemini_rate_tier", tier)

    def get_usage_thresholds(self) -> dict[str, int]:
        stored = self.load_config().get("usage_thresholds", {})
        return {**DEFAULT_USAGE_THRESHOLDS, **stored}

    def set_usage_thresholds(self, warning: int, auto_stop: int) -> None:
        """Set usage percentage thresholds.

        Raises:
            ValueError: If either value is outside 0-100 or warning exceeds auto_stop
        """
        for name, value in (("warning", warning), ("auto_stop", auto_stop)):
            if not 0 <= value <= 100:
                raise ValueError(f"{name} threshold must be 0-100, got {value}")
        if warning > auto_stop:
            raise ValueError("warning threshold must not exceed auto_stop threshold")
        self._set("usage_thresholds", {"warning": warning, "auto_stop": auto_stop})


def validate_config_keys(config: dict[str, Any], *, allow: Iterable[str] | None = None) -> None:
    """Ensure the config file only contains known keys.

    Raises:
        ValueError: If unknown keys are present.
    """
    if not isinstance(config, dict):
        raise ValueError("Config must be a dict")
    allowed_keys = set(CONFIG_BASE_KEYS)
    if allow:
        allowed_keys.update(allow)

    unknown = set(config.keys()) - allowed_keys
    if unknown:
        pretty = ", ".join(sorted(unknown))
        raise ValueError(f"Unknown config keys found: {pretty}")


def get_env_float(name: str, default: float) -> float:
    """Read a float from the environment, falling back to default."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default
