"""Configuration and profile management for SftpKit.

All settings are stored as JSON files under ``~/.sftpkit/``.
Passwords are never written to disk — they are delegated to ``keyring``.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

import keyring
import keyring.errors

from sftpkit.checksum import DigestAlgorithm
from sftpkit.resolver import SSH_PORT
from sftpkit.session import SessionCredentials, host_key_policy_from_name
from sftpkit.transfer import SftpTransfer

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "SftpKit"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "chunk_size": 32768,
    "digest_chunk_size": 4096,
    "digest_algorithm": "md5",
    "connect_timeout": 5.0,
    "host_key_policy": "known_hosts",
    "known_hosts_path": str(Path.home() / ".ssh" / "known_hosts"),
    "max_zero_progress_writes": 3,
    "staging_dir": str(Path(tempfile.gettempdir()) / "sftpkit"),
    "final_dir": str(Path.home() / "Documents"),
}


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


_SETTING_CHECKS: dict[str, Callable[[Any], bool]] = {
    "chunk_size": _positive_int,
    "digest_chunk_size": _positive_int,
    "digest_algorithm": lambda v: isinstance(v, str)
    and v.lower() in {a.value for a in DigestAlgorithm},
    "connect_timeout": _positive_number,
    "host_key_policy": lambda v: v in ("known_hosts", "accept"),
    "max_zero_progress_writes": _positive_int,
}

# ---------------------------------------------------------------------------
# Keyring helpers
# ---------------------------------------------------------------------------


def store_password(hostname: str, username: str, password: str) -> None:
    """Store *password* in the OS keyring for ``username@hostname``."""
    keyring.set_password(KEYRING_SERVICE, f"{username}@{hostname}", password)
    logger.debug("Password stored in keyring for %s@%s", username, hostname)


def load_password(hostname: str, username: str) -> str | None:
    """Return the stored password for ``username@hostname``, or ``None``."""
    return keyring.get_password(KEYRING_SERVICE, f"{username}@{hostname}")


def delete_password(hostname: str, username: str) -> None:
    """Remove the stored password from the OS keyring."""
    try:
        keyring.delete_password(KEYRING_SERVICE, f"{username}@{hostname}")
    except keyring.errors.PasswordDeleteError:
        pass
    logger.debug("Password deleted from keyring for %s@%s", username, hostname)


def _normalise_profile(entry: Any) -> dict[str, Any]:
    """Validate a stored profile entry and return its canonical form."""
    if not isinstance(entry, dict):
        raise ValueError("profile must be a JSON object")
    host = entry.get("host")
    username = entry.get("username")
    if not host or not username:
        raise ValueError("profile needs both 'host' and 'username'")
    try:
        port = int(entry.get("port", SSH_PORT))
    except (TypeError, ValueError):
        raise ValueError(f"port is not a number: {entry.get('port')!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"port out of range: {port}")
    return {"host": str(host), "username": str(username), "port": port}


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages transfer settings and connection profiles.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt config triggers a warning and
    a safe reset — it never crashes the application.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.sftpkit/`` if necessary."""
        self._base = base_dir or Path.home() / ".sftpkit"
        self._config_path = self._base / "config.json"
        self._profiles_path = self._base / "profiles.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._profiles: dict[str, dict[str, Any]] = self._load_profiles()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Write *data* as JSON to a sibling temp file, then rename it over *path*."""
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_name, path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json`` over :data:`DEFAULT_CONFIG`.

        A missing or unreadable file is replaced by the defaults.  Individual
        settings with an invalid value fall back to their default.
        """
        config = dict(DEFAULT_CONFIG)
        try:
            loaded = json.loads(self._config_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
        except FileNotFoundError:
            logger.debug("No config file — creating defaults")
            self._atomic_write(self._config_path, config)
            return config
        except (ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s) — resetting to defaults", exc)
            self._atomic_write(self._config_path, config)
            return config

        for key, value in loaded.items():
            check = _SETTING_CHECKS.get(key)
            if check is not None and not check(value):
                logger.warning("Ignoring invalid %s=%r, using %r", key, value, DEFAULT_CONFIG[key])
                continue
            config[key] = value
        return config

    def _load_profiles(self) -> dict[str, dict[str, Any]]:
        """Load ``profiles.json`` as ``{name: {host, username, port}}``.

        Entries missing a host or username are dropped with a warning; a
        file that is not a JSON object is reset.
        """
        if not self._profiles_path.exists():
            return {}
        try:
            loaded = json.loads(self._profiles_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("Profiles root must be a JSON object")
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt profiles.json (%s) — resetting", exc)
            self._atomic_write(self._profiles_path, {})
            return {}

        profiles: dict[str, dict[str, Any]] = {}
        for name, entry in loaded.items():
            try:
                profiles[name] = _normalise_profile(entry)
            except ValueError as exc:
                logger.warning("Skipping profile %r: %s", name, exc)
        return profiles

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    # ------------------------------------------------------------------
    # Profile management
    # ------------------------------------------------------------------

    def profile_names(self) -> list[str]:
        return sorted(self._profiles)

    def get_profile(self, name: str) -> dict[str, Any] | None:
        """Return ``{host, username, port}`` for *name*, or ``None``."""
        profile = self._profiles.get(name)
        return dict(profile) if profile is not None else None

    def save_profile(self, name: str, host: str, username: str, port: int = SSH_PORT) -> None:
        """Store the connection target *name*, replacing any earlier one.

        Passwords never go here; use :func:`store_password`.

        Raises:
            ValueError: If *name*, *host* or *username* is empty, or *port*
                is out of range.
        """
        if not name:
            raise ValueError("Profile name must not be empty")
        self._profiles[name] = _normalise_profile(
            {"host": host, "username": username, "port": port}
        )
        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Profile saved: %s (%s@%s)", name, username, host)

    def delete_profile(self, name: str) -> bool:
        """Delete profile *name*; ``False`` if there was none."""
        if self._profiles.pop(name, None) is None:
            logger.warning("delete_profile: profile not found: %s", name)
            return False
        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Profile deleted: %s", name)
        return True

    # ------------------------------------------------------------------
    # Transfer construction
    # ------------------------------------------------------------------

    def build_transfer(
        self,
        credentials: SessionCredentials,
        staging_dir: str | Path | None = None,
        final_dir: str | Path | None = None,
    ) -> SftpTransfer:
        """Create an :class:`SftpTransfer` from the current settings."""
        policy = host_key_policy_from_name(
            self.get("host_key_policy"), self.get("known_hosts_path")
        )
        return SftpTransfer(
            credentials,
            staging_dir=staging_dir or self.get("staging_dir"),
            final_dir=final_dir or self.get("final_dir"),
            chunk_size=int(self.get("chunk_size")),
            connect_timeout=float(self.get("connect_timeout")),
            host_key_policy=policy,
            algorithm=DigestAlgorithm.from_name(self.get("digest_algorithm")),
            digest_chunk_size=int(self.get("digest_chunk_size")),
            max_zero_progress_writes=int(self.get("max_zero_progress_writes")),
        )
