"""Settings and saved connection profiles for ScpBridge.

Both live as JSON under ``~/.scpbridge/``:

- ``config.json`` — engine settings, edited by hand and only ever read here.
  Each key is checked against :data:`DEFAULT_CONFIG`; unknown keys and values
  of the wrong shape are logged and the default is used instead.
- ``profiles.json`` — named connection profiles, rewritten atomically on every
  change.  Passwords are never stored; they belong in ``keyring``.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

from scpbridge.entry import parse_mode

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
PROFILES_FILE = "profiles.json"

DEFAULT_CONFIG: dict[str, Any] = {
    "scp_path": "/usr/bin/scp",
    "chunk_size": 32768,
    "ssh_timeout": 15,
    "keepalive_interval": 30,
    "default_mode": "0644",
    "preserve_times": False,
}

# Profile keys that are meaningful to SSHConnection.
PROFILE_KEYS = ("name", "host", "port", "username", "key_path")


# ---------------------------------------------------------------------------
# Setting checks
# ---------------------------------------------------------------------------


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_mode(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        parse_mode(value)
    except ValueError:
        return False
    return True


_CHECKS: dict[str, Callable[[Any], bool]] = {
    "scp_path": lambda v: isinstance(v, str) and bool(v.strip()),
    "chunk_size": lambda v: _is_count(v) and v > 0,
    "ssh_timeout": lambda v: (_is_count(v) or isinstance(v, float)) and v > 0,
    "keepalive_interval": lambda v: _is_count(v) and v >= 0,
    "default_mode": _is_mode,
    "preserve_times": lambda v: isinstance(v, bool),
}


# ---------------------------------------------------------------------------
# JSON files
# ---------------------------------------------------------------------------


def _read_json(path: Path, expected: type) -> Any:
    """Return the parsed content of *path*, or ``None`` if absent or unusable."""
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Ignoring unreadable %s (%s)", path, exc)
        return None
    if not isinstance(data, expected):
        logger.warning("Ignoring %s: top level is not a JSON %s", path, expected.__name__)
        return None
    return data


def _write_json(path: Path, data: Any) -> None:
    """Replace *path* with *data* via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp, path)
    except OSError as exc:
        logger.error("Failed to write %s: %s", path, exc)
        try:
            os.unlink(tmp)
        except OSError:
            logger.debug("Temp file %s already gone", tmp)
        raise


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Read-only engine settings plus editable connection profiles."""

    def __init__(self, base_dir: str | os.PathLike[str] | None = None) -> None:
        self._base = Path(base_dir) if base_dir else Path.home() / ".scpbridge"
        self._settings = self._load_settings()
        self._profiles = self._load_profiles()

    def _load_settings(self) -> dict[str, Any]:
        path = self._base / CONFIG_FILE
        settings = dict(DEFAULT_CONFIG)
        for key, value in (_read_json(path, dict) or {}).items():
            check = _CHECKS.get(key)
            if check is None:
                logger.warning("Unknown setting %r in %s ignored", key, path)
            elif not check(value):
                logger.warning(
                    "Invalid %s=%r in %s, using %r", key, value, path, DEFAULT_CONFIG[key]
                )
            else:
                settings[key] = value
        return settings

    def _load_profiles(self) -> list[dict[str, Any]]:
        profiles = []
        for entry in _read_json(self._base / PROFILES_FILE, list) or []:
            if isinstance(entry, dict) and entry.get("name") and entry.get("host"):
                profiles.append(entry)
            else:
                logger.warning("Skipping malformed profile entry: %r", entry)
        return profiles

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profiles(self) -> list[dict[str, Any]]:
        return [dict(p) for p in self._profiles]

    def get_profile(self, name: str) -> dict[str, Any] | None:
        for profile in self._profiles:
            if profile["name"] == name:
                return dict(profile)
        return None

    def save_profile(self, profile: dict[str, Any]) -> None:
        """Insert or replace the profile called ``profile["name"]``.

        Only :data:`PROFILE_KEYS` are kept, so a password passed in by mistake
        never reaches the disk.

        Raises:
            ValueError: ``name`` or ``host`` is missing, or ``port`` is not a
                number.
        """
        clean = {k: profile[k] for k in PROFILE_KEYS if profile.get(k) not in (None, "")}
        if "name" not in clean:
            raise ValueError("Profile must have a non-empty 'name' field")
        if "host" not in clean:
            raise ValueError(f"Profile {clean['name']!r} must have a 'host' field")
        if "port" in clean:
            try:
                clean["port"] = int(clean["port"])
            except (TypeError, ValueError):
                raise ValueError(f"Invalid port {clean['port']!r}") from None

        others = [p for p in self._profiles if p["name"] != clean["name"]]
        replaced = len(others) != len(self._profiles)
        self._profiles = others + [clean]
        _write_json(self._base / PROFILES_FILE, self._profiles)
        logger.info("Profile %s: %s", "updated" if replaced else "saved", clean["name"])

    def delete_profile(self, name: str) -> bool:
        """Remove profile *name*; ``False`` when there is no such profile."""
        others = [p for p in self._profiles if p["name"] != name]
        if len(others) == len(self._profiles):
            return False
        self._profiles = others
        _write_json(self._base / PROFILES_FILE, self._profiles)
        logger.info("Profile deleted: %s", name)
        return True

    def connection_kwargs(self, profile: dict[str, Any]) -> dict[str, Any]:
        """Merge *profile* with the timeout settings into ``SSHConnection`` kwargs."""
        kwargs: dict[str, Any] = {
            k: v for k, v in profile.items() if k in PROFILE_KEYS and k != "name" and v
        }
        kwargs["timeout"] = float(self.get("ssh_timeout"))
        kwargs["keepalive_interval"] = int(self.get("keepalive_interval"))
        return kwargs
