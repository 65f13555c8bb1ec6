"""Configuration and profile management for TwoTier.

All settings are stored as JSON files under ``~/.twotier/``.  Passwords are
never written to disk — they are delegated to ``keyring``.

:class:`ConfigManager` owns the files; :class:`DeploymentConfig` is the
frozen configuration object handed to every provisioning step.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "service_name": "twotier",
    "subscription_id": None,
    "location": "westus",
    "affinity_group": "twotier-ag",
    "virtual_network": "webappsubnet-vnet",
    "subnet": "webappsubnet",
    "address_prefix": "10.0.0.0/8",
    "subnet_prefix": None,
    "network_config_path": str(Path.home() / ".twotier" / "NetworkConfig.xml"),
    "web_vm_name": None,
    "sql_vm_name": None,
    "web_vm_size": "Standard_D2s_v3",
    "sql_vm_size": "Standard_D4s_v3",
    "web_image": "MicrosoftWindowsServer:WindowsServer:2019-Datacenter:latest",
    "sql_image": "MicrosoftSQLServer:sql2019-ws2019:standard:latest",
    "ssh_port": 22,
    "ssh_timeout": 15,
    "command_timeout": 600,
    "trust_new_host_keys": True,
    "transfer_segment_size": 1024 * 1024,
    "remote_staging_dir": r"C:\TwoTier\staging",
    "sql_instance": "MSSQLSERVER",
    "sql_login": "webapp",
    "webapp_product": "DasBlog",
    "webapp_installer": None,
    "webapp_site_path": "Default Web Site/blog",
    "webapp_database": "webappdb",
    "use_keyring": True,
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages application settings and deployment profiles.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt config triggers a warning and
    a safe reset — it never crashes the run.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.twotier/`` if necessary."""
        self._base = base_dir or Path.home() / ".twotier"
        self._config_path = self._base / "config.json"
        self._profiles_path = self._base / "profiles.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._profiles: list[dict[str, Any]] = self._load_profiles()

    @property
    def base_dir(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            # Merge with defaults so new keys are always present
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning(
                "Corrupt config.json (%s) — resetting to defaults", exc
            )
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    def _load_profiles(self) -> list[dict[str, Any]]:
        """Load ``profiles.json``, returning an empty list on corruption."""
        if not self._profiles_path.exists():
            return []
        try:
            raw = self._profiles_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, list):
                raise ValueError("Profiles root must be a JSON array")
            return loaded
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning(
                "Corrupt profiles.json (%s) — resetting to empty list", exc
            )
            self._atomic_write(self._profiles_path, [])
            return []

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

    def get_profiles(self) -> list[dict[str, Any]]:
        """Return a copy of all saved deployment profiles."""
        return list(self._profiles)

    def save_profile(self, profile: dict[str, Any]) -> None:
        """Upsert a profile by its ``name`` field.

        A profile holds overrides of the settings above for one deployment.
        If a profile with the same ``name`` already exists it is replaced;
        otherwise the new profile is appended.  Passwords must NOT be in
        *profile* — store them via ``keyring`` externally.
        """
        name = profile.get("name")
        if not name:
            raise ValueError("Profile must have a non-empty 'name' field")

        # Strip any accidental password keys
        profile = {k: v for k, v in profile.items() if k != "password"}

        for i, existing in enumerate(self._profiles):
            if existing.get("name") == name:
                self._profiles[i] = profile
                break
        else:
            self._profiles.append(profile)

        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Profile saved: %s", name)

    def delete_profile(self, name: str) -> bool:
        """Delete the profile identified by *name*.

        Returns ``True`` if a profile was deleted, ``False`` if not found.
        """
        original_len = len(self._profiles)
        self._profiles = [p for p in self._profiles if p.get("name") != name]
        if len(self._profiles) < original_len:
            self._atomic_write(self._profiles_path, self._profiles)
            logger.info("Profile deleted: %s", name)
            return True
        logger.warning("delete_profile: profile not found: %s", name)
        return False

    def get_profile(self, name: str) -> dict[str, Any] | None:
        """Return the profile dict for *name*, or ``None`` if not found."""
        for profile in self._profiles:
            if profile.get("name") == name:
                return dict(profile)
        return None


# ---------------------------------------------------------------------------
# DeploymentConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeploymentConfig:
    """Everything one provisioning run needs, passed explicitly to each step."""

    service_name: str = DEFAULT_CONFIG["service_name"]
    subscription_id: str | None = None
    location: str = DEFAULT_CONFIG["location"]
    affinity_group: str = DEFAULT_CONFIG["affinity_group"]
    virtual_network: str = DEFAULT_CONFIG["virtual_network"]
    subnet: str = DEFAULT_CONFIG["subnet"]
    address_prefix: str = DEFAULT_CONFIG["address_prefix"]
    subnet_prefix: str | None = None
    network_config_path: Path = Path(DEFAULT_CONFIG["network_config_path"])
    web_vm_name: str | None = None
    sql_vm_name: str | None = None
    web_vm_size: str = DEFAULT_CONFIG["web_vm_size"]
    sql_vm_size: str = DEFAULT_CONFIG["sql_vm_size"]
    web_image: str = DEFAULT_CONFIG["web_image"]
    sql_image: str = DEFAULT_CONFIG["sql_image"]
    ssh_port: int = DEFAULT_CONFIG["ssh_port"]
    ssh_timeout: float = DEFAULT_CONFIG["ssh_timeout"]
    command_timeout: float | None = DEFAULT_CONFIG["command_timeout"]
    trust_new_host_keys: bool = DEFAULT_CONFIG["trust_new_host_keys"]
    transfer_segment_size: int = DEFAULT_CONFIG["transfer_segment_size"]
    remote_staging_dir: str = DEFAULT_CONFIG["remote_staging_dir"]
    sql_instance: str = DEFAULT_CONFIG["sql_instance"]
    sql_login: str = DEFAULT_CONFIG["sql_login"]
    webapp_product: str = DEFAULT_CONFIG["webapp_product"]
    webapp_installer: Path | None = None
    webapp_site_path: str = DEFAULT_CONFIG["webapp_site_path"]
    webapp_database: str = DEFAULT_CONFIG["webapp_database"]
    use_keyring: bool = DEFAULT_CONFIG["use_keyring"]

    def __post_init__(self) -> None:
        if self.transfer_segment_size <= 0:
            raise ValueError(
                f"transfer_segment_size must be positive, got {self.transfer_segment_size}"
            )

    @property
    def web_name(self) -> str:
        """Name of the front-end VM."""
        return self.web_vm_name or f"{self.service_name}-web"

    @property
    def sql_name(self) -> str:
        """Name of the back-end VM."""
        return self.sql_vm_name or f"{self.service_name}-sql"

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> DeploymentConfig:
        """Build from a settings dict, ignoring keys this class does not know."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in values.items() if k in known and v is not None}
        if "network_config_path" in kwargs:
            kwargs["network_config_path"] = Path(kwargs["network_config_path"]).expanduser()
        if "webapp_installer" in kwargs:
            kwargs["webapp_installer"] = Path(kwargs["webapp_installer"]).expanduser()
        return cls(**kwargs)

    @classmethod
    def from_manager(cls, manager: ConfigManager, profile: str | None = None) -> DeploymentConfig:
        """Build from *manager*'s settings overlaid with *profile*'s overrides.

        ``subscription_id`` falls back to ``AZURE_SUBSCRIPTION_ID``.

        Raises:
            ValueError: *profile* is given but not saved in *manager*.
        """
        values = manager.get_all()
        if profile is not None:
            overrides = manager.get_profile(profile)
            if overrides is None:
                raise ValueError(f"Unknown profile: {profile!r}")
            overrides.pop("name", None)
            values.update(overrides)
        if not values.get("subscription_id"):
            values["subscription_id"] = os.environ.get("AZURE_SUBSCRIPTION_ID")
        return cls.from_dict(values)
