from __future__ import annotations

import os
from typing import Any, Callable, Dict, Mapping, Optional

from governance.core.cache.tags import CacheConfigFile, default_cache_config_dict
from governance.core.config.io import atomic_write_json, ensure_dirs, quarantine_corrupt, read_json_file
from governance.core.config.models import (
    AppFileConfig,
    GovernanceConfig,
    WebConfig,
    default_app_config_dict,
    default_web_config_dict,
)
from governance.core.config.paths import ConfigFsPaths
from governance.core.errors import ConfigError
from governance.core.limits.limiter import LimitsConfigFile, default_limits_config_dict
from governance.core.privacy.models import PrivacyConfigFile, default_privacy_config_dict
from governance.core.retention.models import RetentionConfigFile, default_retention_config_dict


class SecretUnavailable(ConfigError):
    def __init__(self, name: str):
        super().__init__(f"Secret {name} is not configured.", secret=name)


# Secrets never live in config files.
SECRET_ENV: Dict[str, str] = {
    "cron_secret": "GOVERNANCE_CRON_SECRET",
    "unsubscribe_signing_key": "GOVERNANCE_UNSUBSCRIBE_SIGNING_KEY",
    "revalidate_secret": "GOVERNANCE_REVALIDATE_SECRET",
}

_FILES: Dict[str, Callable[[], Dict[str, Any]]] = {
    "app.json": default_app_config_dict,
    "retention.json": default_retention_config_dict,
    "limits.json": default_limits_config_dict,
    "privacy.json": default_privacy_config_dict,
    "cache.json": default_cache_config_dict,
    "web.json": default_web_config_dict,
}


class ConfigManager:
    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger=None, read_only: bool = False, environ: Optional[Mapping[str, str]] = None):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger
        self.read_only = read_only
        self._environ = environ if environ is not None else os.environ
        self._cfg: Optional[GovernanceConfig] = None

    # ---------- public API ----------
    def load_all(self) -> GovernanceConfig:
        if not self.read_only:
            ensure_dirs(self.fs.config_dir, self.fs.backups_dir, self.fs.runtime_dir, self.fs.logs_dir)
        files = self._ensure_defaults(self._load_raw_files())
        self._cfg = self._validate_all(files)
        return self._cfg

    def get(self) -> GovernanceConfig:
        if self._cfg is None:
            raise ConfigError("Config not loaded.")
        return self._cfg

    def read_non_sensitive(self, filename: str) -> Dict[str, Any]:
        self._check_name(filename)
        rr = read_json_file(os.path.join(self.fs.config_dir, filename))
        return rr.data if rr.ok else {}

    def save_non_sensitive(self, filename: str, data: Dict[str, Any]) -> None:
        """
        Validate, then atomic write with a backup of the previous file.
        An invalid document is rejected before anything touches disk.
        """
        self._check_name(filename)
        if self.read_only:
            raise ConfigError("Config manager is read-only.")
        if not isinstance(data, dict):
            raise ConfigError("Config data must be an object.")
        files = self._load_raw_files()
        files[filename] = dict(data)
        cfg = self._validate_all(self._ensure_defaults(files, write=False))
        max_backups = int(cfg.app.backups.get("max_backups_per_file", 10))
        atomic_write_json(os.path.join(self.fs.config_dir, filename), data, self.fs.backups_dir, max_backups=max_backups)
        self._cfg = cfg

    def get_secret(self, name: str) -> str:
        env = SECRET_ENV.get(str(name))
        if env is None:
            raise SecretUnavailable(str(name))
        value = str(self._environ.get(env) or "").strip()
        if not value:
            raise SecretUnavailable(str(name))
        return value

    def has_secret(self, name: str) -> bool:
        try:
            self.get_secret(name)
            return True
        except SecretUnavailable:
            return False

    # ---------- internals ----------
    @staticmethod
    def _check_name(filename: str) -> None:
        if filename not in _FILES:
            raise ConfigError(f"Unknown config file: {filename}")

    def _load_raw_files(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for name in _FILES:
            path = os.path.join(self.fs.config_dir, name)
            rr = read_json_file(path)
            if rr.ok:
                out[name] = rr.data
                continue
            if rr.error and rr.error != "missing":
                moved = None if self.read_only else quarantine_corrupt(path, self.fs.backups_dir)
                if self.logger:
                    self.logger.warning(f"Unreadable config {name} ({rr.error}); quarantined to {moved}")
            out[name] = {}
        return out

    def _ensure_defaults(self, files: Dict[str, Dict[str, Any]], *, write: bool = True) -> Dict[str, Dict[str, Any]]:
        out = dict(files)
        for name, dflt in _FILES.items():
            if out.get(name):
                continue
            out[name] = dflt()
            if self.logger:
                self.logger.warning(f"Missing config {name}; creating defaults.")
            if write and not self.read_only:
                atomic_write_json(os.path.join(self.fs.config_dir, name), out[name], self.fs.backups_dir)
        return out

    def _validate_all(self, files: Dict[str, Dict[str, Any]]) -> GovernanceConfig:
        parsers = {
            "app.json": AppFileConfig,
            "retention.json": RetentionConfigFile,
            "limits.json": LimitsConfigFile,
            "privacy.json": PrivacyConfigFile,
            "cache.json": CacheConfigFile,
            "web.json": WebConfig,
        }
        parsed: Dict[str, Any] = {}
        for name, model in parsers.items():
            try:
                parsed[name[: -len(".json")]] = model.model_validate(files.get(name) or {})
            except ValueError as e:
                raise ConfigError(f"{name} invalid: {e}", file=name) from e
        return GovernanceConfig(**parsed)
