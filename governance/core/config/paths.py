from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class ConfigFsPaths:
    root: str = "."

    @property
    def config_dir(self) -> str:
        return os.path.join(self.root, "config")

    @property
    def backups_dir(self) -> str:
        return os.path.join(self.config_dir, "backups")

    @property
    def runtime_dir(self) -> str:
        return os.path.join(self.root, "runtime")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.root, "logs")

    # Files
    @property
    def app(self) -> str:
        return os.path.join(self.config_dir, "app.json")

    @property
    def retention(self) -> str:
        return os.path.join(self.config_dir, "retention.json")

    @property
    def limits(self) -> str:
        return os.path.join(self.config_dir, "limits.json")

    @property
    def privacy(self) -> str:
        return os.path.join(self.config_dir, "privacy.json")

    @property
    def cache(self) -> str:
        return os.path.join(self.config_dir, "cache.json")

    @property
    def web(self) -> str:
        return os.path.join(self.config_dir, "web.json")

    # Data
    @property
    def governed_db(self) -> str:
        return os.path.join(self.runtime_dir, "governed.sqlite")

    @property
    def audit_db(self) -> str:
        return os.path.join(self.runtime_dir, "audit.sqlite")

    @property
    def limits_db(self) -> str:
        return os.path.join(self.runtime_dir, "limits.sqlite")
