import os
import json
import shutil
import copy
from dataclasses import dataclass
from pathlib import Path

import keyring
from keyring.errors import PasswordDeleteError

from cellar.config.constants import DEFAULT_ROOT, DEFAULT_DOWNLOAD_TIMEOUT, DEFAULT_FETCH_WORKERS
from cellar.utils.logger import log, set_log_dir


@dataclass(frozen=True)
class CellarLayout:
    """Directory layout rooted at a single cellar home."""

    root: Path

    @classmethod
    def from_root(cls, root) -> "CellarLayout":
        return cls(root=Path(root).expanduser().resolve())

    @property
    def cellar_dir(self) -> Path:
        return self.root / "Cellar"

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def cache_dir(self) -> Path:
        return self.root / "cache" / "downloads"

    @property
    def staging_dir(self) -> Path:
        return self.root / "var" / "tmp"

    @property
    def lock_dir(self) -> Path:
        return self.root / "var" / "locks"

    @property
    def db_path(self) -> Path:
        return self.root / "var" / "db" / "cellar.db"

    def prefix_root(self, name: str) -> Path:
        return self.cellar_dir / name

    def prefix_for(self, name: str, version: str) -> Path:
        return self.cellar_dir / name / version

    def ensure(self):
        """Create every directory of the layout."""
        for path in (self.cellar_dir, self.bin_dir, self.cache_dir,
                     self.staging_dir, self.lock_dir, self.db_path.parent):
            path.mkdir(parents=True, exist_ok=True)


class ConfigManager:
    APP_NAME = "cellar"
    CONFIG_DIR = str(DEFAULT_ROOT)
    CONFIG_FILE = os.path.join(CONFIG_DIR, "config.json")

    DEFAULT_CONFIG = {
        "root": str(DEFAULT_ROOT),
        "download_timeout": DEFAULT_DOWNLOAD_TIMEOUT,
        "fetch_workers": DEFAULT_FETCH_WORKERS,
        "formula_dirs": [],
    }

    def __init__(self):
        self.config = self.load_config()

    def load_config(self):
        try:
            os.makedirs(self.CONFIG_DIR, exist_ok=True)
        except OSError as e:
            log.error(f"Could not create config directory {self.CONFIG_DIR}: {e}")
            return copy.deepcopy(self.DEFAULT_CONFIG)

        if not os.path.exists(self.CONFIG_FILE):
            self.save_config(self.DEFAULT_CONFIG)
            return copy.deepcopy(self.DEFAULT_CONFIG)

        try:
            with open(self.CONFIG_FILE, 'r') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.error(f"Failed to load config: {e}. Loading defaults.")
            return copy.deepcopy(self.DEFAULT_CONFIG)

    def save_config(self, config=None):
        if config is None:
            config = self.config

        # Keep the previous file around in case the new one is bad
        if os.path.exists(self.CONFIG_FILE):
            try:
                shutil.copy2(self.CONFIG_FILE, self.CONFIG_FILE + ".bak")
            except OSError as e:
                log.warning(f"Failed to backup config: {e}")

        try:
            with open(self.CONFIG_FILE, 'w') as f:
                json.dump(config, f, indent=4)
        except OSError as e:
            log.error(f"Failed to save config: {e}")

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
        self.save_config()

    def get_secure(self, key):
        """Retrieve a sensitive value from OS keyring."""
        try:
            val = keyring.get_password(self.APP_NAME, key)
            return val if val else ""
        except Exception as e:
            # No backend, locked keychain, etc.
            log.error(f"Keyring get error for {key}: {e}")
            return ""

    def set_secure(self, key, value):
        """Save a sensitive value to OS keyring. An empty value deletes it."""
        try:
            if value:
                keyring.set_password(self.APP_NAME, key, value)
            else:
                keyring.delete_password(self.APP_NAME, key)
        except PasswordDeleteError:
            log.debug(f"No stored value for {key} to delete")
        except Exception as e:
            log.error(f"Keyring set error for {key}: {e}")

    def validate_config(self):
        """Ensure config structure is valid."""
        changes = False

        for key, default_val in self.DEFAULT_CONFIG.items():
            if key not in self.config:
                self.config[key] = copy.deepcopy(default_val)
                changes = True

        if not isinstance(self.config.get("root"), str):
            self.config["root"] = self.DEFAULT_CONFIG["root"]
            changes = True

        if not isinstance(self.config.get("formula_dirs"), list):
            self.config["formula_dirs"] = []
            changes = True

        for key in ("download_timeout", "fetch_workers"):
            value = self.config.get(key)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                self.config[key] = self.DEFAULT_CONFIG[key]
                changes = True

        if changes:
            log.info("Config repaired with default values.")
            self.save_config()

    def layout(self) -> CellarLayout:
        return CellarLayout.from_root(self.get("root", self.DEFAULT_CONFIG["root"]))

config_manager = ConfigManager()
config_manager.validate_config()
set_log_dir(config_manager.layout().root / "logs")
