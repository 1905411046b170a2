"""Configuration management for SQL DBA Tools."""
from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Dict, Optional

from sql_dba_tools.utils.logger import get_logger

logger = get_logger(__name__)


DEFAULTS: Dict[str, Any] = {
    "app": {
        "name": "SQL DBA Tools",
        "version": "1.0.0",
    },
    "database": {
        "driver": "ODBC Driver 18 for SQL Server",
        "connection_timeout": 30,
        "command_timeout": 300,
        "default_auth_type": "Windows",
        "encrypt": True,
        "trust_cert": False,
    },
    "dependencies": {
        "allow_system_objects": False,
        "parents": False,
        "include_self": False,
        "include_script": True,
    },
    "similar_tables": {
        "match_percent_threshold": 0,
        "exclude_views": False,
        "include_system_databases": False,
    },
    "upgrade": {
        "force": False,
        "no_check_db": False,
        "no_update_usage": False,
        "no_update_stats": False,
        "no_refresh_view": False,
    },
    "diagnostics": {
        "include_system_databases": False,
    },
    "logging": {
        "level": "INFO",
        "log_dir": "logs",
    },
}


class Config:
    """Application configuration management using JSON."""

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_path: Path to configuration file. If None, uses
                ``config/settings.json`` under the current directory.
        """
        if config_path is None:
            self.config_path = Path("config") / "settings.json"
        else:
            self.config_path = Path(config_path)

        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file or create with defaults."""
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Error loading config {self.config_path}: {e}. Using defaults.")
                self._config = self._get_defaults()
                return
            # Sections missing from an older file fall back to defaults
            self._config = self._get_defaults()
            for section, values in loaded.items():
                if isinstance(values, dict):
                    self._config.setdefault(section, {}).update(values)
                else:
                    self._config[section] = values
        else:
            self._config = self._get_defaults()
            self._save_config()

    def _save_config(self) -> None:
        """Save current configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w', encoding='utf-8') as f:
            json.dump(self._config, f, indent=2)

    @staticmethod
    def _get_defaults() -> Dict[str, Any]:
        """Get default configuration values."""
        return copy.deepcopy(DEFAULTS)

    def get(self, section: str, key: Optional[str] = None, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            section: Configuration section name
            key: Optional key within section. If None, returns entire section.
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if section not in self._config:
            return default

        if key is None:
            return self._config[section]

        return self._config[section].get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set configuration value and persist it."""
        if section not in self._config:
            self._config[section] = {}

        self._config[section][key] = value
        self._save_config()

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section, or an empty dict."""
        return self._config.get(section, {})

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()
