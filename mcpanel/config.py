"""
mcpanel - Configuration Manager
=================================
Handles loading of application configuration from two sources:

1. config.yaml  - Non-sensitive settings (ports, paths, java options)
2. .env         - Secrets and environment overrides (SESSION_SECRET, ...)

Missing values are filled from DEFAULTS, so a partial (or missing)
config.yaml always yields a complete configuration.

Usage:
    config = ConfigManager(project_dir="/opt/mcpanel")
    settings = config.load()              # merged config dict
    servers_dir = config.path(settings, "servers_dir")
"""

import copy
import logging
import os

import yaml
from dotenv import dotenv_values

logger = logging.getLogger(__name__)


# Default configuration values used when config.yaml is missing or incomplete.
DEFAULTS = {
    "web": {
        "host": "0.0.0.0",
        "port": 3000,
        "session_hours": 24,
        "cookie_secure": False,
        "max_upload_mb": 500,
    },
    "paths": {
        "servers_dir": "servers",
        "backups_dir": "backups",
        "data_dir": "data",
    },
    "minecraft": {
        "java": "java",
        "jar": "server.jar",
        "memory_min": "1024M",
        "memory_max": "1024M",
        "extra_args": [],
        "stop_command": "stop",
        "stop_timeout": 30,
        "log_file": "server.log",
        "console_lines": 100,
    },
    "auth": {
        # Seeded only when the credential store is empty
        "default_users": [
            {"username": "admin", "password": "admin123"},
            {"username": "moderator", "password": "mod123"},
        ],
    },
}

# Environment variables that override config.yaml (name -> (section, key, type)).
ENV_OVERRIDES = {
    "MCPANEL_HOST": ("web", "host", str),
    "MCPANEL_PORT": ("web", "port", int),
    "MCPANEL_SERVERS_DIR": ("paths", "servers_dir", str),
    "MCPANEL_JAVA": ("minecraft", "java", str),
}


class ConfigManager:
    """
    Unified configuration manager for mcpanel.

    Attributes:
        project_dir: Root directory of the installation.
        config_path: Full path to config.yaml.
        env_path:    Full path to .env file.
    """

    def __init__(self, project_dir: str):
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "config.yaml")
        self.env_path = os.path.join(project_dir, ".env")

    def load(self) -> dict:
        """
        Load and merge configuration from config.yaml, .env and defaults.

        A corrupted config.yaml falls back to defaults; the error text is
        kept under "_config_error" so the caller can report it.

        Returns:
            A dictionary containing the full configuration.
        """
        config = copy.deepcopy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
                _deep_merge(config, user_config)
            except (yaml.YAMLError, OSError) as e:
                logger.error("Invalid config.yaml, using defaults: %s", e)
                config["_config_error"] = str(e)

        env = self.env()
        for var, (section, key, cast) in ENV_OVERRIDES.items():
            if env.get(var):
                try:
                    config[section][key] = cast(env[var])
                except ValueError:
                    logger.warning("Ignoring invalid %s=%r", var, env[var])

        return config

    def env(self) -> dict[str, str]:
        """Values from .env, overridden by the process environment."""
        values = dotenv_values(self.env_path) if os.path.exists(self.env_path) else {}
        merged = {k: v for k, v in values.items() if v is not None}
        for key in list(merged) + list(ENV_OVERRIDES) + ["SESSION_SECRET"]:
            if key in os.environ:
                merged[key] = os.environ[key]
        return merged

    def path(self, config: dict, key: str) -> str:
        """
        Absolute path for a "paths" entry. Relative values are resolved
        against the project directory.
        """
        value = config["paths"][key]
        if not os.path.isabs(value):
            value = os.path.join(self.project_dir, value)
        return os.path.abspath(value)


# -- Helper Functions ---------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
