"""ConfigManager — environment profiles and typed deploy settings."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from oration_deploy.config import (
    APT_CACHE_VALID_TIME,
    BUILD_TARGET,
    CONFIG_OVERRIDES,
    DEFAULT_DEPLOY_DIR,
    DEFAULT_FRONTEND_DIR,
    DEFAULT_PUBLIC_DIR,
    UPSTREAM_PORT,
)
from oration_deploy.errors import ConfigError

logger = logging.getLogger(__name__)

_ENV_PREFIX = "ORATION_"

# All known configuration keys with defaults
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "ORATION_ENV": {"default": "staging", "description": "Environment profile"},
    "ORATION_PUBLIC_URL": {
        "default": CONFIG_OVERRIDES["host"],
        "description": "Value written to the host: field of oration.yaml",
    },
    "ORATION_SERVER_NAME": {"default": "_", "description": "nginx server_name of the vhost"},
    "ORATION_UPSTREAM_PORT": {"default": str(UPSTREAM_PORT), "description": "Local backend port"},
    "ORATION_DEPLOY_DIR": {"default": str(DEFAULT_DEPLOY_DIR), "description": "Deployment directory"},
    "ORATION_PUBLIC_DIR": {"default": str(DEFAULT_PUBLIC_DIR), "description": "Frontend output tree"},
    "ORATION_FRONTEND_DIR": {"default": str(DEFAULT_FRONTEND_DIR), "description": "Frontend sources"},
    "ORATION_BUILD_TARGET": {"default": BUILD_TARGET, "description": "Rust target triple"},
    "ORATION_BUILDER_IMAGE": {"default": "", "description": "Container image for the static build"},
    "ORATION_APT_CACHE_VALID_TIME": {
        "default": str(APT_CACHE_VALID_TIME),
        "description": "Package index validity window (seconds)",
    },
    "ORATION_LOG_LEVEL": {"default": "INFO", "description": "Logging level"},
    "ORATION_HEALTH_URL": {"default": "", "description": "URL probed after activation"},
}

_PROFILES: dict[str, dict[str, str]] = {
    "development": {
        "ORATION_ENV": "development",
        "ORATION_LOG_LEVEL": "DEBUG",
    },
    "staging": {
        "ORATION_ENV": "staging",
        "ORATION_PUBLIC_URL": "http://localhost/",
        "ORATION_LOG_LEVEL": "INFO",
    },
    "production": {
        "ORATION_ENV": "production",
        "ORATION_LOG_LEVEL": "WARNING",
    },
    "testing": {
        "ORATION_ENV": "testing",
        "ORATION_LOG_LEVEL": "DEBUG",
        "ORATION_APT_CACHE_VALID_TIME": "0",
    },
}


class DeploySettings(BaseModel):
    """Validated view of the merged configuration."""

    env: str = "staging"
    public_url: str = CONFIG_OVERRIDES["host"]
    server_name: str = "_"
    upstream_port: int = Field(default=UPSTREAM_PORT, ge=1, le=65535)
    deploy_dir: Path = DEFAULT_DEPLOY_DIR
    public_dir: Path = DEFAULT_PUBLIC_DIR
    frontend_dir: Path = DEFAULT_FRONTEND_DIR
    build_target: str = BUILD_TARGET
    builder_image: str = ""
    apt_cache_valid_time: int = Field(default=APT_CACHE_VALID_TIME, ge=0)
    log_level: str = "INFO"
    health_url: str = ""

    @property
    def config_overrides(self) -> dict[str, str]:
        """Field substitutions for the staged oration.yaml."""
        return {"host": self.public_url}


class ConfigManager:
    """Manage deploy configuration across environments."""

    def generate_env_template(self, project_path: str | Path) -> Path:
        """Create deploy.env.example with all config keys.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        env_path = root / "deploy.env.example"

        lines = ["# oration deploy configuration", "# Export these or put them in .oration-deploy/config.json", ""]
        for key, info in _CONFIG_KEYS.items():
            lines.append(f"# {info['description']}")
            lines.append(f"{key}={info['default']}")
            lines.append("")

        env_path.write_text("\n".join(lines), encoding="utf-8")
        return env_path

    def load_config(self, project_path: str | Path) -> dict[str, str]:
        """Load merged config: defaults -> profile -> config.json -> env vars.

        Returns a flat dict of configuration values.
        """
        root = Path(project_path)
        config: dict[str, str] = {}

        # 1. Defaults
        for key, info in _CONFIG_KEYS.items():
            config[key] = str(info["default"])

        # 2. Profile overrides
        env_name = os.environ.get("ORATION_ENV", config["ORATION_ENV"])
        profile = _PROFILES.get(env_name, {})
        config.update(profile)

        # 3. .oration-deploy/config.json
        config_json = root / ".oration-deploy" / "config.json"
        if config_json.is_file():
            try:
                data = json.loads(config_json.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                raise ConfigError(f"Unreadable {config_json}: {exc}", step="load_config") from exc
            for k, v in data.items():
                config[k] = str(v)

        # 4. Environment variables override all
        for key in _CONFIG_KEYS:
            env_val = os.environ.get(key)
            if env_val is not None:
                config[key] = env_val

        return config

    def load_settings(self, project_path: str | Path) -> DeploySettings:
        """Return the merged configuration as :class:`DeploySettings`."""
        config = self.load_config(project_path)
        values = {
            key[len(_ENV_PREFIX):].lower(): value
            for key, value in config.items()
            if key in _CONFIG_KEYS
        }
        try:
            return DeploySettings.model_validate(values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid deploy configuration: {exc}", step="load_config") from exc
