"""
Runtime configuration for the orchestration core.

Configuration lives at ~/.specflow/config.yaml. Every component that needs a
path, binary name or timing value receives a SpecflowConfig explicitly; the
only place the home directory is consulted is SpecflowConfig.load().

Example config.yaml:

    claude_binary: /opt/claude/bin/claude
    staleness_threshold_seconds: 600
    skill_dirs:
      - ~/work/specflow/commands
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"


def _default_home() -> Path:
    return Path.home() / ".specflow"


def _default_claude_home() -> Path:
    return Path.home() / ".claude"


@dataclass
class SpecflowConfig:
    """Explicit configuration threaded into stores, runners and services."""
    home_dir: Path = field(default_factory=_default_home)
    claude_home: Path = field(default_factory=_default_claude_home)
    claude_binary: str = "claude"
    skill_dirs: list[Path] = field(default_factory=list)
    staleness_threshold_seconds: float = 5 * 60
    kill_grace_seconds: float = 5.0
    poll_interval_seconds: float = 2.0
    detached_timeout_seconds: float = 4 * 60 * 60
    session_poll_interval_seconds: float = 5.0
    max_error_chars: int = 200

    def __post_init__(self):
        self.home_dir = Path(self.home_dir).expanduser()
        self.claude_home = Path(self.claude_home).expanduser()
        if not self.skill_dirs:
            # Installed skills first, then a local commands/ checkout
            self.skill_dirs = [self.claude_home / "commands", Path.cwd() / "commands"]
        self.skill_dirs = [Path(d).expanduser() for d in self.skill_dirs]

    @property
    def registry_file(self) -> Path:
        return self.home_dir / "registry.json"

    @property
    def workflows_dir(self) -> Path:
        return self.home_dir / "workflows"

    @classmethod
    def get_default(cls) -> dict:
        """Default values as a plain dict (the shape of config.yaml)."""
        return {
            "claude_binary": "claude",
            "staleness_threshold_seconds": 5 * 60,
            "kill_grace_seconds": 5.0,
            "poll_interval_seconds": 2.0,
            "detached_timeout_seconds": 4 * 60 * 60,
            "session_poll_interval_seconds": 5.0,
            "max_error_chars": 200,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SpecflowConfig":
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "SpecflowConfig":
        """
        Load configuration from YAML, merged over defaults.

        Args:
            path: Config file to read (default: ~/.specflow/config.yaml)

        Returns:
            SpecflowConfig. Defaults if the file does not exist.

        Raises:
            ConfigurationError: If the file exists but is not valid YAML
        """
        config_path = Path(path) if path else _default_home() / CONFIG_FILENAME
        data = cls.get_default()

        if config_path.exists():
            try:
                with open(config_path) as f:
                    user_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(
                    f"Invalid YAML in {config_path}: {e}",
                    hint="Fix or remove the config file",
                )
            if not isinstance(user_data, dict):
                raise ConfigurationError(f"Config file {config_path} must contain a mapping")
            data = _deep_merge(data, user_data)

        env_binary = os.environ.get("CLAUDE_BINARY")
        if env_binary:
            data["claude_binary"] = env_binary

        return cls.from_dict(data)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
