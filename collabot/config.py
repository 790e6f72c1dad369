"""
Configuration loading for collabot.

The harness reads a single ``config.yaml`` validated with pydantic. Every
section has defaults so an almost empty file is valid; only
``models.default`` is required.
"""

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from collabot.errors import ConfigError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# COLLABOT_LOG_LEVEL tiers
LOG_TIERS = {
    "minimal": logging.WARNING,
    "debug": logging.INFO,
    "verbose": logging.DEBUG,
}


class ModelsConfig(BaseModel):
    default: str
    aliases: Dict[str, str] = Field(default_factory=dict)


class DefaultsConfig(BaseModel):
    stall_timeout_seconds: float = Field(300, gt=0)


class CategoryConfig(BaseModel):
    inactivity_timeout: float = Field(300, gt=0)


class PoolConfig(BaseModel):
    max_concurrent: int = Field(0, ge=0)  # 0 = unlimited


class MonitorConfig(BaseModel):
    window_size: int = Field(10, gt=0)
    repeat_warn: int = Field(3, ge=0)
    repeat_kill: int = Field(5, ge=0)
    ping_pong_warn: int = Field(3, ge=0)
    ping_pong_kill: int = Field(4, ge=0)


class RoutingRule(BaseModel):
    pattern: str  # case-insensitive regex searched in the request text
    role: str
    cwd: Optional[str] = None  # relative paths resolve against the project's first path

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid regex {value!r}: {e}")
        return value

    def matches(self, text: str) -> bool:
        return re.search(self.pattern, text, re.IGNORECASE) is not None


class RoutingConfig(BaseModel):
    """Maps request text to a role when the caller names none."""

    default: Optional[str] = None
    rules: List[RoutingRule] = Field(default_factory=list)

    def match(self, text: str, allowed_roles: List[str]) -> Optional[RoutingRule]:
        """First rule matching ``text`` whose role is in ``allowed_roles``."""
        for rule in self.rules:
            if rule.role in allowed_roles and rule.matches(text):
                return rule
        return None


class WsConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(9800, gt=0)
    handshake_timeout_seconds: float = Field(10, gt=0)


class HarnessConfig(BaseModel):
    """Top-level harness configuration."""

    models: ModelsConfig
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    categories: Dict[str, CategoryConfig] = Field(default_factory=dict)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    ws: Optional[WsConfig] = None

    def resolve_model_id(self, model_hint: str) -> str:
        """Map a role's model hint to a concrete model id."""
        return self.models.aliases.get(model_hint, self.models.default)

    def stall_timeout_for(self, category: str) -> float:
        """Inactivity timeout in seconds for a role category."""
        category_config = self.categories.get(category)
        if category_config is not None:
            return category_config.inactivity_timeout
        return self.defaults.stall_timeout_seconds


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for issue in error.errors():
        location = ".".join(str(part) for part in issue["loc"])
        lines.append(f"  - {location}: {issue['msg']}")
    return "\n".join(lines)


def parse_config(data: Optional[dict]) -> HarnessConfig:
    """Validate an already-parsed config mapping."""
    try:
        return HarnessConfig.model_validate(data or {})
    except ValidationError as e:
        raise ConfigError(f"config is invalid:\n{_format_validation_error(e)}")


def load_config(path: Union[str, Path]) -> HarnessConfig:
    """Load and validate ``config.yaml``.

    Args:
        path: Path to the YAML config file

    Returns:
        Validated HarnessConfig

    Raises:
        ConfigError: If the file is unreadable or invalid
    """
    config_path = Path(path)
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read {config_path}: {e}")

    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")

    return parse_config(data)


def resolve_log_level(verbose: bool = False) -> int:
    """Pick a log level from ``--verbose`` or the COLLABOT_LOG_LEVEL tier."""
    if verbose:
        return logging.DEBUG
    tier = os.environ.get("COLLABOT_LOG_LEVEL", "debug").lower()
    return LOG_TIERS.get(tier, logging.INFO)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(level=resolve_log_level(verbose), format=LOG_FORMAT)
