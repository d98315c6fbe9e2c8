"""Configuration loading from .mergeguard/config.yaml.

Precedence: built-in defaults < config file < environment variables (for
notification endpoints only, so secrets can stay out of the repository).
"""

import logging
import os
from pathlib import Path

import pydantic
import yaml
from pydantic import BaseModel, Field

from mergeguard.core.errors import ConfigError
from mergeguard.core.models import ProtectedPattern

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".mergeguard"
CONFIG_FILENAME = "config.yaml"

DEFAULT_CONFIG_YAML = """# mergeguard configuration for this repository

# Where the merge ledger, lease table and escalation database live
state_dir: .mergeguard

# Lease duration for shared resources (minutes)
lock_ttl_minutes: 30

# Timeout for each git subprocess (seconds)
git_timeout_seconds: 120

# Minimum confidence for writing an automatic conflict resolution
auto_resolve_threshold: 0.8

# Files guarded by the reserved "schema" lease
schema_paths:
  - schema.prisma

# Extra protected paths, in addition to the built-in security patterns
protected_patterns: []
#  - pattern: "config/production/**"
#    operations: [write, edit]
#    message: Production config is managed by the platform team

# Notification channels for escalations. Environment variables
# (SLACK_WEBHOOK_URL, DISCORD_WEBHOOK_URL, SMTP_HOST, ...) take precedence.
notifications: {}
"""


class NotificationConfig(BaseModel):
    """Webhook and mail settings for escalation fan-out."""

    slack_webhook_url: str | None = None
    slack_channel: str | None = None
    discord_webhook_url: str | None = None
    smtp_host: str | None = None
    smtp_port: int = 587
    notification_from: str = "mergeguard@localhost"
    notification_to: list[str] = Field(default_factory=list)
    timeout_seconds: float = 10.0

    def with_env_overrides(self, env: dict[str, str] | None = None) -> "NotificationConfig":
        env = os.environ if env is None else env
        updates: dict[str, object] = {}
        if env.get("SLACK_WEBHOOK_URL"):
            updates["slack_webhook_url"] = env["SLACK_WEBHOOK_URL"]
        if env.get("SLACK_CHANNEL"):
            updates["slack_channel"] = env["SLACK_CHANNEL"]
        if env.get("DISCORD_WEBHOOK_URL"):
            updates["discord_webhook_url"] = env["DISCORD_WEBHOOK_URL"]
        if env.get("SMTP_HOST"):
            updates["smtp_host"] = env["SMTP_HOST"]
        if env.get("SMTP_PORT"):
            try:
                updates["smtp_port"] = int(env["SMTP_PORT"])
            except ValueError:
                raise ConfigError(f"SMTP_PORT must be an integer, got '{env['SMTP_PORT']}'")
        if env.get("NOTIFICATION_FROM"):
            updates["notification_from"] = env["NOTIFICATION_FROM"]
        if env.get("NOTIFICATION_TO"):
            updates["notification_to"] = [
                addr.strip() for addr in env["NOTIFICATION_TO"].split(",") if addr.strip()
            ]
        return self.model_copy(update=updates)


class GuardConfig(BaseModel):
    """Repository-level mergeguard settings."""

    state_dir: str = STATE_DIR_NAME
    lock_ttl_minutes: float = Field(default=30, gt=0)
    git_timeout_seconds: float = Field(default=120, gt=0)
    auto_resolve_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    schema_paths: list[str] = Field(default_factory=lambda: ["schema.prisma"])
    protected_patterns: list[ProtectedPattern] = Field(default_factory=list)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    def state_path(self, repo_path: Path) -> Path:
        path = Path(self.state_dir)
        return path if path.is_absolute() else Path(repo_path) / path


def load_config(repo_path: Path, env: dict[str, str] | None = None) -> GuardConfig:
    """Load config for repo_path, falling back to defaults if no file exists.

    Raises:
        ConfigError: If the file is not valid YAML or fails schema validation.
    """
    config_path = Path(repo_path) / STATE_DIR_NAME / CONFIG_FILENAME
    data: dict = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}")
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(
                f"Invalid config in {config_path}: expected a mapping, "
                f"got {type(loaded).__name__}"
            )
        data = loaded or {}

    try:
        config = GuardConfig.model_validate(data)
    except pydantic.ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid config in {config_path}: {errors}")

    config.notifications = config.notifications.with_env_overrides(env)
    logger.debug(f"Loaded config from {config_path if config_path.exists() else 'defaults'}")
    return config


def write_default_config(repo_path: Path) -> Path | None:
    """Create .mergeguard/config.yaml; returns None if it already exists."""
    config_path = Path(repo_path) / STATE_DIR_NAME / CONFIG_FILENAME
    if config_path.exists():
        return None
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    return config_path
