"""YAML configuration file.

Example::

    checkInterval: 1m
    registry:
      ghcr:
        token: ${GITHUB_PAT}
        imagePolicy:
          filterTags:
            pattern: '^main-[a-f0-9]+-(?P<ts>\\d+)$'
            extract: '$ts'
          policy:
            numerical:
              order: desc
    rollingUpdate:
      enabled: true
      strategy: canary
      healthCheck: http
      healthEndpoint: /health
      rollbackOnFailure: true

Keys may be written in camelCase or snake_case.
"""
from __future__ import annotations

import os
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .durations import Duration
from .errors import ConfigError, DosyncError
from .health import HealthCheckSpec, HealthKind
from .imageref import RegistryKind
from .policy import ImagePolicy
from .registry import RegistryCredentials
from .strategies import StrategyConfig, StrategyType


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RegistryEntry(RegistryCredentials):
    image_policy: ImagePolicy | None = None


class RollingUpdateConfig(_Model):
    enabled: bool = False
    strategy: StrategyType = StrategyType.ONE_AT_A_TIME
    health_check: HealthKind = HealthKind.DOCKER
    health_endpoint: str = "/health"
    health_port: int | None = None
    health_command: list[str] | str | None = None
    health_timeout: Duration = 5.0
    health_interval: Duration = 1.0
    delay: Duration = 1.0
    rollback_on_failure: bool = False
    step_percentages: list[int] | None = None
    percentage: int | None = None
    verification_period: Duration = 30.0
    timeout: Duration = 300.0
    success_threshold: int = 1
    failure_threshold: int = 3
    pre_update_command: list[str] | str | None = None
    post_update_command: list[str] | str | None = None

    def strategy_config(self) -> StrategyConfig:
        """Build the validated StrategyConfig this block describes."""
        try:
            health = HealthCheckSpec(
                kind=self.health_check,
                endpoint=self.health_endpoint if self.health_check == HealthKind.HTTP else None,
                port=self.health_port if self.health_port is not None else (80 if self.health_check == HealthKind.TCP else None),
                command=self.health_command,
                timeout=self.health_timeout,
                interval=self.health_interval,
                success_threshold=self.success_threshold,
                failure_threshold=self.failure_threshold,
            )
            data: dict[str, Any] = {
                "type": self.strategy,
                "timeout": self.timeout,
                "delay": self.delay,
                "health_check": health,
                "pre_update_command": self.pre_update_command,
                "post_update_command": self.post_update_command,
                "verification_period": self.verification_period,
                "rollback_on_failure": self.rollback_on_failure,
            }
            if self.step_percentages is not None:
                data["step_percentages"] = self.step_percentages
            if self.percentage is not None:
                data["percentage"] = self.percentage
            return StrategyConfig.model_validate(data)
        except (ValidationError, DosyncError) as e:
            raise ConfigError(f"invalid rollingUpdate configuration: {e}") from e


class _NotifyOn(_Model):
    on_success: bool = False
    on_failure: bool = True
    on_rollback: bool = True


class EmailNotifyConfig(_NotifyOn):
    enabled: bool = False
    recipients: list[str] = Field(default_factory=list)


class WebhookNotifyConfig(_NotifyOn):
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)


class SlackNotifyConfig(_NotifyOn):
    webhook_url: str | None = None
    channel: str | None = None


class NotificationsConfig(_Model):
    email: EmailNotifyConfig = Field(default_factory=EmailNotifyConfig)
    webhook: WebhookNotifyConfig = Field(default_factory=WebhookNotifyConfig)
    slack: SlackNotifyConfig = Field(default_factory=SlackNotifyConfig)


class MetricsConfig(_Model):
    retention_days: int | None = Field(None, ge=1)


class AppConfig(_Model):
    check_interval: Duration = Field(60.0, gt=0)
    verbose: bool = False
    registry: dict[RegistryKind, RegistryEntry] = Field(default_factory=dict)
    rolling_update: RollingUpdateConfig = Field(default_factory=RollingUpdateConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    def credentials(self) -> dict[RegistryKind, RegistryCredentials]:
        return dict(self.registry)

    def policy_for(self, kind: RegistryKind) -> ImagePolicy | None:
        entry = self.registry.get(kind)
        return entry.image_policy if entry else None

    def harbor_hosts(self) -> tuple[str, ...]:
        """Host of the configured Harbor registry, so its images are detected as Harbor."""
        entry = self.registry.get(RegistryKind.HARBOR)
        if entry is None or not entry.url:
            return ()
        host = urlparse(entry.url if "://" in entry.url else f"https://{entry.url}").netloc
        return (host,) if host else ()


_POLICY_KEYS = {"imagePolicy", "image_policy"}


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: (v if k in _POLICY_KEYS else _expand(v)) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def parse_config(data: dict[str, Any] | None) -> AppConfig:
    """Validate a config mapping. Environment references in credentials are expanded."""
    data = dict(data or {})
    if isinstance(data.get("registry"), dict):
        data["registry"] = {str(k).lower(): _expand(v or {}) for k, v in data["registry"].items()}
    try:
        cfg = AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e
    # Surface strategy problems at load time rather than on the first update.
    cfg.rolling_update.strategy_config()
    return cfg


def load_config(path: str | None) -> AppConfig:
    if not path:
        return AppConfig()
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in config file {path}: {e}") from e
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return parse_config(data)
