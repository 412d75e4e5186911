"""Update strategies, selected by name through `new_strategy`."""
from __future__ import annotations

from typing import Protocol

from ..errors import ConfigError
from .all_at_once import AllAtOnceStrategy
from .base import (
    ALLOWED_TRANSITIONS,
    DeploymentResult,
    Execution,
    Phase,
    StrategyConfig,
    StrategyOps,
    StrategyType,
    validate_config,
)
from .blue_green import BlueGreenStrategy
from .canary import CanaryStrategy
from .one_at_a_time import OneAtATimeStrategy
from .percentage import PercentageStrategy


class UpdateStrategy(Protocol):
    kind: StrategyType
    config: StrategyConfig

    def configure(self, cfg) -> None: ...

    def execute(self, service: str, new_tag: str, new_image: str | None = None) -> DeploymentResult: ...

    def rollback(self, service: str) -> None: ...


STRATEGIES: dict[StrategyType, type] = {
    StrategyType.ONE_AT_A_TIME: OneAtATimeStrategy,
    StrategyType.ALL_AT_ONCE: AllAtOnceStrategy,
    StrategyType.BLUE_GREEN: BlueGreenStrategy,
    StrategyType.CANARY: CanaryStrategy,
    StrategyType.PERCENTAGE: PercentageStrategy,
}


def new_strategy(config: StrategyConfig, ops: StrategyOps) -> UpdateStrategy:
    try:
        cls = STRATEGIES[StrategyType(config.type)]
    except ValueError:
        raise ConfigError(f"unknown update strategy: {config.type}") from None
    strategy = cls(ops)
    strategy.configure(config)
    return strategy


__all__ = [
    "ALLOWED_TRANSITIONS",
    "AllAtOnceStrategy",
    "BlueGreenStrategy",
    "CanaryStrategy",
    "DeploymentResult",
    "Execution",
    "OneAtATimeStrategy",
    "PercentageStrategy",
    "Phase",
    "STRATEGIES",
    "StrategyConfig",
    "StrategyOps",
    "StrategyType",
    "UpdateStrategy",
    "new_strategy",
    "validate_config",
]
