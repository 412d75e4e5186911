from __future__ import annotations

from typing import Any

from .base import DeploymentResult, Execution, ExecutionLog, StrategyConfig, StrategyOps, StrategyType, drive, validate_config
from .one_at_a_time import rolling_batches


class PercentageStrategy:
    """Rolling update in batches of `percentage` percent of the replicas."""

    kind = StrategyType.PERCENTAGE

    def __init__(self, ops: StrategyOps, config: StrategyConfig | None = None):
        self.ops = ops
        self.config = config or StrategyConfig(type=self.kind)
        self.executions = ExecutionLog()

    def configure(self, cfg: StrategyConfig | dict[str, Any] | None) -> None:
        self.config = validate_config(cfg)

    def batch_size(self, replicas: int) -> int:
        return max(1, replicas * self.config.percentage // 100)

    def execute(self, service: str, new_tag: str, new_image: str | None = None) -> DeploymentResult:
        ex = Execution(service, new_tag, self.config, self.ops, parallel=False, new_image=new_image)
        self.executions.remember(ex)
        return drive(ex, lambda e: rolling_batches(e, self.batch_size(len(e.snapshot))))

    def rollback(self, service: str) -> None:
        self.executions.rollback(service)
