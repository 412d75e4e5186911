from __future__ import annotations

from typing import Any

from ..replica import Replica
from .base import DeploymentResult, Execution, ExecutionLog, Phase, StrategyConfig, StrategyOps, StrategyType, drive, validate_config


class AllAtOnceStrategy:
    """Stop every replica, then start them all on the new tag.

    The service is unavailable between the two steps.
    """

    kind = StrategyType.ALL_AT_ONCE

    def __init__(self, ops: StrategyOps, config: StrategyConfig | None = None):
        self.ops = ops
        self.config = config or StrategyConfig(type=self.kind)
        self.executions = ExecutionLog()

    def configure(self, cfg: StrategyConfig | dict[str, Any] | None) -> None:
        self.config = validate_config(cfg)

    def _transition(self, ex: Execution) -> list[Replica]:
        ex.advance(Phase.TRANSITION, f"{len(ex.snapshot)} replica(s) -> {ex.new_tag}")
        ex.fan_out(ex.stop, ex.snapshot)
        fresh = ex.fan_out(lambda old: ex.start(old.ordinal), ex.snapshot)
        ex.advance(Phase.VERIFY_HEALTH, f"{len(fresh)} replica(s)")
        ex.verify(fresh)
        return fresh

    def execute(self, service: str, new_tag: str, new_image: str | None = None) -> DeploymentResult:
        ex = Execution(service, new_tag, self.config, self.ops, parallel=True, new_image=new_image)
        self.executions.remember(ex)
        return drive(ex, self._transition)

    def rollback(self, service: str) -> None:
        self.executions.rollback(service)
