from __future__ import annotations

from typing import Any

from ..replica import Replica, ReplicaRole
from .base import DeploymentResult, Execution, ExecutionLog, Phase, StrategyConfig, StrategyOps, StrategyType, drive, validate_config


def replicas_for_step(percent: int, total: int) -> int:
    """ceil(percent * total / 100) without floating point."""
    return -(-percent * total // 100)


class CanaryStrategy:
    """Move replicas over in growing steps (`step_percentages`).

    Every step re-verifies all replicas migrated so far, then waits `delay`
    before the next step.
    """

    kind = StrategyType.CANARY

    def __init__(self, ops: StrategyOps, config: StrategyConfig | None = None):
        self.ops = ops
        self.config = config or StrategyConfig(type=self.kind)
        self.executions = ExecutionLog()

    def configure(self, cfg: StrategyConfig | dict[str, Any] | None) -> None:
        self.config = validate_config(cfg)

    def _transition(self, ex: Execution) -> list[Replica]:
        total = len(ex.snapshot)
        pending = list(ex.snapshot)
        migrated: list[Replica] = []
        steps = ex.config.step_percentages
        for i, pct in enumerate(steps):
            count = replicas_for_step(pct, total) - len(migrated)
            if count <= 0:
                continue
            ex.check_deadline()
            batch, pending = pending[:count], pending[count:]
            ex.advance(Phase.TRANSITION, f"step {pct}%: {len(batch)} replica(s) -> {ex.new_tag}")
            migrated.extend(ex.replace(old, ReplicaRole.CANARY) for old in batch)
            ex.advance(Phase.VERIFY_HEALTH, f"step {pct}%: {len(migrated)}/{total} migrated")
            ex.verify(migrated)
            if pending and i < len(steps) - 1:
                ex.pause(ex.config.delay)
        return migrated

    def execute(self, service: str, new_tag: str, new_image: str | None = None) -> DeploymentResult:
        ex = Execution(service, new_tag, self.config, self.ops, parallel=False, new_image=new_image)
        self.executions.remember(ex)
        return drive(ex, self._transition)

    def rollback(self, service: str) -> None:
        self.executions.rollback(service)
