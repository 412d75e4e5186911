from __future__ import annotations

from typing import Any

from ..replica import Replica
from .base import DeploymentResult, Execution, ExecutionLog, Phase, StrategyConfig, StrategyOps, StrategyType, drive, validate_config


def rolling_batches(ex: Execution, batch_size: int) -> list[Replica]:
    """Replace replicas in ordinal order, `batch_size` at a time.

    Each batch must pass health verification before the next one starts.
    """
    migrated: list[Replica] = []
    pending = list(ex.snapshot)
    while pending:
        batch, pending = pending[:batch_size], pending[batch_size:]
        ex.check_deadline()
        ordinals = ", ".join(str(r.ordinal) for r in batch)
        ex.advance(Phase.TRANSITION, f"replica {ordinals} -> {ex.new_tag}")
        fresh = [ex.replace(old) for old in batch]
        ex.advance(Phase.VERIFY_HEALTH, f"replica {ordinals}")
        ex.verify(fresh)
        migrated.extend(fresh)
        if pending:
            ex.pause(ex.config.delay)
    return migrated


class OneAtATimeStrategy:
    """Stop-then-start each replica in turn, waiting for it to turn healthy."""

    kind = StrategyType.ONE_AT_A_TIME

    def __init__(self, ops: StrategyOps, config: StrategyConfig | None = None):
        self.ops = ops
        self.config = config or StrategyConfig(type=self.kind)
        self.executions = ExecutionLog()

    def configure(self, cfg: StrategyConfig | dict[str, Any] | None) -> None:
        self.config = validate_config(cfg)

    def execute(self, service: str, new_tag: str, new_image: str | None = None) -> DeploymentResult:
        ex = Execution(service, new_tag, self.config, self.ops, parallel=False, new_image=new_image)
        self.executions.remember(ex)
        return drive(ex, lambda e: rolling_batches(e, 1))

    def rollback(self, service: str) -> None:
        self.executions.rollback(service)
