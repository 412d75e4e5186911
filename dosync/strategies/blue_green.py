from __future__ import annotations

import logging
from typing import Any

from ..errors import DosyncError, HealthUnhealthy
from ..replica import Replica, ReplicaRole
from .base import DeploymentResult, Execution, ExecutionLog, Phase, StrategyConfig, StrategyOps, StrategyType, drive, validate_config


log = logging.getLogger(__name__)


class BlueGreenStrategy:
    """Bring up a full green set beside the running (blue) set, then switch.

    Green is verified before the switch; a failure there removes green and
    leaves blue untouched. After the switch nothing is undone automatically:
    `rollback(service)` brings blue back on request.
    """

    kind = StrategyType.BLUE_GREEN

    def __init__(self, ops: StrategyOps, config: StrategyConfig | None = None):
        self.ops = ops
        self.config = config or StrategyConfig(type=self.kind)
        self.executions = ExecutionLog()

    def configure(self, cfg: StrategyConfig | dict[str, Any] | None) -> None:
        self.config = validate_config(cfg)

    def _transition(self, ex: Execution) -> list[Replica]:
        ex.advance(Phase.TRANSITION, f"starting {len(ex.snapshot)} green replica(s) on {ex.new_tag}")
        green = ex.fan_out(lambda blue: ex.start(blue.ordinal, ReplicaRole.GREEN), ex.snapshot)
        ex.advance(Phase.VERIFY_HEALTH, f"{len(green)} green replica(s)")
        ex.verify(green)
        return green

    def _switch(self, ex: Execution) -> None:
        ex.committed = True
        for dep in self.ops.dependents_of(ex.service):
            for c in self.ops.engine.list_replicas(dep):
                try:
                    self.ops.engine.restart_container(c.id)
                except DosyncError as e:
                    log.warning("[%s] finalize: restart of dependent %s failed: %s", ex.service, dep, e)
        log.info("[%s] finalize: traffic switched to green", ex.service)

    def _finalize(self, ex: Execution, green: list[Replica]) -> None:
        self._switch(ex)
        ex.pause(ex.config.verification_period)

        checker = self.ops.checker_factory(ex.config.health_check, self.ops.engine)
        for r in green:
            ok, message = checker.check(r)
            if not ok:
                raise HealthUnhealthy(f"{ex.service}: green replica {r.ordinal} unhealthy after switch: {message}")

        ex.fan_out(ex.stop, ex.snapshot)
        log.info("[%s] finalize: decommissioned %d blue replica(s)", ex.service, len(ex.snapshot))

    def execute(self, service: str, new_tag: str, new_image: str | None = None) -> DeploymentResult:
        ex = Execution(service, new_tag, self.config, self.ops, parallel=True, new_image=new_image)
        self.executions.remember(ex)
        return drive(ex, self._transition, self._finalize)

    def rollback(self, service: str) -> None:
        self.executions.rollback(service)
