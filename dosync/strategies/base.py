"""Pieces shared by every update strategy.

A strategy run is an `Execution`: it records the replicas it started and
stopped so a failed run can be undone, walks the phase machine below, and
writes one `[<service>] <phase>: <outcome>` log line per transition.

    idle -> prepare -> apply-pre -> transition -> verify-health -> apply-post -> finalize -> done
                          |             |              |                            |
                          +-------------+------> fail -> rollback -> failed <-------+
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Sequence, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from ..docker_ops import Engine
from ..durations import Duration
from ..errors import (
    Cancelled,
    ConfigError,
    DosyncError,
    ExecutionTimeout,
    HealthTimeout,
    HealthUnhealthy,
    InvalidStateTransition,
    PreCommandFailed,
    RollbackFailed,
)
from ..health import HealthCheckSpec, HealthChecker, HealthOutcome, aggregate, new_health_checker, wait_for_all
from ..imageref import parse_image_ref
from ..replica import Replica, ReplicaDetector, ReplicaRole


log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class StrategyType(str, Enum):
    ONE_AT_A_TIME = "one-at-a-time"
    ALL_AT_ONCE = "all-at-once"
    BLUE_GREEN = "blue-green"
    CANARY = "canary"
    PERCENTAGE = "percentage"


class StrategyConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: StrategyType = Field(StrategyType.ONE_AT_A_TIME, validation_alias=AliasChoices("type", "strategy"))
    timeout: Duration = Field(300.0, gt=0)
    delay: Duration = Field(1.0, ge=0)
    health_check: HealthCheckSpec = Field(default_factory=HealthCheckSpec)
    pre_update_command: list[str] | str | None = None
    post_update_command: list[str] | str | None = None
    step_percentages: list[int] = Field(default_factory=lambda: [10, 25, 50, 100])
    percentage: int = Field(20, ge=1, le=100)
    verification_period: Duration = Field(30.0, ge=0)
    rollback_on_failure: bool = False

    @field_validator("step_percentages")
    @classmethod
    def _steps_increasing(cls, v: list[int]) -> list[int]:
        if not v:
            return [100]
        if v[0] <= 0:
            raise ValueError("step percentages must start above 0")
        for a, b in zip(v, v[1:]):
            if b <= a:
                raise ValueError(f"step percentages must be strictly increasing, got {v}")
        if v[-1] > 100:
            raise ValueError("step percentages must not exceed 100")
        if v[-1] != 100:
            v = [*v, 100]
        return v


def validate_config(cfg: StrategyConfig | dict[str, Any] | None) -> StrategyConfig:
    if cfg is None:
        return StrategyConfig()
    if isinstance(cfg, StrategyConfig):
        return cfg
    try:
        return StrategyConfig.model_validate(cfg)
    except ValidationError as e:
        raise ConfigError(f"invalid strategy configuration: {e}") from e


class Phase(str, Enum):
    IDLE = "idle"
    PREPARE = "prepare"
    APPLY_PRE = "apply-pre"
    TRANSITION = "transition"
    VERIFY_HEALTH = "verify-health"
    APPLY_POST = "apply-post"
    FINALIZE = "finalize"
    DONE = "done"
    FAIL = "fail"
    ROLLBACK = "rollback"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.IDLE: {Phase.PREPARE},
    Phase.PREPARE: {Phase.APPLY_PRE, Phase.FAIL},
    Phase.APPLY_PRE: {Phase.TRANSITION, Phase.FAIL},
    Phase.TRANSITION: {Phase.VERIFY_HEALTH, Phase.FAIL},
    Phase.VERIFY_HEALTH: {Phase.TRANSITION, Phase.APPLY_POST, Phase.FAIL},
    Phase.APPLY_POST: {Phase.FINALIZE, Phase.FAIL},
    Phase.FINALIZE: {Phase.DONE, Phase.FAIL},
    Phase.FAIL: {Phase.ROLLBACK, Phase.FAILED},
    Phase.ROLLBACK: {Phase.FAILED},
    Phase.DONE: set(),
    Phase.FAILED: set(),
}


@dataclass
class StrategyOps:
    """Collaborators a strategy works through."""

    engine: Engine
    detector: ReplicaDetector
    checker_factory: Callable[[HealthCheckSpec, Engine], HealthChecker] = new_health_checker
    cancel: threading.Event = field(default_factory=threading.Event)
    dependents_of: Callable[[str], list[str]] = lambda service: []


@dataclass
class DeploymentResult:
    service: str
    old_image: str
    new_image: str
    phase: Phase
    outcome: str  # done|failed|timeout|cancelled
    rolled_back: bool = False
    error: DosyncError | None = None
    phases: list[Phase] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.phase == Phase.DONE

    @property
    def duration_s(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()


def _outcome_for(error: DosyncError) -> str:
    if isinstance(error, (ExecutionTimeout, HealthTimeout)):
        return "timeout"
    if isinstance(error, Cancelled):
        return "cancelled"
    return "failed"


class Execution:
    """One strategy run against one service."""

    def __init__(
        self,
        service: str,
        new_tag: str,
        config: StrategyConfig,
        ops: StrategyOps,
        parallel: bool = False,
        new_image: str | None = None,
    ):
        self.service = service
        self.new_tag = new_tag
        self.new_image = new_image
        self.config = config
        self.ops = ops
        self.parallel = parallel
        self.deadline = time.monotonic() + config.timeout
        self.phase = Phase.IDLE
        self.phases: list[Phase] = []
        self.snapshot: list[Replica] = []
        self.templates: dict[int, dict[str, Any]] = {}
        self.started: list[Replica] = []
        self.stopped: list[Replica] = []
        # Set once traffic has moved to the new replicas; no automatic undo after that.
        self.committed = False
        self.result = DeploymentResult(service=service, old_image="", new_image=new_image or "", phase=Phase.IDLE, outcome="")
        self._lock = threading.Lock()
        self._checker = ops.checker_factory(config.health_check, ops.engine)

    # -- phase machine -----------------------------------------------------

    def advance(self, target: Phase, outcome: str = "ok") -> None:
        if target not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidStateTransition(self.phase, target)
        self.phase = target
        self.phases.append(target)
        level = logging.WARNING if target in {Phase.FAIL, Phase.ROLLBACK, Phase.FAILED} else logging.INFO
        log.log(level, "[%s] %s: %s", self.service, target.value, outcome)

    def check_deadline(self) -> None:
        if self.ops.cancel.is_set():
            raise Cancelled(f"{self.service}: update cancelled")
        if time.monotonic() >= self.deadline:
            raise ExecutionTimeout(f"{self.service}: update exceeded timeout of {self.config.timeout:.0f}s")

    def pause(self, seconds: float) -> None:
        """Sleep between steps, returning early on cancellation or the deadline."""
        if seconds <= 0:
            return
        remaining = self.deadline - time.monotonic()
        if self.ops.cancel.wait(max(0.0, min(seconds, remaining))):
            raise Cancelled(f"{self.service}: update cancelled")
        if seconds > remaining:
            raise ExecutionTimeout(f"{self.service}: update exceeded timeout of {self.config.timeout:.0f}s")

    # -- replica operations ------------------------------------------------

    def prepare(self) -> list[Replica]:
        self.snapshot = sorted(self.ops.detector.require(self.service), key=lambda r: r.ordinal)
        # Captured before anything is stopped; new and restored replicas are created from these.
        for r in self.snapshot:
            template = self.ops.engine.replica_template(r.id)
            if template is not None:
                self.templates[r.ordinal] = template
        old_image = self.snapshot[0].image
        self.result.old_image = old_image
        if not self.new_image:
            self.new_image = parse_image_ref(old_image).with_tag(self.new_tag).render()
            self.result.new_image = self.new_image
        return self.snapshot

    def apply_pre(self, targets: Iterable[Replica]) -> None:
        cmd = self.config.pre_update_command
        if not cmd:
            return
        for r in targets:
            code, output = self.ops.engine.exec_command(r.id, cmd)
            if code != 0:
                raise PreCommandFailed(f"{self.service}: pre-update command failed on replica {r.ordinal} (exit {code}): {output.strip()[:200]}")

    def apply_post(self, targets: Iterable[Replica]) -> None:
        cmd = self.config.post_update_command
        if not cmd:
            return
        for r in targets:
            try:
                code, output = self.ops.engine.exec_command(r.id, cmd)
            except DosyncError as e:
                log.warning("[%s] apply-post: replica %s: %s", self.service, r.ordinal, e)
                continue
            if code != 0:
                log.warning("[%s] apply-post: replica %s exited %s: %s", self.service, r.ordinal, code, output.strip()[:200])

    def template_for(self, ordinal: int) -> dict[str, Any] | None:
        if ordinal in self.templates:
            return self.templates[ordinal]
        return next(iter(self.templates.values()), None)

    def start(self, ordinal: int, role: ReplicaRole = ReplicaRole.STABLE, image: str | None = None) -> Replica:
        info = self.ops.engine.start_replica(
            self.service, ordinal, image or self.new_image or "", role.value, template=self.template_for(ordinal)
        )
        r = Replica.from_container(info, ordinal=ordinal)
        with self._lock:
            self.started.append(r)
        return r

    def stop(self, replica: Replica) -> None:
        self.ops.engine.stop_replica(replica.id)
        with self._lock:
            self.stopped.append(replica)

    def replace(self, old: Replica, role: ReplicaRole = ReplicaRole.STABLE) -> Replica:
        self.stop(old)
        return self.start(old.ordinal, role)

    def fan_out(self, fn: Callable[[T], R], items: Sequence[T]) -> list[R]:
        """Apply `fn` to every item, concurrently when the strategy allows it.

        All calls finish before this returns; the first error is then raised.
        """
        if not self.parallel or len(items) <= 1:
            return [fn(x) for x in items]
        with ThreadPoolExecutor(max_workers=min(len(items), 16), thread_name_prefix=f"dosync-{self.service}") as pool:
            futures = [pool.submit(fn, x) for x in items]
            errors = [f.exception() for f in futures]
        for e in errors:
            if e is not None:
                raise e
        return [f.result() for f in futures]

    def verify(self, replicas: Sequence[Replica]) -> None:
        spec = self.config.health_check
        result = aggregate(
            wait_for_all(
                self._checker,
                replicas,
                self.deadline,
                spec.success_threshold,
                spec.failure_threshold,
                spec.interval,
                self.ops.cancel,
            )
        )
        if result.outcome == HealthOutcome.HEALTHY:
            return
        if result.outcome == HealthOutcome.CANCELLED:
            raise Cancelled(f"{self.service}: health verification cancelled")
        if result.outcome == HealthOutcome.TIMEOUT:
            raise HealthTimeout(f"{self.service}: replica {result.replica_id[:12]} health timed out: {result.message}")
        raise HealthUnhealthy(f"{self.service}: replica {result.replica_id[:12]} unhealthy: {result.message}")

    def undo(self) -> None:
        """Stop every replica this run started and restart every one it stopped."""
        with self._lock:
            started = list(reversed(self.started))
            stopped = sorted(self.stopped, key=lambda r: r.ordinal)
        errors: list[str] = []

        def stop_new(r: Replica) -> None:
            try:
                self.ops.engine.stop_replica(r.id)
            except DosyncError as e:
                errors.append(f"stop {r.id[:12]}: {e}")

        def restore_old(r: Replica) -> None:
            try:
                self.ops.engine.start_replica(self.service, r.ordinal, r.image, r.role.value, template=self.template_for(r.ordinal))
            except DosyncError as e:
                errors.append(f"restart replica {r.ordinal}: {e}")

        self.fan_out(stop_new, started)
        self.fan_out(restore_old, stopped)
        with self._lock:
            self.started.clear()
            self.stopped.clear()
        if errors:
            raise RollbackFailed(f"{self.service}: rollback incomplete: {'; '.join(errors)}")

    # -- driver ------------------------------------------------------------

    def finish(self, error: DosyncError | None = None) -> DeploymentResult:
        res = self.result
        res.phase = self.phase
        res.phases = list(self.phases)
        res.error = error
        res.outcome = "done" if error is None else _outcome_for(error)
        res.finished_at = datetime.now(timezone.utc)
        return res

    def fail(self, error: DosyncError) -> DeploymentResult:
        self.advance(Phase.FAIL, str(error))
        if self.config.rollback_on_failure and not self.committed and (self.started or self.stopped):
            self.advance(Phase.ROLLBACK, f"restoring {len(self.stopped)} replica(s), removing {len(self.started)}")
            try:
                self.undo()
                self.result.rolled_back = True
            except RollbackFailed as e:
                log.error("[%s] rollback: %s", self.service, e)
                self.advance(Phase.FAILED, str(e))
                return self.finish(e)
        elif self.committed:
            log.warning("[%s] fail: traffic already switched; rollback must be requested explicitly", self.service)
        self.advance(Phase.FAILED, type(error).__name__)
        return self.finish(error)


Transition = Callable[[Execution], list[Replica]]
Finalize = Callable[[Execution, list[Replica]], None]


def drive(ex: Execution, transition: Transition, finalize: Finalize | None = None) -> DeploymentResult:
    """Run the common phase sequence around a strategy's transition step."""
    try:
        ex.advance(Phase.PREPARE, f"target tag {ex.new_tag}")
        ex.prepare()
        ex.advance(Phase.APPLY_PRE, f"{len(ex.snapshot)} replica(s)")
        ex.apply_pre(ex.snapshot)
        ex.check_deadline()
        new = transition(ex)
        ex.advance(Phase.APPLY_POST, f"{len(new)} replica(s)")
        ex.apply_post(new)
        ex.advance(Phase.FINALIZE)
        if finalize is not None:
            finalize(ex, new)
        ex.advance(Phase.DONE, ex.new_image or ex.new_tag)
        return ex.finish()
    except DosyncError as e:
        if isinstance(e, InvalidStateTransition):
            raise
        return ex.fail(e)
    except Exception as e:
        log.exception("[%s] %s: unexpected error", ex.service, ex.phase.value)
        return ex.fail(DosyncError(f"{ex.service}: {type(e).__name__}: {e}"))


class ExecutionLog:
    """Last execution per service, kept so it can be rolled back on request."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: dict[str, Execution] = {}

    def remember(self, ex: Execution) -> None:
        with self._lock:
            self._last[ex.service] = ex

    def rollback(self, service: str) -> None:
        with self._lock:
            ex = self._last.pop(service, None)
        if ex is None:
            raise RollbackFailed(f"{service}: no update recorded to roll back")
        log.warning("[%s] rollback: requested", service)
        ex.undo()
