from __future__ import annotations

import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .docker_ops import Engine
from .durations import Duration
from .replica import HealthState, Replica


class HealthKind(str, Enum):
    DOCKER = "docker"
    HTTP = "http"
    TCP = "tcp"
    COMMAND = "command"


class HealthCheckSpec(BaseModel):
    """How a replica is probed and when it counts as healthy."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    kind: HealthKind = Field(HealthKind.DOCKER, alias="type")
    endpoint: str | None = None
    port: int | None = Field(None, ge=1, le=65535)
    command: list[str] | str | None = None
    expected_status: int | None = Field(None, ge=100, le=599)
    timeout: Duration = Field(5.0, gt=0)
    interval: Duration = Field(1.0, gt=0)
    success_threshold: int = Field(1, ge=1, le=10)
    failure_threshold: int = Field(3, ge=1, le=10)

    @model_validator(mode="after")
    def _kind_requirements(self) -> "HealthCheckSpec":
        if self.kind == HealthKind.HTTP:
            if not self.endpoint:
                raise ValueError("http health check requires an endpoint")
            if not (self.endpoint.startswith("/") or self.endpoint.startswith(("http://", "https://"))):
                raise ValueError("http health endpoint must start with '/' or be a full URL")
        elif self.kind == HealthKind.TCP:
            if self.port is None:
                raise ValueError("tcp health check requires a port")
        elif self.kind == HealthKind.COMMAND:
            if not self.command:
                raise ValueError("command health check requires a command")
        return self


class HealthChecker(Protocol):
    def check(self, replica: Replica) -> tuple[bool, str]: ...


class DockerHealthChecker:
    """Uses the engine's own HEALTHCHECK status. Anything but `healthy` fails."""

    def __init__(self, spec: HealthCheckSpec, engine: Engine):
        self.spec = spec
        self.engine = engine

    def check(self, replica: Replica) -> tuple[bool, str]:
        state = HealthState.from_engine(self.engine.inspect_health(replica.id))
        return state == HealthState.HEALTHY, state.value


class HttpHealthChecker:
    def __init__(self, spec: HealthCheckSpec, engine: Engine):
        self.spec = spec
        self.engine = engine

    def url_for(self, replica: Replica) -> str:
        endpoint = self.spec.endpoint or "/"
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        host = self.engine.container_address(replica.id) or replica.name or replica.service
        return f"http://{host}:{self.spec.port or 80}{endpoint}"

    def check(self, replica: Replica) -> tuple[bool, str]:
        url = self.url_for(replica)
        try:
            with httpx.Client(timeout=self.spec.timeout, follow_redirects=False) as client:
                resp = client.get(url)
        except (httpx.ConnectError, httpx.TimeoutException):
            return False, "No response"
        except httpx.HTTPError as e:
            return False, f"Error: {type(e).__name__}: {e}"
        if self.spec.expected_status is not None:
            ok = resp.status_code == self.spec.expected_status
        else:
            ok = 200 <= resp.status_code < 300
        return ok, f"HTTP {resp.status_code}"


class TcpHealthChecker:
    def __init__(self, spec: HealthCheckSpec, engine: Engine):
        self.spec = spec
        self.engine = engine

    def check(self, replica: Replica) -> tuple[bool, str]:
        host = self.engine.container_address(replica.id) or replica.name or replica.service
        try:
            with socket.create_connection((host, int(self.spec.port or 0)), timeout=self.spec.timeout):
                return True, f"connected to {host}:{self.spec.port}"
        except OSError as e:
            return False, f"connect {host}:{self.spec.port}: {e}"


class CommandHealthChecker:
    def __init__(self, spec: HealthCheckSpec, engine: Engine):
        self.spec = spec
        self.engine = engine

    def check(self, replica: Replica) -> tuple[bool, str]:
        code, output = self.engine.exec_command(replica.id, self.spec.command or [])
        return code == 0, f"exit {code}: {output.strip()[:200]}"


CHECKERS: dict[HealthKind, Callable[[HealthCheckSpec, Engine], HealthChecker]] = {
    HealthKind.DOCKER: DockerHealthChecker,
    HealthKind.HTTP: HttpHealthChecker,
    HealthKind.TCP: TcpHealthChecker,
    HealthKind.COMMAND: CommandHealthChecker,
}


def new_health_checker(spec: HealthCheckSpec, engine: Engine) -> HealthChecker:
    return CHECKERS[spec.kind](spec, engine)


class HealthOutcome(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class HealthResult:
    outcome: HealthOutcome
    message: str = ""
    replica_id: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == HealthOutcome.HEALTHY


def wait_for_health(
    checker: HealthChecker,
    replica: Replica,
    deadline: float,
    success_threshold: int = 1,
    failure_threshold: int = 3,
    interval: float = 1.0,
    cancel: threading.Event | None = None,
) -> HealthResult:
    """Poll `replica` until it is judged healthy or unhealthy, or `deadline` passes.

    `deadline` is a time.monotonic() value. A success resets the failure
    counter and vice versa, so only consecutive results count. A probe that
    raises counts as a failure.
    """
    successes = 0
    failures = 0
    message = "not checked"
    while True:
        if cancel is not None and cancel.is_set():
            return HealthResult(HealthOutcome.CANCELLED, "cancelled", replica.id)
        if time.monotonic() >= deadline:
            return HealthResult(HealthOutcome.TIMEOUT, f"timed out ({message})", replica.id)

        try:
            ok, message = checker.check(replica)
        except Exception as e:
            ok, message = False, f"{type(e).__name__}: {e}"

        if ok:
            successes += 1
            failures = 0
            if successes >= success_threshold:
                return HealthResult(HealthOutcome.HEALTHY, message, replica.id)
        else:
            failures += 1
            successes = 0
            if failures >= failure_threshold:
                return HealthResult(HealthOutcome.UNHEALTHY, message, replica.id)

        pause = min(interval, max(0.0, deadline - time.monotonic()))
        if cancel is not None:
            if cancel.wait(pause):
                return HealthResult(HealthOutcome.CANCELLED, "cancelled", replica.id)
        elif pause > 0:
            time.sleep(pause)


def wait_for_all(
    checker: HealthChecker,
    replicas: Sequence[Replica],
    deadline: float,
    success_threshold: int = 1,
    failure_threshold: int = 3,
    interval: float = 1.0,
    cancel: threading.Event | None = None,
) -> list[HealthResult]:
    """Run wait_for_health on every replica concurrently and wait for all of them."""
    if not replicas:
        return []
    with ThreadPoolExecutor(max_workers=min(len(replicas), 16), thread_name_prefix="health") as pool:
        futures = [
            pool.submit(wait_for_health, checker, r, deadline, success_threshold, failure_threshold, interval, cancel)
            for r in replicas
        ]
        return [f.result() for f in futures]


def aggregate(results: Sequence[HealthResult]) -> HealthResult:
    """Healthy only if every result is healthy; otherwise the most severe failure."""
    for outcome in (HealthOutcome.CANCELLED, HealthOutcome.UNHEALTHY, HealthOutcome.TIMEOUT):
        for r in results:
            if r.outcome == outcome:
                return r
    return HealthResult(HealthOutcome.HEALTHY, f"{len(results)} replica(s) healthy")
