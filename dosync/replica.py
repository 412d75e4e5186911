from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

from .compose import ComposeFile
from .docker_ops import ContainerInfo, Engine
from .errors import NoReplicas


log = logging.getLogger(__name__)


class HealthState(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    UNKNOWN = "unknown"

    @classmethod
    def from_engine(cls, raw: str | None) -> "HealthState":
        try:
            return cls((raw or "").lower())
        except ValueError:
            return cls.UNKNOWN


class ReplicaRole(str, Enum):
    STABLE = "stable"
    GREEN = "green"
    CANARY = "canary"

    @classmethod
    def parse(cls, raw: str | None) -> "ReplicaRole":
        try:
            return cls((raw or "stable").lower())
        except ValueError:
            return cls.STABLE


@dataclass(frozen=True)
class Replica:
    id: str
    service: str
    ordinal: int
    image: str
    health: HealthState = HealthState.UNKNOWN
    role: ReplicaRole = ReplicaRole.STABLE
    name: str = ""

    @classmethod
    def from_container(cls, c: ContainerInfo, ordinal: int | None = None) -> "Replica":
        return cls(
            id=c.id,
            service=c.service,
            ordinal=c.ordinal if ordinal is None else ordinal,
            image=c.image,
            health=HealthState.from_engine(c.health),
            role=ReplicaRole.parse(c.role),
            name=c.name,
        )

    def with_health(self, health: HealthState) -> "Replica":
        return replace(self, health=health)


class ReplicaDetector:
    """Binds the live containers of a service to dense ordinals 1..N."""

    def __init__(self, engine: Engine, compose: ComposeFile | None = None):
        self.engine = engine
        self.compose = compose

    def declared_replicas(self, service: str) -> int:
        if self.compose is None or service not in self.compose.services:
            return 1
        return self.compose.services[service].declared_replicas

    def replicas(self, service: str) -> list[Replica]:
        containers = self.engine.list_replicas(service)

        # Engine ordinals may have gaps or duplicates (e.g. after a blue-green
        # switch). Order by them, then renumber.
        def key(c: ContainerInfo) -> tuple[int, bool, str]:
            return (c.ordinal if c.ordinal > 0 else 1 << 30, c.role != ReplicaRole.STABLE.value, c.name)

        ordered = sorted(containers, key=key)
        out = [Replica.from_container(c, ordinal=i) for i, c in enumerate(ordered, start=1)]

        declared = self.declared_replicas(service)
        if out and len(out) != declared:
            log.debug("[%s] detect: %d live replicas, %d declared", service, len(out), declared)
        return out

    def require(self, service: str) -> list[Replica]:
        out = self.replicas(service)
        if not out:
            raise NoReplicas(service)
        return out
