import itertools
import os
import sys
import threading

import pytest

# Ensure project root is importable (so `import dosync` and `import cli` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dosync.compose import parse_compose  # noqa: E402
from dosync.docker_ops import ContainerInfo  # noqa: E402
from dosync.errors import DosyncError  # noqa: E402
from dosync.health import HealthCheckSpec  # noqa: E402
from dosync.replica import ReplicaDetector  # noqa: E402
from dosync.strategies import StrategyConfig, StrategyOps  # noqa: E402


class FakeEngine:
    """In-memory container engine.

    `healthy_images` decides what the docker health check reports: a replica
    running an image in the set is healthy, anything else is unhealthy.
    """

    def __init__(self, healthy_images=None):
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.containers: dict[str, ContainerInfo] = {}
        self.templates: dict[str, dict] = {}
        self.started_from: list[tuple[int, dict | None]] = []
        self.healthy_images = set(healthy_images or ())
        self.calls: list[tuple] = []
        self.exec_results: dict[str, tuple[int, str]] = {}
        self.fail_start_for: set[str] = set()
        self.restarted: list[str] = []
        self.pruned = 0

    def add(self, service, image, count=1, role="stable", env=None):
        template = {"config": {"Env": list(env or [])}, "networks": ["proj_default"]}
        return [self._create(service, i, image, role, template) for i in range(1, count + 1)]

    def _create(self, service, ordinal, image, role, template=None):
        with self._lock:
            cid = f"c{next(self._ids):04d}"
            info = ContainerInfo(
                id=cid,
                name=f"proj-{service}-{role}-{ordinal}-{cid}",
                service=service,
                ordinal=ordinal,
                image=image,
                role=role,
            )
            self.containers[cid] = info
            self.templates[cid] = template or {}
        return info

    def images(self, service):
        return sorted(c.image for c in self.containers.values() if c.service == service)

    # -- Engine ------------------------------------------------------------

    def list_replicas(self, service):
        with self._lock:
            return [c for c in self.containers.values() if c.service == service]

    def replica_template(self, container_id):
        return self.templates.get(container_id) if container_id in self.containers else None

    def start_replica(self, service, ordinal, image, role="stable", template=None):
        self.calls.append(("start", service, ordinal, image, role))
        self.started_from.append((ordinal, template))
        if image in self.fail_start_for:
            raise DosyncError(f"cannot start {image}")
        return self._create(service, ordinal, image, role, template)

    def stop_replica(self, container_id):
        self.calls.append(("stop", container_id))
        with self._lock:
            self.containers.pop(container_id, None)
            self.templates.pop(container_id, None)

    def inspect_health(self, container_id):
        c = self.containers.get(container_id)
        if c is None:
            return "unhealthy"
        return "healthy" if c.image in self.healthy_images else "unhealthy"

    def exec_command(self, container_id, command):
        self.calls.append(("exec", container_id, command))
        return self.exec_results.get(container_id, (0, "ok"))

    def container_address(self, container_id):
        return "127.0.0.1"

    def restart_container(self, container_id):
        self.restarted.append(container_id)

    def prune_images(self):
        self.pruned += 1
        return 1024


COMPOSE_TEXT = """\
name: proj
services:
  web:
    image: "ghcr.io/acme/web:1.0.0"  # pinned by dosync
    deploy:
      replicas: 3
    depends_on:
      - api
  api:
    image: ghcr.io/acme/api:1.0.0
    depends_on:
      db:
        condition: service_healthy
  db:
    image: postgres:15
"""


@pytest.fixture()
def compose_file(tmp_path):
    p = tmp_path / "docker-compose.yml"
    p.write_text(COMPOSE_TEXT, encoding="utf-8")
    return p


@pytest.fixture()
def engine():
    return FakeEngine()


@pytest.fixture()
def make_ops(engine):
    def _make(**kwargs):
        compose = parse_compose(COMPOSE_TEXT)
        return StrategyOps(engine=engine, detector=ReplicaDetector(engine, compose), **kwargs)

    return _make


def fast_config(**kwargs) -> StrategyConfig:
    """A strategy config with short timings for tests."""
    health = kwargs.pop("health_check", HealthCheckSpec(interval=0.01, timeout=1, failure_threshold=1))
    base = {"timeout": 5, "delay": 0, "verification_period": 0, "health_check": health}
    base.update(kwargs)
    return StrategyConfig.model_validate(base)
