from __future__ import annotations

import logging
import secrets
import subprocess
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import docker
from docker.errors import DockerException, NotFound

from .errors import ComposeError, DosyncError


log = logging.getLogger(__name__)

PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"
NUMBER_LABEL = "com.docker.compose.container-number"
ROLE_LABEL = "dosync.role"
ORDINAL_LABEL = "dosync.ordinal"


@dataclass(frozen=True)
class ContainerInfo:
    id: str
    name: str
    service: str
    ordinal: int
    image: str
    role: str = "stable"
    status: str = "running"
    health: str | None = None


class Engine(Protocol):
    """What strategies and health checks need from a container engine."""

    def list_replicas(self, service: str) -> list[ContainerInfo]: ...

    def replica_template(self, container_id: str) -> dict[str, Any] | None: ...

    def start_replica(
        self, service: str, ordinal: int, image: str, role: str = "stable", template: dict[str, Any] | None = None
    ) -> ContainerInfo: ...

    def stop_replica(self, container_id: str) -> None: ...

    def inspect_health(self, container_id: str) -> str | None: ...

    def exec_command(self, container_id: str, command: Sequence[str] | str) -> tuple[int, str]: ...

    def container_address(self, container_id: str) -> str | None: ...

    def restart_container(self, container_id: str) -> None: ...

    def prune_images(self) -> int: ...


def _ordinal(labels: dict[str, str]) -> int:
    for key in (ORDINAL_LABEL, NUMBER_LABEL):
        raw = labels.get(key)
        if raw:
            try:
                return int(raw)
            except ValueError:
                continue
    return 0


def _template_of(container: Any) -> dict[str, Any]:
    attrs = container.attrs or {}
    return {
        "config": attrs.get("Config") or {},
        "host": attrs.get("HostConfig") or {},
        "networks": list(((attrs.get("NetworkSettings") or {}).get("Networks") or {}).keys()),
    }


class DockerEngine:
    """Engine backed by the local docker daemon.

    Compose-managed containers are found through the labels compose puts on
    them. Containers started here copy the configuration of a template replica
    of the same service, captured with `replica_template` before that replica
    is stopped, and are labeled so they are found again.
    """

    def __init__(self, project: str | None = None, client: docker.DockerClient | None = None):
        self.project = project
        self._c = client

    def _client(self) -> docker.DockerClient:
        if self._c is None:
            self._c = docker.from_env()
        return self._c

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except DockerException:
            return False

    def _containers(self, service: str) -> list[Any]:
        labels = [f"{SERVICE_LABEL}={service}"]
        if self.project:
            labels.append(f"{PROJECT_LABEL}={self.project}")
        return self._client().containers.list(filters={"label": labels})

    def _info(self, c: Any) -> ContainerInfo:
        labels = c.labels or {}
        state = c.attrs.get("State") or {}
        health = (state.get("Health") or {}).get("Status")
        return ContainerInfo(
            id=c.id,
            name=c.name,
            service=labels.get(SERVICE_LABEL, ""),
            ordinal=_ordinal(labels),
            image=(c.attrs.get("Config") or {}).get("Image", ""),
            role=labels.get(ROLE_LABEL, "stable"),
            status=c.status,
            health=health,
        )

    def list_replicas(self, service: str) -> list[ContainerInfo]:
        try:
            return [self._info(c) for c in self._containers(service)]
        except DockerException as e:
            raise DosyncError(f"cannot list containers of {service}: {e}") from e

    def replica_template(self, container_id: str) -> dict[str, Any] | None:
        """Settings of a running replica needed to start another one like it."""
        try:
            cont = self._client().containers.get(container_id)
        except NotFound:
            return None
        except DockerException as e:
            raise DosyncError(f"cannot inspect container {container_id}: {e}") from e
        return _template_of(cont)

    def start_replica(
        self,
        service: str,
        ordinal: int,
        image: str,
        role: str = "stable",
        template: dict[str, Any] | None = None,
    ) -> ContainerInfo:
        """Create and start one replica of `service` running `image`.

        Settings come from `template` (see `replica_template`), or else from a
        live replica of the service with the same ordinal, or any live replica.
        """
        try:
            c = self._client()
            if template is None:
                templates = self._containers(service)
                live = next((t for t in templates if _ordinal(t.labels or {}) == ordinal), None)
                if live is None and templates:
                    live = templates[0]
                template = _template_of(live) if live is not None else {}

            config: dict[str, Any] = template.get("config") or {}
            host: dict[str, Any] = template.get("host") or {}
            networks: list[str] = list(template.get("networks") or [])
            labels: dict[str, str] = {SERVICE_LABEL: service}
            if self.project:
                labels[PROJECT_LABEL] = self.project
            labels.update(config.get("Labels") or {})
            labels.update({NUMBER_LABEL: str(ordinal), ORDINAL_LABEL: str(ordinal), ROLE_LABEL: role})

            project = self.project or labels.get(PROJECT_LABEL) or "dosync"
            name = f"{project}-{service}-{role}-{ordinal}-{secrets.token_hex(3)}"
            container = c.containers.create(
                image,
                command=config.get("Cmd"),
                entrypoint=config.get("Entrypoint"),
                environment=config.get("Env") or [],
                working_dir=config.get("WorkingDir") or None,
                user=config.get("User") or None,
                name=name,
                labels=labels,
                volumes=host.get("Binds") or None,
                network=networks[0] if networks else None,
                restart_policy=host.get("RestartPolicy") or {"Name": "no"},
            )
            # Re-attach with the service alias so the replica resolves by service name.
            for net_name in networks:
                net = c.networks.get(net_name)
                if net_name == networks[0]:
                    net.disconnect(container)
                net.connect(container, aliases=[service])
            container.start()
            container.reload()
        except DockerException as e:
            raise DosyncError(f"cannot start replica {ordinal} of {service} with {image}: {e}") from e

        log.info("[%s] started %s replica %s (%s) from %s", service, role, ordinal, name, image)
        return self._info(container)

    def stop_replica(self, container_id: str) -> None:
        try:
            cont = self._client().containers.get(container_id)
            cont.stop(timeout=10)
            cont.remove(force=True)
        except NotFound:
            return
        except DockerException as e:
            raise DosyncError(f"cannot stop container {container_id}: {e}") from e

    def inspect_health(self, container_id: str) -> str | None:
        try:
            cont = self._client().containers.get(container_id)
            cont.reload()
        except NotFound:
            return "unhealthy"
        except DockerException as e:
            raise DosyncError(f"cannot inspect container {container_id}: {e}") from e
        if cont.status != "running":
            return "unhealthy"
        return ((cont.attrs.get("State") or {}).get("Health") or {}).get("Status")

    def exec_command(self, container_id: str, command: Sequence[str] | str) -> tuple[int, str]:
        try:
            cont = self._client().containers.get(container_id)
            result = cont.exec_run(command if isinstance(command, str) else list(command))
        except DockerException as e:
            raise DosyncError(f"cannot exec in container {container_id}: {e}") from e
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return int(result.exit_code or 0), output

    def container_address(self, container_id: str) -> str | None:
        try:
            cont = self._client().containers.get(container_id)
        except NotFound:
            return None
        except DockerException as e:
            raise DosyncError(f"cannot inspect container {container_id}: {e}") from e
        settings = cont.attrs.get("NetworkSettings") or {}
        for net in (settings.get("Networks") or {}).values():
            if net.get("IPAddress"):
                return net["IPAddress"]
        return settings.get("IPAddress") or None

    def restart_container(self, container_id: str) -> None:
        try:
            self._client().containers.get(container_id).restart(timeout=10)
        except DockerException as e:
            raise DosyncError(f"cannot restart container {container_id}: {e}") from e

    def prune_images(self) -> int:
        """Remove every image no container uses. Returns the bytes reclaimed."""
        try:
            res = self._client().images.prune(filters={"dangling": False})
        except DockerException as e:
            raise DosyncError(f"image prune failed: {e}") from e
        return int((res or {}).get("SpaceReclaimed") or 0)


def compose_up(path: str, service: str) -> None:
    """Recreate one service from the compose file without touching its dependencies."""
    cmd = ["docker", "compose", "-f", path, "up", "-d", "--no-deps", service]
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise ComposeError(f"cannot run docker compose: {e}") from e
    if proc.returncode != 0:
        raise ComposeError(f"docker compose up failed for {service}: {proc.stderr.strip() or proc.stdout.strip()}")
    log.info("[%s] compose up: done", service)
