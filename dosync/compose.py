from __future__ import annotations

import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml

from .errors import ComposeError, ComposeRewriteFailed


_SERVICES_RE = re.compile(r"^services:\s*(?:#.*)?$")
_HEADER_RE = re.compile(r"^(\s*)([A-Za-z0-9_.\-]+):\s*(?:#.*)?$")
_IMAGE_RE = re.compile(r"^(?P<indent>\s*)image:(?P<sp>\s*)(?P<q>[\"']?)(?P<value>[^\"'\s#]+)(?P=q)(?P<trail>\s*(?:#.*)?)$")
_PROJECT_RE = re.compile(r"[^a-z0-9_\-]")


@dataclass(frozen=True)
class ComposeService:
    name: str
    image: str | None = None
    scale: int = 0
    replicas: int = 0
    depends_on: tuple[str, ...] = ()

    @property
    def declared_replicas(self) -> int:
        return max(self.scale, self.replicas, 1)


@dataclass(frozen=True)
class ComposeFile:
    path: str
    project: str
    services: dict[str, ComposeService] = field(default_factory=dict)

    def service(self, name: str) -> ComposeService:
        try:
            return self.services[name]
        except KeyError:
            raise ComposeError(f"service {name!r} not found in {self.path}") from None


def _int_field(service: str, key: str, raw: Any) -> int:
    if raw is None:
        return 0
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ComposeError(f"service {service!r}: {key} must be an integer, got {raw!r}") from None


def _depends_on(raw: Any) -> tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, Mapping):
        return tuple(str(k) for k in raw.keys())
    if isinstance(raw, (list, tuple)):
        return tuple(str(x) for x in raw)
    return (str(raw),)


def default_project_name(path: str) -> str:
    env = os.getenv("COMPOSE_PROJECT_NAME")
    if env:
        return env
    base = os.path.basename(os.path.dirname(os.path.abspath(path)))
    return _PROJECT_RE.sub("", base.lower())


def parse_compose(text: str, path: str = "docker-compose.yml") -> ComposeFile:
    """Parse compose YAML into the subset dosync reads.

    Only `image`, `scale`, `deploy.replicas` and `depends_on` are kept.
    """
    try:
        doc = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ComposeError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(doc, dict):
        raise ComposeError(f"{path}: top level must be a mapping")

    raw_services = doc.get("services") or {}
    if not isinstance(raw_services, dict):
        raise ComposeError(f"{path}: 'services' must be a mapping")

    services: dict[str, ComposeService] = {}
    for name, body in raw_services.items():
        body = body or {}
        if not isinstance(body, dict):
            raise ComposeError(f"{path}: service {name!r} must be a mapping")
        deploy = body.get("deploy") or {}
        image = body.get("image")
        services[str(name)] = ComposeService(
            name=str(name),
            image=str(image) if image else None,
            scale=_int_field(name, "scale", body.get("scale")),
            replicas=_int_field(name, "deploy.replicas", deploy.get("replicas") if isinstance(deploy, dict) else None),
            depends_on=_depends_on(body.get("depends_on")),
        )

    project = str(doc.get("name") or default_project_name(path))
    return ComposeFile(path=path, project=project, services=services)


def load_compose(path: str) -> ComposeFile:
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ComposeError(f"cannot read compose file {path}: {e}") from e
    return parse_compose(text, path)


def replace_images(text: str, images: Mapping[str, str]) -> str:
    """Return `text` with the `image:` value of each named service replaced.

    Everything but the image value is kept as-is: indentation, quoting, trailing
    comments and line endings. Raises ComposeRewriteFailed when a named service
    has no `image:` line.
    """
    lines = text.splitlines(keepends=True)
    in_services = False
    service_indent: int | None = None
    child_indent: int | None = None
    current: str | None = None
    found: set[str] = set()

    for i, line in enumerate(lines):
        body = line.rstrip("\r\n")
        ending = line[len(body) :]
        stripped = body.strip()
        if not stripped or stripped.startswith("#"):
            continue

        indent = len(body) - len(body.lstrip(" \t"))
        if indent == 0:
            in_services = bool(_SERVICES_RE.match(body))
            current = None
            continue
        if not in_services:
            continue

        if service_indent is None:
            service_indent = indent
        if indent <= service_indent:
            m = _HEADER_RE.match(body)
            current = m.group(2) if (m and indent == service_indent) else None
            child_indent = None
            continue
        if current is None:
            continue
        if child_indent is None:
            child_indent = indent
        if indent != child_indent or current not in images:
            continue

        m = _IMAGE_RE.match(body)
        if not m:
            continue
        found.add(current)
        lines[i] = f"{m['indent']}image:{m['sp']}{m['q']}{images[current]}{m['q']}{m['trail']}{ending}"

    missing = sorted(set(images) - found)
    if missing:
        raise ComposeRewriteFailed(f"no image line found for service(s): {', '.join(missing)}")
    return "".join(lines)


def rewrite_images(path: str, images: Mapping[str, str], backup_name: str = "docker-compose.backup.yml") -> bool:
    """Rewrite `image:` lines in the compose file at `path`.

    A copy of the current file is written next to it as `backup_name` first.
    Returns False (and writes nothing) when the content would not change.
    """
    if not images:
        return False
    try:
        with open(path, encoding="utf-8", newline="") as f:
            original = f.read()
    except OSError as e:
        raise ComposeRewriteFailed(f"cannot read compose file {path}: {e}") from e

    updated = replace_images(original, images)
    if updated == original:
        return False

    directory = os.path.dirname(os.path.abspath(path))
    try:
        shutil.copy2(path, os.path.join(directory, backup_name))
        fd, tmp = tempfile.mkstemp(prefix=".dosync-", suffix=".yml", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(updated)
            shutil.copymode(path, tmp)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except OSError as e:
        raise ComposeRewriteFailed(f"cannot write compose file {path}: {e}") from e
    return True
