from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable

from .errors import InvalidReference


class RegistryKind(str, Enum):
    DOCKERHUB = "dockerhub"
    GHCR = "ghcr"
    GCR = "gcr"
    ACR = "acr"
    ECR = "ecr"
    DOCR = "docr"
    HARBOR = "harbor"
    QUAY = "quay"
    CUSTOM = "custom"


DOCKER_HUB_HOST = "registry-1.docker.io"
_DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io", "registry.hub.docker.com"}

_SHAPE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-/:@+]*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}$")
_DIGEST_RE = re.compile(r"^[A-Za-z0-9_+.\-]+:[A-Fa-f0-9]{32,}$")
_ECR_HOST_RE = re.compile(r"^\d+\.dkr\.ecr\.[a-z0-9-]+\.amazonaws\.com$")
# Digest-shaped tags published next to images (e.g. signatures/attestations).
_DIGEST_TAG_RE = re.compile(r"^sha256[:\-][A-Fa-f0-9]{64}")


@dataclass(frozen=True)
class ImageRef:
    """A parsed `image:` value.

    `domain` and `name` are kept exactly as written so `render()` reproduces
    the input string.
    """

    kind: RegistryKind
    domain: str
    name: str
    tag: str | None = None
    digest: str | None = None

    @property
    def registry_host(self) -> str:
        if self.kind == RegistryKind.DOCKERHUB:
            return DOCKER_HUB_HOST
        return self.domain

    @property
    def repository(self) -> str:
        if self.kind == RegistryKind.DOCKERHUB and "/" not in self.name:
            return f"library/{self.name}"
        return self.name

    @property
    def current_tag(self) -> str:
        return self.tag or "latest"

    @property
    def pinned(self) -> bool:
        return self.digest is not None

    def with_tag(self, tag: str) -> "ImageRef":
        return replace(self, tag=tag, digest=None)

    def render(self) -> str:
        out = f"{self.domain}/{self.name}" if self.domain else self.name
        if self.tag:
            out += f":{self.tag}"
        if self.digest:
            out += f"@{self.digest}"
        return out

    def __str__(self) -> str:
        return self.render()


def is_digest_tag(tag: str) -> bool:
    return bool(_DIGEST_TAG_RE.match(tag))


def _looks_like_host(segment: str) -> bool:
    return "." in segment or ":" in segment or segment == "localhost"


def detect_kind(domain: str, harbor_hosts: Iterable[str] = ()) -> RegistryKind:
    d = domain.lower()
    if not d or d in _DOCKER_HUB_ALIASES:
        return RegistryKind.DOCKERHUB
    if d == "registry.digitalocean.com":
        return RegistryKind.DOCR
    if d == "ghcr.io":
        return RegistryKind.GHCR
    if d == "gcr.io" or d.endswith(".gcr.io"):
        return RegistryKind.GCR
    if d.endswith(".azurecr.io"):
        return RegistryKind.ACR
    if _ECR_HOST_RE.match(d):
        return RegistryKind.ECR
    if d == "quay.io":
        return RegistryKind.QUAY
    if d.startswith("harbor.") or d in {h.lower() for h in harbor_hosts}:
        return RegistryKind.HARBOR
    return RegistryKind.CUSTOM


def parse_image_ref(image: str, harbor_hosts: Iterable[str] = ()) -> ImageRef:
    """Parse an image string such as `ghcr.io/org/app:1.2.3`.

    Raises InvalidReference when the string fails the shape check.
    """
    if not image or not _SHAPE_RE.match(image):
        raise InvalidReference(f"invalid image reference: {image!r}")

    rest = image
    digest: str | None = None
    if "@" in rest:
        rest, digest = rest.split("@", 1)
        if not _DIGEST_RE.match(digest):
            raise InvalidReference(f"invalid digest in image reference: {image!r}")

    tag: str | None = None
    colon = rest.rfind(":")
    # A colon before the last slash belongs to a host:port pair.
    if colon > rest.rfind("/"):
        rest, tag = rest[:colon], rest[colon + 1 :]
        if not _TAG_RE.match(tag):
            raise InvalidReference(f"invalid tag in image reference: {image!r}")

    domain = ""
    name = rest
    if "/" in rest:
        first, remainder = rest.split("/", 1)
        if _looks_like_host(first):
            domain, name = first, remainder

    if not name or any(not seg for seg in name.split("/")) or ":" in name:
        raise InvalidReference(f"invalid repository path in image reference: {image!r}")

    return ImageRef(kind=detect_kind(domain, harbor_hosts), domain=domain, name=name, tag=tag, digest=digest)
