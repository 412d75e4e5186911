from __future__ import annotations


class DosyncError(Exception):
    """Base class for every error raised by dosync."""


class InvalidReference(DosyncError, ValueError):
    pass


class InvalidPolicy(DosyncError, ValueError):
    pass


class ConfigError(DosyncError, ValueError):
    pass


class RegistryError(DosyncError):
    def __init__(self, message: str, registry: str | None = None, repository: str | None = None):
        super().__init__(message)
        self.registry = registry
        self.repository = repository


class AuthError(RegistryError):
    pass


class NetworkError(RegistryError):
    pass


class NotFound(RegistryError):
    pass


class NoReplicas(DosyncError):
    def __init__(self, service: str):
        super().__init__(f"no replicas found for service {service}")
        self.service = service


class HealthTimeout(DosyncError):
    pass


class HealthUnhealthy(DosyncError):
    pass


class PreCommandFailed(DosyncError):
    pass


class PostCommandFailed(DosyncError):
    """Raised by a post-update hook. Callers only log it."""


class CircularDependency(DosyncError):
    def __init__(self, node: str):
        super().__init__(f"circular dependency detected involving service {node}")
        self.node = node


class ComposeError(DosyncError):
    pass


class ComposeRewriteFailed(ComposeError):
    pass


class RollbackFailed(DosyncError):
    pass


class Cancelled(DosyncError):
    pass


class ExecutionTimeout(DosyncError):
    pass


class InvalidStateTransition(DosyncError):
    def __init__(self, current, target):
        super().__init__(f"invalid phase transition: {current} -> {target}")
        self.current = current
        self.target = target
