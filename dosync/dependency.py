from __future__ import annotations

from typing import Iterable, Mapping

from .compose import ComposeFile
from .errors import CircularDependency


class DependencyGraph:
    """Services and the services they depend on (`depends_on`).

    An edge a -> b means "a depends on b", so b is updated first.
    """

    def __init__(self, edges: Mapping[str, Iterable[str]] | None = None):
        self._deps: dict[str, set[str]] = {}
        for service, deps in (edges or {}).items():
            self.add_service(service)
            for d in deps:
                self.add_dependency(service, d)

    @classmethod
    def from_compose(cls, compose: ComposeFile) -> "DependencyGraph":
        return cls({name: svc.depends_on for name, svc in compose.services.items()})

    def add_service(self, service: str) -> None:
        self._deps.setdefault(service, set())

    def add_dependency(self, service: str, depends_on: str) -> None:
        self.add_service(service)
        self.add_service(depends_on)
        self._deps[service].add(depends_on)

    @property
    def services(self) -> list[str]:
        return sorted(self._deps)

    def dependencies(self, service: str) -> list[str]:
        """Direct dependencies of `service`, sorted."""
        return sorted(self._deps.get(service, ()))

    def dependents(self, service: str) -> list[str]:
        """Every service that depends on `service`, directly or transitively."""
        out: set[str] = set()
        frontier = [service]
        while frontier:
            target = frontier.pop()
            for name, deps in self._deps.items():
                if target in deps and name not in out:
                    out.add(name)
                    frontier.append(name)
        out.discard(service)
        return sorted(out)

    def get_update_order(self, selected: Iterable[str] | None = None) -> list[str]:
        """Depth-first post-order over `selected` and everything it depends on.

        Dependencies come before their dependents; siblings and roots are
        visited in lexicographic order so the result is stable.
        """
        roots = sorted(set(selected)) if selected is not None else self.services
        order: list[str] = []
        done: set[str] = set()
        visiting: set[str] = set()

        def visit(node: str) -> None:
            if node in done:
                return
            if node in visiting:
                raise CircularDependency(node)
            visiting.add(node)
            for dep in self.dependencies(node):
                visit(dep)
            visiting.discard(node)
            done.add(node)
            order.append(node)

        for root in roots:
            visit(root)
        return order

    def check_acyclic(self) -> None:
        self.get_update_order()
