"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Service Registry

Static catalog of the services the controller manages, the external
dependencies they rely on, and the cross-service integration checks run by
the validation harness. Built once at startup from the configuration
document and never mutated afterwards.

Load-time validation rejects duplicate names, unknown dependency
references and dependency cycles so nothing fails deep inside a running
migration.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .index import SvcMigrateError

CRITICAL = "critical"
NORMAL = "normal"

DEPENDENCY_KINDS = ("mount", "command", "path")


class RegistryError(SvcMigrateError):
    """Structural problem in the service catalog. Fatal to startup."""
    pass


class UnknownServiceError(SvcMigrateError):
    """A service name that is not in the registry was requested."""

    def __init__(self, name: str, known: Iterable[str]):
        self.name = name
        self.known = sorted(known)
        super().__init__(f"Unknown service '{name}'. Available services: {', '.join(self.known)}")


@dataclass(frozen=True)
class ServiceDescriptor:
    """One managed service and how to reach both of its forms."""
    name: str
    port: int
    health_path: Optional[str]
    data_path: str
    depends_on: frozenset = frozenset()
    criticality: str = NORMAL
    legacy_unit: str = ""
    managed_unit: str = ""
    legacy_health_path: Optional[str] = None
    host: str = "127.0.0.1"
    enabled: bool = True
    display_name: str = ""

    def __post_init__(self):
        # Frozen dataclass: derived defaults go through object.__setattr__
        if not self.legacy_unit:
            object.__setattr__(self, "legacy_unit", f"{self.name}.service")
        if not self.managed_unit:
            object.__setattr__(self, "managed_unit", f"dagger-{self.name}.service")
        if self.legacy_health_path is None:
            object.__setattr__(self, "legacy_health_path", self.health_path)
        if not self.display_name:
            object.__setattr__(self, "display_name", self.name)
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))

    @property
    def critical(self) -> bool:
        return self.criticality == CRITICAL

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def health_url(self, legacy: bool = False) -> Optional[str]:
        """URL probed for readiness; None when the service has no health endpoint."""
        path = self.legacy_health_path if legacy else self.health_path
        if path is None:
            return None
        if not path.startswith("/"):
            path = "/" + path
        return f"http://{self.host}:{self.port}{path}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["depends_on"] = sorted(self.depends_on)
        return data

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'ServiceDescriptor':
        if "port" not in data or "data_path" not in data:
            raise RegistryError(f"Service '{name}' must define 'port' and 'data_path'")
        criticality = data.get("criticality", NORMAL)
        if criticality not in (CRITICAL, NORMAL):
            raise RegistryError(f"Service '{name}' has invalid criticality '{criticality}'")
        try:
            port = int(data["port"])
        except (TypeError, ValueError):
            raise RegistryError(f"Service '{name}' has invalid port {data['port']!r}")
        return cls(
            name=name,
            port=port,
            health_path=data.get("health_path", "/"),
            data_path=data["data_path"],
            depends_on=frozenset(data.get("depends_on", [])),
            criticality=criticality,
            legacy_unit=data.get("legacy_unit", ""),
            managed_unit=data.get("managed_unit", ""),
            legacy_health_path=data.get("legacy_health_path"),
            host=data.get("host", "127.0.0.1"),
            enabled=bool(data.get("enabled", True)),
            display_name=data.get("display_name", ""),
        )


@dataclass(frozen=True)
class DependencyDescriptor:
    """An external dependency: a network mount, a command predicate, or a path."""
    name: str
    kind: str = "mount"
    mount_point: Optional[str] = None
    host: Optional[str] = None
    command: Optional[str] = None
    path: Optional[str] = None
    description: str = ""

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'DependencyDescriptor':
        kind = data.get("kind", "mount")
        if kind not in DEPENDENCY_KINDS:
            raise RegistryError(f"Dependency '{name}' has unknown kind '{kind}'")
        dep = cls(
            name=name,
            kind=kind,
            mount_point=data.get("mount_point"),
            host=data.get("host"),
            command=data.get("command"),
            path=data.get("path"),
            description=data.get("description", ""),
        )
        if kind == "mount" and (not dep.mount_point or not dep.host):
            raise RegistryError(f"Mount dependency '{name}' needs 'mount_point' and 'host'")
        if kind == "command" and not dep.command:
            raise RegistryError(f"Command dependency '{name}' needs 'command'")
        if kind == "path" and not dep.path:
            raise RegistryError(f"Path dependency '{name}' needs 'path'")
        return dep


@dataclass(frozen=True)
class IntegrationCheck:
    """'service' must answer on 'path' whenever 'requires' is enabled."""
    name: str
    service: str
    requires: str
    path: str = "/"
    expect: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IntegrationCheck':
        missing = [k for k in ("name", "service", "requires") if k not in data]
        if missing:
            raise RegistryError(f"Integration check is missing {', '.join(missing)}: {data}")
        return cls(
            name=data["name"],
            service=data["service"],
            requires=data["requires"],
            path=data.get("path", "/"),
            expect=data.get("expect"),
        )


class ServiceRegistry:
    """
    Validated, read-only view of services, dependencies and integration checks.
    """

    def __init__(self, services: Iterable[ServiceDescriptor],
                 dependencies: Iterable[DependencyDescriptor] = (),
                 integration_checks: Iterable[IntegrationCheck] = ()):
        self._services: Dict[str, ServiceDescriptor] = {}
        self._dependencies: Dict[str, DependencyDescriptor] = {}

        for dep in dependencies:
            if dep.name in self._dependencies:
                raise RegistryError(f"Duplicate dependency name '{dep.name}'")
            self._dependencies[dep.name] = dep

        for svc in services:
            if svc.name in self._services:
                raise RegistryError(f"Duplicate service name '{svc.name}'")
            if svc.name in self._dependencies:
                raise RegistryError(f"'{svc.name}' is declared as both a service and a dependency")
            self._services[svc.name] = svc

        self._integration_checks: List[IntegrationCheck] = list(integration_checks)
        self._validate()
        self._order = self._topological_order()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ServiceRegistry':
        """Build the registry from the 'services', 'dependencies' and 'integration' sections."""
        services = config.get("services", {})
        dependencies = config.get("dependencies", {})
        if not isinstance(services, dict) or not isinstance(dependencies, dict):
            raise RegistryError("'services' and 'dependencies' must be objects keyed by name")
        return cls(
            services=[ServiceDescriptor.from_dict(name, data) for name, data in services.items()],
            dependencies=[DependencyDescriptor.from_dict(name, data) for name, data in dependencies.items()],
            integration_checks=[IntegrationCheck.from_dict(data) for data in config.get("integration", [])],
        )

    def _validate(self) -> None:
        for svc in self._services.values():
            for dep in svc.depends_on:
                if dep == svc.name:
                    raise RegistryError(f"Service '{svc.name}' depends on itself")
                if dep not in self._services and dep not in self._dependencies:
                    raise RegistryError(f"Service '{svc.name}' depends on unknown name '{dep}'")
        for check in self._integration_checks:
            for name in (check.service, check.requires):
                if name not in self._services:
                    raise RegistryError(f"Integration check '{check.name}' references unknown service '{name}'")

    def _topological_order(self) -> List[str]:
        """Services ordered dependencies-first; raises RegistryError on a cycle."""
        order: List[str] = []
        state: Dict[str, int] = {}  # 1 = visiting, 2 = done

        def visit(name: str, path: List[str]) -> None:
            if state.get(name) == 2:
                return
            if state.get(name) == 1:
                cycle = path[path.index(name):] + [name]
                raise RegistryError(f"Dependency cycle detected: {' -> '.join(cycle)}")
            state[name] = 1
            for dep in sorted(self._services[name].depends_on):
                if dep in self._services:
                    visit(dep, path + [name])
            state[name] = 2
            order.append(name)

        for name in sorted(self._services):
            visit(name, [])
        return order

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        for name in self._order:
            yield self._services[name]

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, name: str) -> bool:
        return name in self._services

    def names(self) -> List[str]:
        return list(self._order)

    def get(self, name: str) -> ServiceDescriptor:
        """Look up a service; unknown names raise UnknownServiceError."""
        try:
            return self._services[name]
        except KeyError:
            raise UnknownServiceError(name, self._services)

    @property
    def dependencies(self) -> List[DependencyDescriptor]:
        return [self._dependencies[name] for name in sorted(self._dependencies)]

    def get_dependency(self, name: str) -> DependencyDescriptor:
        try:
            return self._dependencies[name]
        except KeyError:
            raise RegistryError(f"Unknown dependency '{name}'")

    @property
    def integration_checks(self) -> List[IntegrationCheck]:
        return list(self._integration_checks)

    def dependents_of(self, name: str) -> List[ServiceDescriptor]:
        """Services whose depends_on includes name, in registry order."""
        return [svc for svc in self if name in svc.depends_on]
