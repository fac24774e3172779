# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Dict, Iterable, Iterator, List, Set

from ..errors import CyclicDependency, DuplicateService, UnknownDependency
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import ServiceDefinition


class ServiceGraph:
    """
    A validated dependency DAG. Edges run from a dependency to its dependents.
    """
    def __init__(self,
                 services: Dict[str, ServiceDefinition],
                 order: List[str],
                 dependencies: Dict[str, List[str]],
                 dependents: Dict[str, List[str]]):
        self.services = services
        self._order = order
        self._dependencies = dependencies
        self._dependents = dependents

    def __contains__(self, name: str) -> bool:
        return name in self.services

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __getitem__(self, name: str) -> ServiceDefinition:
        return self.services[name]

    def startup_order(self) -> List[str]:
        """Topological order, ties broken by declaration order."""
        return list(self._order)

    def shutdown_order(self) -> List[str]:
        """Dependents before their dependencies."""
        return list(reversed(self._order))

    def dependencies(self, name: str) -> List[str]:
        """Direct dependencies of a service, in declaration order."""
        return list(self._dependencies[name])

    def dependents(self, name: str) -> List[str]:
        """Services that directly depend on this one, in startup order."""
        return list(self._dependents[name])

    def ancestors(self, name: str) -> Set[str]:
        """All transitive dependencies of a service."""
        return self._walk(name, self._dependencies)

    def descendants(self, name: str) -> Set[str]:
        """All services that transitively depend on this one."""
        return self._walk(name, self._dependents)

    def startup_levels(self) -> List[List[str]]:
        """
        Groups services into waves that may start concurrently: every
        service's dependencies are in an earlier wave.
        """
        level: Dict[str, int] = {}
        for name in self._order:
            deps = self._dependencies[name]
            level[name] = 1 + max((level[d] for d in deps), default=-1)

        waves: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for name in self._order:
            waves[level[name]].append(name)
        return waves

    @staticmethod
    def _walk(name: str, edges: Dict[str, List[str]]) -> Set[str]:
        seen: Set[str] = set()
        stack = list(edges[name])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(edges[current])
        return seen


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def build(self, services: Iterable[ServiceDefinition]) -> ServiceGraph:
        """
        Builds and validates the service graph.

        :param services: Service definitions in declaration order.
        :return: The validated graph.
        :raises DuplicateService: If two services share a name.
        :raises UnknownDependency: If a dependency is not declared.
        :raises CyclicDependency: If the dependencies contain a cycle.
        """
        declared: Dict[str, ServiceDefinition] = {}
        for svc in services:
            if svc.name in declared:
                raise DuplicateService(svc.name)
            declared[svc.name] = svc

        dependencies: Dict[str, List[str]] = {}
        dependents: Dict[str, List[str]] = {name: [] for name in declared}
        for name, svc in declared.items():
            deps: List[str] = []
            for dep in svc.depends_on:
                if dep not in declared:
                    raise UnknownDependency(name, dep)
                if dep not in deps:
                    deps.append(dep)
            dependencies[name] = deps

        order = self._topological_order(list(declared), dependencies)

        position = {name: i for i, name in enumerate(order)}
        for name in order:
            for dep in dependencies[name]:
                dependents[dep].append(name)
        for dep in dependents:
            dependents[dep].sort(key=position.__getitem__)

        return ServiceGraph(declared, order, dependencies, dependents)

    def resolve_order(self, config: OrchestrationConfig) -> List[str]:
        """
        Determines the correct order to start services.

        :param config: The orchestration configuration.
        :return: Service names in the order they should be started.
        """
        return self.build(config.services.values()).startup_order()

    @staticmethod
    def _topological_order(names: List[str], dependencies: Dict[str, List[str]]) -> List[str]:
        """
        Kahn's algorithm. Among the services whose dependencies are all
        placed, the earliest declared is always taken next, which makes the
        order reproducible.
        """
        remaining = {name: len(dependencies[name]) for name in names}
        ordered: List[str] = []
        placed: Set[str] = set()

        while True:
            ready = next((n for n in names if n not in placed and remaining[n] == 0), None)
            if ready is None:
                break
            ordered.append(ready)
            placed.add(ready)
            for name in names:
                if name not in placed and ready in dependencies[name]:
                    remaining[name] -= 1

        if len(ordered) != len(names):
            unplaced = [n for n in names if n not in placed]
            raise CyclicDependency(DependencyResolver._find_cycle(unplaced, dependencies))
        return ordered

    @staticmethod
    def _find_cycle(unplaced: List[str], dependencies: Dict[str, List[str]]) -> List[str]:
        """
        Every unplaced service still waits on another unplaced service, so
        following those edges from any of them must come back around.
        """
        candidates = set(unplaced)
        path: List[str] = []
        seen: Dict[str, int] = {}
        current = unplaced[0]
        while current not in seen:
            seen[current] = len(path)
            path.append(current)
            current = next(d for d in dependencies[current] if d in candidates)
        return path[seen[current]:]
