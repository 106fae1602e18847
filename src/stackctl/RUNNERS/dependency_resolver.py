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
import heapq
from typing import List, Dict, Set
from ..errors import CycleError
from ..MODELS.topology import Topology


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def resolve_order(self, topology: Topology) -> List[str]:
        """
        Determines the order to start services using a topological sort.

        Among services whose dependencies are all satisfied, the one declared
        first is picked first, so the result is deterministic.

        :param topology: The deployment topology.
        :return: Service names in the order they should be started.
        :raises CycleError: If the dependencies contain a cycle.
        """
        names = topology.service_names()
        position = {name: i for i, name in enumerate(names)}
        dependencies = {name: set(topology.services[name].depends_on) for name in names}
        dependents: Dict[str, Set[str]] = {name: set() for name in names}
        for name, deps in dependencies.items():
            for dep in deps:
                dependents[dep].add(name)

        remaining = {name: len(deps) for name, deps in dependencies.items()}
        ready = [position[name] for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        ordered = []
        while ready:
            name = names[heapq.heappop(ready)]
            ordered.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, position[dependent])

        if len(ordered) != len(names):
            blocked = [name for name in names if remaining[name] > 0]
            raise CycleError(self._find_cycle(blocked, dependencies))
        return ordered

    def teardown_order(self, topology: Topology) -> List[str]:
        """
        :return: Service names in the order they should be stopped.
        """
        return list(reversed(self.resolve_order(topology)))

    def dependency_closure(self, topology: Topology, name: str) -> Set[str]:
        """
        Collects every service ``name`` depends on, directly or not.

        :param topology: The deployment topology.
        :param name: The service to start from.
        :return: Names of all transitive dependencies.
        """
        seen: Set[str] = set()
        stack = list(topology.services[name].depends_on)
        while stack:
            dep = stack.pop()
            if dep not in seen:
                seen.add(dep)
                stack.extend(topology.services[dep].depends_on)
        return seen

    @staticmethod
    def _find_cycle(blocked: List[str], dependencies: Dict[str, Set[str]]) -> List[str]:
        """
        Walks dependency edges among the blocked services until a name repeats.

        Every blocked service has at least one blocked dependency, so the
        walk always closes a loop.
        """
        blocked_set = set(blocked)
        path: List[str] = []
        seen: Dict[str, int] = {}
        current = blocked[0]
        while current not in seen:
            seen[current] = len(path)
            path.append(current)
            current = min(
                (dep for dep in dependencies[current] if dep in blocked_set),
                key=blocked.index,
            )
        return path[seen[current]:]
