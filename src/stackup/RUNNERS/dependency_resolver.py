"""
Dependency resolution for services to determine startup and shutdown order.
"""
import heapq
from typing import Dict, Iterable, List, Optional, Set

from ..errors import DependencyCycleError
from ..MODELS.stack import Stack


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def resolve_order(self, stack: Stack, only: Optional[Iterable[str]] = None) -> List[str]:
        """
        Determines the order to start services using Kahn's algorithm.

        Whenever several services have no unresolved dependency left, the one
        declared first is released first, so the result is identical across runs.

        :param stack: The validated stack.
        :param only: Restrict the order to these services and everything they depend on.
        :return: Service names in the order they should be started.
        :raises DependencyCycleError: If services remain that can never be released.
        """
        names = list(stack.services)
        if only is not None:
            wanted = self.with_dependencies(stack, only)
            names = [n for n in names if n in wanted]
        index = {name: i for i, name in enumerate(names)}

        pending = {
            name: {d for d in stack.services[name].depends_on if d in index}
            for name in names
        }
        ready = [index[n] for n in names if not pending[n]]
        heapq.heapify(ready)
        ordered: List[str] = []

        # Every iteration releases one service; a cycle leaves the heap empty early.
        for _ in range(len(names)):
            if not ready:
                break
            name = names[heapq.heappop(ready)]
            ordered.append(name)
            del pending[name]
            for other, deps in pending.items():
                if name in deps:
                    deps.discard(name)
                    if not deps:
                        heapq.heappush(ready, index[other])

        if pending:
            cycle = find_cycle({n: set(pending[n]) for n in pending}) or list(pending)
            raise DependencyCycleError(cycle)
        return ordered

    def teardown_order(self, stack: Stack) -> List[str]:
        return list(reversed(self.resolve_order(stack)))

    @staticmethod
    def with_dependencies(stack: Stack, names: Iterable[str]) -> Set[str]:
        """Transitive closure of ``names`` over depends_on."""
        seen: Set[str] = set()
        stack_ = list(names)
        while stack_:
            name = stack_.pop()
            if name in seen or name not in stack.services:
                continue
            seen.add(name)
            stack_.extend(stack.services[name].depends_on)
        return seen

    @staticmethod
    def dependents_of(stack: Stack, name: str) -> List[str]:
        """Services that directly or transitively depend on ``name``, in declaration order."""
        found: Set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for other, svc in stack.services.items():
                if current in svc.depends_on and other not in found:
                    found.add(other)
                    frontier.append(other)
        return [n for n in stack.services if n in found]


def find_cycle(dependencies: Dict[str, Set[str]]) -> Optional[List[str]]:
    """
    Returns one dependency cycle as a closed path (``a -> b -> a``), or None.

    Iterative depth-first search so deep graphs do not hit the recursion limit.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {name: WHITE for name in dependencies}

    for root in dependencies:
        if color[root] != WHITE:
            continue
        path: List[str] = [root]
        iterators = [iter(sorted(dependencies[root]))]
        color[root] = GREY
        while iterators:
            dep = next(iterators[-1], None)
            if dep is None:
                color[path.pop()] = BLACK
                iterators.pop()
                continue
            if dep not in color:
                continue
            if color[dep] == GREY:
                return path[path.index(dep):] + [dep]
            if color[dep] == WHITE:
                color[dep] = GREY
                path.append(dep)
                iterators.append(iter(sorted(dependencies[dep])))
    return None
