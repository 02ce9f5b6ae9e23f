"""Static dependency graph of the native libmpv chain.

This module handles:
- The declared graph of native dependencies and their recipes
- Depth-first build ordering with explicit node states
- Dependency error types shared by the builder
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass

from mpv_stt_build.deps.recipes import RECIPES, Recipe


class DependencyNotFoundError(Exception):
    """Raised when a dependency name is not declared in the graph."""

    def __init__(self, name: str, code: str = "dependency_not_found") -> None:
        super().__init__(f"Target {name} not found")
        self.name = name
        self.code = code


class DependencyCycleError(Exception):
    """Raised when the declared graph contains a cycle."""

    def __init__(self, cycle: list[str], code: str = "dependency_cycle") -> None:
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")
        self.cycle = cycle
        self.code = code


class DependencyBuildError(Exception):
    """Raised when a dependency's build step fails."""

    def __init__(
        self,
        name: str,
        exit_code: int | None,
        message: str | None = None,
        code: str = "dependency_build_failed",
    ) -> None:
        super().__init__(
            message or f"Building {name} failed with exit code {exit_code}"
        )
        self.name = name
        self.exit_code = exit_code
        self.code = code


@dataclass(frozen=True)
class DependencyNode:
    """One buildable native library.

    Attributes:
        name: Dependency name.
        requires: Prerequisite names, built in this order.
        recipe: How to build the library.
    """

    name: str
    requires: tuple[str, ...]
    recipe: Recipe


DependencyGraph = Mapping[str, DependencyNode]


def _node(name: str, *requires: str) -> DependencyNode:
    return DependencyNode(name=name, requires=requires, recipe=RECIPES[name])


DEFAULT_GRAPH: dict[str, DependencyNode] = {
    node.name: node
    for node in (
        _node("ffmpeg"),
        _node("freetype2"),
        _node("fribidi"),
        _node("harfbuzz"),
        _node("unibreak"),
        _node("libass", "freetype2", "fribidi", "harfbuzz", "unibreak"),
        _node("libplacebo"),
        _node("mpv", "ffmpeg", "libass", "libplacebo"),
    )
}


class _State(enum.Enum):
    IN_PROGRESS = "in_progress"
    DONE = "done"


def resolve_build_order(graph: DependencyGraph, target: str) -> list[str]:
    """Return the nodes to build for a target, prerequisites first.

    Prerequisites are visited in declared order; the target comes last.
    Shared prerequisites appear once.

    Args:
        graph: Dependency graph.
        target: Node to build.

    Returns:
        Node names in build order.

    Raises:
        DependencyNotFoundError: If the target or a prerequisite is undeclared.
        DependencyCycleError: If a prerequisite chain leads back to itself.
    """
    if target not in graph:
        raise DependencyNotFoundError(target)

    states: dict[str, _State] = {}
    order: list[str] = []
    path: list[str] = []

    def visit(name: str) -> None:
        node = graph.get(name)
        if node is None:
            raise DependencyNotFoundError(name)

        state = states.get(name)
        if state is _State.DONE:
            return
        if state is _State.IN_PROGRESS:
            raise DependencyCycleError([*path[path.index(name):], name])

        states[name] = _State.IN_PROGRESS
        path.append(name)
        for requirement in node.requires:
            visit(requirement)
        path.pop()
        states[name] = _State.DONE
        order.append(name)

    visit(target)
    return order


__all__ = [
    "DEFAULT_GRAPH",
    "DependencyBuildError",
    "DependencyCycleError",
    "DependencyGraph",
    "DependencyNode",
    "DependencyNotFoundError",
    "resolve_build_order",
]
