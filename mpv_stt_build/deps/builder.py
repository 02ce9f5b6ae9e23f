"""Native dependency builder for one architecture.

This module handles:
- Building a dependency and its prerequisites in graph order
- Applying the rebuild policy (always, missing, stamp)
- Writing rebuild stamps into the install prefix
- Appending build output to a log file

Stamps live in <prefix>/.stamps/<name>.stamp. A stamp holds a key derived
from the recipe, the cached source, the architecture, the API level and the
stamps of the node's prerequisites, so rebuilding a prerequisite also
invalidates everything built on top of it. A stamp only counts while the
recipe's declared outputs are still present in the prefix.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from mpv_stt_build.builds.runner import BuildExecutionError, run_logged
from mpv_stt_build.config import Settings, get_settings
from mpv_stt_build.deps.graph import (
    DEFAULT_GRAPH,
    DependencyBuildError,
    DependencyGraph,
    DependencyNode,
    DependencyNotFoundError,
    resolve_build_order,
)
from mpv_stt_build.deps.recipes import Step, build_dir_for, compose_steps
from mpv_stt_build.deps.sources import SourceCache
from mpv_stt_build.toolchain.configure import ToolchainConfig
from mpv_stt_build.types import RebuildPolicy

logger = logging.getLogger(__name__)

STAMP_DIR_NAME = ".stamps"


@dataclass
class NodeResult:
    """Outcome for one node of a dependency build.

    Attributes:
        name: Dependency name.
        built: False when the rebuild policy skipped the node.
        reason: Why the node was built or skipped.
        duration_seconds: Time spent building.
    """

    name: str
    built: bool
    reason: str
    duration_seconds: float = 0.0


class DependencyBuilder:
    """Builds native dependencies into one architecture's install prefix."""

    def __init__(
        self,
        toolchain: ToolchainConfig,
        settings: Settings | None = None,
        log_path: Path | None = None,
        graph: DependencyGraph = DEFAULT_GRAPH,
        policy: RebuildPolicy | str | None = None,
        clean: bool = False,
        sources: SourceCache | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        if not toolchain.mobile or toolchain.prefix is None:
            raise ValueError(f"{toolchain.arch_id} has no native dependency prefix")
        if settings is None:
            settings = get_settings()

        self.toolchain = toolchain
        self.prefix: Path = toolchain.prefix
        self.settings = settings
        self.graph = graph
        self.policy = RebuildPolicy(policy or settings.rebuild_policy)
        self.clean = clean
        self.sources = sources or SourceCache.from_settings(settings)
        self.base_env = base_env
        self.log_path = log_path or (
            settings.resolved_work_dir / "logs" / f"{toolchain.architecture.name}.log"
        )

    def stamp_path(self, name: str) -> Path:
        return self.prefix / STAMP_DIR_NAME / f"{name}.stamp"

    def read_stamp(self, name: str) -> str | None:
        path = self.stamp_path(name)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8").strip()

    def stamp_key(self, node: DependencyNode) -> str:
        """Compute the rebuild key of a node."""
        parts = [
            node.recipe.fingerprint(),
            self.sources.identity(node.name),
            self.toolchain.architecture.abi,
            str(self.toolchain.api_level),
        ]
        for requirement in node.requires:
            parts.append(f"{requirement}={self.read_stamp(requirement) or ''}")
        return hashlib.sha256("\n".join(parts).encode()).hexdigest()

    def _skip_reason(self, node: DependencyNode, key: str) -> str | None:
        if self.clean or self.policy is RebuildPolicy.ALWAYS:
            return None
        stamp = self.read_stamp(node.name)
        if stamp is None:
            return None
        missing = node.recipe.missing_outputs(self.prefix)
        if missing:
            logger.info(
                "%s is stamped but %s is missing from %s",
                node.name,
                ", ".join(missing),
                self.prefix,
            )
            return None
        if self.policy is RebuildPolicy.MISSING:
            return "already built"
        if stamp == key:
            return "up to date"
        return None

    def build(self, name: str, skip_dependencies: bool = False) -> list[NodeResult]:
        """Build a dependency, and its prerequisites unless told not to.

        Args:
            name: Dependency name.
            skip_dependencies: Build only the named node.

        Returns:
            One NodeResult per visited node, in build order.

        Raises:
            DependencyNotFoundError: If the name is not declared.
            DependencyCycleError: If the graph contains a cycle.
            DependencyBuildError: If a build step fails; the chain stops.
            SourceFetchError: If a source cannot be fetched.
            SourceIntegrityError: If a verified source tree changed.
        """
        if skip_dependencies:
            if name not in self.graph:
                raise DependencyNotFoundError(name)
            order = [name]
        else:
            order = resolve_build_order(self.graph, name)
            logger.info("Preparing %s...", name)
            logger.info("Dependencies: %s", " ".join(order[:-1]) or "none")

        return [self._build_node(self.graph[node_name]) for node_name in order]

    def _build_node(self, node: DependencyNode) -> NodeResult:
        source_dir = self.sources.ensure(node.name)
        key = self.stamp_key(node)

        skip_reason = self._skip_reason(node, key)
        if skip_reason is not None:
            logger.info("Skipping %s (%s)", node.name, skip_reason)
            return NodeResult(node.name, built=False, reason=skip_reason)

        logger.info("Building %s for %s...", node.name, self.toolchain.arch_id)
        started = time.monotonic()
        stamp = self.stamp_path(node.name)
        stamp.unlink(missing_ok=True)

        build_dir = build_dir_for(source_dir, self.toolchain)
        if self.clean or self.policy is RebuildPolicy.ALWAYS:
            shutil.rmtree(build_dir, ignore_errors=True)
        build_dir.mkdir(parents=True, exist_ok=True)

        for step in compose_steps(
            node.recipe, self.toolchain, source_dir, jobs=self.settings.jobs
        ):
            self._run_step(node.name, step)

        if node.recipe.post_install is not None:
            try:
                node.recipe.post_install(self.prefix)
            except OSError as e:
                raise DependencyBuildError(
                    node.name, None, f"Post-install of {node.name} failed: {e}"
                ) from e

        stamp.parent.mkdir(parents=True, exist_ok=True)
        stamp.write_text(key + "\n", encoding="utf-8")
        reason = "clean build" if self.clean else f"policy {self.policy.value}"
        return NodeResult(
            node.name,
            built=True,
            reason=reason,
            duration_seconds=time.monotonic() - started,
        )

    def _run_step(self, name: str, step: Step) -> None:
        env = self.toolchain.native_environment(self.base_env)
        for var in step.unset:
            env.pop(var, None)
        env.update(step.env)
        try:
            result = run_logged(
                step.argv,
                cwd=step.cwd,
                log_path=self.log_path,
                env=env,
                timeout=self.settings.build_timeout,
            )
        except BuildExecutionError as e:
            raise DependencyBuildError(name, e.exit_code, str(e)) from e
        if not result.success:
            logger.error("Building %s failed. See log: %s", name, self.log_path)
            raise DependencyBuildError(name, result.exit_code)


__all__ = ["DependencyBuilder", "NodeResult", "STAMP_DIR_NAME"]
