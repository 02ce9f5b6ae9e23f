"""Build matrix service.

This module provides the high-level matrix API:
- run_matrix(): validate, expand and run a selection
- Per-job toolchain configuration and native dependency preparation
- Failure isolation between jobs
- Packaging and manifest generation at the end of a run

Jobs run strictly one after another. Each job gets a freshly derived
ToolchainConfig, and every external process receives an environment
rendered from it, so nothing configured for one job reaches the next.
"""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Mapping
from pathlib import Path

from mpv_stt_build.builds.artifacts import (
    ArtifactCopyError,
    compiled_output_path,
    package_artifact,
    write_manifest,
)
from mpv_stt_build.builds.matrix import (
    BuildSelection,
    expand_jobs,
    validate_selection,
)
from mpv_stt_build.builds.models import BuildJob, JobResult, MatrixResult
from mpv_stt_build.builds.runner import BuildExecutionError, run_cargo
from mpv_stt_build.config import Settings, get_settings
from mpv_stt_build.deps.builder import DependencyBuilder
from mpv_stt_build.deps.graph import (
    DependencyBuildError,
    DependencyCycleError,
    DependencyNotFoundError,
)
from mpv_stt_build.deps.recipes import LIBMPV_LIBRARY
from mpv_stt_build.deps.sources import SourceFetchError, SourceIntegrityError
from mpv_stt_build.log import build_log_handler
from mpv_stt_build.toolchain.configure import (
    ToolchainConfig,
    ToolingPreconditionError,
    configure_architecture,
)
from mpv_stt_build.toolchain.rustup import ensure_rust_target
from mpv_stt_build.types import BuildMode, JobStatus

logger = logging.getLogger(__name__)

# Native target every mobile job links against
MOBILE_DEPENDENCY_TARGET = "mpv"

# Failures that end one job without stopping the run
JOB_ERRORS = (
    ToolingPreconditionError,
    SourceFetchError,
    SourceIntegrityError,
    DependencyNotFoundError,
    DependencyCycleError,
    DependencyBuildError,
    BuildExecutionError,
    ArtifactCopyError,
)


class MatrixRun:
    """State shared by the jobs of one matrix run."""

    def __init__(
        self,
        settings: Settings,
        mode: BuildMode,
        log_path: Path,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings
        self.mode = mode
        self.log_path = log_path
        self.base_env = base_env
        self.installed_targets: set[str] = set()
        self.prepared_abis: set[str] = set()

    def prepare_toolchain(self, job: BuildJob) -> ToolchainConfig:
        """Configure the job's target and make sure its prerequisites exist.

        Raises:
            ToolingPreconditionError: If the toolchain is incomplete.
            SourceFetchError: If a dependency source cannot be fetched.
            DependencyBuildError: If a native dependency fails to build or
                libmpv is still missing afterwards.
        """
        toolchain = configure_architecture(
            job.arch_id, self.settings, environ=self.base_env
        )
        ensure_rust_target(job.rust_target, self.installed_targets)

        if job.mobile and job.arch_id not in self.prepared_abis:
            builder = DependencyBuilder(
                toolchain,
                self.settings,
                log_path=self.log_path,
                base_env=self.base_env,
            )
            builder.build(MOBILE_DEPENDENCY_TARGET)
            libmpv = toolchain.prefix / LIBMPV_LIBRARY
            if not libmpv.is_file():
                raise DependencyBuildError(
                    MOBILE_DEPENDENCY_TARGET,
                    None,
                    f"{libmpv} is missing after building native dependencies",
                    code="libmpv_missing",
                )
            self.prepared_abis.add(job.arch_id)
        return toolchain

    def run_job(self, job: BuildJob) -> JobResult:
        """Run one job, converting failures into a failed JobResult."""
        logger.info("Building %s...", job.label)
        started = time.monotonic()

        try:
            toolchain = self.prepare_toolchain(job)
            build = run_cargo(
                job,
                toolchain,
                self.settings.workspace_root,
                self.log_path,
                mode=self.mode,
                timeout=self.settings.build_timeout,
                base_env=self.base_env,
            )
            if not build.success:
                logger.error("✗ %s (see %s)", job.label, self.log_path)
                return JobResult.for_job(
                    job,
                    JobStatus.FAILED,
                    command=build.command,
                    exit_code=build.exit_code,
                    error_code="build_failed",
                    error=build.error_message,
                    duration_seconds=time.monotonic() - started,
                )

            artifact_path: str | None = None
            if self.mode is BuildMode.BUILD:
                artifact = package_artifact(
                    job,
                    compiled_output_path(job, self.settings.target_dir),
                    self.settings.resolved_dist_dir,
                )
                artifact_path = artifact.relative_path

        except JOB_ERRORS as e:
            return self._failed(job, started, e.code, e)
        except OSError as e:
            return self._failed(job, started, "filesystem_error", e)
        except ValueError as e:
            return self._failed(job, started, "invalid_configuration", e)

        logger.info("✓ %s", job.label)
        return JobResult.for_job(
            job,
            JobStatus.SUCCEEDED,
            command=build.command,
            exit_code=build.exit_code,
            artifact_path=artifact_path,
            duration_seconds=time.monotonic() - started,
        )

    def _failed(
        self, job: BuildJob, started: float, code: str, error: Exception
    ) -> JobResult:
        logger.error("✗ %s: %s", job.label, error)
        return JobResult.for_job(
            job,
            JobStatus.FAILED,
            error_code=code,
            error=str(error),
            exit_code=getattr(error, "exit_code", None),
            duration_seconds=time.monotonic() - started,
        )


def _describe(values: tuple[str, ...] | list[str], fallback: str) -> str:
    return " ".join(values) if values else fallback


def run_matrix(
    selection: BuildSelection,
    settings: Settings | None = None,
    base_env: Mapping[str, str] | None = None,
) -> MatrixResult:
    """Validate, expand and run a build matrix.

    The selection is validated before anything touches the filesystem. The
    shared build log is truncated at the start of the run; every external
    command appends to it and orchestrator log records are copied into it.

    Args:
        selection: What to build.
        settings: Application settings.
        base_env: Environment external processes are rendered from
            (defaults to os.environ).

    Returns:
        MatrixResult with per-job results and totals.

    Raises:
        SelectionValidationError: If the selection names unknown values.
    """
    if settings is None:
        settings = get_settings()

    resolved = validate_selection(selection)
    dist_dir = settings.resolved_dist_dir
    log_path = settings.build_log_path
    notes: list[str] = []

    if resolved.clean:
        if resolved.mode is BuildMode.CHECK:
            notes.append("Ignoring --clean in check mode")
        elif dist_dir.exists():
            shutil.rmtree(dist_dir)
    dist_dir.mkdir(parents=True, exist_ok=True)
    log_path.write_text("", encoding="utf-8")

    result = MatrixResult(mode=resolved.mode, log_path=str(log_path))

    with build_log_handler(log_path):
        for note in notes:
            logger.warning(note)
        logger.info("==> Starting multi-platform build")
        logger.info("Selected platforms : %s", _describe(resolved.platforms, "n/a"))
        logger.info(
            "Selected kinds     : %s",
            _describe([k.value for k in resolved.kinds], "n/a"),
        )
        logger.info("Selected features  : %s", _describe(resolved.features, "all"))
        logger.info("Android ABIs       : %s", _describe(resolved.abis, "default"))
        logger.info("Clean dist         : %s", int(resolved.clean))
        logger.info("Mode               : %s", resolved.mode.value)

        jobs, warnings = expand_jobs(resolved)
        result.warnings = notes + warnings
        result.skipped = len(warnings)

        run = MatrixRun(settings, resolved.mode, log_path, base_env=base_env)
        for job in jobs:
            result.record(run.run_job(job))

        if resolved.mode is BuildMode.BUILD:
            logger.info("Generating build manifest...")
            manifest_path = write_manifest(dist_dir, workspace_root=settings.workspace_root)
            result.manifest_path = str(manifest_path)
        else:
            logger.info("Check mode: skipping manifest generation.")

        logger.info("==> Build complete!")
        logger.info(
            "Total: %d | Success: %d | Failed: %d",
            result.total,
            result.succeeded,
            result.failed,
        )
        logger.info("Artifacts: %s", dist_dir)
        logger.info("Log: %s", log_path)

    return result


__all__ = ["JOB_ERRORS", "MatrixRun", "run_matrix"]
