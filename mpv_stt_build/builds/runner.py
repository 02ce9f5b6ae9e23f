"""Build runner for executing external build commands.

This module handles:
- Composing cargo commands for matrix jobs
- Executing commands with subprocess
- Appending stdout/stderr to the shared build log
- Enforcing optional timeouts
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from mpv_stt_build.types import BuildMode

if TYPE_CHECKING:
    from mpv_stt_build.builds.models import BuildJob
    from mpv_stt_build.toolchain.configure import ToolchainConfig

logger = logging.getLogger(__name__)

# Feature enabled by the crates' default feature set
DEFAULT_FEATURE = "stt_local_cpu"


class BuildExecutionError(Exception):
    """Raised when a build command cannot be run to completion."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class BuildResult:
    """Result of a build command.

    Attributes:
        success: Whether the command exited with status 0.
        exit_code: Process exit code.
        log_path: Log file the output was appended to.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
        error_message: Error message if the command failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


def run_logged(
    cmd: Sequence[str],
    cwd: Path,
    log_path: Path,
    env: Mapping[str, str] | None = None,
    timeout: int | None = None,
) -> BuildResult:
    """Run a command, appending its combined output to a log file.

    Args:
        cmd: Command and arguments.
        cwd: Working directory.
        log_path: Log file, opened in append mode.
        env: Full environment for the process (None = inherit).
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        BuildResult with execution details.

    Raises:
        BuildExecutionError: If the command cannot start or times out.
    """
    cmd_str = shlex.join(cmd)
    logger.debug("Executing: %s (cwd %s)", cmd_str, cwd)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    try:
        with log_path.open("a") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.flush()

            result = subprocess.run(
                list(cmd),
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=dict(env) if env is not None else None,
                check=False,
            )
            exit_code = result.returncode
            success = exit_code == 0
            if not success:
                error_message = f"{cmd[0]} failed with exit code {exit_code}"

    except subprocess.TimeoutExpired as e:
        error_message = f"{cmd[0]} timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        raise BuildExecutionError(
            error_message,
            exit_code=-1,
            code="build_timeout",
        ) from e

    except OSError as e:
        error_message = f"Failed to execute {cmd[0]}: {e}"
        logger.error(error_message)
        raise BuildExecutionError(
            error_message,
            exit_code=None,
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)
    with log_path.open("a") as log_file:
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Exit code: {exit_code} ({duration:.1f}s)\n\n")

    return BuildResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def compose_cargo_command(job: BuildJob, mode: BuildMode = BuildMode.BUILD) -> list[str]:
    """Compose the cargo command for a matrix job.

    A feature other than the default replaces the default feature set.

    Args:
        job: Build job.
        mode: ``build`` or ``check``.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [
        "cargo",
        mode.value,
        "--release",
        "-p",
        job.crate,
        "--target",
        job.rust_target,
    ]
    if job.feature != DEFAULT_FEATURE:
        cmd += ["--features", job.feature, "--no-default-features"]
    return cmd


def run_cargo(
    job: BuildJob,
    toolchain: ToolchainConfig,
    workspace_root: Path,
    log_path: Path,
    mode: BuildMode = BuildMode.BUILD,
    timeout: int | None = None,
    base_env: Mapping[str, str] | None = None,
) -> BuildResult:
    """Run cargo for one matrix job.

    Args:
        job: Build job.
        toolchain: Toolchain configuration for the job's target.
        workspace_root: Cargo workspace root.
        log_path: Shared build log.
        mode: ``build`` or ``check``.
        timeout: Timeout in seconds (None = no timeout).
        base_env: Environment the cargo environment is rendered from.

    Returns:
        BuildResult of the cargo invocation.

    Raises:
        BuildExecutionError: If cargo cannot start or times out.
    """
    cmd = compose_cargo_command(job, mode)
    logger.info("Running: %s", shlex.join(cmd))
    result = run_logged(
        cmd,
        cwd=workspace_root,
        log_path=log_path,
        env=toolchain.cargo_environment(base_env),
        timeout=timeout,
    )
    if not result.success:
        logger.error("%s. See log: %s", result.error_message, log_path)
    return result


__all__ = [
    "BuildExecutionError",
    "BuildResult",
    "DEFAULT_FEATURE",
    "compose_cargo_command",
    "run_cargo",
    "run_logged",
]
