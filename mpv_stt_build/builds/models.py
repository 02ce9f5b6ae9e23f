"""Build job and result models.

BuildJob is an internal frozen value produced by matrix expansion.
JobResult and MatrixResult are pydantic models so a run can be reported
as JSON.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict

from mpv_stt_build.types import ArtifactKind, BuildMode, JobStatus


@dataclass(frozen=True)
class BuildJob:
    """One cargo invocation of the build matrix.

    Attributes:
        platform: Platform identifier (desktop platform or ``android``).
        kind: Artifact kind.
        feature: Cargo feature selecting the inference backend.
        crate: Cargo package name.
        rust_target: Rust target triple.
        abi: Android ABI for mobile jobs.
    """

    platform: str
    kind: ArtifactKind
    feature: str
    crate: str
    rust_target: str
    abi: str | None = None

    @property
    def mobile(self) -> bool:
        return self.abi is not None

    @property
    def arch_id(self) -> str:
        """Identifier passed to the toolchain configurator."""
        return self.abi or self.platform

    @property
    def label(self) -> str:
        where = f"{self.platform}/{self.abi}" if self.abi else self.platform
        return f"{where} {self.kind.value} [{self.feature}]"


class JobResult(BaseModel):
    """Outcome of one build job."""

    model_config = ConfigDict(extra="forbid")

    platform: str
    kind: ArtifactKind
    feature: str
    abi: str | None = None
    status: JobStatus
    command: str | None = None
    exit_code: int | None = None
    artifact_path: str | None = None
    error_code: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0

    @classmethod
    def for_job(cls, job: BuildJob, status: JobStatus, **kwargs: object) -> JobResult:
        """Create a result carrying the job's identifying fields."""
        return cls(
            platform=job.platform,
            kind=job.kind,
            feature=job.feature,
            abi=job.abi,
            status=status,
            **kwargs,  # type: ignore[arg-type]
        )


class MatrixResult(BaseModel):
    """Aggregate outcome of a matrix run."""

    model_config = ConfigDict(extra="forbid")

    mode: BuildMode
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    jobs: list[JobResult] = []
    warnings: list[str] = []
    log_path: str | None = None
    manifest_path: str | None = None

    @property
    def success(self) -> bool:
        """True when no executed job failed."""
        return self.failed == 0

    def record(self, result: JobResult) -> None:
        """Add a job result and update the counters."""
        self.jobs.append(result)
        self.total += 1
        if result.status is JobStatus.SUCCEEDED:
            self.succeeded += 1
        else:
            self.failed += 1


__all__ = ["BuildJob", "JobResult", "MatrixResult"]
