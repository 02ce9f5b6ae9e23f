"""Shared type definitions for mpv_stt_build.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class ArtifactKind(str, Enum):
    """Kind of consumer artifact produced by the matrix."""

    PLUGIN = "plugin"
    SERVER = "server"


class BuildMode(str, Enum):
    """Cargo subcommand used for matrix jobs."""

    BUILD = "build"
    CHECK = "check"


class JobStatus(str, Enum):
    """Terminal state of an executed build job.

    Combinations dropped during expansion never become jobs; they are
    reported as warnings and counted as skipped.
    """

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RebuildPolicy(str, Enum):
    """When a native dependency is rebuilt."""

    ALWAYS = "always"
    MISSING = "missing"
    STAMP = "stamp"


@dataclass
class ArtifactInfo:
    """Information about a packaged artifact."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    platform: str | None = None
    kind: str | None = None
    labels: list[str] = field(default_factory=list)


__all__ = [
    "ArtifactInfo",
    "ArtifactKind",
    "BuildMode",
    "JobStatus",
    "RebuildPolicy",
]
