"""Build matrix orchestration.

This module handles:
- Selection validation and job expansion
- Running cargo per job
- Artifact packaging and manifest generation
- Aggregate run results
"""

from mpv_stt_build.builds.models import BuildJob, JobResult, MatrixResult

__all__ = ["BuildJob", "JobResult", "MatrixResult"]

# Lazy imports for submodules to avoid circular imports
# Access via mpv_stt_build.builds.service, etc.
