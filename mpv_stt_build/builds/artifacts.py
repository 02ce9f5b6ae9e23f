"""Artifact packaging and manifest generation.

This module handles:
- Mapping compiled cargo outputs to their dist/ destinations
- Normalizing feature names into artifact suffixes
- Computing checksums
- Generating the text and JSON manifests of the dist/ tree

The manifest is always a read of what is on disk, never a prediction of
what a run should have produced.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mpv_stt_build.builds.matrix import DESKTOP_PLATFORMS, MOBILE_PLATFORM
from mpv_stt_build.builds.models import BuildJob
from mpv_stt_build.types import ArtifactInfo, ArtifactKind

logger = logging.getLogger(__name__)

FEATURE_SUFFIXES = {
    "stt_local_cpu": "cpu",
    "stt_local_cuda": "cuda",
    "stt_remote_http": "remote",
}

# Kind -> (cargo output file name, packaged stem, packaged extension)
ARTIFACT_FILES: dict[ArtifactKind, tuple[str, str, str]] = {
    ArtifactKind.PLUGIN: ("libmpv_stt_plugin.so", "libmpv_stt_plugin", ".so"),
    ArtifactKind.SERVER: ("mpv-stt-server", "mpv-stt-server", ""),
}

MANIFEST_TEXT_NAME = "MANIFEST.txt"
MANIFEST_JSON_NAME = "manifest.json"

# Kind sections listed first in the manifest, others follow sorted
KIND_ORDER = ("plugin", "server")

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class ArtifactCopyError(Exception):
    """Raised when a compiled output cannot be packaged."""

    def __init__(self, message: str, path: Path, code: str = "artifact_missing") -> None:
        super().__init__(message)
        self.path = path
        self.code = code


def feature_suffix(feature: str) -> str:
    """Map a feature name to its artifact suffix (unknown names pass through)."""
    return FEATURE_SUFFIXES.get(feature, feature)


def compiled_output_path(job: BuildJob, target_dir: Path) -> Path:
    """Where cargo leaves the binary for a job."""
    output_name = ARTIFACT_FILES[job.kind][0]
    return target_dir / job.rust_target / "release" / output_name


def destination_path(job: BuildJob, dist_dir: Path) -> Path:
    """Where a job's artifact is packaged.

    Desktop: dist/<platform>/<kind>/<stem>_<suffix><ext>
    Android: dist/android/<abi>/<kind>/<stem>_<suffix><ext>
    """
    _, stem, ext = ARTIFACT_FILES[job.kind]
    base = dist_dir / job.platform
    if job.abi is not None:
        base = base / job.abi
    return base / job.kind.value / f"{stem}_{feature_suffix(job.feature)}{ext}"


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def package_artifact(job: BuildJob, compiled_output: Path, dist_dir: Path) -> ArtifactInfo:
    """Copy a compiled output to its dist/ destination.

    Args:
        job: Build job that produced the output.
        compiled_output: Path of the binary cargo produced.
        dist_dir: Root of the dist tree.

    Returns:
        ArtifactInfo for the packaged file.

    Raises:
        ArtifactCopyError: If the compiled output is missing or the copy fails.
    """
    if not compiled_output.is_file():
        raise ArtifactCopyError(
            f"Expected build output not found: {compiled_output}",
            path=compiled_output,
        )

    dest = destination_path(job, dist_dir)
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(compiled_output, dest)
    except OSError as e:
        raise ArtifactCopyError(
            f"Failed to copy {compiled_output} to {dest}: {e}",
            path=compiled_output,
            code="artifact_copy_failed",
        ) from e

    logger.info("Packaged %s", dest.relative_to(dist_dir).as_posix())
    return ArtifactInfo(
        filename=dest.name,
        relative_path=dest.relative_to(dist_dir).as_posix(),
        size_bytes=dest.stat().st_size,
        sha256=compute_file_hash(dest),
        platform=job.platform if job.abi is None else f"{job.platform}/{job.abi}",
        kind=job.kind.value,
        labels=[feature_suffix(job.feature)],
    )


def format_size(size_bytes: int) -> str:
    """Render a byte count the way ``du -h`` does (e.g. 4.0K, 12M)."""
    size = float(size_bytes)
    for unit in ("B", "K", "M", "G"):
        if size < 1024 or unit == "G":
            if unit == "B":
                return f"{int(size)}B"
            return f"{size:.1f}{unit}" if size < 10 else f"{size:.0f}{unit}"
        size /= 1024
    return f"{size_bytes}B"


def _kind_sort_key(name: str) -> tuple[int, str]:
    if name in KIND_ORDER:
        return (KIND_ORDER.index(name), name)
    return (len(KIND_ORDER), name)


def platform_dirs(dist_dir: Path) -> list[tuple[str, Path]]:
    """List platform sections of the dist tree.

    Desktop platform directories come first (sorted), then one section per
    Android ABI directory (sorted).

    Returns:
        List of (section label, directory).
    """
    if not dist_dir.is_dir():
        return []

    sections: list[tuple[str, Path]] = []
    for path in sorted(dist_dir.iterdir()):
        if path.is_dir() and path.name != MOBILE_PLATFORM:
            sections.append((path.name, path))

    mobile_dir = dist_dir / MOBILE_PLATFORM
    if mobile_dir.is_dir():
        for abi_dir in sorted(mobile_dir.iterdir()):
            if abi_dir.is_dir():
                sections.append((f"{MOBILE_PLATFORM}/{abi_dir.name}", abi_dir))
    return sections


def _kind_dirs(platform_dir: Path) -> list[Path]:
    dirs = [p for p in platform_dir.iterdir() if p.is_dir()]
    return sorted(dirs, key=lambda p: _kind_sort_key(p.name))


def discover_artifacts(dist_dir: Path) -> list[ArtifactInfo]:
    """Inventory the packaged artifacts under dist/.

    Args:
        dist_dir: Root of the dist tree.

    Returns:
        List of ArtifactInfo in manifest order.
    """
    artifacts: list[ArtifactInfo] = []
    for section, platform_dir in platform_dirs(dist_dir):
        for kind_dir in _kind_dirs(platform_dir):
            for path in sorted(kind_dir.iterdir()):
                if not path.is_file():
                    continue
                artifacts.append(
                    ArtifactInfo(
                        filename=path.name,
                        relative_path=path.relative_to(dist_dir).as_posix(),
                        size_bytes=path.stat().st_size,
                        sha256=compute_file_hash(path),
                        platform=section,
                        kind=kind_dir.name,
                    )
                )
    logger.debug("Discovered %d artifacts in %s", len(artifacts), dist_dir)
    return artifacts


def _section_title(section: str) -> str:
    if section.startswith(f"{MOBILE_PLATFORM}/"):
        return f"Android {section.split('/', 1)[1]}"
    target = DESKTOP_PLATFORMS.get(section)
    return f"{section} ({target})" if target else section


def generate_manifest(
    dist_dir: Path,
    workspace_root: Path | None = None,
    generated_at: datetime | None = None,
) -> str:
    """Generate the human-readable manifest of the dist tree.

    Args:
        dist_dir: Root of the dist tree.
        workspace_root: Workspace shown in the header.
        generated_at: Timestamp shown in the header (default: now).

    Returns:
        Manifest text.
    """
    now = generated_at or datetime.now(timezone.utc)
    lines = [
        "MPV STT Build Artifacts",
        f"Generated: {now.isoformat(timespec='seconds')}",
    ]
    if workspace_root is not None:
        lines.append(f"Workspace: {workspace_root}")
    lines += ["", "=== Build Matrix ===", ""]

    for section, platform_dir in platform_dirs(dist_dir):
        lines.append(f"Platform: {_section_title(section)}")
        for kind_dir in _kind_dirs(platform_dir):
            files = [p for p in sorted(kind_dir.iterdir()) if p.is_file()]
            if not files:
                continue
            lines.append(f"  {kind_dir.name.capitalize()}:")
            for path in files:
                lines.append(f"    - {path.name} ({format_size(path.stat().st_size)})")
        lines.append("")

    return "\n".join(lines) + "\n"


def manifest_data(
    dist_dir: Path,
    generated_at: datetime | None = None,
) -> dict[str, Any]:
    """Build the JSON manifest of the dist tree.

    Args:
        dist_dir: Root of the dist tree.
        generated_at: Timestamp recorded in the manifest (default: now).

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = generated_at or datetime.now(timezone.utc)
    artifacts = discover_artifacts(dist_dir)
    return {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
        "summary": {
            "total_artifacts": len(artifacts),
            "total_size_bytes": sum(a.size_bytes for a in artifacts),
            "platforms": sorted({a.platform for a in artifacts if a.platform}),
        },
    }


def write_manifest(dist_dir: Path, workspace_root: Path | None = None) -> Path:
    """Write MANIFEST.txt and manifest.json into the dist tree.

    Args:
        dist_dir: Root of the dist tree.
        workspace_root: Workspace shown in the text header.

    Returns:
        Path to MANIFEST.txt.
    """
    dist_dir.mkdir(parents=True, exist_ok=True)
    now = datetime.now(timezone.utc)

    text_path = dist_dir / MANIFEST_TEXT_NAME
    text_path.write_text(
        generate_manifest(dist_dir, workspace_root=workspace_root, generated_at=now),
        encoding="utf-8",
    )

    json_path = dist_dir / MANIFEST_JSON_NAME
    with json_path.open("w", encoding="utf-8") as f:
        json.dump(manifest_data(dist_dir, generated_at=now), f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", text_path)
    return text_path


__all__ = [
    "ARTIFACT_FILES",
    "ArtifactCopyError",
    "FEATURE_SUFFIXES",
    "HASH_CHUNK_SIZE",
    "MANIFEST_JSON_NAME",
    "MANIFEST_TEXT_NAME",
    "compiled_output_path",
    "compute_file_hash",
    "destination_path",
    "discover_artifacts",
    "feature_suffix",
    "format_size",
    "generate_manifest",
    "manifest_data",
    "package_artifact",
    "platform_dirs",
    "write_manifest",
]
