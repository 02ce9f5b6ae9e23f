"""Source cache for native dependencies.

This module handles:
- Pinned source definitions (git checkouts and release tarballs)
- Existence-gated fetching into the source cache directory
- Trust-on-first-use records with a digest of each fetched tree
- Opt-in re-validation of cached trees against their record

A source directory that already exists is reused without fetching. The
first time a tree is seen its digest is recorded; with verification enabled
later runs recompute the digest and refuse a tree that no longer matches.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import subprocess
import tarfile
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Literal

import httpx

from mpv_stt_build.config import Settings

logger = logging.getLogger(__name__)

# Pinned versions of the libmpv dependency chain
V_FFMPEG = "n8.0"
V_FREETYPE = "2.14.1"
V_FRIBIDI = "1.0.16"
V_HARFBUZZ = "12.2.0"
V_UNIBREAK = "6.1"

DOWNLOAD_TIMEOUT = 3600
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB
HASH_CHUNK_SIZE = 64 * 1024

RECORD_DIR_NAME = ".sources"

# Directories excluded from tree digests (VCS metadata and build outputs)
DIGEST_EXCLUDED_DIRS = (".git",)
DIGEST_EXCLUDED_PREFIXES = ("_build",)


class SourceFetchError(Exception):
    """Raised when a dependency source cannot be fetched."""

    def __init__(self, message: str, code: str = "fetch_error") -> None:
        super().__init__(message)
        self.code = code


class SourceIntegrityError(Exception):
    """Raised when a cached source tree no longer matches its record."""

    def __init__(self, name: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Source tree for {name} changed since first fetch "
            f"(expected {expected[:16]}..., got {actual[:16]}...)"
        )
        self.name = name
        self.expected = expected
        self.actual = actual
        self.code = "source_integrity"


@dataclass(frozen=True)
class SourceSpec:
    """Where a dependency's sources come from.

    Attributes:
        name: Dependency name (also the directory name in the cache).
        kind: ``git`` checkout or release ``tarball``.
        url: Repository or archive URL.
        ref: Branch or tag for git sources.
        depth: Shallow clone depth (None for full history).
        recursive: Whether to clone submodules.
    """

    name: str
    kind: Literal["git", "tarball"]
    url: str
    ref: str | None = None
    depth: int | None = 1
    recursive: bool = False

    def identity(self) -> str:
        """Stable string describing what this spec fetches."""
        return f"{self.kind}:{self.url}@{self.ref or 'HEAD'}"


def default_source_specs(settings: Settings) -> dict[str, SourceSpec]:
    """Return the source definitions for the libmpv dependency chain.

    Args:
        settings: Settings providing repository URL overrides.

    Returns:
        Mapping of dependency name to SourceSpec.
    """
    unibreak_tag = "libunibreak_" + V_UNIBREAK.replace(".", "_")
    specs = [
        SourceSpec("ffmpeg", "git", settings.ffmpeg_repo, ref=V_FFMPEG),
        SourceSpec(
            "freetype2",
            "git",
            "https://gitlab.freedesktop.org/freetype/freetype.git",
            ref="VER-" + V_FREETYPE.replace(".", "-"),
            depth=None,
            recursive=True,
        ),
        SourceSpec(
            "fribidi",
            "tarball",
            "https://github.com/fribidi/fribidi/releases/download/"
            f"v{V_FRIBIDI}/fribidi-{V_FRIBIDI}.tar.xz",
        ),
        SourceSpec(
            "harfbuzz",
            "tarball",
            "https://github.com/harfbuzz/harfbuzz/releases/download/"
            f"{V_HARFBUZZ}/harfbuzz-{V_HARFBUZZ}.tar.xz",
        ),
        SourceSpec(
            "unibreak",
            "tarball",
            "https://github.com/adah1972/libunibreak/releases/download/"
            f"{unibreak_tag}/libunibreak-{V_UNIBREAK}.tar.gz",
        ),
        SourceSpec("libass", "git", "https://github.com/libass/libass"),
        SourceSpec(
            "libplacebo",
            "git",
            "https://github.com/haasn/libplacebo",
            recursive=True,
        ),
        SourceSpec("mpv", "git", settings.mpv_repo),
    ]
    return {spec.name: spec for spec in specs}


def fetch_git(
    url: str,
    dest: Path,
    ref: str | None = None,
    depth: int | None = 1,
    recursive: bool = False,
    timeout: int | None = None,
) -> Path:
    """Clone a git repository.

    Args:
        url: Repository URL.
        dest: Checkout directory (must not exist).
        ref: Branch or tag to check out.
        depth: Shallow clone depth, or None for full history.
        recursive: Clone submodules too.
        timeout: Optional timeout in seconds.

    Returns:
        The checkout directory.

    Raises:
        SourceFetchError: If git is unavailable or the clone fails.
    """
    cmd = ["git", "clone"]
    if depth is not None:
        cmd += ["--depth", str(depth)]
    if recursive:
        cmd.append("--recurse-submodules")
    if ref:
        cmd += ["--branch", ref]
    cmd += [url, str(dest)]

    logger.info("Cloning %s%s into %s", url, f" ({ref})" if ref else "", dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except OSError as e:
        raise SourceFetchError(f"Failed to run git: {e}", code="missing_tool") from e
    except subprocess.CalledProcessError as e:
        shutil.rmtree(dest, ignore_errors=True)
        raise SourceFetchError(
            f"git clone of {url} failed: {e.stderr}", code="git_error"
        ) from e
    except subprocess.TimeoutExpired as e:
        shutil.rmtree(dest, ignore_errors=True)
        raise SourceFetchError(
            f"git clone of {url} timed out after {timeout}s", code="timeout"
        ) from e
    return dest


def download_archive(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> str:
    """Stream a file to disk.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination file.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        SHA-256 of the downloaded file.

    Raises:
        SourceFetchError: If the download fails.
    """
    logger.info("Downloading %s", url)
    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            sha256 = hashlib.sha256()
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
            return sha256.hexdigest()

    except httpx.HTTPStatusError as e:
        raise SourceFetchError(
            f"HTTP error downloading {url}: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise SourceFetchError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise SourceFetchError(
            f"Network error downloading {url}: {e}", code="network_error"
        ) from e


def _strip_member(name: str, strip_components: int) -> str | None:
    parts = PurePosixPath(name).parts[strip_components:]
    return str(PurePosixPath(*parts)) if parts else None


def extract_tarball(archive_path: Path, dest_dir: Path, strip_components: int = 1) -> Path:
    """Extract a tarball, dropping leading path components.

    Args:
        archive_path: Archive to extract (any compression tarfile supports).
        dest_dir: Destination directory.
        strip_components: Number of leading path components to drop.

    Returns:
        The destination directory.

    Raises:
        SourceFetchError: If the archive is invalid or unsafe.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            members = []
            for member in tar.getmembers():
                stripped = _strip_member(member.name, strip_components)
                if stripped is None:
                    continue
                member_path = PurePosixPath(stripped)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise SourceFetchError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )
                member.name = stripped
                if member.islnk():
                    linkname = _strip_member(member.linkname, strip_components)
                    if linkname is None:
                        continue
                    member.linkname = linkname
                members.append(member)
            if not members:
                raise SourceFetchError(
                    f"Archive {archive_path} is empty", code="empty_archive"
                )
            tar.extractall(dest_dir, members=members, filter="data")
    except tarfile.TarError as e:
        raise SourceFetchError(
            f"Failed to extract {archive_path}: {e}", code="tar_error"
        ) from e
    return dest_dir


def _digest_excluded(relative: Path) -> bool:
    for part in relative.parts:
        if part in DIGEST_EXCLUDED_DIRS or part.startswith(DIGEST_EXCLUDED_PREFIXES):
            return True
    return False


def tree_digest(root: Path) -> str:
    """Compute a digest over a source tree's paths and contents.

    VCS metadata and ``_build*`` directories are ignored so in-tree build
    directories do not change the digest.

    Args:
        root: Tree root.

    Returns:
        SHA-256 hex digest.
    """
    digest = hashlib.sha256()
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if _digest_excluded(relative):
            continue
        if path.is_symlink():
            digest.update(f"L {relative.as_posix()} {path.readlink()}\n".encode())
        elif path.is_file():
            file_hash = hashlib.sha256()
            with path.open("rb") as f:
                while chunk := f.read(HASH_CHUNK_SIZE):
                    file_hash.update(chunk)
            digest.update(f"F {relative.as_posix()} {file_hash.hexdigest()}\n".encode())
    return digest.hexdigest()


class SourceCache:
    """Existence-gated source cache with trust-on-first-use records."""

    def __init__(
        self,
        deps_dir: Path,
        specs: dict[str, SourceSpec],
        verify: bool = False,
        client: httpx.Client | None = None,
    ) -> None:
        self.deps_dir = deps_dir
        self.specs = specs
        self.verify = verify
        self._client = client

    @classmethod
    def from_settings(
        cls, settings: Settings, client: httpx.Client | None = None
    ) -> SourceCache:
        """Create a cache using the configured directory and sources."""
        return cls(
            settings.resolved_deps_dir,
            default_source_specs(settings),
            verify=settings.verify_sources,
            client=client,
        )

    def path(self, name: str) -> Path:
        return self.deps_dir / name

    def record_path(self, name: str) -> Path:
        return self.deps_dir / RECORD_DIR_NAME / f"{name}.json"

    def load_record(self, name: str) -> dict[str, Any] | None:
        """Load the first-fetch record of a source, if any.

        Raises:
            SourceFetchError: If the record exists but cannot be parsed.
        """
        path = self.record_path(name)
        if not path.is_file():
            return None
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as e:
            raise SourceFetchError(
                f"Fetch record {path} is corrupt ({e}); delete it to re-record {name}",
                code="corrupt_record",
            ) from e
        if not isinstance(data, dict):
            raise SourceFetchError(
                f"Fetch record {path} is corrupt (expected an object); "
                f"delete it to re-record {name}",
                code="corrupt_record",
            )
        return data

    def _write_record(
        self, spec: SourceSpec, archive_sha256: str | None = None
    ) -> dict[str, Any]:
        record: dict[str, Any] = {
            "spec": asdict(spec),
            "digest": tree_digest(self.path(spec.name)),
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        }
        if archive_sha256:
            record["archive_sha256"] = archive_sha256
        path = self.record_path(spec.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Replace atomically so an interrupted run never leaves half a record
        tmp_path = path.with_name(path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(record, f, indent=2, sort_keys=True)
        tmp_path.replace(path)
        return record

    def identity(self, name: str) -> str:
        """Describe the cached source for rebuild stamps."""
        spec = self.specs.get(name)
        record = self.load_record(name)
        parts = [spec.identity() if spec else name]
        if record is not None:
            parts.append(str(record.get("digest", "")))
        return "|".join(parts)

    def ensure(self, name: str) -> Path:
        """Make sure a dependency's sources are present.

        Args:
            name: Dependency name.

        Returns:
            Path to the source tree.

        Raises:
            SourceFetchError: If the source is undefined or cannot be fetched.
            SourceIntegrityError: If verification is enabled and the cached
                tree does not match its record.
        """
        spec = self.specs.get(name)
        if spec is None:
            raise SourceFetchError(f"No source defined for {name}", code="unknown_source")

        dest = self.path(name)
        if dest.is_dir():
            record = self.load_record(name)
            if record is None:
                logger.warning(
                    "Adopting existing source tree %s without a fetch record; "
                    "its current contents are trusted from now on. Run "
                    "'mpv-stt-build deps fetch --verify' or set "
                    "MPV_STT_BUILD_VERIFY_SOURCES=true to check it on later runs",
                    dest,
                )
                self._write_record(spec)
            elif self.verify:
                actual = tree_digest(dest)
                if actual != record.get("digest"):
                    raise SourceIntegrityError(name, str(record.get("digest")), actual)
                logger.debug("Verified source tree %s", dest)
            return dest

        archive_sha256: str | None = None
        if spec.kind == "git":
            fetch_git(
                spec.url,
                dest,
                ref=spec.ref,
                depth=spec.depth,
                recursive=spec.recursive,
            )
        else:
            archive_sha256 = self._fetch_tarball(spec, dest)

        self._write_record(spec, archive_sha256=archive_sha256)
        return dest

    def _fetch_tarball(self, spec: SourceSpec, dest: Path) -> str:
        self.deps_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            dir=self.deps_dir, suffix=".tmp", delete=False
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)

        try:
            if self._client is not None:
                checksum = download_archive(self._client, spec.url, tmp_path)
            else:
                with httpx.Client(follow_redirects=True) as client:
                    checksum = download_archive(client, spec.url, tmp_path)
            extract_tarball(tmp_path, dest)
        except Exception:
            shutil.rmtree(dest, ignore_errors=True)
            raise
        finally:
            tmp_path.unlink(missing_ok=True)
        return checksum


__all__ = [
    "SourceCache",
    "SourceFetchError",
    "SourceIntegrityError",
    "SourceSpec",
    "default_source_specs",
    "download_archive",
    "extract_tarball",
    "fetch_git",
    "tree_digest",
]
