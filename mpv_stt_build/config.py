"""Configuration settings for mpv_stt_build.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Besides the MPV_STT_BUILD_ prefixed names, the conventional variables used
by Android toolchains (ANDROID_NDK_HOME, NDK, ANDROID_API, ...) are accepted
as aliases.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "MPV_STT_BUILD_"

# Default NDK release pinned by the Android dependency chain
NDK_VERSION = "r29"

DEFAULT_MPV_REPO = "https://github.com/mpv-player/mpv.git"
DEFAULT_FFMPEG_REPO = "https://github.com/FFmpeg/FFmpeg"


def _aliases(name: str, *extra: str) -> AliasChoices:
    """Accept the prefixed variable name plus conventional aliases."""
    return AliasChoices(f"{ENV_PREFIX}{name.upper()}", *extra)


def _default_jobs() -> int:
    """Return the default number of parallel native build jobs."""
    return os.cpu_count() or 4


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the MPV_STT_BUILD_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Paths
    workspace_root: Path = Field(
        default_factory=Path.cwd,
        description="Root of the cargo workspace being built",
    )
    dist_dir: Path | None = Field(
        default=None,
        description="Output tree for packaged artifacts (default: <workspace>/dist)",
    )
    work_dir: Path | None = Field(
        default=None,
        validation_alias=_aliases(
            "work_dir", "ANDROID_WORK_DIR", "ANDROID_MPV_WORK_DIR"
        ),
        description="Native build work directory (default: <workspace>/target/android-mpv)",
    )
    deps_dir: Path | None = Field(
        default=None,
        validation_alias=_aliases("deps_dir", "ANDROID_MPV_DEPS_DIR"),
        description="Source cache for native dependencies (default: <work_dir>/deps)",
    )
    prefix_base: Path | None = Field(
        default=None,
        validation_alias=_aliases(
            "prefix_base", "ANDROID_PREFIX_BASE", "ANDROID_MPV_PREFIX_BASE"
        ),
        description="Root of the per-architecture install prefixes (default: <work_dir>/prefix)",
    )
    mpv_include_dir: Path | None = Field(
        default=None,
        validation_alias=_aliases("mpv_include_dir", "MPV_INCLUDE_DIR"),
        description="Directory containing mpv/client.h for desktop builds",
    )

    # Android toolchain
    ndk_home: Path | None = Field(
        default=None,
        validation_alias=_aliases(
            "ndk_home", "ANDROID_NDK_HOME", "NDK", "CMAKE_ANDROID_NDK"
        ),
        description="Android NDK root (default: <workspace>/target/android-ndk-r29)",
    )
    android_api: int = Field(
        default=21,
        ge=16,
        validation_alias=_aliases("android_api", "ANDROID_API", "API"),
        description="Android API level used for compiler selection",
    )

    # Sources
    mpv_repo: str = Field(
        default=DEFAULT_MPV_REPO,
        validation_alias=_aliases("mpv_repo", "MPV_REPO"),
        description="Git URL of the mpv source repository",
    )
    ffmpeg_repo: str = Field(
        default=DEFAULT_FFMPEG_REPO,
        validation_alias=_aliases("ffmpeg_repo", "FFMPEG_REPO"),
        description="Git URL of the FFmpeg source repository",
    )
    verify_sources: bool = Field(
        default=False,
        description="Re-validate cached source trees against their first-fetch digest",
    )

    # Native builds
    jobs: int = Field(
        default_factory=_default_jobs,
        ge=1,
        description="Parallel jobs passed to make/ninja",
    )
    rebuild_policy: Literal["always", "missing", "stamp"] = Field(
        default="stamp",
        description="When to rebuild a native dependency",
    )

    # Operational
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    build_timeout: int | None = Field(
        default=None,
        ge=60,
        description="Timeout for a single external build process (unset = no timeout)",
    )

    @property
    def resolved_dist_dir(self) -> Path:
        """Directory receiving packaged artifacts."""
        return self.dist_dir or self.workspace_root / "dist"

    @property
    def build_log_path(self) -> Path:
        """Shared append-only log for a matrix run."""
        return self.resolved_dist_dir / "build.log"

    @property
    def target_dir(self) -> Path:
        """Cargo target directory of the workspace."""
        return self.workspace_root / "target"

    @property
    def resolved_work_dir(self) -> Path:
        """Work directory for native dependency builds."""
        return self.work_dir or self.target_dir / "android-mpv"

    @property
    def resolved_deps_dir(self) -> Path:
        """Source cache for native dependencies."""
        return self.deps_dir or self.resolved_work_dir / "deps"

    @property
    def resolved_prefix_base(self) -> Path:
        """Root of the per-architecture install prefixes."""
        return self.prefix_base or self.resolved_work_dir / "prefix"

    @property
    def resolved_ndk_home(self) -> Path:
        """Android NDK root, explicit or the in-workspace default."""
        return self.ndk_home or self.target_dir / f"android-ndk-{NDK_VERSION}"

    @property
    def mpv_headers_dir(self) -> Path:
        """Checkout of the mpv repository used for desktop headers."""
        return self.target_dir / "mpv-headers"


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_FFMPEG_REPO",
    "DEFAULT_MPV_REPO",
    "NDK_VERSION",
    "Settings",
    "get_settings",
    "print_settings_json",
]
