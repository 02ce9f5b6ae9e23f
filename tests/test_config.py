"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from mpv_stt_build.config import (
    DEFAULT_MPV_REPO,
    NDK_VERSION,
    Settings,
    get_settings,
    print_settings_json,
)


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self, tmp_path: Path) -> None:
        """Settings should default to the current directory as workspace."""
        settings = Settings()

        assert settings.workspace_root == tmp_path
        assert settings.android_api == 21
        assert settings.rebuild_policy == "stamp"
        assert settings.verify_sources is False
        assert settings.build_timeout is None
        assert settings.mpv_repo == DEFAULT_MPV_REPO
        assert settings.jobs >= 1

    def test_derived_paths(self, tmp_path: Path) -> None:
        """Unset directories should derive from the workspace."""
        settings = Settings(workspace_root=tmp_path)

        assert settings.resolved_dist_dir == tmp_path / "dist"
        assert settings.build_log_path == tmp_path / "dist" / "build.log"
        assert settings.resolved_work_dir == tmp_path / "target" / "android-mpv"
        assert settings.resolved_deps_dir == tmp_path / "target" / "android-mpv" / "deps"
        assert (
            settings.resolved_prefix_base
            == tmp_path / "target" / "android-mpv" / "prefix"
        )
        assert (
            settings.resolved_ndk_home
            == tmp_path / "target" / f"android-ndk-{NDK_VERSION}"
        )
        assert settings.mpv_headers_dir == tmp_path / "target" / "mpv-headers"

    def test_work_dir_override_moves_children(self, tmp_path: Path) -> None:
        """Deps and prefixes should follow an overridden work directory."""
        settings = Settings(workspace_root=tmp_path, work_dir=tmp_path / "work")

        assert settings.resolved_deps_dir == tmp_path / "work" / "deps"
        assert settings.resolved_prefix_base == tmp_path / "work" / "prefix"

    def test_settings_from_env(self, tmp_path: Path) -> None:
        """Settings should be loadable from prefixed environment variables."""
        with patch.dict(
            os.environ,
            {
                "MPV_STT_BUILD_WORKSPACE_ROOT": str(tmp_path / "ws"),
                "MPV_STT_BUILD_ANDROID_API": "24",
                "MPV_STT_BUILD_REBUILD_POLICY": "always",
                "MPV_STT_BUILD_LOG_LEVEL": "DEBUG",
            },
        ):
            settings = Settings()

        assert settings.workspace_root == tmp_path / "ws"
        assert settings.android_api == 24
        assert settings.rebuild_policy == "always"
        assert settings.log_level == "DEBUG"

    def test_conventional_aliases(self, tmp_path: Path) -> None:
        """Conventional toolchain variables should be accepted."""
        with patch.dict(
            os.environ,
            {
                "ANDROID_NDK_HOME": str(tmp_path / "ndk"),
                "API": "26",
                "ANDROID_MPV_PREFIX_BASE": str(tmp_path / "prefixes"),
                "ANDROID_MPV_DEPS_DIR": str(tmp_path / "sources"),
                "MPV_REPO": "https://example.com/mpv.git",
                "FFMPEG_REPO": "https://example.com/ffmpeg.git",
                "MPV_INCLUDE_DIR": str(tmp_path / "include"),
            },
        ):
            settings = Settings()

        assert settings.ndk_home == tmp_path / "ndk"
        assert settings.android_api == 26
        assert settings.resolved_prefix_base == tmp_path / "prefixes"
        assert settings.resolved_deps_dir == tmp_path / "sources"
        assert settings.mpv_repo == "https://example.com/mpv.git"
        assert settings.ffmpeg_repo == "https://example.com/ffmpeg.git"
        assert settings.mpv_include_dir == tmp_path / "include"

    def test_ndk_alias_fallbacks(self, tmp_path: Path) -> None:
        """NDK should be read from NDK when ANDROID_NDK_HOME is unset."""
        with patch.dict(os.environ, {"NDK": str(tmp_path / "r29")}):
            settings = Settings()

        assert settings.resolved_ndk_home == tmp_path / "r29"

    def test_api_level_lower_bound(self) -> None:
        """API levels below 16 should be rejected."""
        with pytest.raises(ValidationError):
            Settings(android_api=9)

    def test_invalid_policy_rejected(self) -> None:
        """Unknown rebuild policies should be rejected."""
        with pytest.raises(ValidationError):
            Settings(rebuild_policy="sometimes")

    def test_build_timeout_minimum(self) -> None:
        """A build timeout below one minute should be rejected."""
        with pytest.raises(ValidationError):
            Settings(build_timeout=5)


class TestGetSettings:
    """Test get_settings function."""

    def test_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_returns_valid_json(self, tmp_path: Path) -> None:
        """print_settings_json should return valid JSON."""
        output = print_settings_json(Settings(workspace_root=tmp_path))
        data = json.loads(output)

        assert data["workspace_root"] == str(tmp_path)
        assert data["android_api"] == 21
        assert "rebuild_policy" in data
