"""Shared fixtures for mpv_stt_build tests."""

import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import patch

import pytest

from mpv_stt_build.config import Settings
from mpv_stt_build.log import PACKAGE_LOGGER
from mpv_stt_build.toolchain.architectures import find_architecture
from mpv_stt_build.toolchain.configure import MOBILE_LDFLAGS, ToolchainConfig, host_tag
from mpv_stt_build.toolchain.descriptors import (
    CMAKE_TOOLCHAIN_NAME,
    CROSS_FILE_NAME,
    ensure_install_prefix,
)

# Variables Settings reads besides the MPV_STT_BUILD_ prefixed ones
ALIAS_VARS = (
    "ANDROID_WORK_DIR",
    "ANDROID_MPV_WORK_DIR",
    "ANDROID_MPV_DEPS_DIR",
    "ANDROID_PREFIX_BASE",
    "ANDROID_MPV_PREFIX_BASE",
    "MPV_INCLUDE_DIR",
    "ANDROID_NDK_HOME",
    "NDK",
    "CMAKE_ANDROID_NDK",
    "ANDROID_API",
    "API",
    "MPV_REPO",
    "FFMPEG_REPO",
)


@pytest.fixture(autouse=True)
def isolated_environment(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> Iterator[None]:
    """Keep the caller's environment and .env files out of Settings."""
    import os

    for name in list(os.environ):
        if name.startswith("MPV_STT_BUILD_") or name in ALIAS_VARS:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)

    yield

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Empty cargo workspace directory."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def mpv_include(tmp_path: Path) -> Path:
    """Directory holding mpv/client.h."""
    include = tmp_path / "mpv-include"
    (include / "mpv").mkdir(parents=True)
    (include / "mpv" / "client.h").write_text("/* client.h */\n")
    return include


@pytest.fixture
def fake_ndk(tmp_path: Path) -> Path:
    """NDK tree with an LLVM prebuilt directory for the current host."""
    ndk = tmp_path / "android-ndk"
    (ndk / "toolchains" / "llvm" / "prebuilt" / host_tag() / "bin").mkdir(parents=True)
    return ndk


@pytest.fixture
def settings(workspace: Path, mpv_include: Path, fake_ndk: Path) -> Settings:
    """Settings rooted in a temporary workspace."""
    return Settings(
        workspace_root=workspace,
        mpv_include_dir=mpv_include,
        ndk_home=fake_ndk,
        jobs=2,
    )


@pytest.fixture
def pkg_config() -> Iterator[None]:
    """Pretend pkg-config is on PATH."""
    with patch(
        "mpv_stt_build.toolchain.configure.shutil.which",
        return_value="/usr/bin/pkg-config",
    ):
        yield


@pytest.fixture
def make_mobile_toolchain(tmp_path: Path) -> Callable[..., ToolchainConfig]:
    """Factory for mobile ToolchainConfig values without touching an NDK."""

    def factory(abi: str = "arm64-v8a", api_level: int = 21) -> ToolchainConfig:
        arch = find_architecture(abi)
        assert arch is not None
        ndk = tmp_path / "ndk"
        root = ndk / "toolchains" / "llvm" / "prebuilt" / "linux-x86_64"
        bin_dir = root / "bin"
        prefix = ensure_install_prefix(tmp_path / "prefix" / arch.name)
        return ToolchainConfig(
            architecture=arch,
            api_level=api_level,
            ndk_root=ndk,
            toolchain_root=root,
            prefix=prefix,
            cc=str(bin_dir / f"{arch.clang_target}{api_level}-clang"),
            cxx=str(bin_dir / f"{arch.clang_target}{api_level}-clang++"),
            ar=str(bin_dir / "llvm-ar"),
            ranlib=str(bin_dir / "llvm-ranlib"),
            strip=str(bin_dir / "llvm-strip"),
            nm=str(bin_dir / "llvm-nm"),
            ldflags=MOBILE_LDFLAGS,
            cross_file=prefix / CROSS_FILE_NAME,
            cmake_toolchain_file=prefix / CMAKE_TOOLCHAIN_NAME,
        )

    return factory
