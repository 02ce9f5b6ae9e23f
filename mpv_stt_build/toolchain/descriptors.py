"""Install prefix preparation and toolchain descriptor files.

Native build systems read two generated files from each install prefix:
a meson cross file and a CMake toolchain file. Both are rewritten only when
their content changes, since meson and CMake treat a newer mtime as a reason
to reconfigure.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mpv_stt_build.toolchain.configure import ToolchainConfig

logger = logging.getLogger(__name__)

CROSS_FILE_NAME = "crossfile.txt"
CMAKE_TOOLCHAIN_NAME = "cmake_toolchain.cmake"

# Aliases created inside each prefix so /usr/local installs land in the root
PREFIX_ALIASES = ("usr", "local")


def ensure_install_prefix(prefix: Path) -> Path:
    """Create an install prefix that aliases itself as usr/ and local/.

    A no-op for aliases that already exist.

    Args:
        prefix: Prefix root directory.

    Returns:
        The prefix path.
    """
    if not prefix.is_dir():
        logger.info("Creating install prefix %s", prefix)
    prefix.mkdir(parents=True, exist_ok=True)
    for alias in PREFIX_ALIASES:
        link = prefix / alias
        if link.is_symlink() or link.exists():
            continue
        link.symlink_to(".", target_is_directory=True)
    return prefix


def write_if_changed(path: Path, content: str) -> bool:
    """Write a text file unless it already holds exactly this content.

    Args:
        path: Destination file.
        content: Desired file content.

    Returns:
        True if the file was written.
    """
    if path.is_file() and path.read_text(encoding="utf-8") == content:
        logger.debug("Unchanged: %s", path)
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(content, encoding="utf-8")
    tmp_path.replace(path)
    logger.debug("Wrote %s", path)
    return True


def render_cross_file(config: ToolchainConfig) -> str:
    """Render the meson cross file for a mobile toolchain."""
    arch = config.architecture
    return (
        "[built-in options]\n"
        "buildtype = 'release'\n"
        "default_library = 'static'\n"
        "wrap_mode = 'nodownload'\n"
        "prefix = '/usr/local'\n"
        "[binaries]\n"
        f"c = '{config.cc}'\n"
        f"cpp = '{config.cxx}'\n"
        f"ar = '{config.ar}'\n"
        f"nm = '{config.nm}'\n"
        f"strip = '{config.strip}'\n"
        "pkgconfig = 'pkg-config'\n"
        "pkg-config = 'pkg-config'\n"
        "[host_machine]\n"
        "system = 'android'\n"
        f"cpu_family = '{arch.cpu_family}'\n"
        f"cpu = '{arch.cpu}'\n"
        "endian = 'little'\n"
    )


def render_cmake_toolchain(config: ToolchainConfig) -> str:
    """Render the CMake toolchain file for a mobile toolchain."""
    arch = config.architecture
    lines = [
        "set(CMAKE_SYSTEM_NAME Android)",
        f"set(CMAKE_SYSTEM_VERSION {config.api_level})",
        f"set(CMAKE_SYSTEM_PROCESSOR {arch.cpu})",
        f"set(CMAKE_ANDROID_ARCH_ABI {arch.abi})",
        f"set(CMAKE_ANDROID_NDK {config.ndk_root})",
        "set(CMAKE_ANDROID_STL_TYPE c++_shared)",
        f"set(CMAKE_C_COMPILER {config.cc})",
        f"set(CMAKE_CXX_COMPILER {config.cxx})",
        f"set(CMAKE_FIND_ROOT_PATH {config.prefix})",
        "set(CMAKE_FIND_ROOT_PATH_MODE_PACKAGE ONLY)",
        "set(CMAKE_FIND_ROOT_PATH_MODE_LIBRARY ONLY)",
        "set(CMAKE_FIND_ROOT_PATH_MODE_INCLUDE ONLY)",
    ]
    return "\n".join(lines) + "\n"


def write_descriptors(config: ToolchainConfig) -> dict[Path, bool]:
    """Write both descriptor files for a mobile toolchain.

    Args:
        config: Mobile toolchain configuration with descriptor paths set.

    Returns:
        Mapping of descriptor path to whether it was rewritten.
    """
    if config.cross_file is None or config.cmake_toolchain_file is None:
        raise ValueError(f"{config.arch_id} has no descriptor paths")
    return {
        config.cross_file: write_if_changed(
            config.cross_file, render_cross_file(config)
        ),
        config.cmake_toolchain_file: write_if_changed(
            config.cmake_toolchain_file, render_cmake_toolchain(config)
        ),
    }


__all__ = [
    "CMAKE_TOOLCHAIN_NAME",
    "CROSS_FILE_NAME",
    "PREFIX_ALIASES",
    "ensure_install_prefix",
    "render_cmake_toolchain",
    "render_cross_file",
    "write_descriptors",
    "write_if_changed",
]
