"""Architecture/toolchain configuration.

This module handles:
- Android NDK and LLVM toolchain discovery
- Deriving an immutable ToolchainConfig for one architecture
- Preparing the architecture's install prefix and descriptor files
- Rendering isolated process environments from a ToolchainConfig

A ToolchainConfig never touches os.environ. Environments for external
processes are built on demand from a base mapping with every
architecture-scoped variable removed, so nothing configured for one
architecture can reach a process started for another.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from mpv_stt_build.config import Settings, get_settings
from mpv_stt_build.toolchain.architectures import (
    Architecture,
    find_architecture,
    known_architecture_ids,
)
from mpv_stt_build.toolchain.descriptors import (
    CMAKE_TOOLCHAIN_NAME,
    CROSS_FILE_NAME,
    ensure_install_prefix,
    write_descriptors,
)

logger = logging.getLogger(__name__)

MOBILE_LDFLAGS = ("-Wl,-O1,--icf=safe", "-Wl,-z,max-page-size=16384")

# Tools that must be on PATH before any native dependency can be configured
REQUIRED_MOBILE_TOOLS = ("pkg-config",)

# Variables that only ever describe one architecture
SCRUBBED_VARS = frozenset(
    {
        "AR",
        "ANDROID_ABI",
        "ANDROID_API",
        "ANDROID_SYSROOT",
        "BINDGEN_EXTRA_CLANG_ARGS",
        "CARGO_NDK_SYSROOT_PATH",
        "CC",
        "CFLAGS",
        "CMAKE_TOOLCHAIN_FILE",
        "CPATH",
        "CPLUS_INCLUDE_PATH",
        "CPPFLAGS",
        "CXX",
        "CXXFLAGS",
        "C_INCLUDE_PATH",
        "FFMPEG_DIR",
        "LDFLAGS",
        "LIBMPV_LIB_DIR",
        "LIBRARY_PATH",
        "MPV_INCLUDE_DIR",
        "MPV_PREFIX",
        "NM",
        "PKG_CONFIG_ALLOW_CROSS",
        "PKG_CONFIG_LIBDIR",
        "PKG_CONFIG_PATH",
        "PKG_CONFIG_SYSROOT_DIR",
        "RANLIB",
        "RUSTFLAGS",
        "STRIP",
        "TARGET_CC",
    }
)

# Prefixes of per-target variables such as CC_aarch64_linux_android
SCRUBBED_PREFIXES = (
    "CC_",
    "CXX_",
    "CFLAGS_",
    "CXXFLAGS_",
    "AR_",
    "CMAKE_TOOLCHAIN_FILE_",
    "CMAKE_PREFIX_PATH_",
    "CMAKE_SYSTEM_NAME_",
    "CMAKE_SYSTEM_PROCESSOR_",
)


class ToolingPreconditionError(Exception):
    """Raised when a required toolchain component is missing."""

    def __init__(self, message: str, code: str = "tooling_precondition") -> None:
        super().__init__(message)
        self.code = code


def is_architecture_scoped(name: str) -> bool:
    """Return True if an environment variable belongs to one architecture."""
    if name in SCRUBBED_VARS:
        return True
    if name.startswith("CARGO_TARGET_") and name.endswith("_LINKER"):
        return True
    return name.startswith(SCRUBBED_PREFIXES)


def scrubbed_environment(base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy an environment without any architecture-scoped variables.

    Args:
        base: Source environment (defaults to os.environ).

    Returns:
        A new dictionary.
    """
    source = os.environ if base is None else base
    return {k: v for k, v in source.items() if not is_architecture_scoped(k)}


def _join_flags(*parts: str) -> str:
    return " ".join(p for p in parts if p)


@dataclass(frozen=True)
class ToolchainConfig:
    """Fully derived toolchain for one architecture.

    Attributes:
        architecture: Catalog entry being targeted.
        api_level: Android API level (mobile only).
        ndk_root: Android NDK root (mobile only).
        toolchain_root: LLVM prebuilt toolchain root (mobile only).
        prefix: Install prefix for native dependencies (mobile only).
        cc: C compiler.
        cxx: C++ compiler.
        ar: Archiver.
        ranlib: Archive indexer.
        strip: Symbol stripper.
        nm: Symbol lister.
        ldflags: Linker flags for native dependency builds.
        include_dir: Directory holding mpv/client.h (desktop only).
        cross_file: Meson cross file path (mobile only).
        cmake_toolchain_file: CMake toolchain file path (mobile only).
        base_rustflags: Caller's RUSTFLAGS captured at configuration time.
    """

    architecture: Architecture
    api_level: int | None = None
    ndk_root: Path | None = None
    toolchain_root: Path | None = None
    prefix: Path | None = None
    cc: str = "cc"
    cxx: str = "c++"
    ar: str = "ar"
    ranlib: str = "ranlib"
    strip: str = "strip"
    nm: str = "nm"
    ldflags: tuple[str, ...] = ()
    include_dir: Path | None = None
    cross_file: Path | None = None
    cmake_toolchain_file: Path | None = None
    base_rustflags: str = ""

    @property
    def arch_id(self) -> str:
        return self.architecture.abi

    @property
    def rust_target(self) -> str:
        return self.architecture.rust_target

    @property
    def mobile(self) -> bool:
        return self.architecture.mobile

    @property
    def bin_dir(self) -> Path | None:
        return self.toolchain_root / "bin" if self.toolchain_root else None

    @property
    def sysroot(self) -> Path | None:
        return self.toolchain_root / "sysroot" if self.toolchain_root else None

    @property
    def lib_dir(self) -> Path | None:
        return self.prefix / "lib" if self.prefix else None

    @property
    def pkgconfig_dir(self) -> Path | None:
        return self.prefix / "lib" / "pkgconfig" if self.prefix else None

    @property
    def mpv_include_dir(self) -> Path | None:
        """Where mpv headers are found for this architecture."""
        if self.prefix is not None:
            return self.prefix / "include"
        return self.include_dir

    def _with_tool_path(self, env: dict[str, str]) -> dict[str, str]:
        if self.bin_dir is not None:
            path = env.get("PATH", "")
            env["PATH"] = f"{self.bin_dir}{os.pathsep}{path}" if path else str(self.bin_dir)
        return env

    def native_environment(
        self, base: Mapping[str, str] | None = None
    ) -> dict[str, str]:
        """Environment for configure/make and meson/ninja dependency builds.

        Args:
            base: Starting environment (defaults to os.environ).

        Returns:
            A new dictionary.
        """
        env = scrubbed_environment(base)
        env.update(
            {
                "CC": self.cc,
                "CXX": self.cxx,
                "AR": self.ar,
                "RANLIB": self.ranlib,
                "NM": self.nm,
                "STRIP": self.strip,
            }
        )
        if self.ldflags:
            env["LDFLAGS"] = " ".join(self.ldflags)
        if self.prefix is not None and self.pkgconfig_dir is not None:
            env["PKG_CONFIG_SYSROOT_DIR"] = str(self.prefix)
            env["PKG_CONFIG_LIBDIR"] = str(self.pkgconfig_dir)
        return self._with_tool_path(env)

    def cargo_environment(
        self, base: Mapping[str, str] | None = None
    ) -> dict[str, str]:
        """Environment for a cargo invocation targeting this architecture.

        Args:
            base: Starting environment (defaults to os.environ).

        Returns:
            A new dictionary.
        """
        env = scrubbed_environment(base)
        if not self.mobile:
            include = str(self.include_dir) if self.include_dir else ""
            if include:
                env["MPV_INCLUDE_DIR"] = include
                env["BINDGEN_EXTRA_CLANG_ARGS"] = f"-I{include}"
            env["RUSTFLAGS"] = _join_flags(self.base_rustflags, "-A deprecated")
            env.setdefault("CMAKE_INSTALL_LIBDIR", "lib")
            return env

        arch = self.architecture
        target_env = arch.rust_target_env
        prefix = str(self.prefix)
        sysroot = str(self.sysroot)
        linker_var = f"CARGO_TARGET_{target_env.upper()}_LINKER"
        env.update(
            {
                "ANDROID_ABI": arch.abi,
                "ANDROID_API": str(self.api_level),
                "ANDROID_NDK_HOME": str(self.ndk_root),
                "NDK": str(self.ndk_root),
                "ANDROID_SYSROOT": sysroot,
                "CARGO_NDK_SYSROOT_PATH": sysroot,
                "CC": self.cc,
                "CXX": self.cxx,
                "AR": self.ar,
                "RANLIB": self.ranlib,
                "STRIP": self.strip,
                "TARGET_CC": self.cc,
                f"CC_{target_env}": self.cc,
                f"CFLAGS_{target_env}": f"--sysroot={sysroot} -I{prefix}/include",
                linker_var: self.cc,
                "BINDGEN_EXTRA_CLANG_ARGS": (
                    f"--target={arch.clang_target} --sysroot={sysroot} "
                    f"-I{prefix}/include"
                ),
                "CMAKE_TOOLCHAIN_FILE": str(self.cmake_toolchain_file),
                "FFMPEG_DIR": prefix,
                "MPV_PREFIX": prefix,
                "MPV_INCLUDE_DIR": f"{prefix}/include",
                "LIBMPV_LIB_DIR": f"{prefix}/lib",
                "LIBRARY_PATH": f"{prefix}/lib",
                "PKG_CONFIG_PATH": str(self.pkgconfig_dir),
                "PKG_CONFIG_LIBDIR": str(self.pkgconfig_dir),
                "PKG_CONFIG_ALLOW_CROSS": "1",
                f"CMAKE_TOOLCHAIN_FILE_{target_env}": str(self.cmake_toolchain_file),
                f"CMAKE_PREFIX_PATH_{target_env}": prefix,
                f"CMAKE_SYSTEM_NAME_{target_env}": "Android",
                f"CMAKE_SYSTEM_PROCESSOR_{target_env}": arch.cpu,
                "RUSTFLAGS": _join_flags(
                    self.base_rustflags,
                    f"-C link-arg=-Wl,-z,defs -L{prefix}/lib -lmpv",
                ),
            }
        )
        return self._with_tool_path(env)


def host_tag() -> str:
    """Return the NDK prebuilt directory name for the current host."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin":
        return "darwin-arm64" if machine == "arm64" else "darwin-x86_64"
    return f"linux-{machine}"


def find_llvm_toolchain(ndk_root: Path) -> Path:
    """Locate the LLVM prebuilt toolchain inside an NDK.

    Args:
        ndk_root: Android NDK root.

    Returns:
        Path to the prebuilt toolchain root.

    Raises:
        ToolingPreconditionError: If no prebuilt toolchain is present.
    """
    prebuilt = ndk_root / "toolchains" / "llvm" / "prebuilt"
    preferred = prebuilt / host_tag()
    if preferred.is_dir():
        return preferred

    candidates = sorted(p for p in prebuilt.iterdir() if p.is_dir()) if prebuilt.is_dir() else []
    if len(candidates) == 1:
        logger.debug("Using prebuilt toolchain %s", candidates[0])
        return candidates[0]

    raise ToolingPreconditionError(
        f"Toolchain not found: {preferred}",
        code="toolchain_not_found",
    )


def require_tool(name: str) -> str:
    """Return the path of a required executable.

    Raises:
        ToolingPreconditionError: If the tool is not on PATH.
    """
    path = shutil.which(name)
    if path is None:
        raise ToolingPreconditionError(
            f"{name} not provided! Install it and make sure it is on PATH.",
            code="missing_tool",
        )
    return path


def find_mpv_include_dir(checkout: Path) -> Path | None:
    """Find the directory containing mpv/client.h in an mpv checkout."""
    for candidate in (checkout / "include", checkout / "libmpv", checkout):
        if (candidate / "mpv" / "client.h").is_file():
            return candidate
    return None


def resolve_mpv_include_dir(settings: Settings) -> Path:
    """Resolve mpv headers for desktop builds, cloning them if needed.

    Raises:
        ToolingPreconditionError: If mpv/client.h cannot be located.
    """
    if settings.mpv_include_dir is not None:
        return settings.mpv_include_dir

    from mpv_stt_build.deps.sources import SourceFetchError, fetch_git

    checkout = settings.mpv_headers_dir
    if not checkout.is_dir():
        logger.info("Cloning mpv headers (depth=1) into %s", checkout)
        try:
            fetch_git(settings.mpv_repo, checkout, depth=1)
        except SourceFetchError as e:
            raise ToolingPreconditionError(str(e), code="mpv_headers") from e

    include_dir = find_mpv_include_dir(checkout)
    if include_dir is None:
        raise ToolingPreconditionError(
            f"mpv/client.h not found in {checkout}; set MPV_INCLUDE_DIR manually.",
            code="mpv_headers",
        )
    return include_dir


def configure_architecture(
    arch_id: str,
    settings: Settings | None = None,
    environ: Mapping[str, str] | None = None,
) -> ToolchainConfig:
    """Derive the toolchain configuration for one architecture.

    For Android targets this also prepares the install prefix and writes the
    meson/CMake descriptor files into it.

    Args:
        arch_id: Architecture identifier (ABI or short name).
        settings: Application settings.
        environ: Caller environment used for the RUSTFLAGS baseline.

    Returns:
        A fresh ToolchainConfig.

    Raises:
        ToolingPreconditionError: If the architecture is unknown or the
            toolchain is incomplete.
    """
    if settings is None:
        settings = get_settings()
    source_env = os.environ if environ is None else environ

    arch = find_architecture(arch_id)
    if arch is None:
        raise ToolingPreconditionError(
            f"Unknown architecture '{arch_id}' "
            f"(supported: {', '.join(known_architecture_ids())})",
            code="unknown_architecture",
        )

    base_rustflags = source_env.get("RUSTFLAGS", "").strip()

    if not arch.mobile:
        return ToolchainConfig(
            architecture=arch,
            include_dir=resolve_mpv_include_dir(settings),
            base_rustflags=base_rustflags,
        )

    ndk_root = settings.resolved_ndk_home
    if not ndk_root.is_dir():
        raise ToolingPreconditionError(
            f"NDK not found: {ndk_root}. Set ANDROID_NDK_HOME or NDK.",
            code="ndk_not_found",
        )
    toolchain_root = find_llvm_toolchain(ndk_root)
    for tool in REQUIRED_MOBILE_TOOLS:
        require_tool(tool)

    api = settings.android_api
    bin_dir = toolchain_root / "bin"
    prefix = ensure_install_prefix(settings.resolved_prefix_base / arch.name)

    config = ToolchainConfig(
        architecture=arch,
        api_level=api,
        ndk_root=ndk_root,
        toolchain_root=toolchain_root,
        prefix=prefix,
        cc=str(bin_dir / f"{arch.clang_target}{api}-clang"),
        cxx=str(bin_dir / f"{arch.clang_target}{api}-clang++"),
        ar=str(bin_dir / "llvm-ar"),
        ranlib=str(bin_dir / "llvm-ranlib"),
        strip=str(bin_dir / "llvm-strip"),
        nm=str(bin_dir / "llvm-nm"),
        ldflags=MOBILE_LDFLAGS,
        cross_file=prefix / CROSS_FILE_NAME,
        cmake_toolchain_file=prefix / CMAKE_TOOLCHAIN_NAME,
        base_rustflags=base_rustflags,
    )
    write_descriptors(config)
    logger.debug("Configured %s (api %d, prefix %s)", arch.abi, api, prefix)
    return config


__all__ = [
    "MOBILE_LDFLAGS",
    "SCRUBBED_VARS",
    "ToolchainConfig",
    "ToolingPreconditionError",
    "configure_architecture",
    "find_llvm_toolchain",
    "find_mpv_include_dir",
    "host_tag",
    "is_architecture_scoped",
    "require_tool",
    "resolve_mpv_include_dir",
    "scrubbed_environment",
]
