"""Build recipes for native dependencies.

This module handles:
- Declaring how each native dependency is configured and installed
- Composing the ordered command steps for one architecture
- Post-install fix-ups applied to the install prefix

Every recipe installs to /usr/local with DESTDIR pointing at the install
prefix; the prefix aliases usr/ and local/ to itself, so files land in
<prefix>/include, <prefix>/lib and <prefix>/lib/pkgconfig.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from mpv_stt_build.toolchain.configure import ToolchainConfig

logger = logging.getLogger(__name__)

INSTALL_PREFIX = "/usr/local"

# Shared library every mobile plugin links against, relative to the prefix
LIBMPV_LIBRARY = "lib/libmpv.so"

PKG_CONFIG_SUBDIR = "lib/pkgconfig"

BuildSystem = Literal["meson", "autotools", "ffmpeg"]


@dataclass(frozen=True)
class Step:
    """One external command of a recipe.

    Attributes:
        argv: Command and arguments.
        cwd: Working directory.
        env: Variables set on top of the native environment.
        unset: Variables removed from the native environment.
    """

    argv: tuple[str, ...]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)
    unset: tuple[str, ...] = ()


@dataclass(frozen=True)
class Recipe:
    """How to build one native dependency.

    Attributes:
        name: Dependency name.
        build_system: ``meson``, ``autotools`` or ``ffmpeg``.
        options: Extra configure options.
        post_install: Optional fix-up run on the install prefix afterwards.
        outputs: Files the install leaves in the prefix, relative to it. A
            node whose outputs are missing is rebuilt whatever its stamp says.
    """

    name: str
    build_system: BuildSystem
    options: tuple[str, ...] = ()
    post_install: Callable[[Path], None] | None = None
    outputs: tuple[str, ...] = ()

    def fingerprint(self) -> str:
        """Digest of everything that changes what this recipe builds."""
        parts = [self.name, self.build_system, *self.options]
        if self.post_install is not None:
            parts.append(self.post_install.__name__)
        return hashlib.sha256("\0".join(parts).encode()).hexdigest()

    def missing_outputs(self, prefix: Path) -> list[str]:
        return [output for output in self.outputs if not (prefix / output).exists()]


def build_dir_for(source_dir: Path, toolchain: ToolchainConfig) -> Path:
    """Per-architecture out-of-tree build directory inside a source tree."""
    return source_dir / f"_build-{toolchain.architecture.name}"


def _meson_steps(
    recipe: Recipe, toolchain: ToolchainConfig, source_dir: Path, jobs: int
) -> list[Step]:
    build_dir = build_dir_for(source_dir, toolchain)
    setup = ["meson", "setup", str(build_dir), "--cross-file", str(toolchain.cross_file)]
    if (build_dir / "meson-private").is_dir():
        setup.append("--reconfigure")
    setup.extend(recipe.options)

    # The cross file names the compilers; meson rejects conflicting CC/CXX
    unset = ("CC", "CXX")
    return [
        Step(tuple(setup), source_dir, unset=unset),
        Step(("ninja", "-C", str(build_dir), f"-j{jobs}"), source_dir, unset=unset),
        Step(
            ("ninja", "-C", str(build_dir), "install"),
            source_dir,
            env={"DESTDIR": str(toolchain.prefix)},
            unset=unset,
        ),
    ]


def _autotools_steps(
    recipe: Recipe, toolchain: ToolchainConfig, source_dir: Path, jobs: int
) -> list[Step]:
    build_dir = build_dir_for(source_dir, toolchain)
    prefix = toolchain.prefix
    configure = (
        str(source_dir / "configure"),
        f"--host={toolchain.architecture.ndk_triple}",
        f"--prefix={INSTALL_PREFIX}",
        *recipe.options,
    )
    flags = {
        "CPPFLAGS": f"-I{prefix}/include",
        "LDFLAGS": f"-L{prefix}/lib " + " ".join(toolchain.ldflags),
    }
    return [
        Step(configure, build_dir, env=flags),
        Step(("make", f"-j{jobs}"), build_dir),
        Step(("make", "install", f"DESTDIR={prefix}"), build_dir),
    ]


def _ffmpeg_steps(
    recipe: Recipe, toolchain: ToolchainConfig, source_dir: Path, jobs: int
) -> list[Step]:
    build_dir = build_dir_for(source_dir, toolchain)
    arch = toolchain.architecture
    prefix = toolchain.prefix
    configure = [
        str(source_dir / "configure"),
        "--target-os=android",
        "--enable-cross-compile",
        f"--cross-prefix={arch.ndk_triple}-",
        f"--cc={toolchain.cc}",
        f"--cxx={toolchain.cxx}",
        f"--ar={toolchain.ar}",
        f"--ranlib={toolchain.ranlib}",
        f"--nm={toolchain.nm}",
        f"--strip={toolchain.strip}",
        f"--arch={arch.cpu_family}",
        "--pkg-config=pkg-config",
        f"--prefix={INSTALL_PREFIX}",
        f"--extra-cflags=-I{prefix}/include",
        f"--extra-ldflags=-L{prefix}/lib " + " ".join(toolchain.ldflags),
    ]
    if arch.cpu_family == "arm":
        configure.append("--cpu=armv7-a")
    configure.extend(recipe.options)
    return [
        Step(tuple(configure), build_dir),
        Step(("make", f"-j{jobs}"), build_dir),
        Step(("make", "install", f"DESTDIR={prefix}"), build_dir),
    ]


_COMPOSERS = {
    "meson": _meson_steps,
    "autotools": _autotools_steps,
    "ffmpeg": _ffmpeg_steps,
}


def compose_steps(
    recipe: Recipe, toolchain: ToolchainConfig, source_dir: Path, jobs: int = 1
) -> list[Step]:
    """Compose the ordered commands that build and install a dependency.

    Args:
        recipe: Dependency recipe.
        toolchain: Mobile toolchain configuration.
        source_dir: Dependency source tree.
        jobs: Parallel jobs for make/ninja.

    Returns:
        Steps to run in order.

    Raises:
        ValueError: If the toolchain has no install prefix.
    """
    if toolchain.prefix is None or toolchain.cross_file is None:
        raise ValueError(f"{toolchain.arch_id} has no install prefix")
    return _COMPOSERS[recipe.build_system](recipe, toolchain, source_dir, jobs)


def link_libcxx(prefix: Path) -> None:
    """Add C++ stdlib linkage to libplacebo's pkg-config file.

    Static consumers of libplacebo need -lc++; the line is only extended once.
    """
    pc_file = prefix / "lib" / "pkgconfig" / "libplacebo.pc"
    content = pc_file.read_text(encoding="utf-8")
    fixed = re.sub(
        r"^(Libs:.*?)(?<! -lc\+\+)$",
        r"\1 -lc++",
        content,
        flags=re.MULTILINE,
    )
    if fixed != content:
        pc_file.write_text(fixed, encoding="utf-8")
        logger.debug("Added -lc++ to %s", pc_file)


RECIPES: dict[str, Recipe] = {
    recipe.name: recipe
    for recipe in (
        Recipe(
            "ffmpeg",
            "ffmpeg",
            options=(
                "--enable-jni",
                "--enable-mediacodec",
                "--disable-vulkan",
                "--disable-static",
                "--enable-shared",
                "--enable-gpl",
                "--enable-version3",
                "--disable-stripping",
                "--disable-doc",
                "--disable-programs",
                "--disable-devices",
                "--disable-muxers",
                "--disable-encoders",
            ),
            outputs=(
                f"{PKG_CONFIG_SUBDIR}/libavcodec.pc",
                f"{PKG_CONFIG_SUBDIR}/libavformat.pc",
                f"{PKG_CONFIG_SUBDIR}/libavutil.pc",
            ),
        ),
        Recipe(
            "freetype2",
            "meson",
            options=("-Dharfbuzz=disabled", "-Dpng=disabled", "-Dbrotli=disabled"),
            outputs=(f"{PKG_CONFIG_SUBDIR}/freetype2.pc",),
        ),
        Recipe(
            "fribidi",
            "meson",
            options=("-Dtests=false", "-Ddocs=false"),
            outputs=(f"{PKG_CONFIG_SUBDIR}/fribidi.pc",),
        ),
        Recipe(
            "harfbuzz",
            "meson",
            options=(
                "-Dtests=disabled",
                "-Ddocs=disabled",
                "-Dfreetype=disabled",
                "-Dglib=disabled",
                "-Dgobject=disabled",
                "-Dicu=disabled",
                "-Dcairo=disabled",
            ),
            outputs=(f"{PKG_CONFIG_SUBDIR}/harfbuzz.pc",),
        ),
        Recipe(
            "unibreak",
            "autotools",
            options=("--enable-shared", "--disable-static"),
            outputs=(f"{PKG_CONFIG_SUBDIR}/libunibreak.pc",),
        ),
        Recipe(
            "libass",
            "meson",
            options=("-Drequire-system-font-provider=false",),
            outputs=(f"{PKG_CONFIG_SUBDIR}/libass.pc",),
        ),
        Recipe(
            "libplacebo",
            "meson",
            options=("-Dvulkan=disabled", "-Ddemos=false"),
            post_install=link_libcxx,
            outputs=(f"{PKG_CONFIG_SUBDIR}/libplacebo.pc",),
        ),
        Recipe(
            "mpv",
            "meson",
            options=(
                "--default-library=shared",
                "-Dlibmpv=true",
                "-Dcplayer=false",
                "-Diconv=disabled",
                "-Dlua=disabled",
                "-Dmanpage-build=disabled",
            ),
            outputs=(LIBMPV_LIBRARY, f"{PKG_CONFIG_SUBDIR}/mpv.pc"),
        ),
    )
}


__all__ = [
    "INSTALL_PREFIX",
    "LIBMPV_LIBRARY",
    "PKG_CONFIG_SUBDIR",
    "RECIPES",
    "Recipe",
    "Step",
    "build_dir_for",
    "compose_steps",
    "link_libcxx",
]
