"""Architecture catalog.

Each supported target is described once here. Android targets can be looked
up either by ABI name (``arm64-v8a``) or by the short name used for install
prefixes (``arm64``).
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Architecture:
    """Static description of one build target.

    Attributes:
        abi: ABI (mobile) or platform (desktop) identifier.
        name: Short name used for the install prefix directory.
        rust_target: Rust target triple.
        clang_target: Clang target triple without API suffix (mobile only).
        ndk_triple: Binutils triple used by autotools ``--host`` (mobile only).
        mobile: Whether the target is built with the Android NDK.
    """

    abi: str
    name: str
    rust_target: str
    clang_target: str | None = None
    ndk_triple: str | None = None
    mobile: bool = True

    @property
    def cpu_family(self) -> str:
        """Meson CPU family derived from the NDK triple."""
        triple = self.ndk_triple or self.rust_target
        family = triple.split("-", 1)[0]
        return "x86" if family == "i686" else family

    @property
    def cpu(self) -> str:
        """Concrete CPU name, taken from the clang target."""
        return (self.clang_target or self.rust_target).split("-", 1)[0]

    @property
    def rust_target_env(self) -> str:
        """Rust target with dashes replaced, as used in env var names."""
        return self.rust_target.replace("-", "_")


DESKTOP_X64 = Architecture(
    abi="linux-x86_64",
    name="linux-x86_64",
    rust_target="x86_64-unknown-linux-gnu",
    mobile=False,
)

ANDROID_ARCHITECTURES: tuple[Architecture, ...] = (
    Architecture(
        abi="arm64-v8a",
        name="arm64",
        rust_target="aarch64-linux-android",
        clang_target="aarch64-linux-android",
        ndk_triple="aarch64-linux-android",
    ),
    Architecture(
        abi="armeabi-v7a",
        name="armv7l",
        rust_target="armv7-linux-androideabi",
        clang_target="armv7a-linux-androideabi",
        ndk_triple="arm-linux-androideabi",
    ),
    Architecture(
        abi="x86",
        name="x86",
        rust_target="i686-linux-android",
        clang_target="i686-linux-android",
        ndk_triple="i686-linux-android",
    ),
    Architecture(
        abi="x86_64",
        name="x86_64",
        rust_target="x86_64-linux-android",
        clang_target="x86_64-linux-android",
        ndk_triple="x86_64-linux-android",
    ),
)

SUPPORTED_ABIS: tuple[str, ...] = tuple(a.abi for a in ANDROID_ARCHITECTURES)
DEFAULT_ABIS: tuple[str, ...] = ("arm64-v8a", "armeabi-v7a")


def _index() -> dict[str, Architecture]:
    table: dict[str, Architecture] = {DESKTOP_X64.abi: DESKTOP_X64}
    for arch in ANDROID_ARCHITECTURES:
        table[arch.abi] = arch
        table.setdefault(arch.name, arch)
    return table


_ARCHITECTURES = _index()


def find_architecture(arch_id: str) -> Architecture | None:
    """Look up an architecture by ABI or short name.

    Args:
        arch_id: Identifier such as ``arm64-v8a``, ``armv7l`` or ``linux-x86_64``.

    Returns:
        The Architecture, or None if unknown.
    """
    return _ARCHITECTURES.get(arch_id)


def known_architecture_ids() -> list[str]:
    """Return every identifier accepted by find_architecture."""
    return sorted(_ARCHITECTURES)


__all__ = [
    "ANDROID_ARCHITECTURES",
    "Architecture",
    "DEFAULT_ABIS",
    "DESKTOP_X64",
    "SUPPORTED_ABIS",
    "find_architecture",
    "known_architecture_ids",
]
