"""Architecture and toolchain configuration.

This module handles:
- The catalog of desktop and Android architectures
- Immutable per-architecture toolchain configuration
- Install prefix and descriptor file preparation
- Rust target installation
"""

from mpv_stt_build.toolchain.architectures import Architecture, find_architecture
from mpv_stt_build.toolchain.configure import (
    ToolchainConfig,
    ToolingPreconditionError,
    configure_architecture,
)

__all__ = [
    "Architecture",
    "ToolchainConfig",
    "ToolingPreconditionError",
    "configure_architecture",
    "find_architecture",
]
