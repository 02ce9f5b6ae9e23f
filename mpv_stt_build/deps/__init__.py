"""Native dependency chain for Android libmpv.

This module handles:
- The static dependency graph and build ordering
- Per-dependency build recipes
- The source cache
- Building dependencies into an architecture's install prefix

Submodules are imported directly (mpv_stt_build.deps.graph, etc.).
"""
