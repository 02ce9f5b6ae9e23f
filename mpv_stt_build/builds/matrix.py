"""Build matrix selection and expansion.

This module handles:
- The catalog of platforms, artifact kinds, features and ABIs
- Normalizing and validating a user selection
- Expanding a selection into build jobs, with policy warnings
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from mpv_stt_build.builds.models import BuildJob
from mpv_stt_build.toolchain.architectures import (
    DEFAULT_ABIS,
    SUPPORTED_ABIS,
    find_architecture,
)
from mpv_stt_build.types import ArtifactKind, BuildMode

logger = logging.getLogger(__name__)

PRIMARY_PLATFORM = "linux-x86_64"
MOBILE_PLATFORM = "android"

# Desktop platform -> Rust target triple
DESKTOP_PLATFORMS: dict[str, str] = {
    "linux-x86_64": "x86_64-unknown-linux-gnu",
}

KIND_CRATES: dict[ArtifactKind, str] = {
    ArtifactKind.PLUGIN: "mpv-stt-plugin",
    ArtifactKind.SERVER: "mpv-stt-server",
}

KIND_FEATURES: dict[ArtifactKind, tuple[str, ...]] = {
    ArtifactKind.PLUGIN: ("stt_local_cpu", "stt_local_cuda", "stt_remote_http"),
    ArtifactKind.SERVER: ("stt_local_cpu", "stt_local_cuda"),
}

# Features that cannot be built for Android
MOBILE_UNSUPPORTED_FEATURES = frozenset({"stt_local_cuda"})

# Only these kinds are built for Android
MOBILE_KINDS = (ArtifactKind.PLUGIN,)

FEATURE_ALIASES = {
    "cpu": "stt_local_cpu",
    "cuda": "stt_local_cuda",
    "remote": "stt_remote_http",
}

KIND_ALIASES = {crate: kind.value for kind, crate in KIND_CRATES.items()}


def all_features() -> list[str]:
    """Every feature known to any kind, in declaration order."""
    return dedup(f for features in KIND_FEATURES.values() for f in features)


def supported_platforms() -> list[str]:
    return [*DESKTOP_PLATFORMS, MOBILE_PLATFORM]


class SelectionValidationError(Exception):
    """Raised when a selection names unknown values."""

    def __init__(
        self, invalid: dict[str, list[str]], code: str = "invalid_selection"
    ) -> None:
        details = "; ".join(
            f"unknown {category} {', '.join(repr(v) for v in values)}"
            for category, values in invalid.items()
        )
        super().__init__(f"Invalid selection: {details}")
        self.invalid = invalid
        self.code = code


def dedup(values: Iterable[str]) -> list[str]:
    """Remove duplicates, keeping the first occurrence."""
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def split_values(values: Iterable[str] | None) -> list[str]:
    """Flatten comma-separated option values.

    Args:
        values: Option values, each possibly holding a comma-separated list.

    Returns:
        Stripped, non-empty values, deduplicated in first-seen order.
    """
    if not values:
        return []
    return dedup(part.strip() for value in values for part in value.split(","))


@dataclass
class BuildSelection:
    """What the user asked to build.

    Empty lists select the defaults: every platform, both kinds, every
    feature allowed for a kind, and the default ABIs.
    """

    platforms: list[str] = field(default_factory=list)
    kinds: list[str] = field(default_factory=list)
    features: list[str] = field(default_factory=list)
    abis: list[str] = field(default_factory=list)
    mode: BuildMode = BuildMode.BUILD
    clean: bool = False


@dataclass(frozen=True)
class ResolvedSelection:
    """A validated selection with defaults applied.

    ``features`` is empty when every allowed feature of each kind is wanted.
    """

    platforms: tuple[str, ...]
    kinds: tuple[ArtifactKind, ...]
    features: tuple[str, ...]
    abis: tuple[str, ...]
    mode: BuildMode = BuildMode.BUILD
    clean: bool = False


def validate_selection(selection: BuildSelection) -> ResolvedSelection:
    """Validate a selection and apply defaults.

    Every unknown value is collected before failing, so the error reports
    all of them at once.

    Args:
        selection: User selection.

    Returns:
        ResolvedSelection.

    Raises:
        SelectionValidationError: If any value is unknown.
    """
    invalid: dict[str, list[str]] = {}

    platforms = dedup(selection.platforms)
    bad = [p for p in platforms if p not in DESKTOP_PLATFORMS and p != MOBILE_PLATFORM]
    if bad:
        invalid["platform"] = bad

    kinds = dedup(KIND_ALIASES.get(k, k) for k in selection.kinds)
    valid_kinds = {k.value for k in ArtifactKind}
    bad = [k for k in kinds if k not in valid_kinds]
    if bad:
        invalid["kind"] = bad

    features = dedup(FEATURE_ALIASES.get(f, f) for f in selection.features)
    known_features = set(all_features())
    bad = [f for f in features if f not in known_features]
    if bad:
        invalid["feature"] = bad

    abis: list[str] = []
    bad = []
    for abi_id in dedup(selection.abis):
        arch = find_architecture(abi_id)
        if arch is None or not arch.mobile:
            bad.append(abi_id)
        else:
            abis.append(arch.abi)
    if bad:
        invalid["abi"] = bad

    if invalid:
        raise SelectionValidationError(invalid)

    return ResolvedSelection(
        platforms=tuple(platforms or supported_platforms()),
        kinds=tuple(ArtifactKind(k) for k in kinds) or tuple(ArtifactKind),
        features=tuple(features),
        abis=tuple(dedup(abis) or DEFAULT_ABIS),
        mode=selection.mode,
        clean=selection.clean,
    )


def features_for(kind: ArtifactKind, requested: Iterable[str]) -> list[str]:
    """Return the requested features that the kind allows.

    An empty request selects every allowed feature.
    """
    allowed = KIND_FEATURES[kind]
    requested = list(requested)
    if not requested:
        return list(allowed)
    return dedup(f for f in requested if f in allowed)


def expand_jobs(selection: ResolvedSelection) -> tuple[list[BuildJob], list[str]]:
    """Expand a resolved selection into build jobs.

    Desktop jobs come first (platform, kind, feature), then Android jobs
    (ABI, feature). Combinations the matrix does not support are dropped
    with a warning instead of failing the run.

    Args:
        selection: Validated selection.

    Returns:
        Tuple of (jobs, warnings).
    """
    jobs: list[BuildJob] = []
    warnings: list[str] = []

    for platform in selection.platforms:
        if platform == MOBILE_PLATFORM:
            continue
        for kind in selection.kinds:
            if kind is ArtifactKind.SERVER and platform != PRIMARY_PLATFORM:
                warnings.append(f"Skipping {KIND_CRATES[kind]} on {platform} (not supported)")
                continue
            features = features_for(kind, selection.features)
            if not features:
                warnings.append(
                    f"No valid features selected for {KIND_CRATES[kind]}; skipping"
                )
                continue
            jobs.extend(
                BuildJob(
                    platform=platform,
                    kind=kind,
                    feature=feature,
                    crate=KIND_CRATES[kind],
                    rust_target=DESKTOP_PLATFORMS[platform],
                )
                for feature in features
            )

    if MOBILE_PLATFORM in selection.platforms:
        for kind in selection.kinds:
            if kind not in MOBILE_KINDS:
                warnings.append(
                    f"Skipping {KIND_CRATES[kind]} on {MOBILE_PLATFORM} (not supported)"
                )
        mobile_kinds = [k for k in selection.kinds if k in MOBILE_KINDS]
        for kind in mobile_kinds:
            features = features_for(kind, selection.features)
            if not features:
                warnings.append(
                    f"No valid features selected for Android {kind.value}; skipping"
                )
                continue
            for abi in selection.abis:
                arch = find_architecture(abi)
                if arch is None:
                    continue
                for feature in features:
                    if feature in MOBILE_UNSUPPORTED_FEATURES:
                        warnings.append(
                            f"Skipping feature {feature} for Android {abi} (unsupported)"
                        )
                        continue
                    jobs.append(
                        BuildJob(
                            platform=MOBILE_PLATFORM,
                            kind=kind,
                            feature=feature,
                            crate=KIND_CRATES[kind],
                            rust_target=arch.rust_target,
                            abi=arch.abi,
                        )
                    )

    for warning in warnings:
        logger.warning(warning)
    return jobs, warnings


def describe_supported() -> dict[str, list[str]]:
    """Supported values for each selection dimension."""
    return {
        "platforms": supported_platforms(),
        "kinds": [k.value for k in ArtifactKind],
        "crates": list(KIND_CRATES.values()),
        "plugin_features": list(KIND_FEATURES[ArtifactKind.PLUGIN]),
        "server_features": list(KIND_FEATURES[ArtifactKind.SERVER]),
        "abis": list(SUPPORTED_ABIS),
        "default_abis": list(DEFAULT_ABIS),
    }


__all__ = [
    "DESKTOP_PLATFORMS",
    "FEATURE_ALIASES",
    "KIND_CRATES",
    "KIND_FEATURES",
    "MOBILE_PLATFORM",
    "PRIMARY_PLATFORM",
    "BuildSelection",
    "ResolvedSelection",
    "SelectionValidationError",
    "all_features",
    "dedup",
    "describe_supported",
    "expand_jobs",
    "features_for",
    "split_values",
    "supported_platforms",
    "validate_selection",
]
