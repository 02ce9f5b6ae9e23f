"""Rust target management through rustup."""

from __future__ import annotations

import logging
import subprocess

from mpv_stt_build.toolchain.configure import ToolingPreconditionError

logger = logging.getLogger(__name__)


def installed_targets(timeout: int = 60) -> set[str]:
    """Return the Rust targets installed for the active toolchain.

    Raises:
        ToolingPreconditionError: If rustup is unavailable or fails.
    """
    try:
        result = subprocess.run(
            ["rustup", "target", "list", "--installed"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except OSError as e:
        raise ToolingPreconditionError(
            f"rustup not available: {e}", code="missing_tool"
        ) from e
    except subprocess.CalledProcessError as e:
        raise ToolingPreconditionError(
            f"rustup target list failed: {e.stderr}", code="rustup_error"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise ToolingPreconditionError(
            f"rustup target list timed out after {timeout}s", code="rustup_error"
        ) from e

    return {line.strip() for line in result.stdout.splitlines() if line.strip()}


def ensure_rust_target(target: str, known: set[str] | None = None) -> bool:
    """Install a Rust target if it is missing.

    Args:
        target: Rust target triple.
        known: Optional set of targets already confirmed installed; updated
            in place so repeated calls within one run skip rustup.

    Returns:
        True if the target was added.

    Raises:
        ToolingPreconditionError: If rustup is unavailable or the add fails.
    """
    if known is not None and target in known:
        return False

    installed = installed_targets()
    if target in installed:
        if known is not None:
            known.add(target)
        return False

    logger.info("Installing Rust target: %s", target)
    try:
        subprocess.run(
            ["rustup", "target", "add", target],
            capture_output=True,
            text=True,
            check=True,
        )
    except OSError as e:
        raise ToolingPreconditionError(
            f"rustup not available: {e}", code="missing_tool"
        ) from e
    except subprocess.CalledProcessError as e:
        raise ToolingPreconditionError(
            f"rustup target add {target} failed: {e.stderr}", code="rustup_error"
        ) from e

    if known is not None:
        known.add(target)
    return True


__all__ = ["ensure_rust_target", "installed_targets"]
