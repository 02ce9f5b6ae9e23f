"""Thin CLI wrapper for mpv_stt_build.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape

from mpv_stt_build import __version__
from mpv_stt_build.config import get_settings, print_settings_json
from mpv_stt_build.log import configure_logging

app = typer.Typer(
    name="mpv-stt-build",
    help="mpv STT build orchestrator - native libmpv chain and plugin/server matrix",
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"mpv-stt-build version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (default: from settings)"),
    ] = None,
) -> None:
    """mpv STT build orchestrator - native libmpv chain and plugin/server matrix."""
    configure_logging((log_level or get_settings().log_level).upper())


def _print_supported() -> None:
    from mpv_stt_build.builds.matrix import describe_supported

    supported = describe_supported()
    console.print(f"Supported platforms : {' '.join(supported['platforms'])}")
    console.print(f"Supported kinds     : {' '.join(supported['kinds'])}")
    console.print(f"Supported crates    : {' '.join(supported['crates'])}")
    console.print(f"Plugin features     : {' '.join(supported['plugin_features'])}")
    console.print(f"Server features     : {' '.join(supported['server_features'])}")
    console.print(f"Android ABIs        : {' '.join(supported['abis'])}")
    console.print(f"Default ABIs        : {' '.join(supported['default_abis'])}")


@app.command("list")
def list_supported(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show supported platforms, kinds, features and ABIs."""
    from mpv_stt_build.builds.matrix import describe_supported

    if json_output:
        console.print_json(json.dumps(describe_supported()))
    else:
        _print_supported()


@app.command()
def run(
    platforms: Annotated[
        list[str] | None,
        typer.Option(
            "--platform", "-p", help="Platforms, comma-separated (linux-x86_64, android)"
        ),
    ] = None,
    kinds: Annotated[
        list[str] | None,
        typer.Option(
            "--crate",
            "--kind",
            "-c",
            help="Artifact kinds or crates, comma-separated (plugin, server)",
        ),
    ] = None,
    features: Annotated[
        list[str] | None,
        typer.Option("--feature", "-f", help="Features to build, comma-separated"),
    ] = None,
    abis: Annotated[
        list[str] | None,
        typer.Option("--abi", "-a", help="Android ABIs, comma-separated"),
    ] = None,
    check: Annotated[
        bool,
        typer.Option("--check", help="Run cargo check instead of building artifacts"),
    ] = False,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Remove dist/ before building"),
    ] = False,
    show_list: Annotated[
        bool,
        typer.Option("--list", "-l", help="Show supported values and exit"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the plugin/server matrix.

    Defaults to the full matrix: every platform, both kinds, every feature
    allowed for a kind and the default Android ABIs. Jobs run one at a time;
    a failed job does not stop the others.
    """
    from mpv_stt_build.builds.matrix import (
        BuildSelection,
        SelectionValidationError,
        split_values,
    )
    from mpv_stt_build.builds.service import run_matrix
    from mpv_stt_build.types import BuildMode, JobStatus

    if show_list:
        _print_supported()
        return

    selection = BuildSelection(
        platforms=split_values(platforms),
        kinds=split_values(kinds),
        features=split_values(features),
        abis=split_values(abis),
        mode=BuildMode.CHECK if check else BuildMode.BUILD,
        clean=clean,
    )

    settings = get_settings()
    try:
        result = run_matrix(selection, settings)
    except SelectionValidationError as e:
        if json_output:
            output = {"success": False, "code": e.code, "invalid": e.invalid}
            console.print_json(json.dumps(output))
        else:
            for category, values in e.invalid.items():
                for value in values:
                    console.print(f"[red]ERROR: Unknown {category} '{escape(value)}'[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print_json(result.model_dump_json())
    else:
        console.print()
        console.print("[bold]Build Matrix Results:[/bold]")
        for r in result.jobs:
            where = f"{r.platform}/{r.abi}" if r.abi else r.platform
            label = escape(f"{where} {r.kind.value} [{r.feature}]")
            if r.status is JobStatus.SUCCEEDED:
                console.print(f"  [green]✓ {label}[/green]")
                if r.artifact_path:
                    console.print(f"      {r.artifact_path}")
            else:
                console.print(f"  [red]✗ {label}[/red]")
                if r.error:
                    console.print(f"      Error: {escape(r.error)}")
        for warning in result.warnings:
            console.print(f"  [yellow]! {escape(warning)}[/yellow]")

        console.print()
        console.print(
            f"Total: {result.total} | Success: {result.succeeded} | "
            f"Failed: {result.failed} | Skipped: {result.skipped}"
        )
        if result.manifest_path:
            console.print(f"Manifest: {result.manifest_path}")
        console.print(f"Log: {result.log_path}")

    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def manifest(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Regenerate the manifest from the current dist/ tree."""
    from mpv_stt_build.builds.artifacts import manifest_data, write_manifest

    settings = get_settings()
    dist_dir = settings.resolved_dist_dir
    if not dist_dir.is_dir():
        console.print(f"[red]No dist directory at {dist_dir}[/red]")
        raise typer.Exit(code=1)

    text_path = write_manifest(dist_dir, workspace_root=settings.workspace_root)
    if json_output:
        console.print_json(json.dumps(manifest_data(dist_dir)))
    else:
        console.print(escape(text_path.read_text(encoding="utf-8")), end="")


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
    else:
        include_display = (
            str(settings.mpv_include_dir)
            if settings.mpv_include_dir
            else f"(cloned into {settings.mpv_headers_dir})"
        )
        timeout_display = (
            str(settings.build_timeout) if settings.build_timeout else "(none)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Workspace:           {settings.workspace_root}")
        console.print(f"  Dist directory:      {settings.resolved_dist_dir}")
        console.print(f"  Work directory:      {settings.resolved_work_dir}")
        console.print(f"  Source cache:        {settings.resolved_deps_dir}")
        console.print(f"  Prefix base:         {settings.resolved_prefix_base}")
        console.print(f"  mpv headers:         {include_display}")
        console.print()
        console.print("[bold]Android:[/bold]")
        console.print(f"  NDK:                 {settings.resolved_ndk_home}")
        console.print(f"  API level:           {settings.android_api}")
        console.print()
        console.print("[bold]Sources:[/bold]")
        console.print(f"  mpv repository:      {settings.mpv_repo}")
        console.print(f"  FFmpeg repository:   {settings.ffmpeg_repo}")
        console.print(f"  Verify sources:      {settings.verify_sources}")
        console.print()
        console.print("[bold]Native builds:[/bold]")
        console.print(f"  Parallel jobs:       {settings.jobs}")
        console.print(f"  Rebuild policy:      {settings.rebuild_policy}")
        console.print(f"  Build timeout:       {timeout_display}")
        console.print(f"  Log level:           {settings.log_level}")


deps_app = typer.Typer(help="Build and fetch native Android dependencies")
app.add_typer(deps_app, name="deps")


@deps_app.command("build")
def deps_build(
    target: Annotated[
        str,
        typer.Argument(help="Dependency to build (default: mpv)"),
    ] = "mpv",
    arch: Annotated[
        str,
        typer.Option(
            "--arch",
            help="Architecture: armv7l, arm64, x86, x86_64 or an ABI name",
        ),
    ] = "armv7l",
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Clean build dirs before compiling"),
    ] = False,
    no_deps: Annotated[
        bool,
        typer.Option("--no-deps", "-n", help="Do not build dependencies"),
    ] = False,
    policy: Annotated[
        str | None,
        typer.Option("--policy", help="Rebuild policy: always, missing or stamp"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a native dependency and its prerequisites for one architecture."""
    from dataclasses import asdict

    from mpv_stt_build.builds.service import JOB_ERRORS
    from mpv_stt_build.deps.builder import DependencyBuilder
    from mpv_stt_build.log import build_log_handler
    from mpv_stt_build.toolchain.architectures import find_architecture
    from mpv_stt_build.toolchain.configure import configure_architecture
    from mpv_stt_build.types import RebuildPolicy

    rebuild_policy: RebuildPolicy | None = None
    if policy is not None:
        try:
            rebuild_policy = RebuildPolicy(policy)
        except ValueError:
            console.print(f"[red]Invalid policy: {escape(policy)}[/red]")
            console.print("Valid values: always, missing, stamp")
            raise typer.Exit(code=1) from None

    found = find_architecture(arch)
    if found is not None and not found.mobile:
        console.print(
            f"[red]{escape(arch)} is a desktop platform; "
            "native dependencies are built for Android architectures only[/red]"
        )
        raise typer.Exit(code=1)

    settings = get_settings()
    try:
        toolchain = configure_architecture(arch, settings)
        builder = DependencyBuilder(toolchain, settings, policy=rebuild_policy, clean=clean)
        with build_log_handler(builder.log_path):
            results = builder.build(target, skip_dependencies=no_deps)
    except JOB_ERRORS as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        output = {
            "arch": toolchain.arch_id,
            "prefix": str(toolchain.prefix),
            "log_path": str(builder.log_path),
            "nodes": [asdict(r) for r in results],
        }
        console.print_json(json.dumps(output))
    else:
        for r in results:
            if r.built:
                console.print(
                    f"  [green]✓ {r.name}[/green] built ({r.duration_seconds:.1f}s)"
                )
            else:
                console.print(f"  [blue]- {r.name}[/blue] skipped ({r.reason})")
        console.print(f"Prefix: {toolchain.prefix}")
        console.print(f"Log: {builder.log_path}")


@deps_app.command("fetch")
def deps_fetch(
    names: Annotated[
        list[str] | None,
        typer.Argument(help="Dependencies to fetch (default: all)"),
    ] = None,
    verify: Annotated[
        bool,
        typer.Option("--verify", help="Check cached trees against their first-fetch digest"),
    ] = False,
) -> None:
    """Populate the native dependency source cache."""
    from mpv_stt_build.deps.sources import (
        SourceCache,
        SourceFetchError,
        SourceIntegrityError,
    )

    settings = get_settings()
    cache = SourceCache.from_settings(settings)
    if verify:
        cache.verify = True

    failed = False
    for name in names or list(cache.specs):
        try:
            path = cache.ensure(name)
            console.print(f"  [green]✓ {escape(name)}[/green] {path}")
        except (SourceFetchError, SourceIntegrityError) as e:
            console.print(f"  [red]✗ {escape(name)}: {escape(str(e))}[/red]")
            failed = True

    if failed:
        raise typer.Exit(code=1)


@deps_app.command("order")
def deps_order(
    target: Annotated[
        str,
        typer.Argument(help="Dependency to resolve (default: mpv)"),
    ] = "mpv",
) -> None:
    """Print the build order of a dependency and its prerequisites."""
    from mpv_stt_build.deps.graph import (
        DEFAULT_GRAPH,
        DependencyCycleError,
        DependencyNotFoundError,
        resolve_build_order,
    )

    try:
        order = resolve_build_order(DEFAULT_GRAPH, target)
    except (DependencyNotFoundError, DependencyCycleError) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    for index, name in enumerate(order, start=1):
        requires = DEFAULT_GRAPH[name].requires
        suffix = f" (needs {', '.join(requires)})" if requires else ""
        console.print(f"{index}. {name}{suffix}")


if __name__ == "__main__":
    app()
