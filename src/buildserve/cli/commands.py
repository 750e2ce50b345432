"""Serve commands for the buildserve CLI."""

import asyncio
import shlex
from pathlib import Path
from typing import Annotated, Any

from pydantic import ValidationError
from rich.table import Table
from typer import Argument, Exit, Option

from buildserve.build_stream import CommandBuildStream
from buildserve.constants import DEFAULT_SERVE_TARGET, WORKSPACE_FILE_NAME
from buildserve.errors import BuildServeError
from buildserve.logging import configure_logging
from buildserve.models import ServeOptions, TargetRef, parse_target_string
from buildserve.serve.dependencies import DependencySetCalculator
from buildserve.serve.orchestrator import WatchOrchestrator
from buildserve.serve.policy import resolve_build_target_policy
from buildserve.serve.snapshot import DependencySnapshotSynchronizer
from buildserve.utils import console
from buildserve.workspace import FileWorkspace, find_workspace_root

WorkspaceOption = Annotated[
    Path | None,
    Option(
        "--workspace",
        help="Workspace root containing workspace.json. Defaults to the nearest one above the current directory",
    ),
]


def _open_workspace(workspace: Path | None) -> FileWorkspace:
    root = workspace if workspace is not None else find_workspace_root(Path.cwd())
    if root is None or not (root / WORKSPACE_FILE_NAME).exists():
        console.print("[red]❌ No workspace.json found[/red]")
        raise Exit(code=1)
    return FileWorkspace(root.resolve())


def _display_path(path: Path, root: Path) -> str:
    try:
        return str(path.relative_to(root))
    except ValueError:
        return str(path)


def _serve_target(value: str) -> TargetRef:
    if ":" not in value:
        value = f"{value}:{DEFAULT_SERVE_TARGET}"
    return parse_target_string(value)


def load_serve_config(
    ws: FileWorkspace, target: str, overrides: dict[str, Any]  # pyright: ignore[reportExplicitAny]
) -> tuple[TargetRef, ServeOptions]:
    """Resolve the build target and serve options, applying CLI overrides."""
    serve_ref = _serve_target(target)
    options = ServeOptions.model_validate(ws.read_target_options(serve_ref))
    options = options.model_copy(
        update={key: value for key, value in overrides.items() if value is not None}
    )
    build_ref = parse_target_string(
        options.build_target, default_project=serve_ref.project
    )
    return build_ref, options


async def run_serve(
    ws: FileWorkspace,
    build_ref: TargetRef,
    options: ServeOptions,
    *,
    watch: bool = True,
) -> None:
    """Serve until interrupted (or, without watch, until the server exits)."""
    stream = CommandBuildStream(ws, build_ref, watch=watch)
    orchestrator = WatchOrchestrator(
        stream, build_ref, options, ws, ws, workspace_root=ws.root
    )
    try:
        async for _ in orchestrator.run():
            pass

        current = orchestrator.processes.current
        if current is not None and current.exit_watcher is not None:
            await current.exit_watcher
    finally:
        await orchestrator.stop()


def serve(
    target: Annotated[
        str,
        Argument(help="Serve target as project[:target[:configuration]]"),
    ],
    workspace: WorkspaceOption = None,
    inspect: Annotated[
        bool | None,
        Option("--inspect/--no-inspect", help="Run the server with the inspector enabled"),
    ] = None,
    runtime: Annotated[
        str | None,
        Option(help="Command used to execute the build output, split shell-style, e.g. 'node --enable-source-maps'"),
    ] = None,
    experimental_node_resolution: Annotated[
        bool | None,
        Option(
            "--experimental-node-resolution/--no-experimental-node-resolution",
            help="Pass the node specifier resolution flag to partially bundled ESM output",
        ),
    ] = None,
    watch: Annotated[
        bool, Option("--watch/--no-watch", help="Rebuild and restart on file changes")
    ] = True,
    verbose: Annotated[bool, Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Build a project in watch mode and keep its server running on the latest build."""
    configure_logging(verbose=verbose)
    ws = _open_workspace(workspace)

    try:
        build_ref, options = load_serve_config(
            ws,
            target,
            {
                "inspect": inspect,
                "runtime": shlex.split(runtime) if runtime else None,
                "experimental_node_resolution": experimental_node_resolution,
            },
        )
    except (BuildServeError, ValidationError) as e:
        console.print(f"[red]❌ {e}[/red]")
        raise Exit(code=1)

    console.print(f"[cyan]🚀 Serving {build_ref.project} from {build_ref}[/cyan]")
    try:
        asyncio.run(run_serve(ws, build_ref, options, watch=watch))
    except KeyboardInterrupt:
        console.print("[yellow]👋 Stopped[/yellow]")
    except BuildServeError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise Exit(code=1)


def deps(
    target: Annotated[
        str,
        Argument(help="Serve target as project[:target[:configuration]]"),
    ],
    workspace: WorkspaceOption = None,
) -> None:
    """Show which workspace dependencies a served project gets linked."""
    ws = _open_workspace(workspace)

    try:
        build_ref, _ = load_serve_config(ws, target, {})
        policy = resolve_build_target_policy(build_ref, ws)
        edges = DependencySetCalculator(ws).compute(
            build_ref.project, policy.is_bundled, policy.external
        )
    except (BuildServeError, ValidationError) as e:
        console.print(f"[red]❌ {e}[/red]")
        raise Exit(code=1)

    if not edges:
        console.print(f"✅ {build_ref.project} has no dependencies to link")
        return

    synchronizer = DependencySnapshotSynchronizer(ws, workspace_root=ws.root)
    table = Table(title=f"Linked dependencies of {build_ref.project}")
    table.add_column("Import key", style="cyan")
    table.add_column("Project")
    table.add_column("Output")
    table.add_column("Status")

    for edge in edges:
        output_path = synchronizer.declared_output_path(edge, build_ref)
        if output_path is None:
            status = "[red]has no output, please build first[/red]"
        elif not output_path.exists():
            status = "[yellow]not built yet[/yellow]"
        else:
            status = "[green]will be linked[/green]"
        table.add_row(
            edge.import_key,
            edge.dependency_project,
            _display_path(output_path, ws.root) if output_path else "-",
            status,
        )

    console.print(table)
