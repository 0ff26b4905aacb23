"""Typer CLI entry point for research-graph."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from research_graph import __version__
from research_graph.config import Settings, format_validation_error
from research_graph.consolidation import ConsolidationEngine
from research_graph.exceptions import ResearchGraphError
from research_graph.graph import ResearchGraph
from research_graph.logging import (
    configure_logging,
    generate_session_id,
    project_logging_context,
)
from research_graph.models import ModelRouter
from research_graph.persistence import DebouncedSaver, ProjectStore
from research_graph.pipeline import AgentRoundResult, ResearchPipeline, RoundResult
from research_graph.retry import RetryPolicy
from research_graph.state import (
    EdgeKind,
    FollowUpPayload,
    GroupPayload,
    NodeStatus,
    ReportPayload,
    SearchPayload,
    SelectionPayload,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from research_graph.state import GraphState, Project, ResearchNode

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="research-graph",
    help="Branching, AI-assisted research graphs.",
    no_args_is_help=True,
)
projects_app = typer.Typer(help="Manage stored research projects.")
app.add_typer(projects_app, name="projects")

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config YAML file."),
]
ProjectOption = Annotated[
    str | None,
    typer.Option("--project", "-p", help="Project id (defaults to the current project)."),
]
ModelOption = Annotated[
    str | None,
    typer.Option("--model", "-m", help='Platform model, e.g. "google__gemini-flash".'),
]
TimeFilterOption = Annotated[
    str,
    typer.Option("--time-filter", "-t", help="One of 24h, week, month, year, all."),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable verbose logging."),
]

_TIME_FILTERS = ("24h", "week", "month", "year", "all")

_STATUS_STYLE = {
    NodeStatus.PENDING: "dim",
    NodeStatus.LOADING: "yellow",
    NodeStatus.READY: "green",
    NodeStatus.FAILED: "red",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(
    config_path: Path | None = None,
    verbose: bool = False,
    **overrides: Any,
) -> Settings:
    """Load settings with error handling and user-friendly messages."""
    from pydantic import ValidationError

    if verbose:
        overrides["logging"] = {"level": "DEBUG"}
    try:
        settings = Settings.load(config_path=config_path, **overrides)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc

    configure_logging(
        level=settings.logging.level,
        fmt=settings.logging.format,
        log_file=settings.logging.file,
        session_id=generate_session_id(),
    )
    return settings


def _store(settings: Settings) -> ProjectStore:
    return ProjectStore(settings.persistence.directory)


def _resolve_project(store: ProjectStore, project_id: str | None, name: str) -> Project:
    """Load *project_id*, else the current project, else create one named *name*."""
    target = project_id or store.current_project_id()
    if target is None:
        project = store.create_project(name)
        console.print(f"[green]Created project[/green] {project.name} ({project.id})")
        return project
    project = store.load_project(target)
    store.set_current_project(project.id)
    return project


def _run_session(
    settings: Settings,
    project_id: str | None,
    name: str,
    action: Callable[[ResearchGraph], Awaitable[Any]],
) -> tuple[Any, GraphState]:
    """Open a project, run *action* against its graph and persist the result."""
    store = _store(settings)

    async def _session() -> tuple[Any, GraphState]:
        project = _resolve_project(store, project_id, name)
        graph = ResearchGraph(state=project.graph)
        saver = DebouncedSaver(store, settings.persistence.debounce_seconds)
        saver.watch(graph, project)
        with project_logging_context(project.id):
            try:
                return await action(graph), graph.state
            finally:
                await saver.flush()

    try:
        return asyncio.run(_session())
    except ResearchGraphError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _pipeline(settings: Settings, graph: ResearchGraph) -> ResearchPipeline:
    return ResearchPipeline(
        graph,
        ModelRouter.from_settings(settings.model),
        settings,
        RetryPolicy.from_settings(settings.retry),
    )


def _check_time_filter(value: str) -> str:
    if value not in _TIME_FILTERS:
        raise typer.BadParameter(f"time filter must be one of {', '.join(_TIME_FILTERS)}")
    return value


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _node_label(node: ResearchNode) -> str:
    style = _STATUS_STYLE[node.status]
    payload = node.payload
    if isinstance(payload, GroupPayload):
        text = f"[bold]{payload.label}[/bold]"
    elif isinstance(payload, SearchPayload):
        text = f"Search: {payload.query}"
    elif isinstance(payload, SelectionPayload):
        text = f"Selection: {len(payload.results)} results"
    elif isinstance(payload, ReportPayload):
        title = payload.report.title if payload.report else "(no report)"
        prefix = "Consolidated report" if payload.is_consolidated else "Report"
        text = f"{prefix}: {title}"
    elif isinstance(payload, FollowUpPayload):
        text = "Follow-up: " + "; ".join(payload.search_terms)
    else:  # pragma: no cover
        text = node.kind.value
    label = f"[{style}]{node.status.value}[/{style}] {text} [dim]{node.id}[/dim]"
    if node.error:
        label += f"\n[red]{node.error}[/red]"
    return label


def render_graph(state: GraphState) -> Tree:
    """Build a rich tree of *state*, following parent/child links."""
    root = Tree(f"[bold]{state.topic or 'Research graph'}[/bold]")

    def _add(branch: Tree, node: ResearchNode) -> None:
        child_branch = branch.add(_node_label(node))
        for child in state.children(node.id):
            _add(child_branch, child)
        for edge in state.edges:
            if edge.source == node.id and edge.kind is EdgeKind.CONSOLIDATED:
                child_branch.add(f"[magenta]-> consolidated into {edge.target}[/magenta]")

    for node in state.roots():
        _add(root, node)
    return root


def _print_selection(state: GraphState, selection_id: str) -> None:
    payload = state.nodes[selection_id].payload
    if not isinstance(payload, SelectionPayload):
        return
    table = Table(title=f"Selection {selection_id}", show_lines=True)
    table.add_column("Id", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Title")
    table.add_column("URL")
    for result in payload.results:
        table.add_row(result.id, f"{result.score:.2f}", result.title, result.url)
    console.print(table)


def _print_report(state: GraphState, report_id: str) -> None:
    node = state.nodes[report_id]
    payload = node.payload
    if not isinstance(payload, ReportPayload) or payload.report is None:
        err_console.print(f"[red]Report failed:[/red] {node.error}")
        return
    report = payload.report
    body = [f"[italic]{report.summary}[/italic]"]
    for section in report.sections:
        body.append(f"\n[bold]{section.title}[/bold]\n{section.content}")
    if report.sources:
        body.append("\n[bold]Sources[/bold]")
        for source in report.sources:
            status = payload.source_statuses.get(source.id)
            marker = f" [dim]({status.value})[/dim]" if status else ""
            body.append(f"- {source.name} {source.url}{marker}")
    console.print(Panel("\n".join(body), title=report.title, border_style="green"))

    for child in state.children(report_id):
        if isinstance(child.payload, FollowUpPayload) and child.payload.search_terms:
            console.print("[bold]Follow-up search terms:[/bold]")
            for term in child.payload.search_terms:
                console.print(f"  - {term}")


def _print_round(state: GraphState, outcome: RoundResult | AgentRoundResult) -> None:
    round_result = outcome.round if isinstance(outcome, AgentRoundResult) else outcome
    if round_result.error and round_result.selection_id is None:
        err_console.print(f"[red]Search failed:[/red] {round_result.error}")
        return
    if isinstance(outcome, AgentRoundResult):
        if outcome.report is not None:
            _print_report(state, outcome.report.report_id)
        elif round_result.error:
            err_console.print(f"[red]Round stopped:[/red] {round_result.error}")
        group = state.nodes[round_result.group_id].payload
        if isinstance(group, GroupPayload) and group.insights:
            console.print(Panel("\n".join(group.insights), title="Insights"))
    elif round_result.selection_id is not None:
        _print_selection(state, round_result.selection_id)
        console.print(
            "Generate a report with: [bold]research-graph report "
            f"{round_result.selection_id} [RESULT_ID ...][/bold]"
        )


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]research-graph[/bold] {__version__}")
        raise typer.Exit


@app.callback()
def common(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Research-graph global options."""


# ---------------------------------------------------------------------------
# Research commands
# ---------------------------------------------------------------------------


@app.command()
def research(
    topic: Annotated[str, typer.Argument(help="The research topic to investigate.")],
    agent: Annotated[
        bool,
        typer.Option("--agent/--manual", help="Run the full round or stop at selection."),
    ] = True,
    project: ProjectOption = None,
    model: ModelOption = None,
    time_filter: TimeFilterOption = "all",
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Start a new research round for TOPIC."""
    settings = _load_settings(config, verbose)
    time_filter = _check_time_filter(time_filter)

    async def _action(graph: ResearchGraph) -> RoundResult | AgentRoundResult:
        pipeline = _pipeline(settings, graph)
        if agent:
            return await pipeline.run_agent_round(
                topic, time_filter=time_filter, platform_model=model
            )
        return await pipeline.start_round(
            topic, time_filter=time_filter, platform_model=model
        )

    outcome, state = _run_session(settings, project, topic, _action)
    _print_round(state, outcome)


@app.command()
def branch(
    report_id: Annotated[str, typer.Argument(help="Report node to branch from.")],
    term: Annotated[str, typer.Argument(help="Follow-up search term or new topic.")],
    agent: Annotated[
        bool,
        typer.Option("--agent/--manual", help="Run the full round or stop at selection."),
    ] = True,
    project: ProjectOption = None,
    model: ModelOption = None,
    time_filter: TimeFilterOption = "all",
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Start a new round rooted at an existing report."""
    settings = _load_settings(config, verbose)
    time_filter = _check_time_filter(time_filter)

    async def _action(graph: ResearchGraph) -> RoundResult | AgentRoundResult:
        return await _pipeline(settings, graph).branch(
            report_id,
            term,
            agent=agent,
            time_filter=time_filter,
            platform_model=model,
        )

    outcome, state = _run_session(settings, project, term, _action)
    _print_round(state, outcome)


@app.command()
def report(
    selection_id: Annotated[str, typer.Argument(help="Selection node id.")],
    result_ids: Annotated[
        list[str] | None,
        typer.Argument(help="Result ids to use; omit to rank and select automatically."),
    ] = None,
    project: ProjectOption = None,
    model: ModelOption = None,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Generate a report from a selection node."""
    settings = _load_settings(config, verbose)

    async def _action(graph: ResearchGraph) -> str:
        outcome = await _pipeline(settings, graph).generate_report(
            selection_id, result_ids or None, platform_model=model
        )
        return outcome.report_id

    report_id, state = _run_session(settings, project, selection_id, _action)
    _print_report(state, report_id)


@app.command(name="add-url")
def add_url(
    selection_id: Annotated[str, typer.Argument(help="Selection node id.")],
    url: Annotated[str, typer.Argument(help="URL to add as a source.")],
    project: ProjectOption = None,
    config: ConfigOption = None,
) -> None:
    """Add a custom URL to a selection node."""
    settings = _load_settings(config)

    async def _action(graph: ResearchGraph) -> bool:
        return _pipeline(settings, graph).add_custom_url(selection_id, url) is not None

    added, state = _run_session(settings, project, selection_id, _action)
    if not added:
        console.print("[yellow]URL already present.[/yellow]")
    _print_selection(state, selection_id)


@app.command(name="add-file")
def add_file(
    selection_id: Annotated[str, typer.Argument(help="Selection node id.")],
    path: Annotated[Path, typer.Argument(help="Text document to add as a source.")],
    project: ProjectOption = None,
    config: ConfigOption = None,
) -> None:
    """Add a local text document to a selection node."""
    settings = _load_settings(config)
    if not path.is_file():
        raise typer.BadParameter(f"File does not exist: {path}")
    content = path.read_text(encoding="utf-8", errors="replace")

    async def _action(graph: ResearchGraph) -> None:
        _pipeline(settings, graph).add_document(selection_id, path.name, content)

    _, state = _run_session(settings, project, selection_id, _action)
    _print_selection(state, selection_id)


@app.command()
def consolidate(
    report_ids: Annotated[
        list[str] | None,
        typer.Argument(help="Report node ids (defaults to the selected reports)."),
    ] = None,
    project: ProjectOption = None,
    model: ModelOption = None,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Merge two or more reports into one consolidated report."""
    settings = _load_settings(config, verbose)

    async def _action(graph: ResearchGraph) -> str:
        engine = ConsolidationEngine(
            graph,
            ModelRouter.from_settings(settings.model),
            model or settings.model.platform_model,
            RetryPolicy.from_settings(settings.retry),
        )
        return await engine.consolidate(report_ids or None)

    report_id, state = _run_session(settings, project, "Consolidated Research", _action)
    _print_report(state, report_id)


@app.command()
def select(
    report_ids: Annotated[list[str], typer.Argument(help="Report node ids.")],
    clear: Annotated[
        bool,
        typer.Option("--clear", help="Remove the reports from the selection instead."),
    ] = False,
    project: ProjectOption = None,
    config: ConfigOption = None,
) -> None:
    """Mark reports for consolidation."""
    settings = _load_settings(config)

    async def _action(graph: ResearchGraph) -> list[str]:
        for report_id in report_ids:
            graph.select(report_id, selected=not clear)
        return graph.state.selected_reports

    selected, _ = _run_session(settings, project, "Research", _action)
    console.print(f"Selected reports: {', '.join(selected) or '(none)'}")


@app.command()
def delete(
    node_id: Annotated[str, typer.Argument(help="Node to delete with its descendants.")],
    project: ProjectOption = None,
    config: ConfigOption = None,
) -> None:
    """Delete a node and everything below it."""
    settings = _load_settings(config)

    async def _action(graph: ResearchGraph) -> None:
        graph.delete(node_id)

    _run_session(settings, project, "Research", _action)
    console.print(f"[green]Deleted[/green] {node_id}")


@app.command()
def show(
    project_id: Annotated[
        str | None,
        typer.Argument(help="Project id (defaults to the current project)."),
    ] = None,
    config: ConfigOption = None,
) -> None:
    """Display a project's research graph as a tree."""
    settings = _load_settings(config)
    store = _store(settings)
    target = project_id or store.current_project_id()
    if target is None:
        console.print("[yellow]No current project.[/yellow]")
        raise typer.Exit(code=1)
    try:
        project = store.load_project(target)
    except ResearchGraphError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print(Panel(f"{project.name} [dim]{project.id}[/dim]", border_style="blue"))
    console.print(render_graph(project.graph))


# ---------------------------------------------------------------------------
# Project commands
# ---------------------------------------------------------------------------


@projects_app.command("list")
def projects_list(config: ConfigOption = None) -> None:
    """List stored projects, most recently updated first."""
    store = _store(_load_settings(config))
    projects = store.list_projects()
    if not projects:
        console.print("[yellow]No projects stored.[/yellow]")
        return
    current = store.current_project_id()
    table = Table(title="Research Projects", show_lines=True)
    table.add_column("Id", style="cyan")
    table.add_column("Name")
    table.add_column("Nodes", justify="right")
    table.add_column("Updated")
    for project in projects:
        marker = " *" if project.id == current else ""
        table.add_row(
            project.id + marker,
            project.name,
            str(len(project.graph.nodes)),
            project.updated_at,
        )
    console.print(table)


@projects_app.command("new")
def projects_new(
    name: Annotated[str, typer.Argument(help="Project name.")],
    template: Annotated[
        str | None,
        typer.Option("--template", help="Project id to clone the graph from."),
    ] = None,
    config: ConfigOption = None,
) -> None:
    """Create a project and make it current."""
    store = _store(_load_settings(config))
    try:
        source = store.load_project(template) if template else None
    except ResearchGraphError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    project = store.create_project(name, source)
    console.print(f"[green]Created project[/green] {project.name} ({project.id})")


@projects_app.command("delete")
def projects_delete(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    config: ConfigOption = None,
) -> None:
    """Delete a stored project."""
    store = _store(_load_settings(config))
    try:
        store.delete_project(project_id)
    except ResearchGraphError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]Deleted project[/green] {project_id}")


@projects_app.command("export")
def projects_export(
    path: Annotated[Path, typer.Argument(help="Destination JSON file.")],
    config: ConfigOption = None,
) -> None:
    """Export every project to a JSON file."""
    store = _store(_load_settings(config))
    path.write_text(store.export_all(), encoding="utf-8")
    console.print(f"[green]Exported projects to[/green] {path}")


@projects_app.command("import")
def projects_import(
    path: Annotated[Path, typer.Argument(help="JSON file produced by export.")],
    config: ConfigOption = None,
) -> None:
    """Replace stored projects with those in a JSON export."""
    store = _store(_load_settings(config))
    if not path.is_file():
        raise typer.BadParameter(f"File does not exist: {path}")
    try:
        imported = store.import_all(path.read_text(encoding="utf-8"))
    except ResearchGraphError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    if not imported:
        err_console.print("[red]Invalid project export; nothing imported.[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Imported projects from[/green] {path}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
