"""Flywheel CLI — Typer + Rich terminal interface.

Commands: serve, stories, runs, learning, autorun, strategy, outcome-agent,
orchestrator, automation, optimizer.
Every loop command opens the store, runs one service call and closes it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer
from pydantic import BaseModel, ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from flywheel import __version__
from flywheel.errors import FlywheelError
from flywheel.persistence.database import close_db, init_db
from flywheel.persistence.runs import RunStore
from flywheel.persistence.stories import StoryStore
from flywheel.schemas.api import (
    AutomationExecuteRequest,
    AutomationRequest,
    AutorunRequest,
    ExecutedAction,
    LearningRequest,
    OptimizerRequest,
    OrchestratorRequest,
    OrchestratorRunRequest,
    OutcomeAgentRequest,
    OutcomeCloseRequest,
    OwnerOverride,
    SkippedAction,
    StrategyLoopRequest,
)
from flywheel.schemas.enums import AutonomyMode, OptimizationObjective, OutcomeDecision
from flywheel.schemas.policy import DecisionPolicy
from flywheel.schemas.upstream import (
    DistributionChannel,
    RoleAgentId,
    SprintObjective,
    StoryContext,
)
from flywheel.service import EconomyLoopService
from flywheel.settings import LoopConfig, load_loop_config

T = TypeVar("T")

console = Console()

# ── App and sub-apps ─────────────────────────────────────────────

app = typer.Typer(
    name="flywheel",
    help="Autonomous creator-economy decision loop.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

stories_app = typer.Typer(
    name="stories",
    help="Manage stored story contexts.",
    no_args_is_help=True,
)
app.add_typer(stories_app, name="stories")

runs_app = typer.Typer(
    name="runs",
    help="Query and close run history.",
    no_args_is_help=True,
)
app.add_typer(runs_app, name="runs")


# ── Version callback ───────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"flywheel {__version__}")
        raise typer.Exit()


# ── App Callback ────────────────────────────────────────────────


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Flywheel — learn from run outcomes, govern and pace the next actions."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


# ── Helpers ──────────────────────────────────────────────────────


def _load_config() -> LoopConfig:
    """Load loop config, exit on error."""
    try:
        return load_loop_config()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from None


def _call(fn: Callable[[EconomyLoopService], Awaitable[T]]) -> T:
    """Run one service call against a freshly opened store."""
    config = _load_config()

    async def _run() -> T:
        db = await init_db(config.db_path)
        try:
            return await fn(EconomyLoopService(RunStore(db), StoryStore(db), config))
        finally:
            await close_db(db)

    try:
        return asyncio.run(_run())
    except FlywheelError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1) from None


def _print_json(model: BaseModel) -> None:
    console.print_json(model.model_dump_json())


def _parse_overrides(values: list[str] | None) -> list[OwnerOverride]:
    overrides = []
    for value in values or []:
        role, sep, user = value.partition("=")
        try:
            if not sep:
                raise ValueError(value)
            overrides.append(OwnerOverride(role_id=RoleAgentId(role.strip()), owner_user_id=user))
        except (ValueError, ValidationError):
            console.print(f"[red]Invalid owner override:[/red] {value} (expected role=user)")
            raise typer.Exit(1) from None
    return overrides


def _policy_panel(policy: DecisionPolicy, title: str) -> Panel:
    return Panel(
        f"[bold]Mode:[/bold] {policy.mode}\n"
        f"[bold]Recommended outcome:[/bold] {policy.recommended_outcome}\n"
        f"[bold]Confidence:[/bold] {policy.confidence}\n"
        f"[bold]Max actions / cycle:[/bold] {policy.max_actions_per_cycle}\n"
        f"[bold]Cooldown:[/bold] {policy.cooldown_hours}h",
        title=f"[bold blue]{title}[/bold blue]",
        border_style="blue",
    )


def _actions_table(title: str, executed: list[ExecutedAction]) -> Table:
    table = Table(title=title)
    table.add_column("Recommendation", style="cyan")
    table.add_column("Title")
    table.add_column("Sprint", style="dim")
    table.add_column("Days", justify="right")
    table.add_column("Run", style="dim")
    table.add_column("Status")
    for action in executed:
        table.add_row(
            action.recommendation_id,
            action.title,
            action.sprint_objective,
            str(action.horizon_days),
            action.run_id[:8] if action.run_id else "-",
            Text(action.status, style="green" if action.status == "planned" else "yellow"),
        )
    return table


def _skipped_table(skipped: list[SkippedAction]) -> Table:
    table = Table(title="Skipped")
    table.add_column("Recommendation", style="cyan")
    table.add_column("Reason", max_width=70)
    for item in skipped:
        table.add_row(item.recommendation_id, item.reason)
    return table


# ── flywheel serve ───────────────────────────────────────────────


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8420, "--port", "-p", help="Port to listen on"),
) -> None:
    """Start the Flywheel HTTP API."""
    import uvicorn

    from flywheel.api.server import create_app

    config = _load_config()
    console.print(Panel(
        f"[bold]URL:[/bold] http://{host}:{port}\n"
        f"[bold]Database:[/bold] {config.db_path}",
        title="[bold blue]Flywheel API[/bold blue]",
        border_style="blue",
    ))
    uvicorn.run(create_app(config), host=host, port=port, log_level="warning")


# ── flywheel stories ─────────────────────────────────────────────


@stories_app.command("import")
def stories_import(
    slug: str = typer.Argument(..., help="Story slug"),
    path: Path = typer.Argument(..., help="JSON file with the story context"),
) -> None:
    """Store a story context (owner, collaborators and upstream reports)."""
    if not path.exists():
        console.print(f"[red]File not found:[/red] {path}")
        raise typer.Exit(1) from None
    try:
        context = StoryContext.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as e:
        console.print(f"[red]Invalid story context:[/red]\n{e}")
        raise typer.Exit(1) from None

    stored = _call(lambda service: service.upsert_context(slug, context))
    console.print(f"[green]Stored context for[/green] {stored.slug} ({stored.story_id})")


# ── flywheel runs ────────────────────────────────────────────────


@runs_app.command("list")
def runs_list(
    slug: str = typer.Argument(..., help="Story slug"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max runs to show"),
) -> None:
    """Show a story's recent runs."""
    summaries = _call(lambda service: service.list_runs(slug, limit))

    if not summaries:
        console.print("[dim]No runs found.[/dim]")
        return

    table = Table(title=f"Runs ({len(summaries)} shown)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Source", style="dim")
    table.add_column("Recommendation")
    table.add_column("Sprint", style="dim")
    table.add_column("Status")
    table.add_column("Decision")
    table.add_column("Created", style="dim")

    for run in summaries:
        status_style = "green" if run.status == "completed" else "yellow"
        table.add_row(
            run.id[:8],
            run.source,
            run.executed_recommendation_id or "-",
            run.sprint_objective,
            Text(run.status, style=status_style),
            run.outcome_decision or "-",
            run.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@runs_app.command("show")
def runs_show(
    slug: str = typer.Argument(..., help="Story slug"),
    run_id: str = typer.Argument(..., help="Run ID"),
) -> None:
    """Show a run with its baseline and outcome metrics."""
    run = _call(lambda service: service.get_run(slug, run_id))

    meta = Table(title=f"Run: {run.id}", show_header=False, show_lines=True)
    meta.add_column("Field", style="bold")
    meta.add_column("Value")
    meta.add_row("Source", run.plan.source)
    meta.add_row("Recommendation", run.plan.executed_recommendation_id or "-")
    meta.add_row("Mode", run.plan.mode)
    meta.add_row("Sprint", f"{run.sprint_objective} ({run.horizon_days}d)")
    meta.add_row("Status", run.status)
    meta.add_row("Created", run.created_at.isoformat())
    if run.completed_at:
        meta.add_row("Completed", run.completed_at.isoformat())
    if run.outcome_decision:
        meta.add_row("Decision", run.outcome_decision)
    if run.outcome_notes:
        meta.add_row("Notes", run.outcome_notes)
    console.print(meta)

    metrics = Table(title="Metrics")
    metrics.add_column("Metric", style="cyan")
    metrics.add_column("Baseline", justify="right")
    metrics.add_column("Outcome", justify="right")
    baseline = run.baseline_metrics.model_dump()
    outcome = run.outcome_metrics.model_dump()
    for key, value in baseline.items():
        after = outcome.get(key)
        metrics.add_row(
            key,
            "-" if value is None else f"{value:g}",
            "-" if after is None else f"{after:g}",
        )
    console.print(metrics)


@runs_app.command("close")
def runs_close(
    slug: str = typer.Argument(..., help="Story slug"),
    run_id: str = typer.Argument(..., help="Run ID"),
    decision: OutcomeDecision = typer.Option(..., "--decision", "-d", help="Outcome decision"),
    notes: str = typer.Option(None, "--notes", help="Outcome notes"),
) -> None:
    """Close a run with an outcome decision and the story's current metrics."""
    request = OutcomeCloseRequest(outcome_decision=decision, outcome_notes=notes)
    response = _call(lambda service: service.close_run_outcome(slug, run_id, request))

    console.print(Panel(
        f"[bold]Run:[/bold] {response.run.id}\n"
        f"[bold]Decision:[/bold] {response.run.outcome_decision}\n"
        f"[bold]Delta:[/bold] {response.delta_report.summary}",
        title="[bold green]Run closed[/bold green]",
        border_style="green",
    ))


# ── flywheel learning ────────────────────────────────────────────


@app.command()
def learning(
    slug: str = typer.Argument(..., help="Story slug"),
    mode: AutonomyMode = typer.Option(AutonomyMode.ASSIST, "--mode", "-m", help="Autonomy mode"),
    sprint: SprintObjective = typer.Option(None, "--sprint", help="Seed sprint objective"),
    horizon: int = typer.Option(None, "--horizon", min=3, max=30, help="Seed horizon in days"),
    as_json: bool = typer.Option(False, "--json", help="Print the full response as JSON"),
) -> None:
    """Show the learning report and the learning-adjusted policy."""
    request = LearningRequest(mode=mode, sprint_objective=sprint, horizon_days=horizon)
    response = _call(lambda service: service.learning(slug, request))
    if as_json:
        _print_json(response)
        return

    totals = response.learning.totals
    recs = response.learning.recommendations
    table = Table(title="Policy learning", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Runs", f"{totals.total_runs} ({totals.completed_runs} completed)")
    table.add_row("Positive rate", f"{totals.overall_positive_rate:.0%}")
    table.add_row("Stale open runs", str(totals.stale_open_runs))
    table.add_row("Recommended mode", recs.recommended_mode)
    table.add_row("Outcome bias", recs.recommended_outcome_bias)
    table.add_row("Governance", f"{response.governance.status} ({response.governance.governance_score})")
    console.print(table)
    console.print(_policy_panel(response.decision_policy, "Decision policy"))
    for note in response.learning.notes:
        console.print(f"[dim]- {note}[/dim]")


# ── flywheel autorun ─────────────────────────────────────────────


@app.command()
def autorun(
    slug: str = typer.Argument(..., help="Story slug"),
    mode: AutonomyMode = typer.Option(AutonomyMode.ASSIST, "--mode", "-m", help="assist or auto"),
    max_actions: int = typer.Option(None, "--max-actions", min=1, max=5, help="Action budget"),
    sprint: SprintObjective = typer.Option(None, "--sprint", help="Seed sprint objective"),
    horizon: int = typer.Option(None, "--horizon", min=3, max=30, help="Seed horizon in days"),
    owner: list[str] = typer.Option(None, "--owner", help="Role owner override as role=user"),
    user: str = typer.Option(None, "--user", help="Acting user (defaults to the story owner)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Select without creating runs"),
    force: bool = typer.Option(False, "--force", help="Run through a governance pause"),
    as_json: bool = typer.Option(False, "--json", help="Print the full response as JSON"),
) -> None:
    """Execute one autonomous cycle from the governed backlog."""
    request = AutorunRequest(
        mode=mode,
        max_actions=max_actions,
        sprint_objective=sprint,
        horizon_days=horizon,
        owner_overrides=_parse_overrides(owner),
        dry_run=dry_run,
        force=force,
    )
    response = _call(lambda service: service.autorun(slug, request, user))
    if as_json:
        _print_json(response)
        return

    if response.blocked_by_governance:
        console.print(Panel(
            response.skipped[0].reason if response.skipped else "Governance paused autorun.",
            title="[bold red]Blocked by governance[/bold red]",
            border_style="red",
        ))
        return

    console.print(_policy_panel(response.decision_policy, f"Autorun ({response.mode})"))
    if response.executed:
        console.print(_actions_table("Executed", response.executed))
    else:
        console.print("[dim]No ready backlog items to execute.[/dim]")
    if response.skipped:
        console.print(_skipped_table(response.skipped))


# ── flywheel strategy ────────────────────────────────────────────


@app.command()
def strategy(
    slug: str = typer.Argument(..., help="Story slug"),
    objective: OptimizationObjective = typer.Option(None, "--objective", "-o", help="Entry objective"),
    mode: AutonomyMode = typer.Option(AutonomyMode.ASSIST, "--mode", "-m", help="Autonomy mode"),
    cadence: int = typer.Option(None, "--cadence", min=6, max=24, help="Cadence override in hours"),
    auto_optimize: bool = typer.Option(
        None, "--auto-optimize/--no-auto-optimize", help="Override objective progression",
    ),
    max_actions: int = typer.Option(None, "--max-actions", min=1, max=5, help="Action budget"),
    execute_window: bool = typer.Option(False, "--execute-window", help="Execute the active window"),
    self_heal: bool = typer.Option(False, "--self-heal", help="Apply the self-healing patch"),
    execute_recovery: bool = typer.Option(
        False, "--execute-recovery", help="Apply the patch and execute recovery items",
    ),
    user: str = typer.Option(None, "--user", help="Acting user (defaults to the story owner)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview without creating runs"),
    force: bool = typer.Option(False, "--force", help="Execute through a closed window gate"),
    as_json: bool = typer.Option(False, "--json", help="Print the full response as JSON"),
) -> None:
    """Project the strategy loop, gate its window and optionally act on it."""
    request = StrategyLoopRequest(
        objective=objective,
        mode=mode,
        cadence_hours=cadence,
        auto_optimize=auto_optimize,
        max_actions=max_actions,
        execute_window=execute_window,
        self_heal=self_heal,
        execute_recovery=execute_recovery,
        dry_run=dry_run,
        force=force,
    )
    response = _call(lambda service: service.strategy_loop(slug, request, user))
    if as_json:
        _print_json(response)
        return

    cycles = Table(title=f"Strategy loop ({response.cadence_hours}h cadence)")
    cycles.add_column("Cycle", justify="right")
    cycles.add_column("Objective", style="cyan")
    cycles.add_column("Mode")
    cycles.add_column("Max", justify="right")
    cycles.add_column("Cooldown", justify="right")
    cycles.add_column("Window", style="dim")
    for cycle in response.strategy_loop.cycles:
        cycles.add_row(
            str(cycle.cycle),
            cycle.objective,
            cycle.mode,
            str(cycle.max_actions_per_cycle),
            f"{cycle.cooldown_hours}h",
            f"{cycle.scheduled_window_start:%m-%d %H:%M} → {cycle.scheduled_window_end:%m-%d %H:%M}",
        )
    console.print(cycles)

    gate = response.window_report.gate
    gate_style = {"ready": "green", "hold": "yellow", "blocked": "red"}.get(gate.status, "white")
    console.print(Panel(
        "\n".join(gate.reasons),
        title=f"[bold {gate_style}]Window gate: {gate.status}[/bold {gate_style}]",
        border_style=gate_style,
    ))

    healing = response.self_healing_report
    if healing is not None:
        console.print(
            f"[bold]Self-healing:[/bold] {healing.severity} "
            f"(ROI gap {healing.roi_gap_score})"
            + (" [green]patch applied[/green]" if response.self_healing_patch_applied else "")
        )
    if response.executed:
        console.print(_actions_table("Executed", response.executed))
    console.print(f"\n{response.summary}")


# ── flywheel outcome-agent ───────────────────────────────────────


@app.command("outcome-agent")
def outcome_agent(
    slug: str = typer.Argument(..., help="Story slug"),
    execute: bool = typer.Option(False, "--execute", help="Close the selected runs"),
    max_runs: int = typer.Option(None, "--max-runs", min=1, max=10, help="Runs to close"),
    stale_after: float = typer.Option(
        None, "--stale-after", min=6, max=240, help="Hours before an open run is stale",
    ),
    note_prefix: str = typer.Option(None, "--note-prefix", help="Prefix for closing notes"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview closes without writing"),
    as_json: bool = typer.Option(False, "--json", help="Print the full response as JSON"),
) -> None:
    """Find stale open runs and propose (or apply) closing decisions."""
    request = OutcomeAgentRequest(
        max_runs=max_runs,
        stale_after_hours=stale_after,
        outcome_note_prefix=note_prefix,
        dry_run=dry_run,
    )
    response = _call(lambda service: service.outcome_agent(slug, request, execute=execute))
    if as_json:
        _print_json(response)
        return

    summary = response.plan.summary
    console.print(
        f"[bold]Open runs:[/bold] {summary.total_open_runs}  "
        f"[bold]Stale:[/bold] {summary.stale_open_runs}  "
        f"[bold]Candidates:[/bold] {summary.close_candidates}"
    )
    if not response.selected_candidates:
        console.print("[dim]No stale open runs to close.[/dim]")
        return

    table = Table(title="Selected candidates")
    table.add_column("Run", style="cyan", no_wrap=True)
    table.add_column("Age", justify="right")
    table.add_column("Delta", justify="right")
    table.add_column("Decision")
    for candidate in response.selected_candidates:
        delta = candidate.combined_delta
        table.add_row(
            candidate.run_id[:8],
            f"{candidate.age_hours:g}h",
            "-" if delta is None else f"{delta:+g}",
            candidate.suggested_outcome_decision,
        )
    console.print(table)

    if response.closed_runs:
        verb = "Previewed" if response.dry_run else "Closed"
        console.print(f"[green]{verb} {len(response.closed_runs)} run(s).[/green]")


# ── flywheel orchestrator ────────────────────────────────────────


@app.command()
def orchestrator(
    slug: str = typer.Argument(..., help="Story slug"),
    sprint: SprintObjective = typer.Option(None, "--sprint", help="Sprint objective"),
    horizon: int = typer.Option(None, "--horizon", min=3, max=30, help="Horizon in days"),
    create: bool = typer.Option(False, "--create", help="Record the sprint as a planned run"),
    owner: list[str] = typer.Option(None, "--owner", help="Role owner override as role=user"),
    merch_candidate: str = typer.Option(None, "--merch-candidate", help="Merch candidate to attach"),
    merch_channel: list[DistributionChannel] = typer.Option(
        None, "--merch-channel", help="Channel for the merch candidate (repeatable)",
    ),
    user: str = typer.Option(None, "--user", help="Acting user (defaults to the story owner)"),
    as_json: bool = typer.Option(False, "--json", help="Print the full response as JSON"),
) -> None:
    """Show the operating plan, or with --create record it as a manual run."""
    if create:
        try:
            run_request = OrchestratorRunRequest(
                sprint_objective=sprint,
                horizon_days=horizon,
                owner_overrides=_parse_overrides(owner),
                merch_candidate_id=merch_candidate,
                merch_channels=merch_channel or None,
            )
        except ValidationError as e:
            console.print(f"[red]Invalid request:[/red] {e.errors()[0]['msg']}")
            raise typer.Exit(1) from None
        response = _call(lambda service: service.create_orchestrator_run(slug, run_request, user))
    else:
        request = OrchestratorRequest(sprint_objective=sprint, horizon_days=horizon)
        response = _call(lambda service: service.orchestrator(slug, request))
    if as_json:
        _print_json(response)
        return

    plan = response.operating_plan
    console.print(Panel(
        f"[bold]Sprint:[/bold] {plan.sprint_objective} ({plan.horizon_days}d)\n"
        f"[bold]Score band:[/bold] {plan.score_band}\n"
        f"[bold]Combined score:[/bold] {plan.baseline_metrics.combined_score}\n"
        f"{plan.rollout_note}",
        title="[bold blue]Operating plan[/bold blue]",
        border_style="blue",
    ))
    tracks = Table(title="Priority tracks")
    tracks.add_column("Track", style="cyan")
    tracks.add_column("Owner")
    tracks.add_column("Priority")
    for track in plan.priority_tracks:
        tracks.add_row(track.label, track.owner_role_agent_id, track.priority)
    console.print(tracks)
    if response.merch is not None:
        channels = ", ".join(response.merch.channels) or "-"
        console.print(f"[bold]Merch:[/bold] {response.merch.candidate_id or '-'} via {channels}")
    if response.run is not None:
        console.print(f"[green]Planned run {response.run.id}[/green]")


# ── flywheel automation ──────────────────────────────────────────


@app.command()
def automation(
    slug: str = typer.Argument(..., help="Story slug"),
    execute: str = typer.Option(None, "--execute", help="Recommendation id to execute as a run"),
    sprint: SprintObjective = typer.Option(None, "--sprint", help="Seed sprint objective"),
    horizon: int = typer.Option(None, "--horizon", min=3, max=30, help="Seed horizon in days"),
    owner: list[str] = typer.Option(None, "--owner", help="Role owner override as role=user"),
    user: str = typer.Option(None, "--user", help="Acting user (defaults to the story owner)"),
    as_json: bool = typer.Option(False, "--json", help="Print the full response as JSON"),
) -> None:
    """Show fired triggers and recommendations, or execute one of them."""
    if execute:
        run_request = AutomationExecuteRequest(
            recommendation_id=execute,
            sprint_objective=sprint,
            horizon_days=horizon,
            owner_overrides=_parse_overrides(owner),
        )
        response = _call(lambda service: service.execute_automation(slug, run_request, user))
    else:
        request = AutomationRequest(sprint_objective=sprint, horizon_days=horizon)
        response = _call(lambda service: service.automation(slug, request))
    if as_json:
        _print_json(response)
        return

    plan = response.automation_plan
    summary = plan.trigger_summary
    console.print(
        f"[bold]Triggers:[/bold] {summary.active}/{summary.total} fired "
        f"({summary.risk_active} risk, {summary.opportunity_active} opportunity)"
    )
    table = Table(title="Recommendations")
    table.add_column("Recommendation", style="cyan")
    table.add_column("Title")
    table.add_column("Priority")
    table.add_column("Owner", style="dim")
    for recommendation in plan.recommendations:
        table.add_row(
            recommendation.id,
            recommendation.title,
            recommendation.priority,
            recommendation.owner_role_agent_id,
        )
    console.print(table)
    if response.run is not None:
        console.print(
            f"[green]Executed {response.run.executed_recommendation_id} "
            f"as run {response.run.id}[/green]"
        )


# ── flywheel optimizer ───────────────────────────────────────────


@app.command()
def optimizer(
    slug: str = typer.Argument(..., help="Story slug"),
    objective: OptimizationObjective = typer.Option(None, "--objective", "-o", help="Objective to apply"),
    mode: AutonomyMode = typer.Option(AutonomyMode.ASSIST, "--mode", "-m", help="Autonomy mode"),
    max_actions: int = typer.Option(None, "--max-actions", min=1, max=5, help="Preview budget"),
    as_json: bool = typer.Option(False, "--json", help="Print the full response as JSON"),
) -> None:
    """Show optimizer profiles and the policy with an objective applied."""
    request = OptimizerRequest(objective=objective, mode=mode, max_actions=max_actions)
    response = _call(lambda service: service.optimizer(slug, request))
    if as_json:
        _print_json(response)
        return

    profiles = Table(title=f"Optimizer (recommended: {response.optimizer_report.recommended_objective})")
    profiles.add_column("Objective", style="cyan")
    profiles.add_column("Mode")
    profiles.add_column("Max", justify="right")
    profiles.add_column("Cooldown", justify="right")
    for profile in response.optimizer_report.profiles:
        override = profile.policy_override
        profiles.add_row(
            profile.objective,
            override.mode,
            str(override.max_actions_per_cycle),
            f"{override.cooldown_hours}h",
        )
    console.print(profiles)
    console.print(_policy_panel(response.optimized_policy, f"Optimized policy ({response.objective})"))
    console.print(f"\n{response.summary}")
