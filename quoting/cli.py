"""Main CLI entry point for the quoting engine."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .complexity import calculate_complexity
from .config import settings
from .errors import RecordNotFoundError
from .extractor import ModelExtractor, build_extractor
from .orchestrate import QuoteOrchestrator, RecordStatus, build_store
from .pricing import PricingConfig, breakdown_text, calculate_price
from .risk import RiskDetector, risk_summary
from .schemas import PricingResult, WorkflowRecord
from .state_machine import Stage
from .store import RecordFilter, RecordStore

console = Console()

T = TypeVar("T")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _resolve_id(store: RecordStore, identifier: str) -> str:
    """Accept either a record id or its task slug."""
    try:
        return store.get(identifier).id
    except RecordNotFoundError:
        for record in store.list():
            if record.task_slug == identifier:
                return record.id
        raise


def run_with_orchestrator(operation: Callable[[QuoteOrchestrator], Awaitable[T]]) -> T:
    """Load the store, run one operation and flush before exiting."""

    async def runner() -> T:
        store = build_store(settings)
        await store.load()
        extractor = build_extractor(settings)
        orchestrator = QuoteOrchestrator(store, extractor, config=settings)
        try:
            return await operation(orchestrator)
        finally:
            if not await store.close():
                console.print("[yellow]Warning: changes could not be saved; see log[/yellow]")
            if isinstance(extractor, ModelExtractor):
                await extractor.aclose()
            if settings.storage_backend == "sql":
                await db.dispose_engine()

    return asyncio.run(runner())


def _on_record(
    identifier: str, action: Callable[[QuoteOrchestrator, str], Awaitable[WorkflowRecord]]
) -> WorkflowRecord:
    async def op(orchestrator: QuoteOrchestrator) -> WorkflowRecord:
        return await action(orchestrator, _resolve_id(orchestrator.store, identifier))

    return run_with_orchestrator(op)


# =============================================================================
# Rendering
# =============================================================================


def _print_stage(record: WorkflowRecord) -> None:
    console.print(f"[bold]{record.task_slug}[/bold] -> [cyan]{record.current_stage}[/cyan]")


def _print_quote(pricing: PricingResult) -> None:
    config = PricingConfig.from_settings(settings)
    console.print(
        Panel(
            breakdown_text(pricing, config),
            title=f"Quote (valid until {pricing.valid_until.strftime('%Y-%m-%d %H:%M')})",
        )
    )


def _print_status(status: RecordStatus) -> None:
    record = status.record
    lines = [
        f"[bold]{record.title}[/bold]",
        "",
        f"ID: {record.id}",
        f"Stage: [cyan]{record.current_stage}[/cyan] - {status.description}",
        f"Client: {record.client_id}  Counterparty: {record.counterparty_name or record.counterparty_id}",
        f"Created: {record.created_at.strftime('%Y-%m-%d %H:%M')}",
        f"Expires: {record.expires_at.strftime('%Y-%m-%d %H:%M')}",
        f"Next: {', '.join(status.next_actions) or '-'}",
    ]
    if status.waiting:
        lines.append("[dim]Waiting on the system[/dim]")
    if record.requires_human_review:
        cleared = "[green]cleared[/green]" if record.review_cleared else "[red]pending[/red]"
        lines.append(f"Human review: {cleared}")
    if status.quote_expired:
        lines.append("[red]Quote expired - edit and requote[/red]")
    console.print(Panel("\n".join(lines), title=f"Task: {record.task_slug}"))

    if status.open_questions:
        table = Table(title="Clarifying Questions")
        table.add_column("Key", style="cyan")
        table.add_column("Question")
        table.add_column("Options")
        table.add_column("Default")
        for q in status.open_questions:
            table.add_row(
                q.field_key,
                q.question,
                ", ".join(q.options or []) or q.answer_type,
                "-" if q.default_value in (None, "") else str(q.default_value),
            )
        console.print(table)

    if record.scope_structured:
        scope = record.scope_structured
        table = Table(title=f"Scope: {scope.objective}")
        table.add_column("ID", style="cyan")
        table.add_column("Deliverable")
        table.add_column("Category")
        table.add_column("Hours", justify="right")
        for d in scope.deliverables:
            table.add_row(d.deliverable_id, d.name, d.category, f"{d.estimated_hours:g}")
        console.print(table)
        console.print(
            f"Total: {scope.total_estimated_hours:g}h over ~{scope.timeline_estimate_days:g} days "
            f"(confidence {scope.confidence_score:.2f})"
        )

    if record.risk_flags:
        console.print(f"[yellow]Risk flags:[/yellow] {', '.join(record.risk_flags)}")

    if record.complexity_result:
        console.print(
            f"Complexity: {record.complexity_result.complexity_score:g}/100 - "
            f"{record.complexity_result.explanation}"
        )
    if record.pricing_result:
        _print_quote(record.pricing_result)
    if record.quote_history:
        console.print(f"[dim]{len(record.quote_history)} superseded quote(s)[/dim]")

    table = Table(title="Stage History")
    table.add_column("Entered", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("Trigger")
    table.add_column("Details")
    for entry in record.stage_history:
        table.add_row(
            entry.entered_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.stage,
            entry.trigger,
            json.dumps(entry.metadata, default=str) if entry.metadata else "",
        )
    console.print(table)


def _parse_answer(raw: str) -> tuple[str, Any]:
    key, sep, value = raw.partition("=")
    if not sep or not key.strip():
        raise click.BadParameter(f"Expected KEY=VALUE, got {raw!r}", param_hint="--answer")
    try:
        return key.strip(), json.loads(value)
    except json.JSONDecodeError:
        return key.strip(), value


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Override QUOTING_LOG_LEVEL")
def main(log_level: str | None) -> None:
    """Task quoting engine CLI.

    Turn a short task brief into a structured scope and a priced, time-limited quote.
    """
    _setup_logging(log_level or settings.log_level)


@main.command()
@click.argument("title")
@click.argument("brief")
@click.option("--client", "client_id", required=True, help="Client identifier")
@click.option("--counterparty", "counterparty_id", required=True, help="Counterparty identifier")
@click.option("--counterparty-name", default="", help="Display name of the counterparty")
def create(title: str, brief: str, client_id: str, counterparty_id: str, counterparty_name: str) -> None:
    """Create a workflow record from a TITLE and BRIEF."""
    record = run_with_orchestrator(
        lambda o: o.create_record(title, brief, client_id, counterparty_id, counterparty_name)
    )
    console.print(f"[green]Created[/green] {record.task_slug}")
    console.print(f"ID: {record.id}")


@main.command()
@click.argument("record")
def analyze(record: str) -> None:
    """Extract requirements from the brief."""
    result = _on_record(record, lambda o, rid: o.analyze(rid))
    _print_stage(result)
    if result.current_stage == Stage.CLARIFY_PENDING:
        console.print(f"Answer the open questions with: quoting clarify {result.task_slug} --answer KEY=VALUE")


@main.command()
@click.argument("record")
@click.option("--answer", "-a", "answers", multiple=True, help="KEY=VALUE (VALUE may be JSON)")
@click.option("--skip", "-s", "skipped", multiple=True, help="Field key to skip")
def clarify(record: str, answers: tuple[str, ...], skipped: tuple[str, ...]) -> None:
    """Submit answers to the clarifying questions."""
    parsed = dict(_parse_answer(a) for a in answers)
    result = _on_record(record, lambda o, rid: o.submit_clarification(rid, parsed, list(skipped)))
    _print_stage(result)
    if result.clarification_response and result.clarification_response.applied_defaults:
        defaults = result.clarification_response.applied_defaults
        console.print(f"[dim]Defaults applied: {', '.join(f'{k}={v}' for k, v in defaults.items())}[/dim]")


@main.command(name="generate-scope")
@click.argument("record")
def generate_scope(record: str) -> None:
    """Generate the structured scope."""
    result = _on_record(record, lambda o, rid: o.generate_scope(rid))
    _print_stage(result)
    if result.risk_flags:
        for explanation in result.risk_explanations:
            console.print(f"[yellow]- {explanation}[/yellow]")
        if result.requires_human_review:
            console.print("[red]Manual review required before the quote can be confirmed[/red]")


@main.command(name="more-clarity")
@click.argument("record")
def more_clarity(record: str) -> None:
    """Send an approved-for-review scope back for more answers."""
    _print_stage(_on_record(record, lambda o, rid: o.request_more_clarity(rid)))


@main.command()
@click.argument("record")
@click.option("--rate", type=int, default=None, help="Counterparty rate in lamports per hour")
def approve(record: str, rate: int | None) -> None:
    """Approve the scope and compute the quote."""
    result = _on_record(record, lambda o, rid: o.approve_scope(rid, rate))
    _print_stage(result)
    if result.pricing_result:
        _print_quote(result.pricing_result)


@main.command()
@click.argument("record")
def edit(record: str) -> None:
    """Start editing scope drivers for a requote."""
    result = _on_record(record, lambda o, rid: o.begin_edit(rid))
    _print_stage(result)
    if result.scope_drivers:
        console.print(result.scope_drivers.model_dump_json(indent=2))


@main.command()
@click.argument("record")
def revert(record: str) -> None:
    """Leave editing and return to scope review."""
    _print_stage(_on_record(record, lambda o, rid: o.revert_to_scope(rid)))


@main.command()
@click.argument("record")
@click.option("--hours", type=float, default=None, help="New total estimated hours")
@click.option("--urgency", type=click.Choice(["standard", "priority", "urgent"]), default=None)
@click.option("--rate", type=int, default=None, help="Counterparty rate in lamports per hour")
def requote(record: str, hours: float | None, urgency: str | None, rate: int | None) -> None:
    """Reprice with revised scope drivers."""
    drivers: dict[str, Any] = {}
    if hours is not None:
        drivers["estimated_hours"] = hours
    if urgency is not None:
        drivers["urgency_level"] = urgency
    result = _on_record(record, lambda o, rid: o.requote(rid, drivers, rate))
    _print_stage(result)
    if result.pricing_result:
        _print_quote(result.pricing_result)


@main.command()
@click.argument("record")
@click.option("--reviewer", required=True, help="Who made the decision")
@click.option("--approve/--reject", "approved", default=True)
@click.option("--notes", default="", help="Free-text notes")
def review(record: str, reviewer: str, approved: bool, notes: str) -> None:
    """Record a human review decision."""
    result = _on_record(record, lambda o, rid: o.record_review(rid, reviewer, approved, notes))
    verdict = "[green]approved[/green]" if approved else "[red]rejected[/red]"
    console.print(f"{result.task_slug}: review {verdict} by {reviewer}")


@main.command()
@click.argument("record")
def confirm(record: str) -> None:
    """Accept the current quote."""
    _print_stage(_on_record(record, lambda o, rid: o.confirm_quote(rid)))


@main.command()
@click.argument("record")
@click.argument("reference")
def fund(record: str, reference: str) -> None:
    """Mark escrow as funded with an external REFERENCE."""
    _print_stage(_on_record(record, lambda o, rid: o.record_funding(rid, reference)))


@main.command()
@click.argument("record")
@click.option("--reason", default="", help="Why the workflow is cancelled")
def cancel(record: str, reason: str) -> None:
    """Cancel a workflow."""
    _print_stage(_on_record(record, lambda o, rid: o.cancel(rid, reason)))


@main.command()
@click.argument("record")
def status(record: str) -> None:
    """Show status of a workflow record."""

    async def op(orchestrator: QuoteOrchestrator) -> RecordStatus:
        return await orchestrator.describe(_resolve_id(orchestrator.store, record))

    _print_status(run_with_orchestrator(op))


@main.command(name="list")
@click.option("--stage", type=click.Choice([s.value for s in Stage]), default=None)
@click.option("--party", default=None, help="Client or counterparty id")
@click.option("--needs-review", is_flag=True, help="Only records flagged for human review")
@click.option("--limit", default=20, help="Number of records to show")
def list_records(stage: str | None, party: str | None, needs_review: bool, limit: int) -> None:
    """List recent workflow records."""
    filters = RecordFilter(
        stage=Stage(stage) if stage else None,
        party=party,
        requires_human_review=True if needs_review else None,
        limit=limit,
    )
    records = run_with_orchestrator(lambda o: o.list_records(filters))
    if not records:
        console.print("[yellow]No records found[/yellow]")
        return

    table = Table(title="Workflow Records")
    table.add_column("Slug", style="cyan")
    table.add_column("Title")
    table.add_column("Stage")
    table.add_column("Quote (SOL)", justify="right")
    table.add_column("Updated")
    for r in records:
        table.add_row(
            r.task_slug,
            r.title[:40] + ("..." if len(r.title) > 40 else ""),
            r.current_stage,
            f"{r.pricing_result.total_sol:g}" if r.pricing_result else "-",
            r.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@main.command()
def sweep() -> None:
    """Remove records whose retention window has passed."""
    removed = run_with_orchestrator(lambda o: o.sweep_expired())
    console.print(f"Removed {removed} expired record(s)")


@main.command()
@click.option("--features", type=int, required=True, help="Number of code deliverables")
@click.option("--integrations", type=int, default=0)
@click.option("--roles", type=int, default=1)
@click.option(
    "--security", type=click.Choice(["none", "basic", "advanced", "critical"]), default="basic"
)
@click.option("--compliance", multiple=True, help="Compliance flag, e.g. GDPR")
@click.option("--custom", multiple=True, help="Custom logic flag, e.g. ML")
@click.option("--missing-assets", type=int, default=0)
@click.option("--deadline", type=click.Choice(["low", "medium", "high"]), default="low")
@click.option("--confidence", type=float, default=0.8)
def score(
    features: int,
    integrations: int,
    roles: int,
    security: str,
    compliance: tuple[str, ...],
    custom: tuple[str, ...],
    missing_assets: int,
    deadline: str,
    confidence: float,
) -> None:
    """Score complexity from raw inputs."""
    result = calculate_complexity(
        {
            "feature_count": features,
            "integration_count": integrations,
            "user_roles": roles,
            "security_level": security,
            "compliance_flags": list(compliance),
            "custom_logic_flags": list(custom),
            "asset_missing_count": missing_assets,
            "deadline_pressure": deadline,
            "confidence_score": confidence,
        }
    )
    table = Table(title=f"Complexity: {result.complexity_score:g}/100")
    table.add_column("Component", style="cyan")
    table.add_column("Points", justify="right")
    for name, value in result.complexity_breakdown.model_dump().items():
        table.add_row(name, f"{value:g}")
    console.print(table)
    console.print(result.explanation)


@main.command()
@click.option("--score", "complexity_score", type=float, required=True)
@click.option("--hours", type=float, required=True)
@click.option("--rate", type=int, default=None, help="Lamports per hour")
@click.option("--confidence", type=float, default=0.8)
def price(complexity_score: float, hours: float, rate: int | None, confidence: float) -> None:
    """Price a task from a complexity score and hours."""
    config = PricingConfig.from_settings(settings)
    result = calculate_price(
        complexity_score,
        hours,
        settings.default_base_rate if rate is None else rate,
        confidence,
        config=config,
    )
    _print_quote(result)


@main.command()
@click.argument("text")
def risk(text: str) -> None:
    """Check free TEXT for compliance risks."""
    assessment = RiskDetector().assess_text(text)
    style = "red" if assessment.requires_human_review else "yellow" if assessment.risk_flags else "green"
    console.print(f"[{style}]{risk_summary(assessment)}[/{style}]")


@main.command(name="init-db")
def init_db() -> None:
    """Create the tables for the SQL storage backend."""

    async def run() -> None:
        db.configure(settings.database_url)
        try:
            await db.init_db()
        finally:
            await db.dispose_engine()

    asyncio.run(run())
    console.print(f"[green]Database initialized[/green] ({settings.database_url})")


@main.command(name="config-info")
def config_info() -> None:
    """Show the effective configuration."""
    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for name, value in settings.model_dump().items():
        table.add_row(name, str(value))
    console.print(table)


if __name__ == "__main__":
    main()
