"""
Rich terminal UI components for Foreman.

WHY THIS FILE EXISTS:
--------------------
The CLI needs to display plans, command output and summaries in a readable
way. Rich gives us panels, tables and colors.

COMPONENTS:
----------
- show_plan() - Steps with wave, type, priority and status
- show_shell_result() - Output of `foreman exec`
- show_final_summary() - Metrics after a plan ran
- show_conversations() - Stored conversations
- show_config() - Effective configuration
"""

from typing import Optional

import yaml
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from config import Config
from schemas import Conversation, Plan, Role, ShellResult, StepStatus

# Global console instance for consistent output
console = Console()


# =============================================================================
# COLOR SCHEMES
# =============================================================================

STATUS_COLORS = {
    StepStatus.COMPLETED: "green",
    StepStatus.RUNNING: "yellow",
    StepStatus.PENDING: "dim",
    StepStatus.FAILED: "red",
    StepStatus.SKIPPED: "magenta",
}

STATUS_ICONS = {
    StepStatus.COMPLETED: "✓",
    StepStatus.RUNNING: "…",
    StepStatus.PENDING: "○",
    StepStatus.FAILED: "✗",
    StepStatus.SKIPPED: "−",
}


def priority_style(priority: int) -> str:
    if priority >= 8:
        return "red bold"
    if priority >= 5:
        return "yellow"
    return "dim"


# =============================================================================
# HEADER/SECTION UTILITIES
# =============================================================================

def show_header(title: str, subtitle: str = "") -> None:
    """Display a styled header."""
    console.print()
    console.rule(f"[bold blue]{title}[/bold blue]")
    if subtitle:
        console.print(f"[dim]{subtitle}[/dim]", justify="center")
    console.print()


def show_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def show_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {message}")


def show_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


def show_thinking(message: str = "Thinking..."):
    """
    Context manager that shows a spinner while processing.

    Usage:
        with show_thinking("Planning..."):
            plan = await planner.create_plan(goal, context)
    """
    return console.status(f"[bold blue]{message}[/bold blue]", spinner="dots")


def prompt_continue(message: str = "Continue?") -> bool:
    """Simple yes/no confirmation prompt."""
    return Confirm.ask(f"[bold]{message}[/bold]", default=True)


# =============================================================================
# PLAN DISPLAY
# =============================================================================

def show_plan(plan: Plan) -> None:
    """
    Display a plan's steps.

    Args:
        plan: The Plan to display
    """
    show_header("Execution Plan", plan.goal[:80] + "..." if len(plan.goal) > 80 else plan.goal)

    context = plan.context
    console.print(Panel(
        f"[bold]Project type:[/bold] {context.project_type}\n"
        f"[bold]Technologies:[/bold] {', '.join(context.technologies) or 'unknown'}\n"
        f"[bold]Working directory:[/bold] {plan.working_directory}",
        title="[bold]Context[/bold]",
        border_style="blue",
        box=box.ROUNDED
    ))

    table = Table(
        box=box.ROUNDED,
        show_header=True,
        header_style="bold",
        title="[bold]Steps[/bold]"
    )
    table.add_column("Wave", justify="right", style="cyan", width=4)
    table.add_column("Id", style="white")
    table.add_column("Type", style="blue")
    table.add_column("Priority", justify="center")
    table.add_column("Parallel", justify="center")
    table.add_column("Depends on", style="dim")
    table.add_column("Status")

    for step in plan.steps:
        color = STATUS_COLORS.get(step.status, "white")
        table.add_row(
            "-" if step.wave is None else str(step.wave),
            step.id,
            step.type.value,
            Text(str(step.priority), style=priority_style(step.priority)),
            "yes" if step.can_run_in_parallel else "no",
            ", ".join(sorted(step.dependencies)) or "-",
            f"[{color}]{STATUS_ICONS.get(step.status, '')} {step.status.value}[/{color}]",
        )

    console.print(table)
    console.print(f"[dim]Estimated time: {plan.estimated_total_seconds}s[/dim]")


# =============================================================================
# SHELL RESULT DISPLAY
# =============================================================================

def show_shell_result(result: ShellResult) -> None:
    """
    Display the result of a shell command.

    The border is green for success, red otherwise.
    """
    if result.success:
        border, title = "green", f"[green]✓[/green] {result.command}"
    else:
        border, title = "red", f"[red]✗[/red] {result.command}"

    console.print(Panel(
        result.output,
        title=title,
        border_style=border,
        box=box.ROUNDED
    ))

    details = [f"exit code: {result.exit_code}", f"duration: {result.duration_ms}ms", f"cwd: {result.cwd}"]
    if result.signal:
        details.append(f"signal: {result.signal}")
    if result.timed_out:
        details.append("timed out")
    console.print(f"[dim]{' | '.join(details)}[/dim]")
    if result.error:
        show_error(result.error)


# =============================================================================
# SUMMARY DISPLAY
# =============================================================================

def show_final_summary(plan: Optional[Plan]) -> None:
    """
    Display metrics for a plan that has run.

    Args:
        plan: The executed plan (None if planning never finished)
    """
    show_header("Summary")
    if plan is None:
        show_warning("No plan was executed")
        return

    metrics = plan.metrics
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Goal", plan.goal)
    table.add_row("Total steps", str(metrics.total))
    table.add_row("Completed", f"[green]{metrics.completed}[/green]")
    table.add_row("Failed", f"[red]{metrics.failed}[/red]" if metrics.failed else "0")
    table.add_row("Skipped", str(metrics.skipped))
    table.add_row("Parallel runs", str(metrics.parallel_runs))
    table.add_row("Success rate", f"{plan.success_rate:.0f}%")
    if plan.started_at and plan.ended_at:
        table.add_row("Duration", f"{(plan.ended_at - plan.started_at).total_seconds():.1f}s")
    console.print(table)

    first_error = plan.first_error()
    if first_error is not None:
        console.print(Panel(
            first_error.error or "unknown error",
            title=f"[red]First error: {first_error.id}[/red]",
            border_style="red",
            box=box.ROUNDED
        ))

    if plan.completed:
        show_success("Task completed")
    else:
        show_error("Task did not complete")


# =============================================================================
# CONVERSATIONS / CONFIG
# =============================================================================

def show_conversations(conversations: list[Conversation]) -> None:
    """Display stored conversations, newest first."""
    if not conversations:
        console.print("[dim]No conversations found.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Messages", justify="right")
    table.add_column("Model")
    table.add_column("Updated", style="dim")
    table.add_column("First message")

    for conversation in conversations:
        first_user = next((m.content for m in conversation.messages if m.role == Role.USER), "")
        preview = first_user[:50] + "..." if len(first_user) > 50 else first_user
        table.add_row(
            conversation.id,
            str(len(conversation.messages)),
            conversation.metadata.model or "-",
            conversation.metadata.updated.strftime("%Y-%m-%d %H:%M"),
            preview,
        )

    console.print(table)


def show_config(config: Config) -> None:
    """Display the effective configuration as YAML."""
    console.print(Panel(
        yaml.safe_dump(config.to_dict(), sort_keys=False).rstrip(),
        title="[bold]Configuration[/bold]",
        border_style="blue",
        box=box.ROUNDED
    ))
