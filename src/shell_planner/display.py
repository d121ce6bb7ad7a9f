# display.py
# All terminal output for the plan execution engine.
#
# This module owns presentation entirely. harness.py never formats strings —
# it calls named functions here. Swap this file to change the entire UI.
#
# Colour language:
#   cyan    — session / routing events
#   blue    — model calls
#   yellow  — facts entering the fact table
#   green   — success / confirmed
#   red     — failures, halts
#   magenta — per-step execution

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from shell_planner.models import Plan, Step

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Session entry
# ---------------------------------------------------------------------------


def banner(model: str, os_name: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Shell Planner[/bold cyan]\n"
            "[dim]Natural-language tasks → shell command plans → execution[/dim]\n\n"
            f"[dim]Model :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]OS    :[/dim] [white]{escape(os_name)}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(query: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW QUERY[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(query)}[/white]",
            title=_label("TASK", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def facts_seeded(facts: dict[str, str]) -> None:
    for name, value in facts.items():
        console.print(
            _label("FACT", "yellow"),
            f"[yellow] from query:[/yellow] [bold white]{name}[/bold white] = {escape(value)}",
        )


def calling_model() -> None:
    console.print()
    console.print(_label("SESSION", "blue"), "[blue] → Generating plan…[/blue]")


# ---------------------------------------------------------------------------
# Plan display
# ---------------------------------------------------------------------------


def plan_parsed(plan: Plan, explanation: str) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("Step", justify="center", width=6)
    table.add_column("Action", style="bold white", width=10)
    table.add_column("Command", style="dim white", width=40)
    table.add_column("Purpose", style="white")

    for step in plan.steps:
        table.add_row(
            str(step.step),
            escape(step.action_type),
            escape(_mono(step.command or "-", 38)),
            escape(step.purpose or "N/A"),
        )

    console.print(
        Panel(
            table,
            title=_label("PLAN PARSED", "cyan"),
            subtitle=f"[dim]{escape(_mono(explanation, 100))}[/dim]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Execution loop
# ---------------------------------------------------------------------------


def execution_start(total: int) -> None:
    console.print()
    console.print(Rule(f"[magenta]EXECUTION — {total} step(s)[/magenta]", style="magenta"))


def step_start(step: Step) -> None:
    purpose = escape((step.purpose or "N/A").lower())
    console.print()
    console.print(f"[bold magenta]  STEP {step.step}[/bold magenta]  [white]{purpose}[/white]")


def step_skipped(reason: str) -> None:
    console.print(f"  [dim]↷ Skipped — {escape(reason)}[/dim]")


def executing(command: str) -> None:
    console.print(f"  [magenta]Run[/magenta]      [bold white]{escape(command)}[/bold white]")


def step_output(output: str) -> None:
    text = output.strip() or "(no output)"
    console.print(
        Panel(
            escape(text),
            title="[dim]OUTPUT[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


def fact_discovered(name: str, value: str) -> None:
    console.print(
        f"  [bold yellow]✓ Discovered[/bold yellow] [white]{name}[/white] = [yellow]{escape(value)}[/yellow]"
    )


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(result)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


def failure_report(report: str) -> None:
    console.print(
        Panel(
            f"[white]{escape(report)}[/white]",
            title=_label("FAILED", "red"),
            border_style="red",
            padding=(1, 2),
        )
    )
    console.print()
