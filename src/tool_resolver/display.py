# display.py
# All terminal output for the tool-resolver CLI.
#
# This module owns presentation entirely. The engine never formats
# strings for the user; run.py calls named functions here.
#
# Colour language:
#   cyan    — requests and routing
#   yellow  — skipped tiers, quarantine
#   green   — success
#   red     — failures and fallback

import json
import logging

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from tool_resolver.models import (
    ActionRequest,
    AttemptOutcome,
    ResolutionResult,
    ToolManifest,
)

console = Console()

_OUTCOME_STYLE = {
    AttemptOutcome.SUCCESS: "[bold green]✓ success[/bold green]",
    AttemptOutcome.FAILURE: "[bold red]✗ failure[/bold red]",
    AttemptOutcome.SKIPPED: "[yellow]– skipped[/yellow]",
}


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


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
    )


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def request_received(request: ActionRequest) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[bold white]{request.action_name}[/bold white]  "
            f"[dim]{json.dumps(request.parameters, default=str)}[/dim]\n"
            f"[dim]Platform:[/dim] [white]{request.context.platform}[/white]",
            title=_label("ACTION", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def attempts_table(result: ResolutionResult) -> None:
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Tier", width=16)
    table.add_column("Outcome", width=12)
    table.add_column("Error", width=18)
    table.add_column("Message", style="dim white")

    for attempt in result.attempts:
        table.add_row(
            attempt.tier.label,
            _OUTCOME_STYLE[attempt.outcome],
            attempt.error_class.value if attempt.error_class else "",
            _mono(attempt.message, 60),
        )

    console.print(
        Panel(
            table,
            title="[dim]TIER ATTEMPTS[/dim]",
            subtitle=f"[dim]signature {result.signature[:16]}…[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


def resolution_result(result: ResolutionResult) -> None:
    console.print()
    if result.success:
        tier = result.tier.label if result.tier is not None else "?"
        console.print(
            Panel(
                f"[white]{result.output or 'Done.'}[/white]",
                title=_label(f"RESOLVED VIA {tier.upper()} ✓", "green"),
                border_style="green",
                padding=(1, 2),
            )
        )
        return

    fallback = result.fallback
    if fallback is None:
        return
    steps = "\n".join(f"  • {step}" for step in fallback.suggested_user_actions)
    console.print(
        Panel(
            f"[bold white]{fallback.remediation_message}[/bold white]\n\n[white]{steps}[/white]",
            title=_label(f"FALLBACK: {fallback.classification.value.upper()}", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Catalog and cache
# ---------------------------------------------------------------------------


def catalog_table(manifests: list[ToolManifest]) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("Action", style="bold white")
    table.add_column("Kind", width=16)
    table.add_column("Source", width=14)
    table.add_column("Parameters", style="dim white")
    table.add_column("Description", style="white")

    for manifest in manifests:
        table.add_row(
            manifest.action_name,
            manifest.kind.label,
            manifest.source_discoverer,
            ", ".join(manifest.required_parameters()),
            _mono(manifest.description, 50),
        )

    console.print(
        Panel(
            table,
            title=_label("TOOL CATALOG", "cyan"),
            subtitle=f"[dim]{len(manifests)} manifest(s)[/dim]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


def cache_stats(stats: dict) -> None:
    console.print()
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold white")
    for key, value in stats.items():
        shown = f"{value:.1%}" if isinstance(value, float) else str(value)
        table.add_row(key.replace("_", " "), shown)
    console.print(
        Panel(table, title=_label("SCRIPT CACHE", "yellow"), border_style="yellow", padding=(0, 1))
    )


def cleanup_done(evicted: list[str]) -> None:
    if evicted:
        console.print(f"[yellow]Evicted {len(evicted)} idle script(s).[/yellow]")
    else:
        console.print("[green]No idle scripts to evict.[/green]")


def cleanup_watching(interval: float) -> None:
    console.print(f"[dim]Sweeping every {interval:g}s. Press Ctrl+C to stop.[/dim]")
