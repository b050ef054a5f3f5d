"""Renderers for displaying installation results in the CLI using Rich."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable, Mapping

from rich import box
from rich.console import Console, Group, RenderableType
from rich.panel import Panel
from rich.table import Table

from brewhouse.formula.tab import Tab
from brewhouse.install.context import RunContext

console = Console()


def source_to_str(tab: Tab) -> str:
    """Describe where an installed keg came from, with color coding.

    Args:
        tab: The installation record of the keg.

    Returns:
        A short colored label.
    """
    if tab.poured_from_bottle:
        return "[green]Bottle[/green]"
    if tab.built_as_bottle:
        return "[cyan]Built as bottle[/cyan]"
    return "[yellow]Source[/yellow]"


def records_table(records: Mapping[str, Tab]) -> Table:
    """Create a Rich Table of the installation records of one run.

    Args:
        records: Installation records keyed by formula name.

    Returns:
        A Rich Table with one row per installed formula.
    """
    table = Table(box=box.MINIMAL_HEAVY_HEAD)
    table.add_column("Name", style="bold")
    table.add_column("From")
    table.add_column("Options")
    table.add_column("Reason")
    table.add_column("Runtime Dependencies", style="dim")
    table.add_column("Installed On", style="dim")

    for name, tab in records.items():
        reason = "requested" if tab.installed_on_request else "dependency"
        runtime = ", ".join(d["full_name"] for d in tab.runtime_dependencies or [])
        installed_on = datetime.fromtimestamp(tab.time).isoformat(timespec="seconds") if tab.time else ""
        table.add_row(
            name,
            source_to_str(tab),
            " ".join(f"--{o}" for o in tab.used_options),
            reason,
            runtime,
            installed_on,
        )
    return table


def fetched_table(fetched: Mapping[str, Path]) -> Table:
    table = Table(box=box.MINIMAL_HEAVY_HEAD)
    table.add_column("Name", style="bold")
    table.add_column("Artifact")
    for name, path in fetched.items():
        table.add_row(name, str(path))
    return table


def messages_panel(title: str, lines: Iterable[str], style: str) -> Panel | None:
    lines = list(lines)
    if not lines:
        return None
    return Panel("\n".join(lines), title=title, border_style=style, box=box.ROUNDED)


def install_summary(context: RunContext, verbose: bool = False) -> Group:
    """Everything shown after an install: records, summaries and messages.

    Args:
        context: The finished run.
        verbose: Also show the per-keg summary lines.

    Returns:
        A Rich Group of the non-empty sections.
    """
    parts: list[RenderableType] = []
    if context.records:
        parts.append(records_table(context.records))
    if verbose:
        summaries = messages_panel("Summary", (f"🍺  {s}" for s in context.summaries), "green")
        if summaries:
            parts.append(summaries)

    sections = (
        messages_panel("Warnings", context.warnings, "yellow"),
        messages_panel("Requirements", context.requirement_messages, "yellow"),
        messages_panel(
            "Caveats",
            (f"[bold]{name}[/bold]\n{text}" for name, text in context.caveats.items()),
            "blue",
        ),
    )
    parts.extend(p for p in sections if p is not None)
    return Group(*parts)
