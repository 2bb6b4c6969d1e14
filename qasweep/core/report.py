"""Render a finished run's results for the terminal."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


SEVERITY_ORDER = ["critical", "high", "medium", "low", "info"]
SEVERITY_COLORS = {"critical": "red bold", "high": "red", "medium": "yellow", "low": "cyan", "info": "dim"}


def _short(url: str, width: int) -> str:
    url = url.replace("https://", "").replace("http://", "")
    return url if len(url) <= width else url[:width - 3] + "..."


def _issue_summary(issue: dict) -> str:
    if issue.get("message"):
        return issue["message"]
    details = issue.get("details") or {}
    return details.get("message") or details.get("href") or details.get("type") or ""


def print_report(results: dict, progress: dict | None = None, console: Console | None = None):
    """Print a run report from a results snapshot (``TestResults.to_dict`` shape)."""
    console = console or Console()

    duration = ""
    if results.get("duration") is not None:
        duration = f" in {results['duration'] / 1000:.1f}s"

    header = Text()
    header.append("\n QA Sweep Report\n", style="bold")
    header.append(f" {results.get('testId', '')}\n", style="dim")
    header.append(f" {len(results.get('urls', []))} URL(s) tested{duration}\n", style="dim")
    if progress:
        header.append(f" {progress.get('status', '')}\n", style="dim")
    console.print(Panel(header, border_style="blue"))
    console.print()

    if results.get("error"):
        console.print(f"  [red bold]Run error:[/red bold] {results['error']}\n")

    # Per-URL overview
    url_table = Table(show_header=True, header_style="bold", padding=(0, 1))
    url_table.add_column("URL", max_width=50)
    url_table.add_column("Issues", width=7, justify="right")
    url_table.add_column("Screens", width=8, justify="center")
    url_table.add_column("Load", width=8, justify="right")
    url_table.add_column("Status", min_width=10)

    for url_result in results.get("urls", []):
        url = url_result.get("url", "")
        shots = [s for s in results.get("screenshots", []) if s.get("url") == url]
        load = (url_result.get("metrics") or {}).get("loadComplete")
        if load:
            load_style = "green" if load < 3000 else "yellow" if load < 5000 else "red"
            load_str = f"[{load_style}]{load}ms[/{load_style}]"
        else:
            load_str = "—"
        status = Text("error", style="red") if url_result.get("error") else Text("ok", style="green")
        url_table.add_row(
            _short(url, 50),
            str(len(url_result.get("issues", []))),
            ", ".join(s.get("type", "") for s in shots) or "—",
            load_str,
            status,
        )

    console.print(url_table)
    console.print()

    issues = results.get("issues", [])
    if not issues:
        console.print("  [green bold]No issues found.[/green bold]\n")
    else:
        by_severity: dict[str, int] = {}
        for issue in issues:
            by_severity[issue.get("severity", "info")] = by_severity.get(issue.get("severity", "info"), 0) + 1
        summary_parts = []
        for sev in SEVERITY_ORDER:
            if sev in by_severity:
                color = SEVERITY_COLORS[sev]
                summary_parts.append(f"[{color}]{by_severity[sev]} {sev}[/{color}]")
        console.print(f"  Issues found: {', '.join(summary_parts)}\n")

        table = Table(show_header=True, header_style="bold", padding=(0, 1))
        table.add_column("Severity", width=9)
        table.add_column("Type", width=18)
        table.add_column("Issue", min_width=40)
        table.add_column("Page", max_width=35)

        rank = {sev: i for i, sev in enumerate(SEVERITY_ORDER)}
        for issue in sorted(issues, key=lambda i: rank.get(i.get("severity"), len(rank))):
            severity = issue.get("severity", "info")
            table.add_row(
                Text(severity, style=SEVERITY_COLORS.get(severity, "white")),
                issue.get("type", ""),
                _issue_summary(issue)[:80],
                _short(issue.get("url", ""), 35),
            )
        console.print(table)
        console.print()

    ai_reports = results.get("aiReports") or {}
    for url, report in ai_reports.items():
        for kind in ("visual", "technical"):
            entry = report.get(kind) or {}
            if entry.get("error"):
                console.print(f"  [yellow]{kind.title()} AI report for {_short(url, 60)} failed:[/yellow] {entry['error']}")
            elif entry.get("content"):
                console.print(Panel(entry["content"], title=f"{kind.title()} AI report: {_short(url, 60)}",
                                    border_style="magenta"))
    if ai_reports:
        console.print()
