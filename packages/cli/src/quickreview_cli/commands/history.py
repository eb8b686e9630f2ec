"""history command — display publish records from the store."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

console = Console()

_VERDICT_STYLE = {
    "approve": "green",
    "comment-only": "yellow",
    "request-changes": "red",
}


@click.command("history")
@click.option("--repo", required=True, help="Repository path (owner/name or group/project).")
@click.option("--pr", "pr_number", type=int, default=None, help="Filter by PR/MR number.")
@click.option("--limit", default=20, show_default=True, help="Maximum number of records to show.")
@click.pass_context
def history_cmd(ctx, repo: str, pr_number: int | None, limit: int):
    """Show what quickreview has published for a repository.

    Partial records are publications where some line comments could not be
    posted; re-running the review completes them.
    """
    from quickreview_store.base import StoreError

    store = ctx.obj["store"]
    try:
        records = store.list_records(repo, pr_number=pr_number)
    except StoreError as e:
        raise click.ClickException(str(e)) from e

    if not records:
        console.print("[yellow]No publish records found.[/yellow]")
        return

    # Show most recent first, capped at --limit.
    records = list(reversed(records))[:limit]

    table = Table(title=f"Publish History — {repo}", show_header=True, header_style="bold cyan")
    table.add_column("PR", style="bold", width=8)
    table.add_column("Platform", width=8)
    table.add_column("Status", width=10)
    table.add_column("Verdict", width=16)
    table.add_column("SHA", width=8)
    table.add_column("Comments", justify="right", width=10)
    table.add_column("Recorded At", width=20)

    for r in records:
        verdict_style = _VERDICT_STYLE.get(r.verdict, "white")
        comments = str(len(r.posted_comments))
        if r.failed_comments:
            comments += f" [red](+{len(r.failed_comments)} failed)[/red]"
        table.add_row(
            f"#{r.pr_number}",
            r.platform,
            r.status if r.complete else f"[yellow]{r.status}[/yellow]",
            f"[{verdict_style}]{r.verdict}[/{verdict_style}]",
            r.head_sha[:7],
            comments,
            r.recorded_at[:19].replace("T", " "),
        )

    console.print(table)
