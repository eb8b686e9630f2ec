"""review command — review PR/MR URLs and publish the results."""

from __future__ import annotations

import click
from rich.console import Console

from quickreview_core.diff import get_patch_line_content
from quickreview_core.errors import InvalidTarget
from quickreview_core.models import AlreadyPublished, Failed, Platform, Previewed, Published, RunOutcome, Verdict
from quickreview_core.pipeline import check_assistant_config, run_many
from quickreview_core.pr_url import parse_pr_url

console = Console()

_VERDICT_STYLE = {
    Verdict.APPROVE: "green",
    Verdict.REQUEST_CHANGES: "red",
    Verdict.COMMENT_ONLY: "yellow",
}


def print_preview(outcome: Previewed) -> None:
    """Print a review to the terminal without posting it."""
    result = outcome.result
    style = _VERDICT_STYLE[result.verdict]
    console.print(f"\n[bold]Dry run — {outcome.url}[/bold]  [{style}]{result.verdict.value}[/{style}]\n")
    console.print(result.summary)
    console.print()
    for c in result.comments:
        console.print(f"[bold cyan]{c.file}[/bold cyan]  line [bold]{c.line}[/bold]")
        change = outcome.target.file(c.file)
        code = get_patch_line_content(change.patch, c.line).strip() if change is not None else ""
        if code:
            console.print(f"  [dim]{code}[/dim]")
        console.print(f"  {c.body}")
        console.print()
    for d in result.dropped:
        console.print(f"[dim]dropped ({d.reason}): {d.file}:{d.line}[/dim]")


def print_outcome(outcome: RunOutcome) -> None:
    if isinstance(outcome, Published):
        posted = len(outcome.record.posted_comments) if outcome.record is not None else 0
        console.print(f"[green]✓[/green] {outcome.url}: published summary {outcome.summary_id} and {posted} comment(s)")
        if not outcome.recorded:
            console.print("  [yellow]The publish record could not be saved; a re-run may post again.[/yellow]")
    elif isinstance(outcome, AlreadyPublished):
        recorded_at = outcome.record.recorded_at[:19].replace("T", " ")
        console.print(f"[dim]= {outcome.url}: already published ({recorded_at})[/dim]")
    elif isinstance(outcome, Previewed):
        print_preview(outcome)
    elif isinstance(outcome, Failed):
        stage = outcome.stage.value if outcome.stage is not None else "?"
        console.print(f"[red]✗[/red] {outcome.url}: failed at {stage} ({outcome.reason}): {outcome.error}")
        if outcome.detail:
            console.print(f"  [dim]{outcome.detail}[/dim]")


@click.command("review")
@click.argument("urls", nargs=-1, required=True)
@click.option(
    "--assistant",
    type=click.Choice(["anthropic", "openai"]),
    default=None,
    help="AI assistant backend. Overrides config file.",
)
@click.option("--model", default=None, help="Model name for the assistant. Overrides config file.")
@click.option(
    "--project-path",
    type=click.Path(exists=True, file_okay=False),
    default=None,
    help="Existing working copy the assistant may read. Overrides config file.",
)
@click.option(
    "--prompt-template",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="File overriding the built-in user prompt. Overrides config file.",
)
@click.option("--checkout", is_flag=True, help="Fetch the PR head into a temporary working copy.")
@click.option("--dry-run", "-n", "dry_run", is_flag=True, help="Print the review without posting or recording it.")
@click.option("--workers", type=click.IntRange(min=1), default=None, help="Number of PRs reviewed in parallel.")
@click.option("--skip-reviewed", is_flag=True, help="Skip PRs whose head commit was already reviewed.")
@click.pass_context
def review_cmd(
    ctx,
    urls: tuple[str, ...],
    assistant: str | None,
    model: str | None,
    project_path: str | None,
    prompt_template: str | None,
    checkout: bool,
    dry_run: bool,
    workers: int | None,
    skip_reviewed: bool,
):
    """Review pull/merge requests and post the results.

    URLS are GitHub pull request or GitLab merge request URLs.

    \b
    Required environment variables:
      GITHUB_TOKEN         GitHub token for github.com URLs (or use gh CLI)
      ANTHROPIC_API_KEY    Required when using --assistant anthropic
      OPENAI_API_KEY       Required when using --assistant openai
    GitLab credentials come from the python-gitlab config file.
    """
    config = dict(ctx.obj["config"])
    store = ctx.obj["store"]

    overrides = {
        "assistant": assistant,
        "model": model,
        "project_path": project_path,
        "prompt_template": prompt_template,
        "max_workers": workers,
    }
    config.update({k: v for k, v in overrides.items() if v is not None})
    # Flags only ever switch behaviour on; the config file decides otherwise.
    if checkout:
        config["checkout"] = True
    if dry_run:
        config["dry_run"] = True
    if skip_reviewed:
        config["skip_reviewed_heads"] = True

    try:
        targets = [parse_pr_url(u, config["github_hosts"], config["gitlab_hosts"]) for u in urls]
    except InvalidTarget as e:
        raise click.BadParameter(str(e), param_hint="URLS") from e

    if any(t.platform is Platform.GITHUB for t in targets) and not config.get("github_token"):
        raise click.UsageError(
            "No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.\n"
            "Create a token at https://github.com/settings/tokens"
        )
    if config["assistant"] == "anthropic" and not config.get("anthropic_api_key"):
        raise click.UsageError("ANTHROPIC_API_KEY environment variable is not set.")
    if config["assistant"] == "openai" and not config.get("openai_api_key"):
        raise click.UsageError("OPENAI_API_KEY environment variable is not set.")
    try:
        check_assistant_config(config)
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    with console.status(f"Reviewing {len(urls)} pull request(s)..."):
        outcomes = run_many(list(urls), config, store, max_workers=config.get("max_workers"))

    for outcome in outcomes:
        print_outcome(outcome)

    failed = [o for o in outcomes if not o.ok]
    if failed:
        console.print(f"\n[red]{len(failed)} of {len(outcomes)} review(s) failed.[/red]")
        ctx.exit(1)
