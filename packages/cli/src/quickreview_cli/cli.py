"""CLI entry point for quickreview.

Commands:
  review   — review one or more PR/MR URLs and publish the results
  history  — display publish records from the configured store
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler

from quickreview_cli.commands.history import history_cmd
from quickreview_cli.commands.review import review_cmd

console = Console()


def _build_store(config: dict):
    """Instantiate the configured store from .quickreview.yml settings.

    Store selection:
      store: sqlite → SQLiteStore (store_path, default .quickreview.db)
      store: gist   → GistStore  (requires gist_id and a GitHub token)
      store: memory → MemoryStore (nothing survives the process)

    This factory lives in cli.py so neither quickreview_core nor
    quickreview_store know about the CLI config format.
    """
    store_type = config.get("store", "sqlite")
    lock_timeout = config.get("lock_timeout")

    if store_type == "sqlite":
        from quickreview_store.sqlite import SQLiteStore

        return SQLiteStore(db_path=config.get("store_path") or ".quickreview.db", lock_timeout=lock_timeout)

    if store_type == "gist":
        from quickreview_store.gist import GistStore

        gist_id = config.get("gist_id")
        token = config.get("github_token")
        if not gist_id or not token:
            raise click.UsageError("store: gist requires gist_id in the config file and a GitHub token.")
        return GistStore(gist_id=gist_id, token=token, lock_timeout=lock_timeout)

    if store_type == "memory":
        from quickreview_store.memory import MemoryStore

        console.print("[yellow]Using the in-memory store: publish records are not kept after this run.[/yellow]")
        return MemoryStore(lock_timeout=lock_timeout)

    raise click.UsageError(f"Unknown store {store_type!r}. Choose 'sqlite', 'gist' or 'memory'.")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose)],
        force=True,
    )
    # The SDKs' own HTTP logging drowns out ours at DEBUG.
    for noisy in ("urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@click.group()
@click.version_option(
    version=importlib.metadata.version("quickreview"),
    prog_name="quickreview",
)
@click.option(
    "--config",
    "config_path",
    default=".quickreview.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="QUICKREVIEW_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Log every stage, retry and API call.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Review GitHub pull requests and GitLab merge requests with an AI assistant."""
    from quickreview_cli.auth import resolve_github_token
    from quickreview_core.config import load_config

    _setup_logging(verbose)
    ctx.ensure_object(dict)

    try:
        config = load_config(config_path)
    except (ValueError, OSError, yaml.YAMLError) as e:
        raise click.UsageError(str(e)) from e

    # Resolve token early so all subcommands share the same resolution.
    token = resolve_github_token()
    if token:
        config["github_token"] = token

    store = _build_store(config)
    ctx.obj["store"] = store
    ctx.obj["config"] = config
    ctx.call_on_close(store.close)


main.add_command(review_cmd)
main.add_command(history_cmd)
