"""
CLI for ranking workspace files against a query.
"""

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from .config import Config, get_config, load_config, set_config
from .errors import InvalidQueryError, TotalChannelFailureError
from .files import collect_candidates
from .init import init_logging
from .ranking.types import RankedFile
from .service import RankingService

logger = logging.getLogger(__name__)

console = Console()


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Read configuration from this TOML file only.",
)
def main(verbose: bool = False, config_path: Path | None = None):
    """Rank source files by relevance to a query."""
    init_logging(verbose)
    if config_path is not None:
        set_config(load_config(config_path))


def _print_table(results: list[RankedFile], query: str) -> None:
    table = Table(title=f"Results for {query!r}")
    table.add_column("#", justify="right")
    table.add_column("File", no_wrap=True)
    table.add_column("Score", justify="right")
    table.add_column("Class")
    table.add_column("Lex", justify="right")
    table.add_column("Struct", justify="right")
    table.add_column("Emb", justify="right")
    table.add_column("Gen", justify="right")
    table.add_column("Matches")

    def fmt(signal) -> str:
        return f"{signal.value:.2f}" if signal.available else "-"

    for i, result in enumerate(results, 1):
        score = result.score
        table.add_row(
            str(i),
            result.file,
            f"{score.score_percentage}%" + (" ⚡" if score.has_synergy else ""),
            score.classification or "",
            fmt(score.lexical),
            fmt(score.structural),
            fmt(score.embedding),
            fmt(score.generative),
            ", ".join(score.matches[:3]),
        )
    console.print(table)


async def _rank(
    config: Config,
    query: str,
    paths: list[Path],
    entry_point: str | None,
    batch_size: int | None,
    save: bool,
) -> list[RankedFile]:
    candidates = collect_candidates(paths or [Path.cwd()])
    async with RankingService(config) as service:
        results = await service.search(query, candidates, entry_point, batch_size)
        if save:
            record = service.engine.save_results(
                query, config.project_name, results, entry_point
            )
            logger.info(f"Saved results as {record.id}")
    return results


@main.command()
@click.argument("query")
@click.argument(
    "paths", nargs=-1, type=click.Path(exists=True, path_type=Path)
)
@click.option("-e", "--entry-point", help="Entry point file of the workflow.")
@click.option("-b", "--batch-size", type=click.IntRange(min=1), help="Files per batch.")
@click.option("-n", "--top", type=click.IntRange(min=1), default=20, show_default=True)
@click.option("-p", "--project", help="Project name for caching and saved results.")
@click.option("--no-embedding", is_flag=True, help="Disable the embedding channel.")
@click.option("--no-generative", is_flag=True, help="Disable the generative channel.")
@click.option("--json", "as_json", is_flag=True, help="Output results as JSON.")
@click.option("--save", is_flag=True, help="Save results for later inspection.")
def rank(
    query: str,
    paths: tuple[Path, ...],
    entry_point: str | None,
    batch_size: int | None,
    top: int,
    project: str | None,
    no_embedding: bool,
    no_generative: bool,
    as_json: bool,
    save: bool,
):
    """Rank files in PATHS (default: the working directory) for QUERY."""
    config = get_config()
    if project:
        config.project_name = project
    if no_embedding:
        config.models.enable_embedding = False
    if no_generative:
        config.models.enable_generative = False

    try:
        results = asyncio.run(
            _rank(config, query, list(paths), entry_point, batch_size, save)
        )
    except InvalidQueryError as e:
        click.echo(f"Invalid query: {e}", err=True)
        sys.exit(1)
    except TotalChannelFailureError as e:
        click.echo(f"Ranking unavailable: {e}", err=True)
        for channel, reason in e.reasons.items():
            click.echo(f"  {channel}: {reason}", err=True)
        sys.exit(1)

    results = results[:top]
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in results], indent=2))
    elif not results:
        click.echo("No matching files")
    else:
        _print_table(results, query)


def _results_store():
    config = get_config()
    return config, RankingService(config).results


@main.group()
def results():
    """Commands for saved search results."""
    pass


@results.command("list")
@click.argument("project", required=False)
def results_list(project: str | None):
    """List saved searches of PROJECT (default: the current project)."""
    config, store = _results_store()
    project = project or config.project_name
    records = store.list_by_project(project)
    if not records:
        click.echo(f"No saved searches for {project}")
        return
    for record in records:
        when = datetime.fromtimestamp(record.timestamp).strftime("%Y-%m-%d %H:%M")
        click.echo(f"{record.id}  {when}  {record.keyword!r} ({len(record.results)} files)")


@results.command("show")
@click.argument("search_id")
def results_show(search_id: str):
    """Show a saved search as JSON."""
    _, store = _results_store()
    record = store.get(search_id)
    if record is None:
        click.echo(f"No saved search {search_id}", err=True)
        sys.exit(1)
    click.echo(json.dumps(record.to_dict(), indent=2))


@results.command("delete")
@click.argument("search_id")
def results_delete(search_id: str):
    """Delete a saved search."""
    _, store = _results_store()
    if not store.delete(search_id):
        click.echo(f"No saved search {search_id}", err=True)
        sys.exit(1)
    click.echo(f"Deleted {search_id}")


@main.group()
def cache():
    """Commands for the embedding cache."""
    pass


@cache.command("stats")
def cache_stats():
    """Show embedding cache statistics."""
    config = get_config()
    stats = RankingService(config).cache.stats()
    click.echo(f"Backend: {config.cache.backend}")
    click.echo(f"Entries: {stats['entries']}")
    click.echo(f"Size: {stats['bytes'] / 1024:.1f} KiB")
    if stats["oldest"] is not None:
        oldest = datetime.fromtimestamp(stats["oldest"]).strftime("%Y-%m-%d %H:%M")
        click.echo(f"Oldest entry: {oldest}")


@cache.command("clean")
@click.option("--max-age-days", type=click.IntRange(min=0), help="Remove entries older than this.")
def cache_clean(max_age_days: int | None):
    """Remove old cached embeddings and saved searches."""
    config = get_config()
    days = config.cache.max_age_days if max_age_days is None else max_age_days
    service = RankingService(config)
    removed = service.cache.clean_old(days) + service.results.clean_old(days)
    click.echo(f"Removed {removed} entries older than {days} days")
