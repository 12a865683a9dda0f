"""uks CLI — knowledge graph backed by JSONL files.

Commands:
    uks init [NAME]                  create uks.toml + storage dir
    uks add-entity NAME [TYPE] -o …  create or merge an entity
    uks link FROM RELATION TO        add a relation between existing entities
    uks search QUERY [--semantic]    keyword (default) or embedding search
    uks dump                         print the whole graph
    uks undo                         restore the snapshot before the last write
    uks ingest PATTERN               batch-ingest JSON files
    uks embed [--force]              backfill vectors for all entities
    uks contexts                     list contexts with a graph file
    uks serve                        start stdio MCP server
"""

from __future__ import annotations

import functools
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click

from uks.config import init_config, load_config
from uks.container import Container, create_container
from uks.errors import UksError
from uks.validation import DEFAULT_CONTEXT

if TYPE_CHECKING:
    from collections.abc import Callable

F = TypeVar("F", bound="Callable[..., Any]")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _container(ctx: click.Context) -> Container:
    obj = ctx.ensure_object(dict)
    if "container" not in obj:
        try:
            obj["container"] = create_container(load_config(obj.get("root")))
        except UksError as exc:
            raise click.ClickException(f"[{exc.code}] {exc}") from exc
    return obj["container"]  # type: ignore[no-any-return]


def _handle_errors(fn: F) -> F:
    """Turn store errors into a clean CLI failure carrying the error code."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except UksError as exc:
            raise click.ClickException(f"[{exc.code}] {exc}") from exc

    return wrapper  # type: ignore[return-value]


def _context_option(fn: F) -> F:
    return click.option(
        "--context", "-c", "graph_context", default=DEFAULT_CONTEXT, show_default=True,
        help="Graph context (namespace)",
    )(fn)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="uks")
@click.option("--root", default=None, help="Project root (default: search upward for uks.toml)")
@click.option("-v", "--verbose", count=True, help="-v for info logs, -vv for debug")
@click.pass_context
def cli(ctx: click.Context, root: str | None, verbose: int) -> None:
    """uks — file-resident knowledge graph."""
    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    ctx.ensure_object(dict)["root"] = root


# ---------------------------------------------------------------------------
# uks init
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("name", required=False)
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
def init(name: str | None, root: str) -> None:
    """Create uks.toml and the storage directory."""
    root_path = Path(root).resolve()
    try:
        config_path = init_config(root_path, name=name)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("uks.toml already exists — skipping init")
    cfg = load_config(root_path)
    cfg.ensure_dirs()
    click.echo(f"Storage : {cfg.storage_path}")


# ---------------------------------------------------------------------------
# uks add-entity / uks link
# ---------------------------------------------------------------------------


@cli.command("add-entity")
@click.argument("name")
@click.argument("entity_type", required=False)
@click.option("--observation", "-o", "observations", multiple=True, help="Repeat for several")
@_context_option
@click.pass_context
@_handle_errors
def add_entity(
    ctx: click.Context, name: str, entity_type: str | None, observations: tuple[str, ...], graph_context: str,
) -> None:
    """Create an entity, or merge observations into an existing one."""
    entity_id = _container(ctx).store.add_entity(name, entity_type, list(observations), graph_context)
    click.echo(entity_id)


@cli.command()
@click.argument("from_", metavar="FROM")
@click.argument("relation")
@click.argument("to")
@_context_option
@click.pass_context
@_handle_errors
def link(ctx: click.Context, from_: str, relation: str, to: str, graph_context: str) -> None:
    """Add FROM -[RELATION]-> TO. Both entities must exist (name or id)."""
    created = _container(ctx).store.add_relation(from_, to, relation, graph_context)
    click.echo(f"Linked {from_} -[{relation}]-> {to}" if created else "Relation already exists")


# ---------------------------------------------------------------------------
# uks search / uks dump / uks contexts
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("query")
@click.option("--semantic", is_flag=True, help="Rank by embedding similarity instead of keywords")
@click.option("--limit", "-k", default=5, show_default=True, help="Results for --semantic")
@click.option("--json", "as_json", is_flag=True)
@_context_option
@click.pass_context
@_handle_errors
def search(ctx: click.Context, query: str, semantic: bool, limit: int, as_json: bool, graph_context: str) -> None:
    """Search entities by keyword (names + observations) or by meaning."""
    c = _container(ctx)
    if semantic:
        hits = c.vectors.search(query, top_k=limit)
        if as_json:
            click.echo(json.dumps([h.to_dict() for h in hits], indent=2))
            return
        if not hits:
            click.echo("(no results)")
        for h in hits:
            click.echo(f"{h.score:6.3f}  {h.id}  {h.text[:80]}")
        return

    result = c.store.search(query, graph_context)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    if not result.entities:
        click.echo("(no results)")
    for e in result.entities:
        click.echo(f"{e.name} [{e.entity_type}]  {e.id}")
        for obs in e.observations:
            click.echo(f"  - {obs}")
    for r in result.relations:
        click.echo(f"{r.from_name} -[{r.relation_type}]-> {r.to_name}")


@cli.command()
@click.option("--json", "as_json", is_flag=True)
@_context_option
@click.pass_context
@_handle_errors
def dump(ctx: click.Context, as_json: bool, graph_context: str) -> None:
    """Print every entity and relation of a context."""
    graph = _container(ctx).store.get_all(graph_context)
    if as_json:
        click.echo(json.dumps(graph.to_dict(), indent=2))
        return

    from rich.console import Console
    from rich.table import Table

    console = Console()
    entities = Table(title=f"Entities ({graph_context})", show_header=True, header_style="bold")
    entities.add_column("Name", no_wrap=True)
    entities.add_column("Type", style="dim")
    entities.add_column("Observations")
    for e in graph.entities:
        entities.add_row(e.name, e.entity_type, "\n".join(e.observations))
    console.print(entities)

    relations = Table(title="Relations", show_header=True, header_style="bold")
    relations.add_column("From", no_wrap=True)
    relations.add_column("Relation", style="dim")
    relations.add_column("To", no_wrap=True)
    for r in graph.relations:
        relations.add_row(r.from_name, r.relation_type, r.to_name)
    console.print(relations)


@cli.command()
@click.pass_context
def contexts(ctx: click.Context) -> None:
    """List contexts that have a graph file."""
    for name in _container(ctx).store.list_contexts():
        click.echo(name)


# ---------------------------------------------------------------------------
# uks undo
# ---------------------------------------------------------------------------


@cli.command()
@_context_option
@click.pass_context
@_handle_errors
def undo(ctx: click.Context, graph_context: str) -> None:
    """Restore the snapshot taken before the last write."""
    restored = _container(ctx).store.undo(graph_context)
    click.echo(f"Restored {restored}")


# ---------------------------------------------------------------------------
# uks ingest / uks embed
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("pattern")
@click.option("--dry-run", is_flag=True, help="Preview without writing")
@click.option("--strict", is_flag=True, help="Schema-check every record")
@click.option("--json", "as_json", is_flag=True)
@_context_option
@click.pass_context
@_handle_errors
def ingest(
    ctx: click.Context, pattern: str, dry_run: bool, strict: bool, as_json: bool, graph_context: str,
) -> None:
    """Ingest files matching PATTERN (glob, ** allowed) in one transaction."""
    c = _container(ctx)
    report = c.ingest.ingest(
        pattern, dry_run=dry_run, strict=strict or c.config.ingest.strict, context=graph_context,
    )
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return
    click.echo(
        f"Files: {report.total_files}  processed: {report.processed}  "
        f"+{report.entities_added} entities  +{report.relations_added} relations"
    )
    for item in report.preview:
        ent = item["entity"]
        click.echo(f"  [dry-run] {ent['name']} ({ent['type']})  {len(item['relations'])} relations")
    for err in report.errors:
        click.echo(f"  error: {err['file']}: {err['error']}", err=True)


@cli.command()
@click.option("--force", is_flag=True, help="Re-embed entities that already have vectors")
@_context_option
@click.pass_context
@_handle_errors
def embed(ctx: click.Context, force: bool, graph_context: str) -> None:
    """Backfill embeddings for every entity of a context."""
    c = _container(ctx)
    n = c.vectors.embed_all(c.store.get_all(graph_context), force=force)
    click.echo(f"Embedded {n} entities")


# ---------------------------------------------------------------------------
# uks serve
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Start stdio MCP server."""
    from uks.mcp import run_server

    root = ctx.ensure_object(dict).get("root")
    run_server(Path(root).resolve() if root else None)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    cli(standalone_mode=True)


if __name__ == "__main__":
    main()
