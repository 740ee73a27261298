"""CLI entry point for the avatar knowledge engine."""

import asyncio
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from .config import DEFAULT_CONFIG, load_config

console = Console()

DEFAULT_OWNER = "local"


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@click.group()
@click.option("--config", "-c", "config_path", default=None, help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path, verbose):
    """Avatar Knowledge Engine - ingest, retrieve and remember for your avatar."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    _setup_logging(verbose)


def _get_config(ctx) -> dict:
    return load_config(ctx.obj.get("config_path"))


def _engine(ctx):
    from .container import build_engine
    return build_engine(_get_config(ctx))


def _owner_option(f):
    return click.option("--owner", "-o", default=DEFAULT_OWNER, show_default=True, help="Owner id")(f)


@cli.command()
@click.option("--path", default=None, help="Custom data directory")
def init(path):
    """Create the data directories and a starter config.yaml."""
    import yaml

    root = Path(path).expanduser().resolve() if path else Path("~/.ake").expanduser()
    console.print(f"[bold green]Initializing AKE at {root}[/]")
    for d in ["objects", "drop", "chroma"]:
        (root / d).mkdir(parents=True, exist_ok=True)

    config_file = root / "config.yaml"
    if config_file.exists():
        console.print(f"  [dim]Config already exists: {config_file}[/]")
        return

    cfg = dict(DEFAULT_CONFIG)
    cfg["db_path"] = str(root / "ake.db")
    cfg["chroma_path"] = str(root / "chroma")
    cfg["objects_path"] = str(root / "objects")
    cfg["drop_path"] = str(root / "drop")
    header = (
        "# Claude API key (or set ANTHROPIC_API_KEY env var)\n"
        "# claude_api_key: sk-ant-your-key-here\n\n"
        "# storage_backend: exact (in-process scan) or chromadb (ANN index)\n"
        "# embedding_provider: sentence-transformers or hash (offline)\n\n"
    )
    config_file.write_text(header + yaml.dump(cfg, default_flow_style=False))
    console.print(f"  Created config: {config_file}")


async def _ingest_paths(engine, owner, paths, source, source_id):
    from .ingest.parsers import UnsupportedFileType
    from .watcher import stage_file

    results = []
    for p in paths:
        try:
            if source:
                text = p.read_text(encoding="utf-8", errors="replace")
                result = await engine.ingestion.ingest_document(
                    owner, source, source_id or str(p), text, title=p.stem,
                    metadata={"filename": p.name},
                )
            else:
                job = await stage_file(engine.ingestion, engine.storage, owner, p)
                result = await engine.ingestion.ingest_file(
                    owner, job.item_id, job.object_key, job.file_name, job.mime_type
                )
        except UnsupportedFileType as e:
            console.print(f"  [yellow]Skipped {p.name}: {e}[/]")
            continue
        results.append((p, result))
    return results


@cli.command()
@click.argument("path")
@_owner_option
@click.option("--source", default=None, help="Ingest as a normalized document of this source")
@click.option("--source-id", default=None, help="Stable id within the source")
@click.pass_context
def ingest(ctx, path, owner, source, source_id):
    """Ingest a file or every supported file in a directory."""
    from .watcher import SUPPORTED_EXTENSIONS

    target = Path(path)
    if target.is_file():
        paths = [target]
    elif target.is_dir():
        paths = sorted(p for p in target.rglob("*") if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS)
    else:
        console.print(f"[red]Path not found: {path}[/]")
        return
    if not paths:
        console.print("[yellow]No files to process.[/]")
        return

    engine = _engine(ctx)
    try:
        results = asyncio.run(_ingest_paths(engine, owner, paths, source, source_id))
    except ValueError as e:
        console.print(f"[red]{e}[/]")
        return
    finally:
        engine.close()

    changed = [r for r in results if r[1].changed]
    console.print(f"[green]✓ Indexed {len(changed)} document(s)[/]")
    for p, result in changed:
        console.print(f"  → {p.name}: {result.chunks} chunk(s)")
    skipped = len(results) - len(changed)
    if skipped:
        console.print(f"  [dim]({skipped} unchanged skipped)[/]")


async def _ask(engine, owner, question, conversation_id):
    turn = await engine.chat.send(owner, question, conversation_id=conversation_id)
    await engine.worker.drain()
    return turn


@cli.command()
@click.argument("question")
@_owner_option
@click.option("--conversation", default=None, help="Continue an existing conversation")
@click.pass_context
def ask(ctx, question, owner, conversation):
    """Ask a question answered from your knowledge and memories."""
    engine = _engine(ctx)
    try:
        turn = asyncio.run(_ask(engine, owner, question, conversation))
    except ValueError as e:
        console.print(f"[red]{e}[/]")
        return
    finally:
        engine.close()

    console.print(Panel(Markdown(turn.response.answer), title="Answer", border_style="green"))
    if turn.response.citations:
        console.print("\n[bold]Sources:[/]")
        for c in turn.response.citations:
            console.print(f"  • [{c.label}] {c.title or 'Untitled'} ({c.source})" + (f" {c.url}" if c.url else ""))
    console.print(f"\n[dim]Conversation: {turn.conversation_id}[/]")


@cli.command()
@click.argument("query")
@_owner_option
@click.option("--conversation", default=None, help="Continue an existing conversation")
@click.option("--confirm", "confirmed", multiple=True, help="Confirmation key of an action to run")
@click.pass_context
def agent(ctx, query, owner, conversation, confirmed):
    """Run the tool-using agent. Side-effecting actions need --confirm."""
    engine = _engine(ctx)
    try:
        turn = asyncio.run(
            engine.chat.send(owner, query, conversation_id=conversation, agent_mode=True,
                             confirmed_actions=list(confirmed))
        )
    except ValueError as e:
        console.print(f"[red]{e}[/]")
        return
    finally:
        engine.close()

    result = turn.agent
    console.print(Panel(Markdown(result.response), title="Agent", border_style="green"))
    if result.tool_results:
        table = Table(title="Tool calls")
        table.add_column("Tool", style="cyan")
        table.add_column("Output")
        for call in result.tool_results:
            table.add_row(call.tool_name, str(call.output)[:200])
        console.print(table)
    for key in result.proposed_actions:
        console.print(f"[yellow]Needs confirmation:[/] --confirm '{key}'")


@cli.command()
@_owner_option
@click.option("--conversation", required=True, help="Conversation to reflect on")
@click.pass_context
def reflect(ctx, owner, conversation):
    """Distil memories from a conversation now."""
    from .workers import ReflectionJob

    engine = _engine(ctx)
    try:
        result = asyncio.run(engine.worker.handlers.handle_reflection(ReflectionJob(owner, conversation)))
    finally:
        engine.close()
    console.print(f"[green]✓ Memories created={result.created}, updated={result.updated}[/]")


@cli.command()
@_owner_option
@click.option("--learning/--no-learning", default=None, help="Set learning consent")
@click.pass_context
def memories(ctx, owner, learning):
    """List the owner's memories."""
    engine = _engine(ctx)
    try:
        if learning is not None:
            engine.knowledge.set_learning_consent(owner, learning)
            console.print(f"[green]✓ Learning {'enabled' if learning else 'disabled'} for {owner}[/]")
        records = engine.knowledge.list_memories(owner)
    finally:
        engine.close()

    if not records:
        console.print("[yellow]No memories yet.[/]")
        return
    table = Table(title=f"Memories of {owner}")
    table.add_column("Type", style="cyan")
    table.add_column("Content")
    table.add_column("Conf", justify="right")
    table.add_column("Pinned")
    for m in records:
        table.add_row(m.type, m.content, f"{m.confidence:.2f}", "★" if m.pinned else "")
    console.print(table)


@cli.command("delete-item")
@click.argument("item_id")
@_owner_option
@click.pass_context
def delete_item(ctx, item_id, owner):
    """Soft-delete a knowledge item and its chunks."""
    engine = _engine(ctx)
    try:
        deleted = engine.knowledge.soft_delete_item(owner, item_id)
    finally:
        engine.close()
    if deleted:
        console.print(f"[green]✓ Deleted {item_id}[/]")
    else:
        console.print(f"[yellow]No live item {item_id}[/]")


@cli.command()
@click.argument("source")
@_owner_option
@click.pass_context
def disconnect(ctx, source, owner):
    """Disconnect a source and remove everything ingested from it."""
    engine = _engine(ctx)
    try:
        count = engine.knowledge.disconnect_source(owner, source)
    finally:
        engine.close()
    console.print(f"[green]✓ Disconnected {source}: {count} item(s) removed[/]")


@cli.command()
@_owner_option
@click.pass_context
def stats(ctx, owner):
    """Show knowledge statistics."""
    engine = _engine(ctx)
    try:
        s = engine.knowledge.basic_stats(owner)
    finally:
        engine.close()

    console.print(f"\n[bold]Knowledge of {owner}[/]")
    console.print(f"  Items: {s['items']}")
    console.print(f"  Chunks: {s['chunks']}")
    console.print(f"  Memories: {s['memories']}")
    console.print(f"  Conversations: {s['conversations']}")
    if s["items_by_source"]:
        console.print("\n  [bold]Sources:[/]")
        for source, count in s["items_by_source"].items():
            console.print(f"    {source}: {count}")


@cli.command()
@_owner_option
@click.option("--debounce", default=5.0, help="Seconds to wait after last change before processing")
@click.pass_context
def watch(ctx, owner, debounce):
    """Watch the drop directory and ingest new files."""
    from .watcher import DropWatcher

    engine = _engine(ctx)
    watcher = DropWatcher(
        engine.ingestion, engine.storage, engine.worker, owner,
        engine.config["drop_path"], debounce=debounce,
    )
    try:
        asyncio.run(watcher.run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping watcher...[/]")
    finally:
        engine.close()


if __name__ == "__main__":
    cli()
