"""
Dialogue Graph Studio — command line front end

Drives the dialogue graph engine against a Neo4j instance:
  1. Conversations and utterances (create, root, next, update, delete)
  2. Branching (weighted BRANCH_TO edges)
  3. Readings (linear path, bounded graph, weighted random path)
  4. Bulk exchange (JSON export/import)
  5. Generation (append model-written lines via Ollama)

Usage:
    python main.py setup
    python main.py create --title "Tavern greeting"
    python main.py add-root --conversation <id> --text "Welcome, traveller."
    python main.py add-next --from <utterance-id> --text "What'll it be?"
    python main.py branch --from <id> --to <id> --weight 3
    python main.py random-path --conversation <id> --max-depth 10
    python main.py export --conversation <id> --out tavern.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from dialogue_graph import DialogueGraph, DialogueGraphError
from generation import GenerationBridge, OllamaUtteranceGenerator
from graph_store import GraphStore
from projections import (
    CacheInvalidationHandler,
    ConversationMirror,
    MirrorProjectionHandler,
    ProjectionDispatcher,
    ReadCache,
)
from schema import ConversationImport, PathView
from service import DialogueService

# ─── Setup ────────────────────────────────────────────────────────────

console = Console()
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(console=console, rich_tracebacks=True)],
)
logger = logging.getLogger("dgs")


@asynccontextmanager
async def open_service() -> AsyncGenerator[DialogueService, None]:
    """Wire store, engine, generator and projections for one CLI command."""
    store = GraphStore()
    graph = DialogueGraph(store)
    dispatcher = ProjectionDispatcher()
    cache = ReadCache()
    CacheInvalidationHandler(cache).register(dispatcher)
    MirrorProjectionHandler(ConversationMirror()).register(dispatcher)
    dispatcher.start()
    service = DialogueService(
        graph,
        dispatcher,
        cache=cache,
        bridge=GenerationBridge(graph, OllamaUtteranceGenerator()),
    )
    try:
        yield service
    finally:
        await dispatcher.stop()
        await store.close()


def _print_path(view: Optional[PathView], title: str) -> None:
    if view is None:
        console.print("[yellow]Conversation not found or it has no live root.[/yellow]")
        return
    table = Table(title=f"{title}: {view.title}")
    table.add_column("#", justify="right", style="bold")
    table.add_column("Utterance", style="dim")
    table.add_column("Character", style="green")
    table.add_column("Text", style="cyan")
    for i, u in enumerate(view.path):
        table.add_row(str(i), u.id, u.character_id or "—", u.text)
    console.print(table)


# ─── Commands ─────────────────────────────────────────────────────────

async def cmd_setup(args: argparse.Namespace):
    """Create constraints and indexes."""
    store = GraphStore()
    try:
        if not await store.ping():
            console.print("[red]Neo4j is not reachable.[/red]")
            return
        logger.info("Creating constraints and indexes...")
        await store.setup_indexes()
    finally:
        await store.close()
    console.print("[green]Constraints and indexes are in place.[/green]")


async def cmd_create(args: argparse.Namespace):
    async with open_service() as svc:
        conversation = await svc.create_conversation(args.title)
    console.print(Panel(
        f"Id:    {conversation.id}\nTitle: {conversation.title}",
        title="Conversation Created",
    ))


async def cmd_add_root(args: argparse.Namespace):
    async with open_service() as svc:
        utterance = await svc.add_root_utterance(args.conversation, args.text, args.character)
    if utterance is None:
        console.print(f"[red]Conversation not found: {args.conversation}[/red]")
        return
    action = "created" if utterance.created else f"rewritten (v{utterance.version})"
    console.print(f"Root utterance [bold]{utterance.id}[/bold] {action}")


async def cmd_add_next(args: argparse.Namespace):
    async with open_service() as svc:
        utterance = await svc.add_next_utterance(
            args.from_id, args.text, args.character, args.tag
        )
    if utterance is None:
        console.print(f"[red]Source utterance missing or deleted: {args.from_id}[/red]")
        return
    console.print(f"Next utterance [bold]{utterance.id}[/bold]")


async def cmd_show(args: argparse.Namespace):
    async with open_service() as svc:
        detail = await svc.get_utterance(args.utterance)
    if detail is None:
        console.print(f"[red]Utterance not found: {args.utterance}[/red]")
        return
    console.print(Panel(
        f"Text:      {detail.text}\n"
        f"Character: {detail.character_id or '—'}\n"
        f"Version:   {detail.version}\n"
        f"Deleted:   {detail.deleted}\n"
        f"Tags:      {', '.join(detail.tags) or '—'}",
        title=detail.id,
    ))


async def cmd_update(args: argparse.Namespace):
    async with open_service() as svc:
        detail = await svc.update_utterance(
            args.utterance, args.text, args.tag or [], args.version
        )
    if detail is None:
        console.print(
            "[yellow]Update rejected: stale version, deleted or unknown utterance. "
            "Re-read it and retry.[/yellow]"
        )
        return
    console.print(f"Updated [bold]{detail.id}[/bold] to version {detail.version}")


async def cmd_delete(args: argparse.Namespace):
    async with open_service() as svc:
        changed = await svc.delete_utterance(args.utterance)
    console.print("Deleted." if changed else "[dim]Nothing changed.[/dim]")


async def cmd_branch(args: argparse.Namespace):
    async with open_service() as svc:
        edge = await svc.add_branch(args.from_id, args.to_id, args.weight)
    if edge is None:
        console.print("[red]Both utterances must exist and not be deleted.[/red]")
        return
    console.print(f"Branch {edge.from_id} → {edge.to_id} (weight {edge.weight})")


async def cmd_weight(args: argparse.Namespace):
    async with open_service() as svc:
        try:
            stored = await svc.set_branch_weight(args.from_id, args.to_id, args.weight)
        except DialogueGraphError as exc:
            console.print(f"[red]{exc}[/red]")
            return
    console.print(f"Branch weight set to {stored}")


async def cmd_path(args: argparse.Namespace):
    async with open_service() as svc:
        view = await svc.get_linear_path(args.conversation)
    _print_path(view, "Linear Path")


async def cmd_random_path(args: argparse.Namespace):
    async with open_service() as svc:
        view = await svc.get_random_path(args.conversation, args.max_depth)
    _print_path(view, "Random Path")


async def cmd_graph(args: argparse.Namespace):
    async with open_service() as svc:
        view = await svc.get_graph(args.conversation, args.depth)
    if view is None:
        console.print(f"[red]Conversation not found: {args.conversation}[/red]")
        return

    nodes = Table(title=f"Nodes ({len(view.nodes)})")
    nodes.add_column("Id", style="dim")
    nodes.add_column("Character", style="green")
    nodes.add_column("Text", style="cyan")
    nodes.add_column("Tags")
    for n in view.nodes:
        marker = " (root)" if n.id == view.root_id else ""
        nodes.add_row(n.id + marker, n.character_id or "—", n.text, ", ".join(n.tags))
    console.print(nodes)

    rels = Table(title=f"Relations ({len(view.relations)})")
    rels.add_column("From", style="dim")
    rels.add_column("Type", style="yellow")
    rels.add_column("To", style="dim")
    rels.add_column("Weight", justify="right")
    for r in view.relations:
        rels.add_row(r.from_id, r.type.value, r.to_id, "—" if r.weight is None else f"{r.weight:g}")
    console.print(rels)


async def cmd_export(args: argparse.Namespace):
    async with open_service() as svc:
        exported = await svc.export_conversation(args.conversation, args.depth)
    if exported is None:
        console.print(f"[red]Conversation not found: {args.conversation}[/red]")
        return
    payload = exported.model_dump_json(indent=2, by_alias=True)
    if args.out:
        Path(args.out).write_text(payload, encoding="utf-8")
        console.print(
            f"[dim]Exported {len(exported.utterances)} utterances and "
            f"{len(exported.relations)} relations to {args.out}[/dim]"
        )
    else:
        console.print_json(payload)


async def cmd_import(args: argparse.Namespace):
    source = Path(args.source)
    if not source.exists():
        console.print(f"[red]File not found: {source}[/red]")
        return
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
        if args.preserve_ids:
            data["preserve_ids"] = True
        if args.fresh:
            data.pop("conversation_id", None)
        payload = ConversationImport.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as exc:
        console.print(f"[red]Invalid import file: {exc}[/red]")
        return

    async with open_service() as svc:
        try:
            conversation = await svc.import_conversation(payload)
        except DialogueGraphError as exc:
            console.print(f"[red]Import rejected: {exc}[/red]")
            return
    console.print(Panel(
        f"Id:         {conversation.id}\n"
        f"Title:      {conversation.title}\n"
        f"Utterances: {len(payload.utterances)}\n"
        f"Relations:  {len(payload.relations)}",
        title="Imported",
    ))


async def cmd_expand(args: argparse.Namespace):
    async with open_service() as svc:
        appended = await svc.auto_expand(
            args.conversation, args.count, args.context, args.from_id
        )
    if not appended:
        console.print("[yellow]Nothing generated.[/yellow]")
        return
    table = Table(title=f"Generated {len(appended)} line(s)")
    table.add_column("Id", style="dim")
    table.add_column("Text", style="cyan")
    for u in appended:
        table.add_row(u.id, u.text)
    console.print(table)


# ─── CLI ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dgs",
        description="Dialogue Graph Studio — branching conversations in Neo4j",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("setup", help="Create constraints and indexes")

    p_create = subparsers.add_parser("create", help="Create a conversation")
    p_create.add_argument("--title", required=True)

    p_root = subparsers.add_parser("add-root", help="Set a conversation's root line")
    p_root.add_argument("--conversation", required=True)
    p_root.add_argument("--text", required=True)
    p_root.add_argument("--character", default=None)

    p_next = subparsers.add_parser("add-next", help="Append a NEXT line")
    p_next.add_argument("--from", dest="from_id", required=True)
    p_next.add_argument("--text", required=True)
    p_next.add_argument("--character", default=None)
    p_next.add_argument("--tag", action="append", help="Repeat for several tags")

    p_show = subparsers.add_parser("show", help="Show one utterance")
    p_show.add_argument("--utterance", required=True)

    p_update = subparsers.add_parser("update", help="Version-checked text/tag update")
    p_update.add_argument("--utterance", required=True)
    p_update.add_argument("--text", required=True)
    p_update.add_argument("--tag", action="append", help="Repeat for several tags")
    p_update.add_argument("--version", type=int, required=True, help="Expected version")

    p_delete = subparsers.add_parser("delete", help="Soft-delete an utterance")
    p_delete.add_argument("--utterance", required=True)

    p_branch = subparsers.add_parser("branch", help="Add a BRANCH_TO edge")
    p_branch.add_argument("--from", dest="from_id", required=True)
    p_branch.add_argument("--to", dest="to_id", required=True)
    p_branch.add_argument("--weight", type=float, default=None)

    p_weight = subparsers.add_parser("weight", help="Reweight an existing branch")
    p_weight.add_argument("--from", dest="from_id", required=True)
    p_weight.add_argument("--to", dest="to_id", required=True)
    p_weight.add_argument("--weight", type=float, required=True)

    p_path = subparsers.add_parser("path", help="Canonical linear reading")
    p_path.add_argument("--conversation", required=True)

    p_graph = subparsers.add_parser("graph", help="Bounded subgraph around the root")
    p_graph.add_argument("--conversation", required=True)
    p_graph.add_argument("--depth", type=int, default=10)

    p_random = subparsers.add_parser("random-path", help="Weighted random reading")
    p_random.add_argument("--conversation", required=True)
    p_random.add_argument("--max-depth", type=int, default=20)

    p_export = subparsers.add_parser("export", help="Export a conversation as JSON")
    p_export.add_argument("--conversation", required=True)
    p_export.add_argument("--depth", type=int, default=10)
    p_export.add_argument("--out", default=None, help="Write to file instead of stdout")

    p_import = subparsers.add_parser("import", help="Import a conversation from JSON")
    p_import.add_argument("--source", required=True)
    p_import.add_argument("--preserve-ids", action="store_true")
    p_import.add_argument("--fresh", action="store_true", help="Always mint a new conversation id")

    p_expand = subparsers.add_parser("expand", help="Append generated lines")
    p_expand.add_argument("--conversation", required=True)
    p_expand.add_argument("--count", type=int, default=1)
    p_expand.add_argument("--context", default=None)
    p_expand.add_argument("--from", dest="from_id", default=None)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    cmd_map = {
        "setup": cmd_setup,
        "create": cmd_create,
        "add-root": cmd_add_root,
        "add-next": cmd_add_next,
        "show": cmd_show,
        "update": cmd_update,
        "delete": cmd_delete,
        "branch": cmd_branch,
        "weight": cmd_weight,
        "path": cmd_path,
        "graph": cmd_graph,
        "random-path": cmd_random_path,
        "export": cmd_export,
        "import": cmd_import,
        "expand": cmd_expand,
    }

    try:
        asyncio.run(cmd_map[args.command](args))
    except ValidationError as exc:
        for error in exc.errors():
            field_name = ".".join(str(part) for part in error["loc"])
            console.print(f"[red]Invalid input for {field_name}: {error['msg']}[/red]")
        raise SystemExit(2)


if __name__ == "__main__":
    main()
