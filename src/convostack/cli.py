"""
Command-line interface for ConvoStack.

Provides commands for managing folders and the bookmarks or prompts inside
them, running every change through the same engine the app uses.
"""

import asyncio
import os
from typing import Awaitable, Callable, List, Optional, TypeVar

import click
from pydantic import ValidationError as SchemaError
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from .collection import HierarchicalCollection
from .config import configure_logging, get_default_db_path, load_config
from .database import Database
from .errors import EngineError, NotFoundError, QuotaExceededError
from .models import CollectionKind, Folder, Item, TreeNode
from .tree import build_tree
from .workspace import Workspace

console = Console()

T = TypeVar("T")


def run(ctx, action: Callable[[HierarchicalCollection], Awaitable[T]], load_items: bool = False) -> T:
    """Sign in, run ``action`` against the selected collection, sign out."""
    async def runner():
        workspace = Workspace(ctx.obj['db'], ctx.obj['config'])
        await workspace.sign_in(ctx.obj['owner'], load=False)
        try:
            collection = workspace.collection(ctx.obj['kind'])
            await collection.refresh_folders(force=True)
            if load_items:
                await collection.refresh_items()
            return await action(collection)
        finally:
            workspace.sign_out()

    try:
        return asyncio.run(runner())
    except QuotaExceededError as e:
        console.print(f"{e.message}. Upgrade to Premium for unlimited {ctx.obj['kind'].value}.", style="red")
    except (EngineError, SchemaError) as e:
        console.print(f"Error: {e}", style="red")
    ctx.exit(1)


def resolve_folder(collection: HierarchicalCollection, path: str) -> Folder:
    """Find a folder by slash path ("Work/Notes") or by id."""
    folder = collection.tree.find_by_path(path) or collection.folder_store.get(path)
    if folder is None:
        raise NotFoundError(f"Folder '{path}' not found")
    return folder


async def find_item(collection: HierarchicalCollection, item_id: str) -> Item:
    """Page through the list until ``item_id`` is loaded."""
    while item_id not in collection.item_store:
        if not collection.query.has_more:
            raise NotFoundError(f"Item {item_id} not found")
        await collection.load_more()
    return collection.item_store.get(item_id)


def render_tree(folders: List[Folder], title: str) -> Tree:
    root = Tree(f"[bold]{title}[/bold]")

    def add(branch: Tree, node: TreeNode):
        label = f"[cyan]{node.folder.name}[/cyan] [dim]({node.folder.item_count})[/dim]"
        child_branch = branch.add(label)
        for child in node.children:
            add(child_branch, child)

    for node in build_tree(folders).roots:
        add(root, node)
    return root


@click.group()
@click.option('--db-path', '-d', help='Database path')
@click.option('--owner', '-o', default=lambda: os.environ.get("CONVOSTACK_OWNER", "local"),
              help='Owner id the commands act for')
@click.option('--kind', '-k', type=click.Choice([k.value for k in CollectionKind]),
              default=CollectionKind.BOOKMARKS.value, help='Collection to work on')
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True, dir_okay=False),
              help='YAML config file')
@click.pass_context
def cli(ctx, db_path: Optional[str], owner: str, kind: str, config_path: Optional[str]):
    """ConvoStack - Organize bookmarks and prompts in nested folders."""
    config = load_config(config_path)
    configure_logging(config.log_level)
    db_path = db_path or config.database_path or get_default_db_path()

    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['db_path'] = db_path
    ctx.obj['db'] = Database(db_path, quotas=config.quotas)
    ctx.obj['owner'] = owner
    ctx.obj['kind'] = CollectionKind(kind)


@cli.command()
@click.pass_context
def init(ctx):
    """Initialize the database."""
    console.print(f"Initialized database at: {ctx.obj['db_path']}", style="green")
    console.print("\nGet started:")
    console.print("  • Create a folder: convostack mkdir Work")
    console.print("  • Add a bookmark: convostack add \"Title\" https://example.com --folder Work")
    console.print("  • Show folders: convostack folders")


@cli.command()
@click.option('--search', '-s', help='Show folders matching this name, with their ancestors')
@click.option('--scope', help='Show only this folder, its ancestors and descendants')
@click.pass_context
def folders(ctx, search: Optional[str], scope: Optional[str]):
    """Show the folder tree."""
    kind = ctx.obj['kind'].value

    async def action(collection: HierarchicalCollection):
        shown = collection.folders
        if scope:
            shown = collection.scope(resolve_folder(collection, scope).id)
        if search:
            shown = [f for f in collection.search_folders(search) if f in shown]
        return shown

    shown = run(ctx, action)
    if not shown:
        console.print("No folders found.", style="yellow")
        return
    console.print(render_tree(shown, kind.title()))


@cli.command()
@click.argument('path')
@click.pass_context
def mkdir(ctx, path: str):
    """Create a folder; the parent path must exist (e.g. "Work/Notes")."""
    parts = [p for p in path.split('/') if p.strip()]
    if not parts:
        raise click.BadParameter("path is empty")

    async def action(collection: HierarchicalCollection):
        parent_id = None
        if len(parts) > 1:
            parent_id = resolve_folder(collection, "/".join(parts[:-1])).id
        return await collection.create_folder(parts[-1].strip(), parent_id)

    folder = run(ctx, action)
    console.print(f"Created folder: {folder.name}", style="green")
    console.print(f"ID: {folder.id}")


@cli.command()
@click.argument('path')
@click.argument('name')
@click.pass_context
def rename(ctx, path: str, name: str):
    """Rename a folder."""
    async def action(collection: HierarchicalCollection):
        return await collection.rename_folder(resolve_folder(collection, path).id, name)

    folder = run(ctx, action)
    console.print(f"Renamed folder to: {folder.name}", style="green")


@cli.command()
@click.argument('path')
@click.option('--to', 'target', help='New parent folder path (omit to move to the top level)')
@click.pass_context
def move(ctx, path: str, target: Optional[str]):
    """Move a folder under another folder."""
    async def action(collection: HierarchicalCollection):
        folder = resolve_folder(collection, path)
        parent_id = resolve_folder(collection, target).id if target else None
        moved = await collection.move_folder(folder.id, parent_id)
        return collection.folder_path(moved.id)

    new_path = run(ctx, action)
    console.print(f"Moved folder: {new_path}", style="green")


@cli.command()
@click.argument('path')
@click.confirmation_option(prompt='Delete this folder, its subfolders and everything in them?')
@click.pass_context
def rmdir(ctx, path: str):
    """Delete a folder and everything inside it."""
    async def action(collection: HierarchicalCollection):
        folder = resolve_folder(collection, path)
        await collection.delete_folder(folder.id)
        return folder

    folder = run(ctx, action)
    console.print(f"Deleted folder: {folder.name}", style="green")


@cli.command()
@click.argument('title')
@click.argument('url_or_content')
@click.option('--folder', '-f', required=True, help='Folder path (e.g., "Work/Notes")')
@click.option('--label', '-l', help='Label')
@click.option('--platform', '-p', help='Platform (e.g., chatgpt, claude)')
@click.option('--notes', '-n', help='Notes')
@click.pass_context
def add(ctx, title: str, url_or_content: str, folder: str, label: Optional[str],
        platform: Optional[str], notes: Optional[str]):
    """Add a bookmark (url) or prompt (content)."""
    async def action(collection: HierarchicalCollection):
        target = resolve_folder(collection, folder)
        return await collection.create_item(
            folder_id=target.id, title=title, url_or_content=url_or_content,
            label=label, platform=platform, notes=notes,
        )

    item = run(ctx, action)
    console.print(f"Created: {item.title}", style="green")
    console.print(f"Folder: {item.folder_name or folder}")
    console.print(f"ID: {item.id}")


@cli.command('list')
@click.option('--folder', '-f', help='Filter by folder path')
@click.option('--label', '-l', help='Filter by label')
@click.option('--platform', '-p', help='Filter by platform')
@click.option('--search', '-s', help='Search titles and notes')
@click.option('--pages', default=1, type=click.IntRange(min=1), help='Number of pages to load')
@click.option('--verbose', '-v', is_flag=True, help='Show full content')
@click.pass_context
def list_items(ctx, folder: Optional[str], label: Optional[str], platform: Optional[str],
               search: Optional[str], pages: int, verbose: bool):
    """List bookmarks or prompts with optional filtering."""
    async def action(collection: HierarchicalCollection):
        folder_id = resolve_folder(collection, folder).id if folder else None
        await collection.set_filters(folder_id=folder_id, label=label, platform=platform, search=search)
        for _ in range(pages - 1):
            if not collection.query.has_more:
                break
            await collection.load_more()
        return collection.items, collection.query

    items, query = run(ctx, action)
    if not items:
        console.print("Nothing found.", style="yellow")
        return

    more = "+" if query.has_more else ""
    table = Table(title=f"{ctx.obj['kind'].value.title()} ({len(items)}/{query.total_count_estimate}{more})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", style="white", no_wrap=True)
    table.add_column("Folder", style="blue")
    table.add_column("Label", style="green")
    table.add_column("Platform", style="magenta")
    table.add_column("Used", justify="right")
    if verbose:
        table.add_column("Content", style="dim")

    for item in items:
        row = [item.id, item.title, item.folder_name or "", item.label or "", item.platform or "",
               str(item.usage)]
        if verbose:
            content = item.url_or_content
            row.append(content[:100] + "..." if len(content) > 100 else content)
        table.add_row(*row)

    console.print(table)


@cli.command()
@click.argument('item_id')
@click.option('--title', help='New title')
@click.option('--content', 'url_or_content', help='New url or content')
@click.option('--label', help='New label')
@click.option('--platform', help='New platform')
@click.option('--notes', help='New notes')
@click.option('--folder', help='Move to this folder path')
@click.pass_context
def edit(ctx, item_id: str, title: Optional[str], url_or_content: Optional[str], label: Optional[str],
         platform: Optional[str], notes: Optional[str], folder: Optional[str]):
    """Edit an existing bookmark or prompt."""
    patch = {
        key: value for key, value in dict(
            title=title, url_or_content=url_or_content, label=label, platform=platform, notes=notes,
        ).items() if value is not None
    }

    async def action(collection: HierarchicalCollection):
        await find_item(collection, item_id)
        if folder:
            patch["folder_id"] = resolve_folder(collection, folder).id
        if not patch:
            raise click.UsageError("Nothing to change")
        return await collection.update_item(item_id, **patch)

    item = run(ctx, action, load_items=True)
    console.print(f"Updated: {item.title}", style="green")


@cli.command()
@click.argument('item_id')
@click.confirmation_option(prompt='Are you sure you want to delete this item?')
@click.pass_context
def delete(ctx, item_id: str):
    """Delete a bookmark or prompt."""
    async def action(collection: HierarchicalCollection):
        item = await find_item(collection, item_id)
        await collection.delete_item(item_id)
        return item

    item = run(ctx, action, load_items=True)
    console.print(f"Deleted: {item.title}", style="green")


@cli.command()
@click.argument('item_id')
@click.pass_context
def use(ctx, item_id: str):
    """Print an item's url or content and count the use."""
    async def action(collection: HierarchicalCollection):
        await find_item(collection, item_id)
        return await collection.record_usage(item_id)

    item = run(ctx, action, load_items=True)
    console.print(f"\n[bold cyan]# {item.title}[/bold cyan] [dim](used {item.usage}x)[/dim]")
    console.print("\n" + "─" * 50)
    console.print(item.url_or_content, markup=False)
    console.print("─" * 50)


@cli.command()
@click.option('--days', default=7, type=click.IntRange(min=1), help='Window for "recent" items')
@click.pass_context
def stats(ctx, days: int):
    """Show totals by platform and label."""
    async def action(collection: HierarchicalCollection):
        return await collection.stats(days)

    summary = run(ctx, action)
    kind = ctx.obj['kind'].value
    console.print(f"[bold]{kind.title()}:[/bold] {summary.total_count} total, "
                  f"{summary.recent_count} in the last {days} days")

    for title, counts in (("Platform", summary.by_platform), ("Label", summary.by_label)):
        if not counts:
            continue
        table = Table(title=f"By {title.lower()}")
        table.add_column(title, style="cyan")
        table.add_column("Count", justify="right")
        for name, count in sorted(counts.items(), key=lambda pair: (-pair[1], pair[0])):
            table.add_row(name, str(count))
        console.print(table)


def main():
    """Main CLI entry point."""
    cli()
