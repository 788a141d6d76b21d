"""
CLI interface for the knowledge store.

Usage:
    knowhow add "Fix login bug" -t bug --priority high
    knowhow search login --priority high --recent 7
    knowhow show 12
    knowhow data migrate --backup legacy.json
"""

import json
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import KnowledgeBase
from .errors import KnowledgeError, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .onboarding import first_run_notice
from .reconciler import Outcome, ReconcileResult, Reconciler
from .types import Entry, RELATIONSHIP_TYPES

# Quiet by default; KNOWHOW_VERBOSE=1 enables debug output
if os.environ.get("KNOWHOW_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="knowhow",
    help="Developer knowledge store: entries, tags, collections, relationships.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="KNOWHOW_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Developer knowledge store."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="KNOWHOW_STORE_PATH",
        help="Path to the store directory (default: ~/.knowhow/)"
    )
]

LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]

ForceOption = Annotated[
    bool,
    typer.Option(
        "--force", "-f",
        help="Skip confirmation prompts"
    )
]


def _get_kb(store: Optional[Path]) -> KnowledgeBase:
    """Open the knowledge base, exiting cleanly on failure."""
    import atexit

    actual_store = store if store is not None else _get_store_override()
    try:
        kb = KnowledgeBase(actual_store)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(kb.close)
    return kb


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _format_summary_line(entry: Entry) -> str:
    """One line per entry: id, date, first line of content, tags."""
    first_line = entry.content.strip().splitlines()[0] if entry.content.strip() else ""
    if len(first_line) > 80:
        first_line = first_line[:77] + "..."
    line = f"#{entry.id:<5} {entry.created_at[:10]}  {first_line}"
    if entry.tags:
        line += "  [" + ", ".join(entry.tag_names) + "]"
    return line


def _format_entry(entry: Entry) -> str:
    lines = [f"#{entry.id}  {entry.created_at}"]
    if entry.collection:
        lines.append(f"collection: {entry.collection.name}")
    if entry.tags:
        lines.append("tags: " + ", ".join(entry.tag_names))
    for meta in entry.metadata:
        lines.append(f"{meta.key}: {meta.value}")
    context = {k: v for k, v in entry.git_context.items() if v}
    if context:
        lines.append("git: " + " ".join(f"{k}={v}" for k, v in context.items()))
    lines.append("")
    lines.append(entry.content)
    if entry.tag_related:
        lines.append("")
        lines.append("related by tags:")
        lines.extend("  " + _format_summary_line(e) for e in entry.tag_related)
    if entry.semantically_similar:
        lines.append("")
        lines.append("similar:")
        lines.extend("  " + _format_summary_line(e) for e in entry.semantically_similar)
    return "\n".join(lines)


def _parse_meta(meta: Optional[list[str]]) -> dict[str, str]:
    """Parse key=value pairs into a dict."""
    result: dict[str, str] = {}
    for item in meta or []:
        if "=" not in item:
            typer.echo(f"Error: metadata must be key=value, got '{item}'", err=True)
            raise typer.Exit(1)
        key, value = item.split("=", 1)
        result[key.strip()] = value.strip()
    return result


def _split_tags(tags: Optional[list[str]]) -> list[str]:
    """Tags from repeated -t options, each possibly comma-separated."""
    return [t for item in tags or [] for t in item.split(",")]


def _echo_result(result: ReconcileResult, title: str) -> None:
    if _get_json_output():
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return
    typer.echo(f"{title}:")
    typer.echo(f"  {result.entries_migrated} entries migrated")
    typer.echo(f"  {result.tags_migrated} tags migrated")
    typer.echo(f"  {result.collections_created} collections created")
    if result.errors:
        typer.echo("Errors encountered:", err=True)
        for error in result.errors:
            typer.echo(f"  {error}", err=True)
    else:
        typer.echo("Completed successfully.")


# -----------------------------------------------------------------------------
# Entries
# -----------------------------------------------------------------------------

@app.command()
def add(
    content: Annotated[str, typer.Argument(help="Knowledge content to add")],
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Tag name (repeatable, or comma-separated)"
    )] = None,
    priority: Annotated[str, typer.Option(
        "--priority", help="Priority level (low, medium, high)"
    )] = "medium",
    status: Annotated[str, typer.Option(
        "--status", help="Status (open, in-progress, completed)"
    )] = "open",
    meta: Annotated[Optional[list[str]], typer.Option(
        "--meta", "-m",
        help="Extra metadata as key=value (repeatable)"
    )] = None,
    collection: Annotated[Optional[int], typer.Option(
        "--collection", "-c", help="Collection id to file the entry under"
    )] = None,
    store: StoreOption = None,
):
    """
    Add a knowledge entry.

    \b
    Examples:
        knowhow add "Fix login bug" -t bug
        knowhow add "Cache tokens in redis" -t perf,auth --priority high
    """
    kb = _get_kb(store)
    notice = first_run_notice(kb.config.path, kb.has_entries())
    if notice and not _get_json_output():
        typer.echo(notice, err=True)

    metadata: dict[str, str] = {"priority": priority, "status": status}
    metadata.update(_parse_meta(meta))
    try:
        entry_id = kb.add_entry(content, _split_tags(tag), metadata, collection)
    except KnowledgeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if _get_json_output():
        typer.echo(json.dumps(kb.get_entry(entry_id).to_dict(), indent=2))
    else:
        typer.echo(f"Added entry #{entry_id}")


@app.command()
def search(
    query: Annotated[Optional[str], typer.Argument(help="Search text (optional)")] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t", help="Require a tag (substring match, repeatable)"
    )] = None,
    collection: Annotated[Optional[int], typer.Option(
        "--collection", "-c", help="Collection id"
    )] = None,
    repo: Annotated[Optional[str], typer.Option("--repo", help="Repository substring")] = None,
    branch: Annotated[Optional[str], typer.Option("--branch", help="Exact branch")] = None,
    author: Annotated[Optional[str], typer.Option("--author", help="Author substring")] = None,
    project_type: Annotated[Optional[str], typer.Option(
        "--type", help="Exact project type"
    )] = None,
    priority: Annotated[Optional[str], typer.Option("--priority", help="Exact priority")] = None,
    status: Annotated[Optional[str], typer.Option("--status", help="Exact status")] = None,
    recent: Annotated[Optional[int], typer.Option(
        "--recent", help="Only entries created in the last N days"
    )] = None,
    todo: Annotated[bool, typer.Option("--todo", help="Only entries tagged 'todo'")] = False,
    here: Annotated[bool, typer.Option(
        "--here", help="Rank entries from the current repository first"
    )] = False,
    store: StoreOption = None,
    limit: LimitOption = 10,
):
    """
    Search entries. All filters combine with AND.

    \b
    Examples:
        knowhow search login
        knowhow search --priority high --recent 7
        knowhow search auth -t security --here
    """
    kb = _get_kb(store)
    context_repo = kb.current_context().get("repo") if here else None
    try:
        entries = kb.search_entries(
            query or "",
            tags=_split_tags(tag),
            collection=collection,
            repo=repo,
            branch=branch,
            author=author,
            project_type=project_type,
            priority=priority,
            status=status,
            recent=recent,
            todo=todo,
            context_repo=context_repo,
            limit=limit,
        )
    except KnowledgeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if _get_json_output():
        typer.echo(json.dumps([e.to_dict() for e in entries], indent=2))
    elif not entries:
        typer.echo("No results.")
    else:
        for entry in entries:
            typer.echo(_format_summary_line(entry))


@app.command()
def show(
    entry_id: Annotated[int, typer.Argument(help="Entry id")],
    store: StoreOption = None,
):
    """Show an entry with its tags, metadata and related entries."""
    kb = _get_kb(store)
    entry = kb.get_entry(entry_id)
    if entry is None:
        typer.echo(f"Not found: #{entry_id}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps(entry.to_dict(include_related=True), indent=2))
    else:
        typer.echo(_format_entry(entry))


@app.command()
def delete(
    entry_id: Annotated[list[int], typer.Argument(help="Entry id(s) to delete")],
    store: StoreOption = None,
    force: ForceOption = False,
):
    """Delete entries along with their tags links, metadata and relationships."""
    kb = _get_kb(store)
    if not force and not typer.confirm(f"Delete {len(entry_id)} entr{'y' if len(entry_id) == 1 else 'ies'}?"):
        raise typer.Exit(0)
    had_errors = False
    for one_id in entry_id:
        if kb.delete_entry(one_id):
            typer.echo(f"Deleted #{one_id}")
        else:
            typer.echo(f"Not found: #{one_id}", err=True)
            had_errors = True
    if had_errors:
        raise typer.Exit(1)


@app.command()
def tags(
    store: StoreOption = None,
    limit: LimitOption = 20,
):
    """List the most used tags."""
    kb = _get_kb(store)
    popular = kb.popular_tags(limit)
    if _get_json_output():
        typer.echo(json.dumps(
            [{"name": t.name, "usage_count": t.usage_count} for t in popular], indent=2))
        return
    if not popular:
        typer.echo("No tags.")
    for tag in popular:
        typer.echo(f"{tag.usage_count:>5}  {tag.name}")


@app.command()
def relate(
    from_id: Annotated[int, typer.Argument(help="Source entry id")],
    to_id: Annotated[int, typer.Argument(help="Target entry id")],
    type: Annotated[str, typer.Option(
        "--type", help="Relationship type: " + ", ".join(RELATIONSHIP_TYPES)
    )] = "relates_to",
    strength: Annotated[float, typer.Option("--strength", help="Edge weight")] = 1.0,
    both: Annotated[bool, typer.Option(
        "--both", "-b", help="Also create the mirror edge"
    )] = False,
    store: StoreOption = None,
):
    """Create a typed relationship between two entries."""
    kb = _get_kb(store)
    try:
        edges = kb.relate(from_id, to_id, type, strength,
                          bidirectional=both)
    except KnowledgeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    for edge in edges:
        typer.echo(f"#{edge.from_entry_id} {edge.type_display} #{edge.to_entry_id}")


# -----------------------------------------------------------------------------
# Collections
# -----------------------------------------------------------------------------

collection_app = typer.Typer(
    name="collection",
    help="Collections: named groupings of entries.",
    rich_markup_mode=None,
)
app.add_typer(collection_app)


@collection_app.command("create")
def collection_create(
    name: Annotated[str, typer.Argument(help="Collection name")],
    description: Annotated[Optional[str], typer.Option(
        "--description", "-d", help="Description"
    )] = None,
    color: Annotated[Optional[str], typer.Option("--color", help="Hex color")] = None,
    icon: Annotated[Optional[str], typer.Option("--icon", help="Icon")] = None,
    private: Annotated[bool, typer.Option("--private", help="Mark as private")] = False,
    store: StoreOption = None,
):
    """Create a collection."""
    kb = _get_kb(store)
    try:
        created = kb.create_collection(name, description, color, icon, is_private=private)
    except KnowledgeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Created collection #{created.id} {created.name}")


@collection_app.command("list")
def collection_list(store: StoreOption = None):
    """List collections with entry counts."""
    kb = _get_kb(store)
    collections = kb.list_collections()
    if _get_json_output():
        typer.echo(json.dumps([{
            "id": c.id,
            "name": c.name,
            "description": c.description,
            "entry_count": c.entry_count,
            "recent_entry_count": c.recent_entry_count,
        } for c in collections], indent=2))
        return
    if not collections:
        typer.echo("No collections.")
    for c in collections:
        typer.echo(f"#{c.id:<4} {c.icon or ''} {c.name}  "
                   f"({c.entry_count} entries, {c.recent_entry_count} this week)")


# -----------------------------------------------------------------------------
# Data Management
# -----------------------------------------------------------------------------

data_app = typer.Typer(
    name="data",
    help="Data management: export, import, legacy migration.",
    rich_markup_mode=None,
)
app.add_typer(data_app)


@data_app.command("export")
def data_export(
    output: Annotated[str, typer.Argument(
        help="Output file path (use '-' for stdout)"
    )],
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t", help="Only entries with this tag (repeatable)"
    )] = None,
    collection: Annotated[Optional[int], typer.Option(
        "--collection", "-c", help="Only entries in this collection"
    )] = None,
    store: StoreOption = None,
):
    """Export entries to JSON (format 2.0)."""
    kb = _get_kb(store)
    data = kb.export({"tags": _split_tags(tag), "collection": collection})
    text = json.dumps(data, indent=2, ensure_ascii=False)
    if output == "-":
        sys.stdout.write(text + "\n")
    else:
        Path(output).write_text(text + "\n", encoding="utf-8")
        typer.echo(f"Exported {data['total_entries']} entries to {output}", err=True)
    kb.close()


@data_app.command("import")
def data_import(
    file: Annotated[str, typer.Argument(help="Backup or export JSON file")],
    fresh: Annotated[bool, typer.Option(
        "--fresh",
        help="Re-add entries as new ones (current provenance, no landing collection)"
    )] = False,
    store: StoreOption = None,
    force: ForceOption = False,
):
    """Import entries from a backup or export file."""
    path = Path(file)
    if not path.exists():
        typer.echo(f"Error: file not found: {file}", err=True)
        raise typer.Exit(1)
    if not force and not typer.confirm(f"Import knowledge from {file}?"):
        raise typer.Exit(0)

    kb = _get_kb(store)
    if fresh:
        try:
            stats = kb.import_export(json.loads(path.read_text(encoding="utf-8")))
        except (ValueError, KnowledgeError) as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        for error in stats["errors"]:
            typer.echo(f"  {error}", err=True)
        typer.echo(f"Imported {stats['imported']} entries, skipped {stats['skipped']}.")
        kb.close()
        return

    result = Reconciler(kb).import_from_backup(path)
    kb.close()
    _echo_result(result, "Import results")
    if result.outcome is not Outcome.SUCCESS:
        raise typer.Exit(1)


@data_app.command("backup")
def data_backup(
    output: Annotated[str, typer.Argument(help="Backup file to write")],
    legacy: Annotated[Optional[Path], typer.Option(
        "--legacy", help="SQLite file holding the legacy tables"
    )] = None,
    store: StoreOption = None,
):
    """Snapshot the legacy tables to a JSON backup file."""
    kb = _get_kb(store)
    ok = Reconciler(kb, legacy).backup_legacy_data(output)
    kb.close()
    if not ok:
        typer.echo("Backup failed (no legacy tables, or the file could not be written).", err=True)
        raise typer.Exit(1)
    typer.echo(f"Backup created: {output}")


@data_app.command("migrate")
def data_migrate(
    backup: Annotated[Optional[str], typer.Option(
        "--backup", help="Write a JSON backup of the legacy tables first"
    )] = None,
    remove_legacy: Annotated[bool, typer.Option(
        "--remove-legacy", help="Drop the legacy tables after a clean migration"
    )] = False,
    legacy: Annotated[Optional[Path], typer.Option(
        "--legacy", help="SQLite file holding the legacy tables"
    )] = None,
    store: StoreOption = None,
    force: ForceOption = False,
):
    """
    Migrate entries from the legacy knowledge tables.

    Safe to re-run: with no legacy tables present nothing is changed.
    """
    kb = _get_kb(store)
    reconciler = Reconciler(kb, legacy)

    if backup:
        if not reconciler.backup_legacy_data(backup):
            typer.echo("Backup failed", err=True)
            raise typer.Exit(1)
        typer.echo(f"Backup created: {backup}")

    if not force and not typer.confirm("Proceed with migration? This copies all legacy knowledge data."):
        typer.echo("Migration cancelled.")
        raise typer.Exit(0)

    result = reconciler.migrate_from_legacy()
    if result.outcome is Outcome.NO_DATA:
        if _get_json_output():
            typer.echo(json.dumps(result.to_dict(), indent=2))
            return
        typer.echo(result.message)
        typer.echo("Possible reasons:")
        typer.echo("  * This is a fresh installation")
        typer.echo("  * The data was already migrated and the legacy tables removed")
        typer.echo("To migrate anyway, restore the legacy tables from a database backup")
        typer.echo("or import a JSON backup with 'knowhow data import <file>'.")
        return

    _echo_result(result, "Migration results")

    if remove_legacy and not result.errors:
        if force or typer.confirm("Remove the legacy knowledge tables?"):
            cleanup = reconciler.remove_legacy_system()
            if cleanup["errors"]:
                typer.echo("Legacy removal failed: " + ", ".join(cleanup["errors"]), err=True)
                raise typer.Exit(1)
            typer.echo("Removed legacy tables: " + (", ".join(cleanup["tables_removed"]) or "none"))

    if result.errors:
        raise typer.Exit(1)


@data_app.command("remove-legacy")
def data_remove_legacy(
    legacy: Annotated[Optional[Path], typer.Option(
        "--legacy", help="SQLite file holding the legacy tables"
    )] = None,
    store: StoreOption = None,
    force: ForceOption = False,
):
    """Drop the legacy knowledge tables."""
    if not force and not typer.confirm("Drop the legacy knowledge tables? This cannot be undone."):
        raise typer.Exit(0)
    kb = _get_kb(store)
    cleanup = Reconciler(kb, legacy).remove_legacy_system()
    kb.close()
    if cleanup["errors"]:
        typer.echo("Legacy removal failed: " + ", ".join(cleanup["errors"]), err=True)
        raise typer.Exit(1)
    typer.echo("Removed legacy tables: " + (", ".join(cleanup["tables_removed"]) or "none"))


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

def main():
    """Console entry point: run the app, logging unexpected failures."""
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        raise SystemExit(130)
    except Exception as e:
        command = " ".join(sys.argv[1:2]) or "knowhow"
        log_path = log_exception(e, context=f"knowhow {command}",
                                 store_path=_get_store_override())
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
