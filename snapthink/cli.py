"""
CLI for snapthink notebooks and chats.

Usage:
    snapthink new --title "Reading list"
    snapthink add-doc notebook-1712345678901-abc123def paper.pdf
    snapthink ask notebook-1712345678901-abc123def "What is the main result?"
    snapthink migrate --backup ~/Desktop
"""

import json
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Workspace
from .errors import SnapthinkError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .providers.ollama_utils import DONE, DOWNLOADING, ERROR, DownloadEvent
from .types import LegacyRecord, Message, Source


# Set SNAPTHINK_VERBOSE=1 to enable debug mode via environment
if os.environ.get("SNAPTHINK_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_assume_yes = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _yes_callback(value: bool):
    global _assume_yes
    _assume_yes = value


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


app = typer.Typer(
    name="snapthink",
    help="Local notebooks and chats with document retrieval.",
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
    yes: Annotated[bool, typer.Option(
        "--yes", "-y",
        help="Download a missing embedding model without asking",
        callback=_yes_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="SNAPTHINK_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Local notebooks and chats with document retrieval."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _consent(model: str) -> bool:
    if _assume_yes:
        return True
    if not sys.stdin.isatty():
        typer.echo(f"Embedding model '{model}' is not installed. Re-run with --yes to download it.", err=True)
        return False
    return typer.confirm(f"Embedding model '{model}' is not installed. Download it now?", default=True)


def _print_event(event: DownloadEvent) -> None:
    if event.status == DOWNLOADING:
        pct = f"{event.progress:5.1f}% " if event.progress is not None else ""
        typer.echo(f"\r{pct}{event.detail or ''}"[:120], err=True, nl=False)
    elif event.status == DONE:
        typer.echo(f"\nModel ready: {event.model}", err=True)
    elif event.status == ERROR:
        typer.echo(f"\nDownload failed: {event.detail}", err=True)
    else:
        typer.echo(f"Downloading {event.model}...", err=True)


@contextmanager
def _workspace():
    """Open the workspace for one command; errors become a clean exit 1."""
    try:
        ws = Workspace(_store_override, consent=_consent, on_event=_print_event)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    try:
        yield ws
    except SnapthinkError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        ws.close()


def _emit_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _format_sources(sources: list[Source]) -> str:
    lines = []
    for i, s in enumerate(sources, 1):
        score = f" ({s.score:.3f})" if s.score is not None else ""
        text = " ".join(s.text.split())
        if len(text) > 200:
            text = text[:197] + "..."
        lines.append(f"[{i}] {s.file_name} #{s.index + 1}{score}\n    {text}")
    return "\n".join(lines)


def _format_message(message: Message) -> str:
    content = message.answer if message.role == "assistant" else message.content
    return f"{message.role}: {content}"


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------

@app.command()
def new(
    title: Annotated[Optional[str], typer.Option(
        "--title", "-t", help="Title (notebook) or display name (chat)",
    )] = None,
    chat: Annotated[bool, typer.Option(
        "--chat", help="Create a legacy chat instead of a notebook",
    )] = False,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", help="Tag for the notebook (repeatable)",
    )] = None,
):
    """Create a notebook (or a legacy chat)."""
    with _workspace() as ws:
        if chat:
            record = ws.create_chat(title)
            data = {"id": record.id, "kind": "chat", "title": ws.title(record.id)}
        else:
            record = ws.create_notebook(title, tags=tag or [])
            data = {"id": record.id, "kind": "notebook", "title": record.meta.title}
    if _json_output:
        _emit_json(data)
    else:
        typer.echo(data["id"])


@app.command("list")
def list_sessions():
    """List notebooks and chats, most recent first."""
    with _workspace() as ws:
        sessions = ws.list_sessions()
    if _json_output:
        _emit_json([s.to_dict() for s in sessions])
        return
    if not sessions:
        typer.echo("No sessions.")
        return
    width = max(len(s.id) for s in sessions)
    for s in sessions:
        updated = (s.updated_at or "")[:10]
        typer.echo(
            f"{s.id:<{width}}  {s.kind:<8}  {updated:<10}  "
            f"{s.message_count:>4} msgs  {s.document_count:>2} docs  {s.title}"
        )


@app.command()
def show(
    id: Annotated[str, typer.Argument(help="Session ID")],
):
    """Show a session's metadata and messages."""
    with _workspace() as ws:
        record = ws.load(id)
        title = ws.title(id)
        docs = ws.list_documents(id)
    if _json_output:
        if isinstance(record, LegacyRecord):
            data = dict(record.to_dict(), id=id, kind="chat", title=title)
        else:
            data = dict(
                record.meta.to_dict(),
                kind="notebook",
                messages=[m.to_dict() for m in record.messages],
                files={b: [f.to_dict() for f in entries] for b, entries in record.files.items()},
            )
        data["documents"] = [d.to_dict() for d in docs]
        _emit_json(data)
        return
    typer.echo(f"{title}  ({record.kind} {id})")
    if docs:
        typer.echo("Documents: " + ", ".join(d.name for d in docs))
    for message in record.messages:
        typer.echo("")
        typer.echo(_format_message(message))


@app.command()
def rename(
    id: Annotated[str, typer.Argument(help="Session ID")],
    name: Annotated[str, typer.Argument(help="New title")],
):
    """Rename a session."""
    with _workspace() as ws:
        ws.rename(id, name)
    if not _json_output:
        typer.echo(f"Renamed {id}")


@app.command()
def delete(
    id: Annotated[str, typer.Argument(help="Session ID")],
):
    """Delete a session and everything in it."""
    with _workspace() as ws:
        ws.delete(id)
    if not _json_output:
        typer.echo(f"Deleted {id}")


# -----------------------------------------------------------------------------
# Documents and media
# -----------------------------------------------------------------------------

@app.command("add-doc")
def add_doc(
    id: Annotated[str, typer.Argument(help="Session ID")],
    path: Annotated[Path, typer.Argument(
        help="PDF, text or Markdown file", exists=True, dir_okay=False, readable=True,
    )],
):
    """Add a document and index it for retrieval."""
    with _workspace() as ws:
        doc = ws.add_document(id, path)
    if _json_output:
        _emit_json({"id": doc.id, "name": doc.name, "ext": doc.ext, "size": doc.size,
                    "uploadedAt": doc.uploaded_at, "chunks": len(doc.chunks)})
    else:
        typer.echo(f"{doc.id}  {doc.name}  ({len(doc.chunks)} chunks)")


@app.command()
def docs(
    id: Annotated[str, typer.Argument(help="Session ID")],
):
    """List a session's documents."""
    with _workspace() as ws:
        summaries = ws.list_documents(id)
    if _json_output:
        _emit_json([d.to_dict() for d in summaries])
        return
    for d in summaries:
        typer.echo(f"{d.id}  {d.name}")


@app.command("remove-doc")
def remove_doc(
    id: Annotated[str, typer.Argument(help="Session ID")],
    doc_id: Annotated[str, typer.Argument(help="Document ID")],
):
    """Remove a document from a session."""
    with _workspace() as ws:
        removed = ws.remove_document(id, doc_id)
    if _json_output:
        _emit_json({"removed": removed})
    elif removed:
        typer.echo(f"Removed {doc_id}")
    else:
        typer.echo(f"No document {doc_id} in {id}")


@app.command("add-media")
def add_media(
    id: Annotated[str, typer.Argument(help="Notebook ID")],
    path: Annotated[Path, typer.Argument(
        help="Image or video file", exists=True, dir_okay=False, readable=True,
    )],
):
    """Attach an image or video to a notebook."""
    with _workspace() as ws:
        message = ws.add_media(id, path)
    if _json_output:
        _emit_json(message.to_dict())
    else:
        typer.echo(message.content)


# -----------------------------------------------------------------------------
# Retrieval
# -----------------------------------------------------------------------------

@app.command()
def search(
    id: Annotated[str, typer.Argument(help="Session ID")],
    query: Annotated[str, typer.Argument(help="Search text")],
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-k", help="Number of snippets (default from config)",
    )] = None,
):
    """Find the document snippets most similar to a query."""
    with _workspace() as ws:
        sources = ws.search(id, query, limit)
    if _json_output:
        _emit_json([s.to_dict() for s in sources])
    elif sources:
        typer.echo(_format_sources(sources))
    else:
        typer.echo("No matches.")


@app.command()
def ask(
    id: Annotated[str, typer.Argument(help="Session ID")],
    question: Annotated[str, typer.Argument(help="Question about the session's documents")],
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-k", help="Number of snippets (default from config)",
    )] = None,
):
    """Answer a question from the session's documents."""
    with _workspace() as ws:
        answer = ws.ask(id, question, limit)
    if _json_output:
        _emit_json(answer.to_dict())
        return
    typer.echo(answer.answer)
    if answer.sources:
        typer.echo("")
        typer.echo(_format_sources(answer.sources))


@app.command()
def summarize(
    id: Annotated[str, typer.Argument(help="Session ID")],
    doc_id: Annotated[str, typer.Argument(help="Document ID")],
):
    """Summarise a document from its opening chunks."""
    with _workspace() as ws:
        answer = ws.summarize_document(id, doc_id)
    if _json_output:
        _emit_json(answer.to_dict())
    else:
        typer.echo(answer.answer)


# -----------------------------------------------------------------------------
# Migration and archives
# -----------------------------------------------------------------------------

@app.command()
def migrate(
    force: Annotated[bool, typer.Option(
        "--force", help="Migrate chats again even if already migrated",
    )] = False,
    backup: Annotated[Optional[Path], typer.Option(
        "--backup", help="Zip the legacy chats to this file or directory first",
    )] = None,
):
    """Convert legacy chats into notebooks. Chats are left untouched."""
    with _workspace() as ws:
        result = ws.migrate(force=force, backup=backup)
    if _json_output:
        _emit_json(result.to_dict())
        return
    for summary in result.notebooks:
        typer.echo(f"{summary.id}  {summary.title}")
    typer.echo(
        f"Migrated {result.migrated} chats"
        f" ({len(result.skipped)} skipped, {len(result.failures)} failed)"
    )
    for failure in result.failures:
        typer.echo(f"  {failure}", err=True)


@app.command()
def export(
    id: Annotated[str, typer.Argument(help="Session ID")],
    dest: Annotated[Path, typer.Argument(help="Archive file or directory")],
):
    """Export a session to an archive (.snap for notebooks, .zip for chats)."""
    with _workspace() as ws:
        path = ws.export(id, dest)
    if _json_output:
        _emit_json({"id": id, "path": str(path)})
    else:
        typer.echo(str(path))


@app.command("import")
def import_archive(
    archive: Annotated[Path, typer.Argument(
        help="Archive created by export", exists=True, dir_okay=False,
    )],
):
    """Import a session archive under a new ID."""
    with _workspace() as ws:
        result = ws.import_archive(archive)
    if _json_output:
        _emit_json(result.to_dict())
        return
    typer.echo(result.id)
    if result.warning:
        typer.echo(
            "Warning: missing documents dropped: " + ", ".join(result.missing_documents),
            err=True,
        )


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------

@app.command()
def models():
    """List locally installed Ollama models."""
    with _workspace() as ws:
        installed = ws.list_models()
    if _json_output:
        _emit_json([m.to_dict() for m in installed])
        return
    for m in installed:
        size = f"{m.size_in_gb:.2f} GB" if m.size_in_gb is not None else m.size_raw
        typer.echo(f"{m.name:<40} {size}")


@app.command()
def pull(
    model: Annotated[str, typer.Argument(help="Model name, e.g. nomic-embed-text:latest")],
):
    """Download a model with ollama pull."""
    with _workspace() as ws:
        final = ws.pull_model(model)
    if final is None or final.status != DONE:
        raise typer.Exit(1)


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="snapthink CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
