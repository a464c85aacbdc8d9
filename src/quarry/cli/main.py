import mimetypes
import os
import re
import time
from pathlib import Path
from typing import Optional

import psycopg
import typer
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from quarry.core.chunking import estimate_token_count, split_into_chunks
from quarry.core.config import QuarryConfig, load_config
from quarry.core.embed import EmbeddingProvider, create_provider
from quarry.core.errors import ConfigurationError, QuarryError
from quarry.core.file_state import file_progress, reported_status
from quarry.core.headings import add_contextual_headers
from quarry.core.ingest import delete_file, register_upload, reprocess_file
from quarry.core.logging_config import configure_logging, get_audit_logger
from quarry.core.models import ProcessResult, ProcessingStatus
from quarry.core.pg_store import PostgresStore
from quarry.core.processor import EmbeddingBatchProcessor
from quarry.core.retrieve import HybridRetriever
from quarry.core.scheduler import drive_file, process_room

app = typer.Typer(help="Quarry CLI: document ingestion and hybrid retrieval")
console = Console()

# Initialize structured logging
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true"
)

ROOM_OPTION = typer.Option("default", "--room", "-r", envvar="QUARRY_ROOM", help="Room (tenant) id")

STATUS_STYLES = {
    ProcessingStatus.PENDING: "yellow",
    ProcessingStatus.PROCESSING: "blue",
    ProcessingStatus.COMPLETED: "green",
    ProcessingStatus.FAILED: "red",
}


def _load() -> QuarryConfig:
    try:
        return load_config()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        raise typer.Exit(1)


def _open_store(config: QuarryConfig) -> PostgresStore:
    return PostgresStore(config.database_url)


def _build_provider(config: QuarryConfig) -> EmbeddingProvider:
    return create_provider(config.embedding)


def _build_processor(config: QuarryConfig, store) -> EmbeddingBatchProcessor:
    return EmbeddingBatchProcessor(
        files=store,
        chunks=store,
        provider=_build_provider(config),
        chunking=config.chunking,
        embedding=config.embedding,
        processor_config=config.processor,
    )


def _print_result(result: ProcessResult):
    style = STATUS_STYLES.get(result.status, "white")
    console.print(f"[bold]{result.file_id}[/] [{style}]{result.status.value}[/] {result.processed}/{result.total}")
    console.print(f"  {result.message}")
    if result.error_message and result.status == ProcessingStatus.FAILED:
        console.print(f"  [red]Error:[/] {result.error_message}")


@app.command()
def upload(
    path: str,
    room: str = ROOM_OPTION,
    mime_type: Optional[str] = typer.Option(None, "--mime-type", help="Override the detected mime type"),
):
    """Register a document for processing."""
    file_path = Path(path)
    if not file_path.is_file():
        console.print(f"[red]Error:[/] {path} is not a file")
        raise typer.Exit(1)

    config = _load()
    mime = mime_type or mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"

    try:
        record = register_upload(
            _open_store(config), room, file_path.name, file_path.read_bytes(), mime, config.upload
        )
    except QuarryError as e:
        console.print(f"[red]Upload failed:[/] {e}")
        raise typer.Exit(1)

    console.print(f"[green]✅ Uploaded {record.file_name}[/]")
    console.print(f"[bold]File id:[/] {record.id}")
    console.print(f"[bold]Size:[/] {record.file_size} bytes ({record.mime_type})")


@app.command()
def process(
    file_id: str,
    room: str = ROOM_OPTION,
    until_done: bool = typer.Option(False, "--until-done", help="Keep processing until completed or failed"),
):
    """Run the next processing step for a file."""
    config = _load()
    store = _open_store(config)

    try:
        processor = _build_processor(config, store)
        with console.status("[bold green]Processing..."):
            if until_done:
                result = drive_file(processor, room, file_id)
            else:
                result = processor.process_next(room, file_id)
    except QuarryError as e:
        console.print(f"[red]Error during processing:[/] {e}")
        raise typer.Exit(1)

    _print_result(result)
    if result.status == ProcessingStatus.FAILED:
        raise typer.Exit(1)


@app.command("process-all")
def process_all(room: str = ROOM_OPTION):
    """Process every unfinished file in the room."""
    config = _load()
    store = _open_store(config)

    try:
        processor = _build_processor(config, store)
        with console.status("[bold green]Processing room..."):
            results = process_room(store, processor, room)
    except QuarryError as e:
        console.print(f"[red]Error during processing:[/] {e}")
        raise typer.Exit(1)

    if not results:
        console.print("[yellow]No files in room.[/]")
        return

    for result in results.values():
        _print_result(result)

    failed = sum(1 for r in results.values() if r.status == ProcessingStatus.FAILED)
    console.print(f"\n[bold]Files:[/] {len(results)}  [bold]Failed:[/] {failed}")


@app.command()
def status(
    file_id: Optional[str] = typer.Argument(None, help="Show a single file"),
    room: str = ROOM_OPTION,
):
    """Show processing status and progress."""
    config = _load()
    store = _open_store(config)

    try:
        records = [store.get_file(room, file_id)] if file_id else store.list_files(room)
    except QuarryError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    if not records:
        console.print("[yellow]No files in room.[/]")
        return

    table = Table(title=f"Files in room {room}")
    table.add_column("File id", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Error", style="red")

    for record in records:
        shown = reported_status(record)
        progress = file_progress(record)
        style = STATUS_STYLES.get(shown, "white")
        table.add_row(
            record.id,
            record.file_name,
            f"[{style}]{shown.value}[/]",
            f"{progress.processed}/{progress.total} ({progress.percentage}%)",
            record.error_message or "",
        )
    console.print(table)


@app.command()
def search(
    query: str,
    room: str = ROOM_OPTION,
    limit: Optional[int] = typer.Option(None, help="Maximum number of results"),
    threshold: Optional[float] = typer.Option(None, help="Minimum similarity for vector-only hits"),
    vector_weight: Optional[float] = typer.Option(None, help="Weight of vector similarity"),
    keyword_weight: Optional[float] = typer.Option(None, help="Weight of keyword rank"),
):
    """Search the room with hybrid retrieval (pgvector + full-text)."""
    config = _load()
    store = _open_store(config)
    start_time = time.time()

    console.print(f"[bold]Searching for:[/] '{query}'")
    console.print(f"[bold]Room:[/] {room}")
    console.print()

    try:
        provider = _build_provider(config)
        retriever = HybridRetriever(store, config.retrieval)
        with console.status("[bold green]Searching..."):
            results = retriever.search(
                provider.embed_query(query),
                query,
                room,
                threshold=threshold,
                top_k=limit,
                vector_weight=vector_weight,
                keyword_weight=keyword_weight,
            )
    except QuarryError as e:
        console.print(f"[red]Error during search:[/] {e}")
        raise typer.Exit(1)

    if not results:
        console.print("[yellow]No results found.[/]")
        return

    console.print(f"[green]Found {len(results)} results[/] in {(time.time() - start_time) * 1000:.0f}ms:")
    console.print()
    for i, result in enumerate(results, 1):
        console.print(f"[bold]{i}. {result.file_name}[/] ({result.chunk_id})")
        console.print(
            f"   [blue]Score:[/] {result.combined_score:.3f}  "
            f"[blue]Similarity:[/] {result.similarity:.3f}  "
            f"[blue]Keyword rank:[/] {result.keyword_rank:.3f}"
        )
        snippet = result.content if len(result.content) <= 300 else result.content[:300] + "..."
        console.print(f"   [green]Snippet:[/] {snippet}")
        console.print()


@app.command()
def delete(
    file_id: str,
    room: str = ROOM_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a file and all of its chunks."""
    if not yes and not Confirm.ask(f"Delete file {file_id} and its chunks?"):
        console.print("[yellow]Cancelled.[/]")
        raise typer.Exit(0)

    config = _load()
    try:
        delete_file(_open_store(config), room, file_id)
    except QuarryError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    console.print(f"[green]✅ Deleted {file_id}[/]")


@app.command()
def reprocess(file_id: str, room: str = ROOM_OPTION):
    """Reset a failed file so it is processed again."""
    config = _load()
    store = _open_store(config)
    try:
        record = reprocess_file(store, store, room, file_id)
    except QuarryError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    progress = file_progress(record)
    get_audit_logger("cli").info("file_reset", room_id=room, file_id=file_id, event_type="reprocess")
    console.print(
        f"[green]✅ {file_id} reset to {reported_status(record).value}[/] "
        f"({progress.processed}/{progress.total} chunks embedded)"
    )


@app.command()
def chunk(
    path: str,
    size: int = typer.Option(1000, help="Target chunk size in characters"),
    overlap: int = typer.Option(200, help="Characters shared by consecutive chunks"),
    headers: bool = typer.Option(True, "--headers/--no-headers", help="Prefix chunks with section headings"),
):
    """Preview how a text or markdown file would be chunked (no database needed)."""
    file_path = Path(path)
    if not file_path.is_file():
        console.print(f"[red]Error:[/] {path} is not a file")
        raise typer.Exit(1)

    text = file_path.read_text(encoding="utf-8-sig")
    try:
        chunks = split_into_chunks(text, size, overlap)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    if headers:
        chunks = add_contextual_headers(chunks, text)

    console.print(f"[bold]{len(chunks)} chunks[/] from {file_path.name}")
    for i, content in enumerate(chunks):
        console.print(f"\n[bold cyan]Chunk {i}[/] ({len(content)} chars, ~{estimate_token_count(content)} tokens)")
        console.print(content, markup=False)


@app.command()
def config(action: str = typer.Argument(..., help="Action: show, validate")):
    """Show or validate configuration."""
    if action == "show":
        _show_configuration()
    elif action == "validate":
        _validate_configuration()
    else:
        console.print(f"[red]Error:[/] Unknown action: {action}")
        console.print("Available actions: show, validate")
        raise typer.Exit(1)


def _mask_database_url(url: str) -> str:
    """Hide the password of a URL or libpq keyword/value connection string."""
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return re.sub(r"(password\s*=\s*)\S+", r"\1***", url)


def _show_configuration():
    """Display current configuration."""
    config = _load()
    config_items = {
        "Database": _mask_database_url(config.database_url),
        "OpenAI API Key": "***" if config.embedding.api_key else "Not set",
        "Log Level": config.log_level,
        "Embedding": f"{config.embedding.provider}/{config.embedding.model} ({config.embedding.dimensions}d)",
        "Batch Size": config.embedding.batch_size,
        "Chunk Size / Overlap": f"{config.chunking.chunk_size} / {config.chunking.chunk_overlap}",
        "Contextual Headers": config.chunking.contextual_headers,
        "Search Weights": f"vector {config.retrieval.vector_weight} / keyword {config.retrieval.keyword_weight}",
        "Match Threshold": config.retrieval.match_threshold,
        "Match Count": config.retrieval.match_count,
        "Worker Id": config.processor.worker_id,
    }

    console.print("\n[bold]Current Configuration:[/]")
    for key, value in config_items.items():
        console.print(f"  [blue]{key}:[/] {value}")


def _validate_configuration():
    """Validate current configuration."""
    console.print("[bold]Validating configuration...[/]")
    config = _load()
    console.print("[green]✅ Settings: OK[/]")

    issues = []
    if config.embedding.provider == "openai" and not config.embedding.api_key:
        issues.append("OPENAI_API_KEY not set")

    try:
        with psycopg.connect(config.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
        console.print("[green]✅ Database connection: OK[/]")
    except psycopg.Error as e:
        issues.append(f"Database connection failed: {e}")

    if issues:
        console.print("\n[red]❌ Configuration issues found:[/]")
        for issue in issues:
            console.print(f"  • {issue}")
        raise typer.Exit(1)
    console.print("\n[green]✅ Configuration validation passed![/]")


if __name__ == "__main__":
    app()
