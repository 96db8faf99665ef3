"""
Command-line interface for ragindex.

Commands:
    chunk   - Chunk a file and report chunk quality
    ingest  - Add a file to a collection as a document
    search  - Show the records most similar to a query
    ask     - Answer a question from a collection
    health  - Check the embedding endpoint
"""

import logging
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ragindex import __version__
from ragindex.config import get_settings
from ragindex.exceptions import RagIndexError

app = typer.Typer(
    name="ragindex",
    help="Chunk, embed and search documents in a vector store",
    add_completion=False,
)
console = Console()


def _read(path: Path) -> str:
    if not path.is_file():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(1)
    return path.read_text(encoding="utf-8", errors="replace")


def _service(collection: Optional[str], project_id: Optional[int]):
    from ragindex.service import IndexingService

    try:
        return IndexingService.from_settings(get_settings(), collection=collection, project_id=project_id)
    except RagIndexError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
) -> None:
    """Configure logging for every command."""
    level = log_level or get_settings().log_level
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@app.command()
def version() -> None:
    """Print the installed version."""
    console.print(f"ragindex {__version__}")


@app.command()
def chunk(
    file: Path = typer.Argument(..., help="File to chunk"),
    chunk_size: Optional[int] = typer.Option(None, help="Chunk size (default from settings)"),
    chunk_overlap: Optional[int] = typer.Option(None, help="Chunk overlap (default from settings)"),
    content_type: Optional[str] = typer.Option(None, "--type", help="'code' or 'text' (detected if omitted)"),
    show: bool = typer.Option(False, "--show", "-s", help="Print every chunk boundary"),
) -> None:
    """Chunk a file and report statistics and likely problems."""
    from ragindex.retrieval.chunker import Chunker, analyze_chunks, detect_content_type

    settings = get_settings()
    text = _read(file)
    size = chunk_size or settings.chunk_size
    overlap = chunk_overlap if chunk_overlap is not None else settings.chunk_overlap

    chunker = Chunker(
        parallel_threshold=settings.parallel_threshold,
        pool_timeout=settings.chunk_pool_timeout,
    )
    start = time.monotonic()
    chunks = chunker.chunk(text, size, overlap, content_type)
    duration = time.monotonic() - start

    stats = analyze_chunks(chunks)
    if stats is None:
        console.print("[yellow]No chunks produced (empty file?)[/yellow]")
        return

    detected = content_type or detect_content_type(text).value
    table = Table(title=f"Chunks of {file.name}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Content type", detected)
    table.add_row("Document size", f"{len(text):,} chars")
    table.add_row("Chunks", str(stats.count))
    table.add_row("Average length", f"{stats.average_length:.1f}")
    table.add_row("Min / max length", f"{stats.min_length} / {stats.max_length}")
    table.add_row("Std dev", f"{stats.std_dev:.1f}")
    table.add_row("Duration", f"{duration * 1000:.0f}ms")
    console.print(table)

    if stats.issues:
        console.print("[yellow]Issues:[/yellow]")
        for issue in stats.issues:
            console.print(f"  • {issue}")

    if show:
        for i, content in enumerate(chunks):
            console.print(Panel(content, title=f"#{i} ({len(content)} chars)", title_align="left"))


@app.command()
def ingest(
    file: Path = typer.Argument(..., help="File to add as a document"),
    collection: Optional[str] = typer.Option(None, "--collection", "-c", help="Target collection"),
    project_id: Optional[int] = typer.Option(None, "--project", help="Project id (collection Project<id>)"),
    content_type: str = typer.Option("document", "--type", help="Stored content type"),
    force: bool = typer.Option(False, "--force", "-f", help="Store chunks even if already present"),
) -> None:
    """Chunk, embed and store a file."""
    settings = get_settings()
    text = _read(file)
    service = _service(collection, project_id)

    metadata = {
        "file_path": str(file),
        "file_name": file.name,
        "file_ext": file.suffix,
        "file_dir": str(file.parent),
    }
    with console.status(f"[bold green]Ingesting {file.name}..."):
        records = service.add_document(
            text,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            content_type=content_type,
            source_title=file.name,
            metadata=metadata,
            force=force,
        )

    console.print(f"[green]Stored {len(records)} chunks in collection {service.collection}[/green]")
    health = service.embedder.health_status()
    if health["consecutive_failures"]:
        console.print(f"[yellow]Embedding endpoint failing: {health}[/yellow]")


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    k: int = typer.Option(5, "--top-k", "-k", help="Number of results"),
    distance: str = typer.Option("cosine", help="cosine, euclidean or inner_product"),
    collection: Optional[str] = typer.Option(None, "--collection", "-c"),
    project_id: Optional[int] = typer.Option(None, "--project"),
) -> None:
    """Show the stored records closest to a query."""
    service = _service(collection, project_id)
    try:
        records = service.similarity_search(query, k=k, distance=distance)
    except (RagIndexError, ValueError) as e:
        console.print(f"[red]Search failed: {e}[/red]")
        raise typer.Exit(1)

    if not records:
        console.print("[yellow]No results.[/yellow]")
        return

    table = Table(title=f"Top {len(records)} in {service.collection}")
    table.add_column("#", style="cyan")
    table.add_column("Source", style="magenta")
    table.add_column("Content")
    for rank, record in enumerate(records, start=1):
        preview = record.content[:200].replace("\n", " ")
        table.add_row(str(rank), record.source_title or "-", preview)
    console.print(table)


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to answer"),
    k: int = typer.Option(5, "--top-k", "-k", help="Records used as context"),
    collection: Optional[str] = typer.Option(None, "--collection", "-c"),
    project_id: Optional[int] = typer.Option(None, "--project"),
) -> None:
    """Answer a question from the stored records."""
    service = _service(collection, project_id)
    console.print(f"[blue]Question:[/blue] {question}\n")

    try:
        with console.status("[bold green]Thinking..."):
            result = service.ask(question, k=k)
    except RagIndexError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print("[green]Answer:[/green]")
    console.print(result.answer)
    if result.sources:
        console.print("\n[blue]Sources:[/blue]")
        for record in result.sources:
            console.print(f"  • {record.source_title or record.content[:60]!r}")


@app.command()
def health() -> None:
    """Send test requests to the embedding endpoint and, if configured, the chat endpoint."""
    from ragindex.llm.chat import create_chat_model
    from ragindex.retrieval.embeddings import EmbeddingClient

    settings = get_settings()
    try:
        client = EmbeddingClient(settings=settings)
    except RagIndexError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    healthy = True
    result = client.test_connection()
    if result["success"]:
        console.print(f"[green]✓ Embedding endpoint healthy, embedding size {result['embedding_size']}[/green]")
    else:
        console.print(f"[red]✗ Embedding endpoint: {result['error']}[/red]")
        healthy = False

    chat_model = create_chat_model(settings)
    if chat_model is None:
        console.print("[dim]No chat endpoint configured[/dim]")
    else:
        chat_ok, message = chat_model.health_check()
        style = "green" if chat_ok else "red"
        mark = "✓" if chat_ok else "✗"
        console.print(f"[{style}]{mark} Chat endpoint: {message}[/{style}]")
        healthy = healthy and chat_ok

    if not healthy:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
