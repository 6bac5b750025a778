
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

import typer
from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from citedoc.core.answer import parse_citations, sanitize_stream_text
from citedoc.core.config import get_settings
from citedoc.core.conversation import ConversationService
from citedoc.core.embed import OpenAIEmbedder
from citedoc.core.errors import CiteDocError
from citedoc.core.highlight import highlight as highlight_markup
from citedoc.core.ingest import IngestionPipeline
from citedoc.core.logging_config import configure_logging
from citedoc.core.models import StreamEvent, StreamEventType
from citedoc.core.retrieve import HybridRetriever
from citedoc.core.store import DocumentStore

app = typer.Typer(help="citedoc CLI: cited answers over your documents")
console = Console()

settings = get_settings()

# Initialize structured logging
configure_logging(log_level=settings.log_level, json_logs=settings.json_logs)


@contextmanager
def _open_store() -> Iterator[DocumentStore]:
    store = DocumentStore(settings.database_url, min_size=settings.db_pool_min, max_size=settings.db_pool_max)
    store.open()
    try:
        yield store
    finally:
        store.close()


@app.command()
def ingest(
    path: str,
    owner: str = typer.Option(..., "--owner", help="Owner identity the documents belong to"),
):
    """Ingest a text file, or every text file in a directory."""
    input_path = Path(path)
    if not input_path.exists():
        console.print(f"[red]Error:[/] Path {path} does not exist")
        raise typer.Exit(1)

    console.print(f"[bold]Ingesting documents from:[/] {path}")

    try:
        with _open_store() as store:
            pipeline = IngestionPipeline(store, settings=settings)
            with console.status("[bold green]Processing documents..."):
                if input_path.is_dir():
                    results = pipeline.ingest_directory(input_path, owner)
                else:
                    results = [pipeline.ingest_file(input_path, owner)]

        console.print(f"[green]✅ Ingestion complete![/]")
        console.print(f"[bold]Documents processed:[/] {len(results)}")
        console.print(f"[bold]Total fragments created:[/] {sum(len(r.fragments) for r in results)}")
        for result in results:
            console.print(f"  [blue]{result.document_id}[/] ({len(result.fragments)} fragments)")

    except CiteDocError as e:
        console.print(f"[red]Error during ingestion:[/] {e}")
        raise typer.Exit(1)


def render_answer(events: Iterable[StreamEvent], live: Live) -> Tuple[str, Optional[str], Optional[str]]:
    """
    Show streamed answer text in a live view.

    Only the sanitized prefix is rendered, so a half-streamed citation tag
    never reaches the terminal.

    Returns:
        The raw answer text, the conversation id and the error text, if any
    """
    answer_parts = []
    conversation_id = None
    for event in events:
        if event.type == StreamEventType.TEXT:
            answer_parts.append(event.delta)
            live.update(Text(sanitize_stream_text("".join(answer_parts))))
        elif event.type == StreamEventType.CONVERSATION_ID:
            conversation_id = event.conversation_id
        elif event.type == StreamEventType.ERROR:
            return "".join(answer_parts), conversation_id, event.error_text
    return "".join(answer_parts), conversation_id, None


@app.command()
def ask(
    question: str,
    owner: str = typer.Option(..., "--owner", help="Owner identity asking the question"),
    chat: Optional[str] = typer.Option(None, "--chat", help="Continue an existing conversation"),
    files: List[str] = typer.Option([], "--file", help="Document id to attach (repeatable)"),
):
    """Ask a question and stream the cited answer."""
    try:
        with _open_store() as store:
            service = ConversationService(store, settings)
            with Live(console=console, refresh_per_second=12) as live:
                answer_text, streamed_id, error_text = render_answer(
                    service.ask(owner, question, chat, files), live
                )
    except CiteDocError as e:
        console.print(f"[red]Error:[/] {e.user_message} ({e})")
        raise typer.Exit(1)

    if error_text:
        console.print(f"[red]Error:[/] {error_text}")
        raise typer.Exit(1)

    conversation_id = streamed_id or chat
    citations = parse_citations(answer_text)
    if citations:
        table = Table(title="Citations")
        table.add_column("#", justify="right")
        table.add_column("Document")
        table.add_column("Fragment")
        table.add_column("Excerpt")
        for citation in citations:
            table.add_row(
                str(citation.ordinal),
                citation.document_id or "-",
                citation.fragment_id or "-",
                citation.cited_text
            )
        console.print(table)

    if conversation_id:
        console.print(f"[dim]Conversation: {conversation_id}[/]")


@app.command()
def search(
    question: str,
    files: List[str] = typer.Option(..., "--file", help="Document id to search (repeatable)"),
    top_k: Optional[int] = typer.Option(None, "--top-k", help="Maximum number of fragments"),
):
    """Run tiered retrieval without generating an answer."""
    try:
        with _open_store() as store:
            retriever = HybridRetriever(store, OpenAIEmbedder(settings), top_k=settings.retrieval_top_k)
            fragments = retriever.retrieve(question, files, top_k=top_k)
    except CiteDocError as e:
        console.print(f"[red]Error during search:[/] {e}")
        raise typer.Exit(1)

    if not fragments:
        console.print("[yellow]No fragments found[/]")
        return

    console.print(f"[bold]Found {len(fragments)} fragments:[/]")
    for i, fragment in enumerate(fragments, 1):
        preview = fragment.content[:200] + ("..." if len(fragment.content) > 200 else "")
        console.print(f"\n[bold blue]{i}.[/] [dim]{fragment.document_id} / {fragment.id}[/]")
        console.print(preview, markup=False, highlight=False)


@app.command()
def highlight(
    document_id: str,
    chunk: Optional[str] = typer.Option(None, "--chunk", help="Fragment id the citation points at"),
    text: Optional[str] = typer.Option(None, "--text", help="Quoted excerpt to locate"),
    owner: Optional[str] = typer.Option(None, "--owner", help="Restrict to documents of this owner"),
):
    """Locate a cited excerpt inside a document's addressable markup."""
    if not chunk and not text:
        console.print("[red]Error:[/] Give --chunk, --text or both")
        raise typer.Exit(1)

    try:
        with _open_store() as store:
            document = store.get_document(document_id, owner_id=owner)
    except CiteDocError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    result = highlight_markup(document.addressable_markup, chunk, text)
    if not result.matched:
        console.print("[yellow]Excerpt not found[/]")
        raise typer.Exit(1)

    target = result.scroll_target
    console.print(f"[green]✅ Highlighted[/] in block {target.block_index} (fragment {target.fragment_id})")
    lines = result.markup.splitlines()
    if target.block_index < len(lines):
        console.print(lines[target.block_index], markup=False, highlight=False)


@app.command()
def status():
    """Show system status and statistics."""
    try:
        with _open_store() as store:
            stats = store.get_stats()

        console.print("[bold]🚀 citedoc System Status[/]")
        console.print()
        console.print("[bold]📊 Documents & Fragments:[/]")
        console.print(f"  Total documents: {stats['total_documents']}")
        console.print(f"  Total fragments: {stats['total_fragments']}")
        console.print(f"  Embedded fragments: {stats['embedded_fragments']}")
        console.print(f"  Keyword-only fragments: {stats['keyword_only_fragments']}")
        console.print(f"  Completion rate: {stats['completion_rate']:.1%}")

        object_store_dir = settings.object_store_path
        if object_store_dir.exists():
            artifacts = [p for p in object_store_dir.iterdir() if p.is_file()]
            console.print()
            console.print(f"[bold]📁 Object Store:[/] {len(artifacts)} files")

        console.print()
        console.print(f"[bold]🗄️  Database:[/] {settings.database_url}")

    except CiteDocError as e:
        console.print(f"[red]Error getting status:[/] {e}")
        raise typer.Exit(1)


@app.command()
def config(
    action: str = typer.Argument(..., help="Action: show, validate"),
):
    """Show or validate configuration settings."""
    console.print(f"[bold]🔧 Configuration[/]")

    if action == "show":
        _show_configuration()
    elif action == "validate":
        _validate_configuration()
    else:
        console.print(f"[red]Error:[/] Unknown action: {action}")
        console.print("Available actions: show, validate")
        raise typer.Exit(1)


def _show_configuration():
    """Display current configuration."""
    config_items = {
        "Database": settings.database_url,
        "OpenAI API Key": "***" if settings.openai_api_key else "Not set",
        "Embedding Model": f"{settings.embed_model} ({settings.embed_dimensions} dims)",
        "Embedding Batch": f"{settings.embed_batch_size} every {settings.embed_batch_pause}s",
        "Chat Model": f"{settings.chat_model} (temperature {settings.chat_temperature})",
        "Retrieval Top K": settings.retrieval_top_k,
        "Object Store": settings.object_store_dir,
        "Log Level": settings.log_level,
        "JSON Logs": settings.json_logs,
    }

    console.print("\n[bold]Current Configuration:[/]")
    for key, value in config_items.items():
        console.print(f"  [blue]{key}:[/] {value}")


def _validate_configuration():
    """Validate current configuration."""
    console.print("[bold]Validating configuration...[/]")

    issues = settings.validate()

    # Check database connectivity
    try:
        with _open_store() as store:
            with store.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        console.print("[green]✅ Database connection: OK[/]")
    except CiteDocError as e:
        issues.append(f"Database connection failed: {e}")

    if issues:
        console.print(f"\n[red]❌ Configuration issues found:[/]")
        for issue in issues:
            console.print(f"  • {issue}")
        raise typer.Exit(1)
    else:
        console.print(f"\n[green]✅ Configuration validation passed![/]")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the HTTP API."""
    import uvicorn

    console.print(f"[bold]Starting citedoc API on[/] http://{host}:{port}")
    uvicorn.run("citedoc.server.api:create_app", factory=True, host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
