import asyncio
import logging
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

from bookshelf.config import settings
from bookshelf.errors import BookshelfError, NotFoundError
from bookshelf.library import ANONYMOUS, Library
from bookshelf.search_history import SearchHistory
from bookshelf.services.cache_manager import cache_manager
from bookshelf.services.http_client import OptimizedHTTPClient
from bookshelf.services.open_library_service import OpenLibraryService
from bookshelf.services.search_service import SearchService, owner_cache_prefix
from bookshelf.utils.ui_helpers import print_history, print_library_page, print_search_result, set_output_mode

APP_NAME = "Bookshelf CLI"
USER_HELP = "Owner id the command acts for"

console = Console(stderr=True)
logger = logging.getLogger(__name__)

app = typer.Typer(help=APP_NAME)


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


async def _run_search(query: str, user: str) -> dict:
    library = Library()
    async with OptimizedHTTPClient() as client:
        service = SearchService(OpenLibraryService(client), library, SearchHistory(library.db_file))
        return await service.search(query, user)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Global CLI options (output mode, logging)."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    if output:
        set_output_mode(output)


@app.command("search")
def cli_search(
    query: str = typer.Argument(..., help="Search text"),
    user: str = typer.Option(ANONYMOUS, "--user", "-u", envvar="BOOKSHELF_USER", help=USER_HELP),
):
    """Search Open Library and mark the books already in your library."""
    try:
        response = asyncio.run(_run_search(query, user))
    except BookshelfError as e:
        _fail(e.message)
    print_search_result(response)


@app.command("list")
def cli_list(
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Filter by title substring"),
    author: Optional[str] = typer.Option(None, "--author", "-a", help="Filter by author substring"),
    reviewed: Optional[bool] = typer.Option(None, "--reviewed/--unreviewed", help="Only reviewed / unreviewed books"),
    page: int = typer.Option(1, "--page", "-p", min=1, help="Page number"),
    limit: int = typer.Option(settings.default_page_size, "--limit", "-l", min=1, max=settings.max_page_size,
                              help="Books per page"),
    user: str = typer.Option(ANONYMOUS, "--user", "-u", envvar="BOOKSHELF_USER", help=USER_HELP),
):
    """List the books in your library, most recently updated first."""
    result = Library().list_entries(user, title=title, author=author, has_review=reviewed, page=page, page_size=limit)
    print_library_page(result)


@app.command("history")
def cli_history(
    user: str = typer.Option(ANONYMOUS, "--user", "-u", envvar="BOOKSHELF_USER", help=USER_HELP),
):
    """Show your most recent searches."""
    print_history(SearchHistory().last(user))


@app.command("remove")
def cli_remove(
    entry_id: str = typer.Argument(..., help="Library entry id"),
    user: str = typer.Option(ANONYMOUS, "--user", "-u", envvar="BOOKSHELF_USER", help=USER_HELP),
):
    """Remove a book from your library."""
    try:
        Library().remove(entry_id, owner_id=user)
    except NotFoundError:
        _fail(f"Library entry {entry_id} not found.")
    cache_manager.invalidate_prefix(owner_cache_prefix(user))
    print(f"Library entry {entry_id} has been removed.")


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = port or settings.api_port
    print(f"Starting API on http://{host}:{port}/")

    args = [sys.executable, "-m", "uvicorn", "bookshelf.api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")

    if timeout > 0:
        proc = subprocess.Popen(args)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                console.print("[yellow]Server did not stop in time, killing it[/]")
                proc.kill()
    else:
        subprocess.run(args)


if __name__ == "__main__":
    app()
