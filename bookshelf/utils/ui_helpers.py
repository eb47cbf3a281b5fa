import os
import json
from typing import Any, Dict, List

from rich.console import Console
from rich.table import Table
from rich.markup import escape

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "BOOKSHELF_CLI_OUTPUT"
OUTPUT_MODES = {"plain", "json", "rich"}

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in OUTPUT_MODES:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    mode = os.environ.get(OUTPUT_MODE_ENV, "plain").lower()
    return mode if mode in OUTPUT_MODES else "plain"


def _authors(names: List[str]) -> str:
    return ", ".join(names) if names else "Unknown author"


def print_search_result(response: Dict[str, Any]) -> None:
    """Print an enriched search response in the current output mode.
    - plain: 'key - Title by Authors' lines, owned books marked '[in library]'
    - json: the response as returned by the API
    - rich: table with an ownership column
    """
    mode = get_output_mode()
    docs = response.get("docs", [])

    if mode == "json":
        print(json.dumps(response, ensure_ascii=False))
        return

    if not docs:
        print(f"No results for \"{response.get('q', '')}\".")
        return

    if mode == "rich":
        table = Table(title=f"Results for \"{escape(response.get('q', ''))}\"", header_style="bold cyan")
        table.add_column("Key", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Authors", style="white")
        table.add_column("Year", justify="right")
        table.add_column("Owned", justify="center")
        for doc in docs:
            table.add_row(
                doc.get("openLibraryKeyNormalized", doc.get("key", "")),
                escape(doc.get("title", "")),
                escape(_authors(doc.get("author_name", []))),
                str(doc.get("first_publish_year", "")),
                "✓" if doc.get("inMyLibrary") else "",
            )
        _console.print(table)
        _console.print(f"[dim]{response.get('num_found', len(docs))} matches in the catalog[/]")
    else:
        print(f"{response.get('num_found', len(docs))} results for \"{response.get('q', '')}\":")
        for doc in docs:
            line = f"{doc.get('openLibraryKeyNormalized', doc.get('key', ''))} - {doc.get('title', '')} by {_authors(doc.get('author_name', []))}"
            if doc.get("inMyLibrary"):
                line += " [in library]"
            print(line)


def print_library_page(page: Dict[str, Any]) -> None:
    """Print one page of library entries in the current output mode."""
    mode = get_output_mode()
    entries = page.get("items", [])

    if mode == "json":
        payload = dict(page)
        payload["items"] = [e.to_dict() for e in entries]
        print(json.dumps(payload, ensure_ascii=False))
        return

    if not entries:
        print("No books in library.")
        return

    if mode == "rich":
        table = Table(title="📚 My Library", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Authors", style="white")
        table.add_column("Rating", justify="right")
        table.add_column("Review", style="dim")
        for e in entries:
            table.add_row(
                e.id,
                escape(e.title),
                escape(_authors(e.authors)),
                "" if e.rating is None else f"{e.rating}/5",
                escape(e.review or ""),
            )
        _console.print(table)
    else:
        for e in entries:
            line = f"{e.id} - {e.title} by {_authors(e.authors)}"
            if e.rating is not None:
                line += f" ({e.rating}/5)"
            print(line)
    print(f"Page {page.get('page', 1)}, {page.get('total', len(entries))} books in total")


def print_history(items: List[Dict[str, str]]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(items, ensure_ascii=False))
    elif not items:
        print("No recent searches.")
    elif mode == "rich":
        table = Table(title="Recent searches", header_style="bold cyan")
        table.add_column("Query", style="white")
        table.add_column("At", style="dim")
        for item in items:
            table.add_row(escape(item["q"]), item["at"])
        _console.print(table)
    else:
        for item in items:
            print(f"{item['at']}  {item['q']}")
