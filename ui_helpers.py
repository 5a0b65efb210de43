import os
import json
from typing import Any, Dict, List, Sequence
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def print_book_list(books: List[Any], total: int) -> None:
    """Print one page of books in the current output mode.
    - plain: 'id - Title by Author (available/total)' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=f"📚 Books ({len(books)} of {total})", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Genre", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, b.genre or "", f"{b.available_copies}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} ({b.available_copies}/{b.total_copies})")
        if total > len(books):
            print(f"... {total - len(books)} more")

def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print library statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_books": "Total Books",
        "total_copies": "Total Copies",
        "available_copies": "Available Copies",
        "total_members": "Members",
        "total_borrowings": "Borrowings",
        "active_borrowings": "Active Borrowings",
        "overdue_borrowings": "Overdue Borrowings",
        "outstanding_fines": "Outstanding Fines",
    }

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")

def print_most_borrowed(rows: Sequence[Any]) -> None:
    """Print (book_id, title, borrow_count) rows, most borrowed first."""
    mode = get_output_mode()

    if not rows:
        print("No borrowings recorded.")
        return

    if mode == "json":
        print(json.dumps([row._asdict() for row in rows], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🏆 Most Borrowed", header_style="bold cyan")
        table.add_column("#", justify="right")
        table.add_column("Title", style="white")
        table.add_column("Borrowed", justify="right")
        for rank, row in enumerate(rows, 1):
            table.add_row(str(rank), row.title, str(row.borrow_count))
        _console.print(table)
    else:
        for rank, row in enumerate(rows, 1):
            print(f"{rank}. {row.title} ({row.borrow_count})")
