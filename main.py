import subprocess
import sys
from datetime import date
from typing import Optional

import typer
from rich.console import Console

from book import Book
from config import settings
from errors import LibraryError
from library import Library
from member import Member, Role
from sorting import resolve_page_request
from ui_helpers import set_output_mode, print_book_list, print_most_borrowed, print_stats_result

APP_NAME = "LibraryMan CLI"

console = Console()

# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


def _library() -> Library:
    return Library()


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the database tables."""
    lib = _library()
    print(f"Database initialized: {lib.db_file}")


@app.command("add-member")
def cli_add_member(
    name: str,
    email: str,
    role: Role = typer.Option(Role.USER, "--role", "-r", help="USER, LIBRARIAN or ADMIN", case_sensitive=False),
):
    """Register a member. The first ADMIN has to be created this way."""
    try:
        member = _library().add_member(Member(name=name, email=email, role=role))
    except (LibraryError, ValueError) as e:
        _fail(str(e))
    print(f"Member {member.id} added: {member.name} ({member.role.value})")


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    copies: int = typer.Option(1, "--copies", "-c", min=0, help="Total copies"),
):
    """Add a book with the given number of copies."""
    try:
        book = _library().add_book(Book(title=title, author=author, genre=genre, isbn=isbn, total_copies=copies))
    except (LibraryError, ValueError) as e:
        _fail(str(e))
    print(f"Successfully added: {book.title} by {book.author} (id {book.id})")


@app.command("list")
def cli_list(
    page: int = typer.Option(0, "--page", "-p", min=0),
    size: int = typer.Option(settings.default_page_size, "--size", "-s", min=1),
    sort_by: Optional[str] = typer.Option(None, "--sort-by"),
    sort_dir: Optional[str] = typer.Option(None, "--sort-dir", help="asc | desc"),
):
    """List one page of books."""
    try:
        request = resolve_page_request("book", page=page, size=size, sort_by=sort_by, sort_dir=sort_dir)
        result = _library().list_books(request)
    except (LibraryError, ValueError) as e:
        _fail(str(e))
    print_book_list(result.items, result.total)


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(_library().get_statistics())


@app.command("most-borrowed")
def cli_most_borrowed(limit: int = typer.Option(10, "--limit", "-l", min=1)):
    """Show the most borrowed books."""
    print_most_borrowed(_library().most_borrowed(limit))


@app.command("trend")
def cli_trend(start: str, end: str):
    """Show borrowings per day between START and END (YYYY-MM-DD, inclusive)."""
    try:
        trend = _library().borrowing_trend(date.fromisoformat(start), date.fromisoformat(end))
    except ValueError as e:
        _fail(str(e))
    if not trend:
        print("No borrowings in range.")
        return
    for day, count in trend.items():
        print(f"{day.isoformat()}: {count}")


@app.command("serve")
def serve(host: Optional[str] = None, port: Optional[int] = None, reload: bool = False):
    """Start the API with Uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    url = f"http://{host}:{port}/docs"
    console.print(f"[green]Starting API on [link={url}]{url}[/link][/]")

    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/]")


if __name__ == "__main__":
    app()
