import logging
import sqlite3
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence

import database
from book import Book
from database import get_db_connection, initialize_database, transaction
from errors import InvalidStateError, NotFoundError
from member import Member
from sorting import Page, PageRequest

logger = logging.getLogger(__name__)

BOOK_COLUMNS = (
    "id, title, author, isbn, publisher, published_year, genre, "
    "total_copies, available_copies, created_at"
)
MEMBER_COLUMNS = "id, name, email, role, membership_date"
UPDATABLE_BOOK_FIELDS = ("title", "author", "isbn", "publisher", "published_year", "genre", "total_copies")


class BorrowCount(NamedTuple):
    book_id: int
    title: str
    borrow_count: int


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class Library:
    """Book and member records, paginated queries and circulation analytics."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        initialize_database(self.db_file)  # Ensure DB and tables exist

    def connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    def transaction(self):
        return transaction(self.db_file)

    def fetch_page(self, request: PageRequest, entity: str, select: str, from_clause: str,
                   params: Sequence[Any], build: Callable[[sqlite3.Row], Any],
                   alias: Optional[str] = None) -> Page:
        """Run a count query and one page of rows for ``from_clause``."""
        if request.entity != entity:
            raise ValueError(f"Page request for '{request.entity}' used to list '{entity}'.")
        conn = self.connect()
        try:
            total = conn.execute(f"SELECT COUNT(*) {from_clause}", tuple(params)).fetchone()[0]
            rows = conn.execute(
                f"{select} {from_clause} ORDER BY {request.order_by(alias)} LIMIT ? OFFSET ?",
                (*params, request.size, request.offset),
            ).fetchall()
            return Page(items=[build(row) for row in rows], total=total, page=request.page, size=request.size)
        finally:
            conn.close()

    # ------------------------- Books ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Insert a new book. Raises ValueError on invalid counts or a duplicate ISBN."""
        book.validate()
        conn = self.connect()
        try:
            cursor = conn.execute(
                "INSERT INTO books (title, author, isbn, publisher, published_year, genre, total_copies, available_copies) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (book.title, book.author, book.isbn, book.publisher, book.published_year, book.genre,
                 book.total_copies, book.available_copies),
            )
            book.id = cursor.lastrowid
            row = conn.execute("SELECT created_at FROM books WHERE id = ?", (book.id,)).fetchone()
            book.created_at = row["created_at"] if row else None
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book with ISBN {book.isbn} already exists.") from e
        finally:
            conn.close()
        logger.info(f"Book added: id={book.id} title={book.title!r}")
        return book

    def find_book(self, book_id: int) -> Optional[Book]:
        conn = self.connect()
        try:
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def get_book(self, book_id: int) -> Book:
        book = self.find_book(book_id)
        if book is None:
            raise NotFoundError("Book not found")
        return book

    def list_books(self, request: PageRequest) -> Page:
        return self.fetch_page(
            request, "book", f"SELECT {BOOK_COLUMNS}", "FROM books", (),
            lambda row: Book.from_dict(dict(row)),
        )

    def search_books(self, keyword: Optional[str], request: PageRequest) -> Page:
        """Case-insensitive keyword match on title, author, genre and publisher.

        A missing or blank keyword returns the unfiltered listing.
        """
        if keyword is None or not keyword.strip():
            return self.list_books(request)
        pattern = f"%{_escape_like(keyword.strip())}%"
        where = (
            "FROM books WHERE title LIKE ? ESCAPE '\\' OR author LIKE ? ESCAPE '\\' "
            "OR genre LIKE ? ESCAPE '\\' OR publisher LIKE ? ESCAPE '\\'"
        )
        return self.fetch_page(
            request, "book", f"SELECT {BOOK_COLUMNS}", where, (pattern,) * 4,
            lambda row: Book.from_dict(dict(row)),
        )

    def update_book(self, book_id: int, **changes: Any) -> Book:
        """Update a book. A change of ``total_copies`` moves ``available_copies`` by the same amount."""
        unknown = set(changes) - set(UPDATABLE_BOOK_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            raise ValueError("Nothing to update.")

        try:
            with self.transaction() as conn:
                row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
                if row is None:
                    raise NotFoundError("Book not found")
                book = Book.from_dict(dict(row))
                if "total_copies" in changes:
                    delta = changes["total_copies"] - book.total_copies
                    book.total_copies = changes["total_copies"]
                    book.available_copies += delta
                for name in ("title", "author", "published_year"):
                    if name in changes:
                        setattr(book, name, changes[name].strip() if isinstance(changes[name], str) else changes[name])
                # Blank optional text clears the column
                for name in ("isbn", "publisher", "genre"):
                    if name in changes:
                        setattr(book, name, changes[name].strip() or None)
                if book.available_copies < 0:
                    raise ValueError("Total copies cannot be less than the copies currently on loan.")
                book.validate()
                conn.execute(
                    "UPDATE books SET title = ?, author = ?, isbn = ?, publisher = ?, published_year = ?, genre = ?, "
                    "total_copies = ?, available_copies = ? WHERE id = ?",
                    (book.title, book.author, book.isbn, book.publisher, book.published_year, book.genre,
                     book.total_copies, book.available_copies, book_id),
                )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book with ISBN {changes.get('isbn')} already exists.") from e
        logger.info(f"Book updated: id={book_id} fields={sorted(changes)}")
        return book

    def remove_book(self, book_id: int) -> None:
        """Delete a book. Books with borrowing history cannot be removed."""
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
                raise NotFoundError("Book not found")
            loans = conn.execute("SELECT COUNT(*) FROM borrowings WHERE book_id = ?", (book_id,)).fetchone()[0]
            if loans:
                raise InvalidStateError(f"Book {book_id} has {loans} borrowing record(s) and cannot be deleted")
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info(f"Book removed: id={book_id}")

    # ------------------------- Members ------------------------- #
    def add_member(self, member: Member) -> Member:
        if not member.name:
            raise ValueError("Name cannot be empty.")
        if "@" not in member.email:
            raise ValueError("Invalid email address.")
        conn = self.connect()
        try:
            cursor = conn.execute(
                "INSERT INTO members (name, email, role, membership_date) VALUES (?, ?, ?, ?)",
                (member.name, member.email, member.role.value, member.membership_date),
            )
            member.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Member with email {member.email} already exists.") from e
        finally:
            conn.close()
        logger.info(f"Member added: id={member.id} role={member.role.value}")
        return member

    def find_member(self, member_id: int) -> Optional[Member]:
        conn = self.connect()
        try:
            row = conn.execute(f"SELECT {MEMBER_COLUMNS} FROM members WHERE id = ?", (member_id,)).fetchone()
            return Member.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def get_member(self, member_id: int) -> Member:
        member = self.find_member(member_id)
        if member is None:
            raise NotFoundError("Member not found")
        return member

    def list_members(self, request: PageRequest) -> Page:
        return self.fetch_page(
            request, "member", f"SELECT {MEMBER_COLUMNS}", "FROM members", (),
            lambda row: Member.from_dict(dict(row)),
        )

    # ------------------------- Analytics ------------------------- #
    def most_borrowed(self, limit: int = 10) -> List[BorrowCount]:
        """Books ordered by number of borrowings, most borrowed first."""
        if limit < 1:
            raise ValueError("Limit must be at least 1.")
        conn = self.connect()
        try:
            rows = conn.execute(
                "SELECT b.id AS book_id, b.title AS title, COUNT(*) AS borrow_count "
                "FROM borrowings br JOIN books b ON br.book_id = b.id "
                "GROUP BY b.id ORDER BY borrow_count DESC, b.title COLLATE NOCASE ASC, b.id ASC LIMIT ?",
                (limit,),
            ).fetchall()
            return [BorrowCount(row["book_id"], row["title"], row["borrow_count"]) for row in rows]
        finally:
            conn.close()

    def borrowing_trend(self, start_date: date, end_date: date) -> Dict[date, int]:
        """Number of borrowings per calendar day (UTC), both ends inclusive.

        Days without borrowings are left out.
        """
        if start_date > end_date:
            raise ValueError("Start date must not be after end date.")
        conn = self.connect()
        try:
            rows = conn.execute(
                "SELECT date(borrow_date) AS day, COUNT(*) AS borrow_count FROM borrowings "
                "WHERE date(borrow_date) BETWEEN ? AND ? GROUP BY day ORDER BY day",
                (start_date.isoformat(), end_date.isoformat()),
            ).fetchall()
            return {date.fromisoformat(row["day"]): row["borrow_count"] for row in rows}
        finally:
            conn.close()

    def get_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Library-wide counters."""
        today = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date().isoformat()
        conn = self.connect()
        try:
            books = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(available_copies), 0) FROM books"
            ).fetchone()
            total_members = conn.execute("SELECT COUNT(*) FROM members").fetchone()[0]
            loans = conn.execute(
                "SELECT COUNT(*), "
                "COALESCE(SUM(CASE WHEN return_date IS NULL THEN 1 ELSE 0 END), 0), "
                "COALESCE(SUM(CASE WHEN return_date IS NULL AND date(due_date) < ? THEN 1 ELSE 0 END), 0), "
                "COALESCE(SUM(CASE WHEN return_date IS NOT NULL THEN fine_amount ELSE 0 END), 0) "
                "FROM borrowings",
                (today,),
            ).fetchone()
            return {
                "total_books": books[0],
                "total_copies": books[1],
                "available_copies": books[2],
                "total_members": total_members,
                "total_borrowings": loans[0],
                "active_borrowings": loans[1],
                "overdue_borrowings": loans[2],
                "outstanding_fines": round(float(loans[3]), 2),
            }
        finally:
            conn.close()

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
