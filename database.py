import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from config import settings

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (settings.database_file)
# 2) library.db in the working directory
DATABASE_FILE = settings.database_file or "library.db"


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement writes go through
    :func:`transaction` which issues an explicit ``BEGIN IMMEDIATE``.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_timeout,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block of statements as one write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock before the first read,
    so a read-check-write sequence cannot interleave with another writer.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT UNIQUE,
                publisher TEXT,
                published_year INTEGER,
                genre TEXT,
                total_copies INTEGER NOT NULL DEFAULT 1,
                available_copies INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK (available_copies >= 0 AND available_copies <= total_copies)
            );

            CREATE TABLE IF NOT EXISTS members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                role TEXT NOT NULL DEFAULT 'USER'
                    CHECK (role IN ('USER', 'LIBRARIAN', 'ADMIN')),
                membership_date TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS borrowings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE RESTRICT,
                member_id INTEGER NOT NULL REFERENCES members(id) ON DELETE RESTRICT,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                fine_amount REAL,
                fine_paid_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
            CREATE INDEX IF NOT EXISTS idx_books_author ON books(author);
            CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre);
            CREATE INDEX IF NOT EXISTS idx_borrowings_book_id ON borrowings(book_id);
            CREATE INDEX IF NOT EXISTS idx_borrowings_member_id ON borrowings(member_id);
            CREATE INDEX IF NOT EXISTS idx_borrowings_borrow_date ON borrowings(borrow_date);
        """)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
    logger.info(f"Database ready: {db_file or DATABASE_FILE}")
