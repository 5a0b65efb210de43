"""Borrowing lifecycle: borrow, return and fine payment.

Each operation runs in one ``BEGIN IMMEDIATE`` transaction, so the
availability check and the copy-count update happen under SQLite's write
lock and concurrent requests for the same book are serialized by the store.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from borrowing import Borrowing, BorrowingState, compute_fine
from config import settings
from errors import InvalidStateError, NoCopiesAvailableError, NotFoundError
from library import Library
from sorting import Page, PageRequest

logger = logging.getLogger(__name__)

BORROWING_SELECT = (
    "SELECT br.id, br.book_id, br.member_id, br.borrow_date, br.due_date, br.return_date, "
    "br.fine_amount, br.fine_paid_at, b.title AS book_title"
)
BORROWING_FROM = "FROM borrowings br JOIN books b ON b.id = br.book_id"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Circulation:
    """Moves borrowing records through ACTIVE -> RETURNED_UNPAID -> CLOSED."""

    def __init__(self, library: Library, clock: Optional[Callable[[], datetime]] = None,
                 loan_period_days: Optional[int] = None, fine_per_day: Optional[float] = None) -> None:
        self.library = library
        self.clock = clock or utc_now
        self.loan_period_days = settings.loan_period_days if loan_period_days is None else loan_period_days
        self.fine_per_day = settings.fine_per_day if fine_per_day is None else fine_per_day

    def now(self) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    @staticmethod
    def _load(conn, borrowing_id: int) -> Borrowing:
        row = conn.execute(f"{BORROWING_SELECT} {BORROWING_FROM} WHERE br.id = ?", (borrowing_id,)).fetchone()
        if row is None:
            raise NotFoundError("Borrowing not found")
        return Borrowing.from_row(row)

    # ------------------------- Transitions ------------------------- #
    def borrow_book(self, member_id: int, book_id: int) -> Borrowing:
        """Lend one copy of a book to a member.

        Raises NotFoundError if the member or book does not exist and
        NoCopiesAvailableError if every copy is out; availability is left
        untouched in both cases.
        """
        with self.library.transaction() as conn:
            if conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone() is None:
                raise NotFoundError("Member not found")
            book = conn.execute("SELECT id, title FROM books WHERE id = ?", (book_id,)).fetchone()
            if book is None:
                raise NotFoundError("Book not found")
            cursor = conn.execute(
                "UPDATE books SET available_copies = available_copies - 1 WHERE id = ? AND available_copies > 0",
                (book_id,),
            )
            if cursor.rowcount == 0:
                logger.warning(f"Borrow rejected: no copies of book {book_id} available (member {member_id})")
                raise NoCopiesAvailableError(f"No copies of '{book['title']}' are available")

            borrowed_at = self.now()
            due_at = borrowed_at + timedelta(days=self.loan_period_days)
            cursor = conn.execute(
                "INSERT INTO borrowings (book_id, member_id, borrow_date, due_date) VALUES (?, ?, ?, ?)",
                (book_id, member_id, borrowed_at.isoformat(), due_at.isoformat()),
            )
            borrowing = Borrowing(
                id=cursor.lastrowid, book_id=book_id, member_id=member_id,
                borrow_date=borrowed_at, due_date=due_at, book_title=book["title"],
            )
        logger.info(f"Book {book_id} borrowed by member {member_id} (borrowing {borrowing.id}, due {due_at.date()})")
        return borrowing

    def return_book(self, borrowing_id: int) -> Borrowing:
        """Record the return of a borrowed book and compute any overdue fine."""
        with self.library.transaction() as conn:
            borrowing = self._load(conn, borrowing_id)
            if borrowing.state is not BorrowingState.ACTIVE:
                logger.warning(f"Return rejected: borrowing {borrowing_id} is already returned")
                raise InvalidStateError("Book has already been returned")

            returned_at = self.now()
            fine = compute_fine(borrowing.due_date, returned_at, self.fine_per_day)
            conn.execute(
                "UPDATE borrowings SET return_date = ?, fine_amount = ? WHERE id = ? AND return_date IS NULL",
                (returned_at.isoformat(), fine, borrowing_id),
            )
            conn.execute(
                "UPDATE books SET available_copies = available_copies + 1 WHERE id = ?",
                (borrowing.book_id,),
            )
            borrowing.return_date = returned_at
            borrowing.fine_amount = fine
        logger.info(f"Borrowing {borrowing_id} returned, fine {fine:.2f}, state {borrowing.state.value}")
        return borrowing

    def pay_fine(self, borrowing_id: int) -> Borrowing:
        """Settle the outstanding fine of a returned borrowing."""
        with self.library.transaction() as conn:
            borrowing = self._load(conn, borrowing_id)
            if borrowing.state is BorrowingState.ACTIVE:
                raise InvalidStateError("Book has not been returned yet")
            if borrowing.state is BorrowingState.CLOSED:
                raise InvalidStateError("No outstanding fine for this borrowing")

            paid_at = self.now()
            amount = borrowing.fine_amount
            conn.execute(
                "UPDATE borrowings SET fine_amount = 0, fine_paid_at = ? WHERE id = ?",
                (paid_at.isoformat(), borrowing_id),
            )
            borrowing.fine_amount = 0.0
            borrowing.fine_paid_at = paid_at
        logger.info(f"Fine of {amount:.2f} paid for borrowing {borrowing_id}")
        return borrowing

    # ------------------------- Queries ------------------------- #
    def get_borrowing(self, borrowing_id: int) -> Borrowing:
        conn = self.library.connect()
        try:
            return self._load(conn, borrowing_id)
        finally:
            conn.close()

    def list_borrowings(self, request: PageRequest) -> Page:
        return self.library.fetch_page(
            request, "borrowing", BORROWING_SELECT, BORROWING_FROM, (), Borrowing.from_row, alias="br",
        )

    def borrowings_of_member(self, member_id: int, request: PageRequest) -> Page:
        self.library.get_member(member_id)
        return self.library.fetch_page(
            request, "borrowing", BORROWING_SELECT, f"{BORROWING_FROM} WHERE br.member_id = ?", (member_id,),
            Borrowing.from_row, alias="br",
        )
