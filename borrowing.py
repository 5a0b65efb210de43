from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum


class BorrowingState(str, Enum):
    ACTIVE = "ACTIVE"
    RETURNED_UNPAID = "RETURNED_UNPAID"
    CLOSED = "CLOSED"


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse a stored ISO timestamp. Naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def overdue_days(due_date: datetime, on: datetime) -> int:
    """Whole calendar days between the due date and ``on``; zero if not late."""
    days = (on.astimezone(timezone.utc).date() - due_date.astimezone(timezone.utc).date()).days
    return max(0, days)


def compute_fine(due_date: datetime, returned_at: datetime, fine_per_day: float) -> float:
    return round(overdue_days(due_date, returned_at) * fine_per_day, 2)


class Borrowing:
    """A loan of one book to one member.

    The lifecycle state is derived from the stored dates and fine:

    * no return date -> ``ACTIVE``
    * returned with a positive fine -> ``RETURNED_UNPAID``
    * anything else -> ``CLOSED``
    """

    def __init__(self, book_id: int, member_id: int, borrow_date: str | datetime, due_date: str | datetime,
                 id: int | None = None, return_date: str | datetime | None = None,
                 fine_amount: float | None = None, fine_paid_at: str | datetime | None = None,
                 book_title: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.member_id = member_id
        self.borrow_date = parse_timestamp(borrow_date)
        self.due_date = parse_timestamp(due_date)
        self.return_date = parse_timestamp(return_date)
        self.fine_amount = fine_amount
        self.fine_paid_at = parse_timestamp(fine_paid_at)
        self.book_title = book_title

    @property
    def state(self) -> BorrowingState:
        if self.return_date is None:
            return BorrowingState.ACTIVE
        if self.fine_amount:
            return BorrowingState.RETURNED_UNPAID
        return BorrowingState.CLOSED

    def is_overdue(self, now: datetime) -> bool:
        """True if the loan is still out and past its due date."""
        return self.return_date is None and overdue_days(self.due_date, now) > 0

    def accrued_fine(self, now: datetime, fine_per_day: float) -> float:
        """Fine owed so far: the stored fine once returned, a running total while active."""
        if self.return_date is not None:
            return self.fine_amount or 0.0
        return compute_fine(self.due_date, now, fine_per_day)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "book_title": self.book_title,
            "member_id": self.member_id,
            "borrow_date": self.borrow_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "fine_amount": self.fine_amount,
            "fine_paid_at": self.fine_paid_at.isoformat() if self.fine_paid_at else None,
            "state": self.state.value,
        }

    @staticmethod
    def from_row(row) -> "Borrowing":
        data = dict(row)
        return Borrowing(
            id=data["id"],
            book_id=data["book_id"],
            member_id=data["member_id"],
            borrow_date=data["borrow_date"],
            due_date=data["due_date"],
            return_date=data.get("return_date"),
            fine_amount=data.get("fine_amount"),
            fine_paid_at=data.get("fine_paid_at"),
            book_title=data.get("book_title"),
        )
