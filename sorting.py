"""Pagination and ordering for list endpoints.

Request parameters name fields by their API names. Each entity has an
allow-list mapping those names to columns, and nothing outside that list
reaches an ``ORDER BY`` clause. The original camelCase names (``borrowDate``,
``publishedYear``...) are kept as aliases.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Sequence, Tuple, TypeVar

from config import settings
from errors import InvalidSortFieldError

T = TypeVar("T")


class Direction(str, Enum):
    ASC = "asc"
    DESC = "desc"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "Direction":
        """``desc`` in any case means descending; anything else ascending."""
        if raw is not None and raw.strip().lower() == "desc":
            return cls.DESC
        return cls.ASC


# API field name -> column. Case-insensitive text columns are listed in _NOCASE.
SORTABLE_FIELDS: Dict[str, Dict[str, str]] = {
    "book": {
        "id": "id",
        "bookId": "id",
        "title": "title",
        "author": "author",
        "genre": "genre",
        "isbn": "isbn",
        "publisher": "publisher",
        "published_year": "published_year",
        "publishedYear": "published_year",
        "total_copies": "total_copies",
        "available_copies": "available_copies",
        "copiesAvailable": "available_copies",
        "created_at": "created_at",
    },
    "member": {
        "id": "id",
        "memberId": "id",
        "name": "name",
        "email": "email",
        "role": "role",
        "membership_date": "membership_date",
        "membershipDate": "membership_date",
    },
    "borrowing": {
        "id": "id",
        "borrowingId": "id",
        "book_id": "book_id",
        "member_id": "member_id",
        "borrow_date": "borrow_date",
        "borrowDate": "borrow_date",
        "due_date": "due_date",
        "dueDate": "due_date",
        "return_date": "return_date",
        "returnDate": "return_date",
        "fine_amount": "fine_amount",
        "fineAmount": "fine_amount",
    },
}

DEFAULT_SORT: Dict[str, str] = {
    "book": "title",
    "member": "name",
    "borrowing": "borrow_date",
}

_NOCASE = {"title", "author", "genre", "publisher", "name", "email"}


@dataclass(frozen=True)
class PageRequest:
    """A resolved (page, size, ordering) request for one entity."""

    entity: str
    page: int = 0
    size: int = 5
    orders: Tuple[Tuple[str, Direction], ...] = ()

    @property
    def offset(self) -> int:
        return self.page * self.size

    def order_by(self, alias: Optional[str] = None) -> str:
        """Render the ``ORDER BY`` body from allow-listed columns only.

        The primary key is appended as the last key so page boundaries are
        stable when the requested field has duplicates.
        """
        columns = SORTABLE_FIELDS[self.entity]
        prefix = f"{alias}." if alias else ""
        parts: List[str] = []
        seen = set()
        for name, direction in self.orders:
            column = columns[name]
            if column in seen:
                continue
            seen.add(column)
            collate = " COLLATE NOCASE" if column in _NOCASE else ""
            parts.append(f"{prefix}{column}{collate} {direction.value.upper()}")
        if "id" not in seen:
            parts.append(f"{prefix}id ASC")
        return ", ".join(parts)


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.size) if self.size > 0 else 0

    @property
    def is_empty(self) -> bool:
        return not self.items

    def to_dict(self, fn: Callable[[T], Any] = lambda item: item.to_dict()) -> Dict[str, Any]:
        return {
            "items": [fn(item) for item in self.items],
            "total": self.total,
            "page": self.page,
            "size": self.size,
            "total_pages": self.total_pages,
        }


def _check_field(entity: str, name: str) -> str:
    name = name.strip()
    if name not in SORTABLE_FIELDS[entity]:
        allowed = ", ".join(sorted(k for k in SORTABLE_FIELDS[entity] if k.islower() or "_" in k))
        raise InvalidSortFieldError(f"The specified sort field '{name}' is invalid. Allowed: {allowed}")
    return name


def _parse_sort_expressions(entity: str, sort: Iterable[str]) -> List[Tuple[str, Direction]]:
    """Parse ``field`` / ``field,dir`` expressions as used by the ``sort`` parameter."""
    orders: List[Tuple[str, Direction]] = []
    for expression in sort:
        if not expression or not expression.strip():
            continue
        name, _, raw_dir = expression.partition(",")
        orders.append((_check_field(entity, name), Direction.parse(raw_dir or None)))
    return orders


def resolve_page_request(
    entity: str,
    page: int = 0,
    size: Optional[int] = None,
    sort: Optional[Sequence[str]] = None,
    sort_by: Optional[str] = None,
    sort_dir: Optional[str] = None,
    default_sort: Optional[str] = None,
) -> PageRequest:
    """Combine defaults and request parameters into a :class:`PageRequest`.

    ``sort_by`` overrides both the default and any ``sort`` expressions with a
    single key; ``sort_dir`` only applies together with ``sort_by``.
    Raises :class:`InvalidSortFieldError` for names outside the allow-list and
    ``ValueError`` for a negative page or non-positive size.
    """
    if entity not in SORTABLE_FIELDS:
        raise KeyError(f"Unknown entity: {entity}")
    if page < 0:
        raise ValueError("Page index must not be negative.")
    size = settings.default_page_size if size is None else size
    if size < 1:
        raise ValueError("Page size must be at least 1.")
    size = min(size, settings.max_page_size)

    if sort_by is not None and sort_by.strip():
        orders = [(_check_field(entity, sort_by), Direction.parse(sort_dir))]
    else:
        orders = _parse_sort_expressions(entity, sort or [])
        if not orders:
            default = default_sort or DEFAULT_SORT[entity]
            orders = [(_check_field(entity, default), Direction.ASC)]

    return PageRequest(entity=entity, page=page, size=size, orders=tuple(orders))
