from datetime import date, timedelta

import pytest

from book import Book
from errors import InvalidStateError, NotFoundError
from library import BorrowCount
from member import Member, Role
from sorting import resolve_page_request


def _seed_books(lib):
    books = [
        Book("Ulysses", "James Joyce", genre="Modernism", total_copies=2),
        Book("dune", "Frank Herbert", genre="Science Fiction", total_copies=1),
        Book("Sapiens", "Yuval Noah Harari", genre="History", total_copies=3),
        Book("Brave New World", "Aldous Huxley", genre="Science Fiction", total_copies=1),
        Book("Emma", "Jane Austen", genre="Romance", total_copies=1),
        Book("Foundation", "Isaac Asimov", genre="Science Fiction", total_copies=4),
        Book("Middlemarch", "George Eliot", genre="Realism", total_copies=1),
    ]
    return [lib.add_book(b) for b in books]


def test_add_and_get_book(lib):
    book = lib.add_book(Book("Ulysses", "James Joyce", isbn="9780199535675", total_copies=2))
    assert book.id is not None
    assert book.available_copies == 2

    found = lib.get_book(book.id)
    assert found.title == "Ulysses"
    assert found.total_copies == 2
    assert found.created_at is not None


def test_get_missing_book(lib):
    assert lib.find_book(999) is None
    with pytest.raises(NotFoundError, match="Book not found"):
        lib.get_book(999)


def test_add_duplicate_isbn(lib):
    lib.add_book(Book("Test Book", "Test Author", isbn="1234567890"))
    with pytest.raises(ValueError, match="Book with ISBN 1234567890 already exists."):
        lib.add_book(Book("Other Book", "Other Author", isbn="1234567890"))


def test_blank_isbn_is_stored_as_missing(lib):
    first = lib.add_book(Book("First", "Author", isbn="   "))
    second = lib.add_book(Book("Second", "Author", isbn=""))
    assert lib.get_book(first.id).isbn is None
    assert lib.get_book(second.id).isbn is None

    updated = lib.update_book(first.id, isbn="9780199535675")
    assert updated.isbn == "9780199535675"
    cleared = lib.update_book(first.id, isbn="  ")
    assert cleared.isbn is None
    assert lib.get_book(first.id).isbn is None


def test_add_book_rejects_more_available_than_total(lib):
    with pytest.raises(ValueError):
        lib.add_book(Book("Test", "Author", total_copies=1, available_copies=2))


def test_list_books_empty(lib):
    page = lib.list_books(resolve_page_request("book"))
    assert page.items == []
    assert page.total == 0
    assert page.total_pages == 0


def test_list_books_default_order_is_title_case_insensitive(lib):
    _seed_books(lib)
    page = lib.list_books(resolve_page_request("book", size=5))
    assert [b.title for b in page.items] == ["Brave New World", "dune", "Emma", "Foundation", "Middlemarch"]
    assert page.total == 7
    assert page.total_pages == 2


def test_list_books_second_page(lib):
    _seed_books(lib)
    page = lib.list_books(resolve_page_request("book", page=1, size=5))
    assert [b.title for b in page.items] == ["Sapiens", "Ulysses"]


@pytest.mark.parametrize("sort_by, sort_dir, key", [
    ("author", "asc", lambda b: b.author.lower()),
    ("author", "desc", lambda b: b.author.lower()),
    ("total_copies", "desc", lambda b: b.total_copies),
    ("publishedYear", "asc", lambda b: b.published_year or 0),
])
def test_list_books_respects_size_and_order(lib, sort_by, sort_dir, key):
    _seed_books(lib)
    for size in (1, 3, 10):
        page = lib.list_books(resolve_page_request("book", size=size, sort_by=sort_by, sort_dir=sort_dir))
        assert len(page.items) <= size
        values = [key(b) for b in page.items]
        assert values == sorted(values, reverse=(sort_dir == "desc"))


def test_search_blank_or_missing_keyword_lists_everything(lib):
    _seed_books(lib)
    request = resolve_page_request("book", size=10)
    assert lib.search_books(None, request).total == 7
    assert lib.search_books("", request).total == 7
    assert lib.search_books("   ", request).total == 7


def test_search_matches_title_author_and_genre_case_insensitively(lib):
    _seed_books(lib)
    request = resolve_page_request("book", size=10)
    assert [b.title for b in lib.search_books("ULYSSES", request).items] == ["Ulysses"]
    assert [b.title for b in lib.search_books("asimov", request).items] == ["Foundation"]
    assert [b.title for b in lib.search_books("science fiction", request).items] == [
        "Brave New World", "dune", "Foundation",
    ]


def test_search_without_match_returns_empty_page(lib):
    _seed_books(lib)
    page = lib.search_books("nomatch", resolve_page_request("book"))
    assert page.is_empty
    assert page.total == 0


def test_search_treats_wildcards_literally(lib):
    _seed_books(lib)
    assert lib.search_books("%", resolve_page_request("book")).is_empty
    assert lib.search_books("_", resolve_page_request("book")).is_empty


def test_update_book_fields(lib):
    book = lib.add_book(Book("Old Title", "Old Author"))
    updated = lib.update_book(book.id, title="New Title", genre="Drama")
    assert updated.title == "New Title"
    assert updated.author == "Old Author"
    assert lib.get_book(book.id).genre == "Drama"


def test_update_book_requires_changes(lib):
    book = lib.add_book(Book("Title", "Author"))
    with pytest.raises(ValueError, match="Nothing to update."):
        lib.update_book(book.id)
    with pytest.raises(ValueError):
        lib.update_book(book.id, available_copies=10)


def test_update_missing_book(lib):
    with pytest.raises(NotFoundError):
        lib.update_book(42, title="x")


def test_update_total_copies_moves_availability(lib, circulation):
    member = lib.add_member(Member("Reader", "reader@example.com"))
    book = lib.add_book(Book("Title", "Author", total_copies=3))
    circulation.borrow_book(member.id, book.id)

    updated = lib.update_book(book.id, total_copies=5)
    assert (updated.total_copies, updated.available_copies) == (5, 4)

    updated = lib.update_book(book.id, total_copies=1)
    assert (updated.total_copies, updated.available_copies) == (1, 0)

    with pytest.raises(ValueError, match="copies currently on loan"):
        lib.update_book(book.id, total_copies=0)
    assert lib.get_book(book.id).total_copies == 1


def test_remove_book(lib):
    book = lib.add_book(Book("Test", "Author"))
    lib.remove_book(book.id)
    assert lib.find_book(book.id) is None
    with pytest.raises(NotFoundError):
        lib.remove_book(book.id)


def test_remove_book_with_history_fails(lib, circulation):
    member = lib.add_member(Member("Reader", "reader@example.com"))
    book = lib.add_book(Book("Test", "Author"))
    circulation.borrow_book(member.id, book.id)
    with pytest.raises(InvalidStateError):
        lib.remove_book(book.id)
    assert lib.find_book(book.id) is not None


def test_members(lib):
    admin = lib.add_member(Member("Ada", "ADA@example.com", role="admin"))
    assert admin.role is Role.ADMIN
    assert lib.get_member(admin.id).email == "ada@example.com"
    with pytest.raises(ValueError, match="already exists"):
        lib.add_member(Member("Ada Again", "ada@example.com"))
    with pytest.raises(NotFoundError):
        lib.get_member(999)

    lib.add_member(Member("Bob", "bob@example.com"))
    page = lib.list_members(resolve_page_request("member", sort_by="name", sort_dir="desc"))
    assert [m.name for m in page.items] == ["Bob", "Ada"]


def test_member_requires_valid_email(lib):
    with pytest.raises(ValueError, match="Invalid email"):
        lib.add_member(Member("No Mail", "not-an-email"))


def test_page_request_for_other_entity_is_rejected(lib):
    with pytest.raises(ValueError):
        lib.list_books(resolve_page_request("member"))


def test_most_borrowed(lib, circulation, clock):
    member = lib.add_member(Member("Reader", "reader@example.com"))
    ulysses, dune, sapiens, *_ = _seed_books(lib)
    for book, times in ((ulysses, 1), (dune, 3), (sapiens, 2)):
        for _ in range(times):
            loan = circulation.borrow_book(member.id, book.id)
            circulation.return_book(loan.id)

    top = lib.most_borrowed(2)
    assert top == [BorrowCount(dune.id, "dune", 3), BorrowCount(sapiens.id, "Sapiens", 2)]
    assert [row.title for row in lib.most_borrowed(10)] == ["dune", "Sapiens", "Ulysses"]
    with pytest.raises(ValueError):
        lib.most_borrowed(0)


def test_borrowing_trend_counts_per_day_inclusive(lib, circulation, clock):
    member = lib.add_member(Member("Reader", "reader@example.com"))
    book = lib.add_book(Book("Popular", "Author", total_copies=10))
    first_day = clock().date()

    circulation.borrow_book(member.id, book.id)
    circulation.borrow_book(member.id, book.id)
    clock.advance(days=2)
    circulation.borrow_book(member.id, book.id)
    clock.advance(days=5)
    circulation.borrow_book(member.id, book.id)

    trend = lib.borrowing_trend(first_day, first_day + timedelta(days=2))
    assert trend == {first_day: 2, first_day + timedelta(days=2): 1}
    assert lib.borrowing_trend(date(2000, 1, 1), date(2000, 1, 31)) == {}
    with pytest.raises(ValueError):
        lib.borrowing_trend(first_day, first_day - timedelta(days=1))


def test_statistics(lib, circulation, clock):
    member = lib.add_member(Member("Reader", "reader@example.com"))
    first = lib.add_book(Book("First", "Author", total_copies=2))
    second = lib.add_book(Book("Second", "Author", total_copies=1))

    late = circulation.borrow_book(member.id, first.id)
    circulation.borrow_book(member.id, second.id)
    clock.advance(days=20)
    circulation.return_book(late.id)

    stats = lib.get_statistics(now=clock())
    assert stats == {
        "total_books": 2,
        "total_copies": 3,
        "available_copies": 2,
        "total_members": 1,
        "total_borrowings": 2,
        "active_borrowings": 1,
        "overdue_borrowings": 1,
        "outstanding_fines": 50.0,
    }
