from __future__ import annotations


class Book:
    """Represents a single title held by the library, with its copy counts."""

    def __init__(self, title: str, author: str, id: int | None = None, isbn: str | None = None,
                 publisher: str | None = None, published_year: int | None = None, genre: str | None = None,
                 total_copies: int = 1, available_copies: int | None = None,
                 created_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = (isbn or "").strip() or None
        self.publisher = (publisher or "").strip() or None
        self.published_year = published_year
        self.genre = (genre or "").strip() or None
        self.total_copies = total_copies
        # New titles start with every copy on the shelf
        self.available_copies = total_copies if available_copies is None else available_copies
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    def validate(self) -> None:
        """Raise ValueError if the record breaks the copy-count invariant."""
        if not self.title:
            raise ValueError("Title cannot be empty.")
        if not self.author:
            raise ValueError("Author cannot be empty.")
        if self.total_copies < 0:
            raise ValueError("Total copies cannot be negative.")
        if not 0 <= self.available_copies <= self.total_copies:
            raise ValueError("Available copies must be between 0 and total copies.")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "publisher": self.publisher,
            "published_year": self.published_year,
            "genre": self.genre,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            publisher=data.get("publisher"),
            published_year=data.get("published_year"),
            genre=data.get("genre"),
            total_copies=data.get("total_copies", 1),
            available_copies=data.get("available_copies"),
            created_at=data.get("created_at"),
        )
