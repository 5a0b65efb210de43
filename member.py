from __future__ import annotations

from datetime import date
from enum import Enum


class Role(str, Enum):
    USER = "USER"
    LIBRARIAN = "LIBRARIAN"
    ADMIN = "ADMIN"


STAFF_ROLES = frozenset({Role.LIBRARIAN, Role.ADMIN})


class Member:
    """A library member. The role decides which endpoints they may call."""

    def __init__(self, name: str, email: str, role: Role | str = Role.USER, id: int | None = None,
                 membership_date: str | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip().lower()
        self.role = Role(role.upper() if isinstance(role, str) else role)
        self.membership_date = membership_date or date.today().isoformat()

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} <{self.email}> ({self.role.value})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "membership_date": self.membership_date,
        }

    @staticmethod
    def from_dict(data: dict) -> "Member":
        return Member(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            role=data.get("role", Role.USER),
            membership_date=data.get("membership_date"),
        )
