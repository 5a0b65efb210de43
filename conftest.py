from datetime import datetime, timedelta, timezone

import pytest

import database
from circulation import Circulation
from library import Library


class FakeClock:
    """Controllable clock for circulation tests."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def db_file(tmp_path, request, monkeypatch):
    # A unique database file per test; also the default for Library() instances
    path = str(tmp_path / "test.db")
    monkeypatch.setattr(database, "DATABASE_FILE", path)
    return path


@pytest.fixture
def lib(db_file):
    lib = Library(db_file=db_file)
    yield lib
    lib.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def circulation(lib, clock):
    return Circulation(lib, clock=clock, loan_period_days=15, fine_per_day=10.0)
