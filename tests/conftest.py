"""Shared fixtures: a controllable clock and both storage backends."""

from datetime import datetime, timedelta, timezone

import pytest

from marathon_memory.backends import FileTreeBackend, SQLiteBackend


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds=1.0):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["sqlite", "filetree"])
def backend(request, tmp_path):
    """Each test using this runs once per backend."""
    if request.param == "sqlite":
        b = SQLiteBackend(str(tmp_path / "memory.db"))
    else:
        b = FileTreeBackend(str(tmp_path / "tree"))
    yield b
    b.close()
