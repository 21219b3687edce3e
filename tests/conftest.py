from datetime import datetime
from types import SimpleNamespace

import pytest

from library_service import catalog, directory
from library_service.db import (
    build_engine,
    build_session_factory,
    create_tables,
    session_scope,
)
from library_service.notifications import NotificationResult

NOW = datetime(2026, 10, 1, 9, 0, 0)


class RecordingNotifier:
    """Captures reminder calls; borrowers listed in fail_for get a failed result."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.single = []
        self.batch = []
        self.clock = []

    def _result(self, borrower):
        if borrower.id in self.fail_for:
            return NotificationResult(False, "smtp unavailable")
        return NotificationResult(True)

    def send_single_reminder(self, loan, borrower, book, now=None):
        self.single.append((borrower.id, loan.id, book.id))
        self.clock.append(now)
        return self._result(borrower)

    def send_batch_reminder(self, borrower, loans):
        self.batch.append((borrower.id, sorted(loan.id for loan in loans)))
        return self._result(borrower)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def sessions(tmp_path):
    # file-backed so every session sees the same database
    engine = build_engine(f"sqlite:///{tmp_path / 'library_test.db'}")
    create_tables(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def people(sessions):
    with session_scope(sessions) as session:
        admin = directory.create_user(
            session, "admin@example.com", "admin-pass-1", "Ava Admin", role="administrator"
        )
        editor = directory.create_user(
            session, "editor@example.com", "editor-pass-1", "Erin Editor", role="editor"
        )
        alice = directory.create_user(
            session, "alice@example.com", "alice-pass-1", "Alice Reader"
        )
        bob = directory.create_user(session, "bob@example.com", "bob-pass-12", "Bob Reader")
        carol = directory.create_user(
            session, "carol@example.com", "carol-pass-1", "Carol Reader"
        )
    return SimpleNamespace(admin=admin, editor=editor, alice=alice, bob=bob, carol=carol)


@pytest.fixture
def make_book(sessions):
    counter = {"n": 0}

    def _make(total_copies=1, title=None, **fields):
        counter["n"] += 1
        with session_scope(sessions) as session:
            return catalog.create_book(
                session,
                title=title or f"Book {counter['n']}",
                total_copies=total_copies,
                **fields,
            )

    return _make


@pytest.fixture
def notifier():
    return RecordingNotifier()
