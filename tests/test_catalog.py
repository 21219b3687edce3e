import pytest

from library_service import catalog, ledger, lifecycle
from library_service.db import session_scope
from library_service.errors import (
    BookHasOpenLoans,
    BookNotFound,
    DuplicateIsbn,
    InvalidQuantity,
    QuantityBelowLoanedCount,
    ValidationError,
)
from library_service.models import Book
from library_service.serializers import loan_to_dict


def test_create_book_defaults(sessions, people):
    with session_scope(sessions) as session:
        book = catalog.create_book(
            session, "  Dune  ", author="Frank Herbert", isbn="9780441172719",
            total_copies=2, added_by_id=people.editor.id,
        )
    assert book.title == "Dune"
    assert book.category == "General"
    assert (book.total_copies, book.available_copies) == (2, 2)
    assert book.is_available()


@pytest.mark.parametrize(
    "fields",
    [
        {"title": ""},
        {"title": "   "},
        {"title": "X", "isbn": "12345"},
        {"title": "X", "isbn": "978-0441172719"},
        {"title": "X", "cover_image": "not a url"},
        {"title": "X", "cover_image": "ftp://example.com/cover.png"},
    ],
)
def test_create_book_validation(sessions, fields):
    with pytest.raises(ValidationError):
        with session_scope(sessions) as session:
            catalog.create_book(session, **fields)


def test_create_book_rejects_negative_total(sessions):
    with pytest.raises(InvalidQuantity):
        with session_scope(sessions) as session:
            catalog.create_book(session, "X", total_copies=-1)


def test_duplicate_isbn(sessions, make_book):
    make_book(isbn="0441172717")
    with pytest.raises(DuplicateIsbn):
        make_book(isbn="0441172717")


def test_update_book_fields_and_total(sessions, people, make_book, now):
    book = make_book(total_copies=2, title="Old")
    with session_scope(sessions) as session:
        lifecycle.borrow(session, book.id, people.alice.id, people.editor.id, now=now)

    with session_scope(sessions) as session:
        updated = catalog.update_book(
            session,
            book.id,
            {"title": "New", "category": "", "total_copies": 4, "unknown": "ignored"},
        )
        assert updated.title == "New"
        assert updated.category == "General"
        assert (updated.total_copies, updated.available_copies) == (4, 3)


def test_update_below_loaned_count_changes_nothing(sessions, people, make_book, now):
    book = make_book(total_copies=2, title="Keep")
    with session_scope(sessions) as session:
        lifecycle.borrow(session, book.id, people.alice.id, people.editor.id, now=now)
        lifecycle.borrow(session, book.id, people.bob.id, people.editor.id, now=now)

    with pytest.raises(QuantityBelowLoanedCount):
        with session_scope(sessions) as session:
            catalog.update_book(session, book.id, {"title": "Changed", "total_copies": 1})

    with session_scope(sessions) as session:
        stored = session.get(Book, book.id)
        assert (stored.title, stored.total_copies, stored.available_copies) == ("Keep", 2, 0)


def test_update_isbn_conflict(sessions, make_book):
    make_book(isbn="1111111111")
    other = make_book(isbn="2222222222")
    with pytest.raises(DuplicateIsbn):
        with session_scope(sessions) as session:
            catalog.update_book(session, other.id, {"isbn": "1111111111"})


def test_delete_book_with_open_loan_is_refused(sessions, people, make_book, now):
    book = make_book()
    with session_scope(sessions) as session:
        loan = lifecycle.borrow(session, book.id, people.alice.id, people.editor.id, now=now)

    with pytest.raises(BookHasOpenLoans):
        with session_scope(sessions) as session:
            catalog.delete_book(session, book.id)

    with session_scope(sessions) as session:
        lifecycle.return_book(session, loan.id, now=now)
        assert catalog.count_open_loans(session, book.id) == 0


def test_delete_book_without_loans(sessions, make_book):
    book = make_book()
    with session_scope(sessions) as session:
        catalog.delete_book(session, book.id)
    with pytest.raises(BookNotFound):
        with session_scope(sessions) as session:
            catalog.get_book(session, book.id)


def test_list_books_search_and_pagination(sessions, make_book):
    make_book(title="Clean Code", author="Robert C. Martin", category="Software")
    make_book(title="Clean Architecture", author="Robert C. Martin", category="Software")
    make_book(title="Dune", author="Frank Herbert", category="Fiction")

    with session_scope(sessions) as session:
        books, page = catalog.list_books(session, search="clean", limit=1)
        assert [b.title for b in books] == ["Clean Architecture"]
        assert page == {"total": 2, "page": 1, "pages": 2, "limit": 1}

        books, _ = catalog.list_books(session, category="Fiction")
        assert [b.title for b in books] == ["Dune"]

        assert catalog.list_categories(session) == ["Fiction", "Software"]


def test_delete_book_with_returned_loans_is_refused(sessions, people, make_book, now):
    book = make_book()
    with session_scope(sessions) as session:
        loan = lifecycle.borrow(session, book.id, people.alice.id, people.editor.id, now=now)
        lifecycle.return_book(session, loan.id, now=now)

    with pytest.raises(ValidationError):
        with session_scope(sessions) as session:
            catalog.delete_book(session, book.id)

    with session_scope(sessions) as session:
        loans, _ = ledger.list_loans(session, book_id=book.id, now=now)
        assert [loan_to_dict(l, now)["book"]["id"] for l in loans] == [book.id]
