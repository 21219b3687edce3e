"""
Copy-count bookkeeping for a Book row.

Every change is a single conditional UPDATE so the check and the write happen
in one statement: two requests racing for the last copy cannot both win, and
``0 <= available_copies <= total_copies`` holds after each call. The functions
run inside the caller's session and never commit.
"""

import logging

from sqlalchemy import update

from .errors import (
    AllCopiesAlreadyAvailable,
    InvalidQuantity,
    NoCopiesAvailable,
    QuantityBelowLoanedCount,
)
from .models import Book

logger = logging.getLogger(__name__)


def _is_whole_number(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _apply(session, book, stmt):
    session.flush()
    result = session.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount == 1:
        session.refresh(book)
        return True
    return False


def increase_copies(session, book, amount):
    if not _is_whole_number(amount) or amount < 1:
        raise InvalidQuantity(book_id=book.id, amount=amount)

    _apply(
        session,
        book,
        update(Book)
        .where(Book.id == book.id)
        .values(
            total_copies=Book.total_copies + amount,
            available_copies=Book.available_copies + amount,
        ),
    )
    logger.info(
        "Added %s copies to book %s (total=%s, available=%s)",
        amount,
        book.id,
        book.total_copies,
        book.available_copies,
    )
    return book


def borrow_copy(session, book):
    ok = _apply(
        session,
        book,
        update(Book)
        .where(Book.id == book.id, Book.available_copies > 0)
        .values(available_copies=Book.available_copies - 1),
    )
    if not ok:
        raise NoCopiesAvailable(book_id=book.id)
    return book


def return_copy(session, book):
    ok = _apply(
        session,
        book,
        update(Book)
        .where(Book.id == book.id, Book.available_copies < Book.total_copies)
        .values(available_copies=Book.available_copies + 1),
    )
    if not ok:
        raise AllCopiesAlreadyAvailable(book_id=book.id)
    return book


def set_total_copies(session, book, new_total):
    """
    Change the owned copy count; available moves by the same difference.

    The difference is computed from the row's current values inside the
    UPDATE itself, so a borrow committed in between is accounted for.
    """
    if not _is_whole_number(new_total) or new_total < 0:
        raise InvalidQuantity("Total quantity must be a non-negative whole number")

    difference = new_total - Book.total_copies
    ok = _apply(
        session,
        book,
        update(Book)
        .where(Book.id == book.id, Book.available_copies + difference >= 0)
        # available first: MySQL evaluates SET assignments left to right
        .ordered_values(
            (Book.available_copies, Book.available_copies + difference),
            (Book.total_copies, new_total),
        ),
    )
    if not ok:
        raise QuantityBelowLoanedCount(book_id=book.id, new_total=new_total)
    return book
