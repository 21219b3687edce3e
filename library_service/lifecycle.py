"""
Borrow and return: the only code paths that open or close a loan.

Both operations run inside the caller's session (see ``db.session_scope``)
and never commit. The loan write and the copy-count change are flushed in
the same transaction, so a failure in either one rolls both back.
"""

import logging
from datetime import timedelta, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from . import catalog, directory, inventory, ledger
from .errors import AlreadyReturned, DuplicateActiveLoan, NoCopiesAvailable, UserInactive
from .models import LOAN_RETURNED, Loan, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LOAN_DAYS = 21


def _naive_utc(value):
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def default_due_date(borrowed_at, loan_days=DEFAULT_LOAN_DAYS):
    return borrowed_at + timedelta(days=loan_days)


def borrow(
    session,
    book_id,
    borrower_id,
    processor_id,
    due_at=None,
    loan_days=DEFAULT_LOAN_DAYS,
    now=None,
):
    """
    Lend one copy of ``book_id`` to ``borrower_id``, recorded by ``processor_id``.

    Checks run in a fixed order and the first failure is raised:
    BookNotFound, NoCopiesAvailable, UserNotFound, UserInactive,
    DuplicateActiveLoan. Without an explicit ``due_at`` the loan is due
    ``loan_days`` after it is created.
    """
    now = now or utcnow()

    book = catalog.get_book(session, book_id, for_update=True)
    if not book.is_available():
        raise NoCopiesAvailable(book_id=book.id)

    borrower = directory.get_user(session, borrower_id)
    if not borrower.is_active:
        raise UserInactive(user_id=borrower.id)

    if ledger.find_open_loan(session, book.id, borrower.id) is not None:
        raise DuplicateActiveLoan(book_id=book.id, user_id=borrower.id)

    processor = directory.get_user(session, processor_id)

    due_at = _naive_utc(due_at) if due_at is not None else default_due_date(now, loan_days)
    loan = Loan(
        book_id=book.id,
        user_id=borrower.id,
        processed_by_id=processor.id,
        borrowed_at=now,
        due_at=due_at,
        returned_at=None,
        reminder_sent=False,
    )
    loan.status = ledger.compute_status(None, due_at, now)
    session.add(loan)
    try:
        session.flush()
    except IntegrityError as exc:
        # a concurrent request opened the same (book, borrower) loan first
        raise DuplicateActiveLoan(book_id=book.id, user_id=borrower.id) from exc

    inventory.borrow_copy(session, book)

    logger.info(
        "Loan %s: book %s -> user %s (processed by %s), due %s, %s left",
        loan.id,
        book.id,
        borrower.id,
        processor.id,
        due_at.isoformat(),
        book.available_copies,
    )
    return loan


def return_book(session, loan_id, now=None):
    now = now or utcnow()

    loan = ledger.get_loan(session, loan_id, now=now, for_update=True)
    if loan.returned_at is not None:
        raise AlreadyReturned(loan_id=loan.id)

    closed = session.execute(
        update(Loan)
        .where(Loan.id == loan.id, Loan.returned_at.is_(None))
        .values(returned_at=now, status=LOAN_RETURNED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if closed.rowcount != 1:
        raise AlreadyReturned(loan_id=loan.id)
    session.refresh(loan)

    book = catalog.get_book(session, loan.book_id, for_update=True)
    inventory.return_copy(session, book)

    logger.info(
        "Loan %s returned: book %s now has %s/%s available",
        loan.id,
        book.id,
        book.available_copies,
        book.total_copies,
    )
    return loan
