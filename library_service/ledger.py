"""
Loan Ledger: reads over the loans table and the status derivation rule.

A loan's status is never trusted as stored. Every read path runs the loan
through ``refresh_status`` and status filters are evaluated against the
dates, so a loan that crossed its due date since the last write still reads
as overdue.
"""

import logging
import math
from datetime import timedelta

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.orm import selectinload

from .errors import LoanNotFound, ValidationError
from .models import (
    LOAN_ACTIVE,
    LOAN_OVERDUE,
    LOAN_RETURNED,
    LOAN_STATUSES,
    Book,
    Loan,
    utcnow,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

_WITH_RELATIONS = (
    selectinload(Loan.book),
    selectinload(Loan.borrower),
    selectinload(Loan.processed_by),
)


# ----------------- status rule -----------------

def compute_status(returned_at, due_at, now):
    if returned_at is not None:
        return LOAN_RETURNED
    if now > due_at:
        return LOAN_OVERDUE
    return LOAN_ACTIVE


def refresh_status(loan, now=None):
    """Bring ``loan.status`` in line with its dates. Returns True if it changed."""
    now = now or utcnow()
    status = compute_status(loan.returned_at, loan.due_at, now)
    if loan.status == status:
        return False
    loan.status = status
    return True


def is_overdue(loan, now=None):
    now = now or utcnow()
    return loan.returned_at is None and now > loan.due_at


def days_until_due(loan, now=None):
    if loan.returned_at is not None:
        return None
    now = now or utcnow()
    return math.ceil((loan.due_at - now).total_seconds() / SECONDS_PER_DAY)


def is_eligible_for_reminder(loan, lead_days, now=None):
    if loan.returned_at is not None or loan.reminder_sent:
        return False
    now = now or utcnow()
    return loan.due_at <= now + timedelta(days=lead_days)


def _status_clause(status, now):
    if status == LOAN_RETURNED:
        return Loan.returned_at.is_not(None)
    if status == LOAN_OVERDUE:
        return and_(Loan.returned_at.is_(None), Loan.due_at < now)
    if status == LOAN_ACTIVE:
        return and_(Loan.returned_at.is_(None), Loan.due_at >= now)
    raise ValidationError(f"Unknown loan status {status!r}")


# ----------------- reads -----------------

def get_loan(session, loan_id, now=None, for_update=False):
    q = select(Loan).where(Loan.id == loan_id)
    if for_update:
        q = q.with_for_update()
    else:
        q = q.options(*_WITH_RELATIONS)
    loan = session.execute(q).scalar_one_or_none()
    if loan is None:
        raise LoanNotFound(loan_id=loan_id)
    refresh_status(loan, now)
    return loan


def find_open_loan(session, book_id, user_id):
    return session.execute(
        select(Loan).where(
            Loan.book_id == book_id,
            Loan.user_id == user_id,
            Loan.returned_at.is_(None),
        )
    ).scalar_one_or_none()


def list_loans(
    session, status=None, user_id=None, book_id=None, page=1, limit=20, now=None
):
    now = now or utcnow()
    page = max(int(page), 1)
    limit = max(int(limit), 1)

    q = select(Loan)
    if status:
        if status not in LOAN_STATUSES:
            raise ValidationError(f"Unknown loan status {status!r}")
        q = q.where(_status_clause(status, now))
    if user_id is not None:
        q = q.where(Loan.user_id == user_id)
    if book_id is not None:
        q = q.where(Loan.book_id == book_id)

    total = session.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    loans = (
        session.execute(
            q.options(*_WITH_RELATIONS)
            .order_by(desc(Loan.borrowed_at), desc(Loan.id))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    for loan in loans:
        refresh_status(loan, now)

    pagination = {
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit),
        "limit": limit,
    }
    return loans, pagination


def list_user_loans(session, user_id, status=None, page=1, limit=20, now=None):
    return list_loans(
        session, status=status, user_id=user_id, page=page, limit=limit, now=now
    )


def list_overdue_loans(session, now=None):
    now = now or utcnow()
    loans = (
        session.execute(
            select(Loan)
            .where(_status_clause(LOAN_OVERDUE, now))
            .options(*_WITH_RELATIONS)
            .order_by(Loan.due_at)
        )
        .scalars()
        .all()
    )
    for loan in loans:
        refresh_status(loan, now)
    return loans


def loan_stats(session, now=None):
    now = now or utcnow()
    stats = {}
    for status in LOAN_STATUSES:
        stats[status] = session.execute(
            select(func.count(Loan.id)).where(_status_clause(status, now))
        ).scalar_one()
    stats["total"] = session.execute(select(func.count(Loan.id))).scalar_one()

    loan_count = func.count(Loan.id).label("loan_count")
    rows = session.execute(
        select(Book, loan_count)
        .join(Loan, Loan.book_id == Book.id)
        .group_by(Book.id)
        .order_by(desc(loan_count), Book.id)
        .limit(10)
    ).all()
    popular = [(book, count) for book, count in rows]
    return stats, popular


# ----------------- scheduler support -----------------

def stale_overdue_ids(session, now):
    """Open loans past due whose stored status has not caught up yet."""
    return (
        session.execute(
            select(Loan.id).where(
                Loan.returned_at.is_(None),
                Loan.due_at < now,
                Loan.status != LOAN_OVERDUE,
            )
        )
        .scalars()
        .all()
    )


def mark_overdue(session, loan_id, now):
    result = session.execute(
        update(Loan)
        .where(
            Loan.id == loan_id,
            Loan.returned_at.is_(None),
            Loan.due_at < now,
            Loan.status != LOAN_OVERDUE,
        )
        .values(status=LOAN_OVERDUE, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reminder_candidates(session, now, lead_days):
    threshold = now + timedelta(days=lead_days)
    return (
        session.execute(
            select(Loan)
            .where(
                Loan.returned_at.is_(None),
                Loan.reminder_sent.is_(False),
                Loan.due_at <= threshold,
            )
            .options(selectinload(Loan.book), selectinload(Loan.borrower))
            .order_by(Loan.user_id, Loan.due_at, Loan.id)
        )
        .scalars()
        .all()
    )


def mark_reminders_sent(session, loan_ids):
    """Flip reminder_sent to true. Loans already flagged are left alone."""
    if not loan_ids:
        return 0
    result = session.execute(
        update(Loan)
        .where(Loan.id.in_(loan_ids), Loan.reminder_sent.is_(False))
        .values(reminder_sent=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
