import logging
import math
import re
from urllib.parse import urlparse

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from . import inventory
from .errors import (
    BookHasOpenLoans,
    BookNotFound,
    DuplicateIsbn,
    InvalidQuantity,
    ValidationError,
)
from .models import DEFAULT_CATEGORY, Book, Loan

logger = logging.getLogger(__name__)

ISBN_RE = re.compile(r"^(?:\d{10}|\d{13})$")
EDITABLE_FIELDS = ("title", "author", "isbn", "category", "description", "cover_image")


def _clean(value):
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _validate_fields(fields):
    if "title" in fields and not fields["title"]:
        raise ValidationError("Book title is required")

    isbn = fields.get("isbn")
    if isbn is not None and not ISBN_RE.match(isbn):
        raise ValidationError("ISBN must be 10 or 13 digits")

    cover = fields.get("cover_image")
    if cover is not None:
        parsed = urlparse(cover)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("Cover image must be a valid URL")


def _ensure_isbn_free(session, isbn, book_id=None):
    if isbn is None:
        return
    q = select(Book.id).where(Book.isbn == isbn)
    if book_id is not None:
        q = q.where(Book.id != book_id)
    if session.execute(q).first() is not None:
        raise DuplicateIsbn(isbn=isbn)


def get_book(session, book_id, for_update=False):
    q = select(Book).where(Book.id == book_id)
    if for_update:
        q = q.with_for_update()
    book = session.execute(q).scalar_one_or_none()
    if book is None:
        raise BookNotFound(book_id=book_id)
    return book


def create_book(
    session,
    title,
    author=None,
    isbn=None,
    category=None,
    description=None,
    cover_image=None,
    total_copies=1,
    added_by_id=None,
):
    fields = {
        "title": _clean(title),
        "author": _clean(author),
        "isbn": _clean(isbn),
        "category": _clean(category) or DEFAULT_CATEGORY,
        "description": _clean(description),
        "cover_image": _clean(cover_image),
    }
    _validate_fields(fields)
    if not isinstance(total_copies, int) or isinstance(total_copies, bool) or total_copies < 0:
        raise InvalidQuantity("Total quantity must be a non-negative whole number")
    _ensure_isbn_free(session, fields["isbn"])

    book = Book(
        total_copies=total_copies,
        available_copies=total_copies,
        added_by_id=added_by_id,
        **fields,
    )
    session.add(book)
    try:
        session.flush()
    except IntegrityError as exc:
        raise DuplicateIsbn(isbn=fields["isbn"]) from exc

    logger.info("Created book %s %r with %s copies", book.id, book.title, total_copies)
    return book


def update_book(session, book_id, changes):
    """
    Apply a partial edit. Unknown keys are ignored; ``total_copies`` goes
    through the inventory rules so copies on loan are never orphaned.
    """
    book = get_book(session, book_id, for_update=True)

    fields = {k: _clean(changes[k]) for k in EDITABLE_FIELDS if k in changes}
    if "category" in fields and fields["category"] is None:
        fields["category"] = DEFAULT_CATEGORY
    _validate_fields(fields)
    if "isbn" in fields and fields["isbn"] != book.isbn:
        _ensure_isbn_free(session, fields["isbn"], book_id=book.id)

    # quantity first: it refreshes the row from the database
    new_total = changes.get("total_copies")
    if new_total is not None and new_total != book.total_copies:
        inventory.set_total_copies(session, book, new_total)

    for name, value in fields.items():
        setattr(book, name, value)
    try:
        session.flush()
    except IntegrityError as exc:
        raise DuplicateIsbn(isbn=fields.get("isbn")) from exc

    logger.info("Updated book %s", book.id)
    return book


def add_copies(session, book_id, quantity):
    book = get_book(session, book_id, for_update=True)
    return inventory.increase_copies(session, book, quantity)


def count_open_loans(session, book_id):
    return session.execute(
        select(func.count(Loan.id)).where(
            Loan.book_id == book_id, Loan.returned_at.is_(None)
        )
    ).scalar_one()


def delete_book(session, book_id):
    book = get_book(session, book_id, for_update=True)
    if count_open_loans(session, book.id) > 0:
        raise BookHasOpenLoans(book_id=book.id)
    has_history = session.execute(
        select(Loan.id).where(Loan.book_id == book.id).limit(1)
    ).first()
    if has_history:
        raise ValidationError("Book has loan history and cannot be deleted")

    session.delete(book)
    try:
        session.flush()
    except IntegrityError as exc:
        raise ValidationError("Book has loan history and cannot be deleted") from exc
    logger.info("Deleted book %s", book_id)


def list_books(session, search=None, category=None, page=1, limit=20):
    page = max(int(page), 1)
    limit = max(int(limit), 1)

    q = select(Book)
    if search:
        like = f"%{search}%"
        q = q.where(
            (Book.title.ilike(like)) | (Book.author.ilike(like)) | (Book.isbn.ilike(like))
        )
    if category:
        q = q.where(Book.category == category)

    total = session.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    books = (
        session.execute(
            q.order_by(Book.title, Book.id).offset((page - 1) * limit).limit(limit)
        )
        .scalars()
        .all()
    )
    pagination = {
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit),
        "limit": limit,
    }
    return books, pagination


def list_categories(session):
    rows = session.execute(
        select(Book.category).distinct().order_by(Book.category)
    ).scalars()
    return [c for c in rows if c]
