"""JSON-ready dicts for API responses. Password hashes never leave this module."""

from .ledger import days_until_due


def _iso(value):
    return value.isoformat() if value else None


def book_summary(book):
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "cover_image": book.cover_image,
    }


def book_to_dict(book):
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "isbn": book.isbn,
        "category": book.category,
        "description": book.description,
        "cover_image": book.cover_image,
        "total_copies": book.total_copies,
        "available_copies": book.available_copies,
        "is_available": book.is_available(),
        "added_by_id": book.added_by_id,
        "created_at": _iso(book.created_at),
        "updated_at": _iso(book.updated_at),
    }


def user_summary(user):
    return {"id": user.id, "full_name": user.full_name, "email": user.email}


def user_to_dict(user):
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "phone": user.phone,
        "role": user.role,
        "is_active": user.is_active,
        "created_at": _iso(user.created_at),
    }


def loan_to_dict(loan, now=None):
    return {
        "id": loan.id,
        "book_id": loan.book_id,
        "user_id": loan.user_id,
        "processed_by_id": loan.processed_by_id,
        "borrowed_at": _iso(loan.borrowed_at),
        "due_at": _iso(loan.due_at),
        "returned_at": _iso(loan.returned_at),
        "status": loan.status,
        "reminder_sent": loan.reminder_sent,
        "days_until_due": days_until_due(loan, now),
        "book": book_summary(loan.book),
        "borrower": user_summary(loan.borrower),
        "processed_by": {"id": loan.processed_by.id, "full_name": loan.processed_by.full_name},
    }
