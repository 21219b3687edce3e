from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)

Base = declarative_base()

ROLE_PATRON = "patron"
ROLE_EDITOR = "editor"
ROLE_ADMINISTRATOR = "administrator"
ROLES = (ROLE_PATRON, ROLE_EDITOR, ROLE_ADMINISTRATOR)
STAFF_ROLES = (ROLE_EDITOR, ROLE_ADMINISTRATOR)

LOAN_ACTIVE = "active"
LOAN_OVERDUE = "overdue"
LOAN_RETURNED = "returned"
LOAN_STATUSES = (LOAN_ACTIVE, LOAN_OVERDUE, LOAN_RETURNED)

DEFAULT_CATEGORY = "General"


def utcnow():
    """Naive UTC timestamp, matching the naive DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(50))
    role = Column(
        Enum(*ROLES, name="user_role"),
        nullable=False,
        default=ROLE_PATRON,
    )
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_staff(self):
        return self.role in STAFF_ROLES


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="ck_books_total_non_negative"),
        CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        CheckConstraint(
            "available_copies <= total_copies", name="ck_books_available_within_total"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255))
    isbn = Column(String(13), unique=True)
    category = Column(String(100), nullable=False, default=DEFAULT_CATEGORY)
    description = Column(Text)
    cover_image = Column(String(500))
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    added_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    added_by = relationship("User")

    def is_available(self):
        return self.available_copies > 0


class Loan(Base):
    __tablename__ = "loans"
    __table_args__ = (
        # at most one open loan per (book, borrower)
        Index(
            "uq_loans_open_book_user",
            "book_id",
            "user_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL"),
            postgresql_where=text("returned_at IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    processed_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    borrowed_at = Column(DateTime, nullable=False, default=utcnow)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime)
    status = Column(
        Enum(*LOAN_STATUSES, name="loan_status"),
        nullable=False,
        default=LOAN_ACTIVE,
    )
    reminder_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    book = relationship("Book")
    borrower = relationship("User", foreign_keys=[user_id])
    processed_by = relationship("User", foreign_keys=[processed_by_id])
