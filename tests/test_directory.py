import pytest

from library_service import directory, ledger, lifecycle
from library_service.db import session_scope
from library_service.errors import (
    AuthenticationRequired,
    DuplicateEmail,
    InvalidRole,
    PermissionDenied,
    SelfModificationForbidden,
    UserHasOpenLoans,
    UserNotFound,
    ValidationError,
)
from library_service.models import Book
from library_service.serializers import loan_to_dict


def test_password_is_hashed(sessions, people):
    with session_scope(sessions) as session:
        alice = directory.get_user_by_email(session, "ALICE@example.com")
        assert alice.password_hash != "alice-pass-1"
        assert directory.verify_password(alice, "alice-pass-1")
        assert not directory.verify_password(alice, "wrong-password")
        assert alice.role == "patron"
        assert alice.is_active is True


def test_duplicate_email(sessions, people):
    with pytest.raises(DuplicateEmail):
        with session_scope(sessions) as session:
            directory.create_user(session, "Alice@Example.com", "another-pass", "Alice Two")


@pytest.mark.parametrize(
    "kwargs, error",
    [
        ({"email": "nope", "password": "long-enough", "full_name": "N"}, ValidationError),
        ({"email": "a@b.co", "password": "short", "full_name": "N"}, ValidationError),
        ({"email": "a@b.co", "password": "long-enough", "full_name": " "}, ValidationError),
        (
            {"email": "a@b.co", "password": "long-enough", "full_name": "N", "phone": "call me"},
            ValidationError,
        ),
        (
            {"email": "a@b.co", "password": "long-enough", "full_name": "N", "role": "librarian"},
            InvalidRole,
        ),
    ],
)
def test_create_user_validation(sessions, kwargs, error):
    with pytest.raises(error):
        with session_scope(sessions) as session:
            directory.create_user(session, **kwargs)


def test_admin_toggles_active_flag(sessions, people):
    with session_scope(sessions) as session:
        assert directory.set_active(session, people.admin, people.bob.id, False).is_active is False
    with session_scope(sessions) as session:
        assert directory.get_user(session, people.bob.id).is_active is False


def test_admin_cannot_deactivate_or_demote_self(sessions, people):
    with pytest.raises(SelfModificationForbidden):
        with session_scope(sessions) as session:
            directory.set_active(session, people.admin, people.admin.id, False)
    with pytest.raises(SelfModificationForbidden):
        with session_scope(sessions) as session:
            directory.set_role(session, people.admin, people.admin.id, "editor")
    with pytest.raises(SelfModificationForbidden):
        with session_scope(sessions) as session:
            directory.delete_user(session, people.admin, people.admin.id)


def test_only_admins_manage_users(sessions, people):
    with pytest.raises(PermissionDenied):
        with session_scope(sessions) as session:
            directory.set_role(session, people.editor, people.alice.id, "editor")


def test_set_role(sessions, people):
    with session_scope(sessions) as session:
        user = directory.set_role(session, people.admin, people.alice.id, "editor")
        assert user.is_staff
    with pytest.raises(InvalidRole):
        with session_scope(sessions) as session:
            directory.set_role(session, people.admin, people.alice.id, "root")


def test_delete_user_with_open_loan_is_refused(sessions, people, make_book, now):
    book = make_book()
    with session_scope(sessions) as session:
        lifecycle.borrow(session, book.id, people.alice.id, people.editor.id, now=now)

    with pytest.raises(UserHasOpenLoans):
        with session_scope(sessions) as session:
            directory.delete_user(session, people.admin, people.alice.id)


def test_delete_user(sessions, people):
    with session_scope(sessions) as session:
        directory.delete_user(session, people.admin, people.carol.id)
    with pytest.raises(UserNotFound):
        with session_scope(sessions) as session:
            directory.get_user(session, people.carol.id)


def test_list_users(sessions, people):
    with session_scope(sessions) as session:
        patrons = directory.list_users(session, role="patron")
        assert [u.full_name for u in patrons] == ["Alice Reader", "Bob Reader", "Carol Reader"]


def test_processor_of_a_loan_cannot_be_deleted(sessions, people, make_book, now):
    book = make_book()
    with session_scope(sessions) as session:
        loan = lifecycle.borrow(session, book.id, people.alice.id, people.editor.id, now=now)

    with pytest.raises(ValidationError):
        with session_scope(sessions) as session:
            directory.delete_user(session, people.admin, people.editor.id)

    with session_scope(sessions) as session:
        stored = ledger.get_loan(session, loan.id, now=now)
        assert loan_to_dict(stored, now)["processed_by"]["id"] == people.editor.id


def test_user_with_returned_loans_cannot_be_deleted(sessions, people, make_book, now):
    book = make_book()
    with session_scope(sessions) as session:
        loan = lifecycle.borrow(session, book.id, people.bob.id, people.editor.id, now=now)
        lifecycle.return_book(session, loan.id, now=now)

    with pytest.raises(ValidationError):
        with session_scope(sessions) as session:
            directory.delete_user(session, people.admin, people.bob.id)

    with session_scope(sessions) as session:
        assert directory.count_loans_involving(session, people.bob.id) == 1


def test_deleting_book_creator_keeps_the_book(sessions, people, make_book):
    book = make_book(added_by_id=people.editor.id)
    with session_scope(sessions) as session:
        directory.delete_user(session, people.admin, people.editor.id)
    with session_scope(sessions) as session:
        assert session.get(Book, book.id).added_by_id is None


def test_update_user_contact_details(sessions, people):
    with session_scope(sessions) as session:
        user = directory.update_user(
            session,
            people.admin,
            people.alice.id,
            {"full_name": " Alice Smith ", "email": "ALICE.S@example.com", "phone": "+1 555 0101"},
        )
        assert (user.full_name, user.email, user.phone) == (
            "Alice Smith",
            "alice.s@example.com",
            "+1 555 0101",
        )
        assert user.role == "patron"

    with pytest.raises(DuplicateEmail):
        with session_scope(sessions) as session:
            directory.update_user(session, people.admin, people.alice.id, {"email": "bob@example.com"})
    with pytest.raises(ValidationError):
        with session_scope(sessions) as session:
            directory.update_user(session, people.admin, people.alice.id, {"phone": "call me"})
    with pytest.raises(PermissionDenied):
        with session_scope(sessions) as session:
            directory.update_user(session, people.editor, people.alice.id, {"full_name": "X"})


def test_user_stats(sessions, people):
    with session_scope(sessions) as session:
        directory.set_active(session, people.admin, people.carol.id, False)
    with session_scope(sessions) as session:
        stats = directory.user_stats(session)
    assert stats == {
        "total": 5,
        "active": 4,
        "inactive": 1,
        "by_role": {"patron": 3, "editor": 1, "administrator": 1},
    }


def test_change_password(sessions, people):
    with pytest.raises(AuthenticationRequired):
        with session_scope(sessions) as session:
            directory.change_password(session, people.alice.id, "wrong-password", "brand-new-pass")
    with pytest.raises(ValidationError):
        with session_scope(sessions) as session:
            directory.change_password(session, people.alice.id, "alice-pass-1", "short")

    with session_scope(sessions) as session:
        directory.change_password(session, people.alice.id, "alice-pass-1", "brand-new-pass")
    with session_scope(sessions) as session:
        alice = directory.get_user(session, people.alice.id)
        assert directory.verify_password(alice, "brand-new-pass")
        assert not directory.verify_password(alice, "alice-pass-1")
