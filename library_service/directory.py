import logging
import re

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import (
    AuthenticationRequired,
    DuplicateEmail,
    InvalidRole,
    PermissionDenied,
    SelfModificationForbidden,
    UserHasOpenLoans,
    UserNotFound,
    ValidationError,
)
from .models import ROLE_ADMINISTRATOR, ROLE_PATRON, ROLES, Loan, User

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_RE = re.compile(r"^[\d\-\+\(\)\s]*$")
MIN_PASSWORD_LENGTH = 8


def get_user(session, user_id):
    user = session.get(User, user_id)
    if user is None:
        raise UserNotFound(user_id=user_id)
    return user


def get_user_by_email(session, email):
    return session.execute(
        select(User).where(func.lower(User.email) == email.strip().lower())
    ).scalar_one_or_none()


def verify_password(user, password):
    return check_password_hash(user.password_hash, password or "")


def _check_password(password):
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


def _check_phone(phone):
    if phone and not PHONE_RE.match(phone):
        raise ValidationError("Invalid phone number")


def create_user(session, email, password, full_name, phone=None, role=ROLE_PATRON):
    email = (email or "").strip().lower()
    full_name = (full_name or "").strip()

    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email address")
    _check_password(password)
    if not full_name:
        raise ValidationError("Full name is required")
    _check_phone(phone)
    if role not in ROLES:
        raise InvalidRole(role=role)
    if get_user_by_email(session, email) is not None:
        raise DuplicateEmail(email=email)

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        full_name=full_name,
        phone=phone or None,
        role=role,
        is_active=True,
    )
    session.add(user)
    try:
        session.flush()
    except IntegrityError as exc:
        raise DuplicateEmail(email=email) from exc

    logger.info("Created %s user %s <%s>", role, user.id, email)
    return user


def list_users(session, role=None, active=None):
    q = select(User).order_by(User.full_name, User.id)
    if role:
        q = q.where(User.role == role)
    if active is not None:
        q = q.where(User.is_active.is_(active))
    return session.execute(q).scalars().all()


def user_stats(session):
    by_role = dict(
        session.execute(select(User.role, func.count(User.id)).group_by(User.role)).all()
    )
    active = session.execute(
        select(func.count(User.id)).where(User.is_active.is_(True))
    ).scalar_one()
    total = sum(by_role.values())
    return {
        "total": total,
        "active": active,
        "inactive": total - active,
        "by_role": {role: by_role.get(role, 0) for role in ROLES},
    }


def count_loans_involving(session, user_id):
    """Loans, open or closed, where the user is borrower or processor."""
    return session.execute(
        select(func.count(Loan.id)).where(
            or_(Loan.user_id == user_id, Loan.processed_by_id == user_id)
        )
    ).scalar_one()


def _require_admin(actor):
    if actor.role != ROLE_ADMINISTRATOR:
        raise PermissionDenied()


def update_user(session, actor, user_id, changes):
    """Edit contact details: full_name, email, phone. Unknown keys are ignored."""
    _require_admin(actor)
    user = get_user(session, user_id)

    if "full_name" in changes:
        full_name = (changes["full_name"] or "").strip()
        if not full_name:
            raise ValidationError("Full name is required")
        user.full_name = full_name

    if "email" in changes:
        email = (changes["email"] or "").strip().lower()
        if not EMAIL_RE.match(email):
            raise ValidationError("Invalid email address")
        if email != user.email:
            if get_user_by_email(session, email) is not None:
                raise DuplicateEmail(email=email)
            user.email = email

    if "phone" in changes:
        _check_phone(changes["phone"])
        user.phone = changes["phone"] or None

    try:
        session.flush()
    except IntegrityError as exc:
        raise DuplicateEmail(email=user.email) from exc
    logger.info("Updated user %s (by %s)", user.id, actor.id)
    return user


def change_password(session, user_id, current_password, new_password):
    user = get_user(session, user_id)
    if not verify_password(user, current_password):
        raise AuthenticationRequired("Current password is incorrect")
    _check_password(new_password)

    user.password_hash = generate_password_hash(new_password)
    session.flush()
    logger.info("Password changed for user %s", user.id)
    return user


def set_active(session, actor, user_id, active):
    _require_admin(actor)
    user = get_user(session, user_id)
    if user.id == actor.id and not active:
        raise SelfModificationForbidden("Administrators cannot deactivate themselves")

    user.is_active = bool(active)
    session.flush()
    logger.info("User %s active=%s (by %s)", user.id, user.is_active, actor.id)
    return user


def set_role(session, actor, user_id, role):
    _require_admin(actor)
    if role not in ROLES:
        raise InvalidRole(role=role)
    user = get_user(session, user_id)
    if user.id == actor.id and role != ROLE_ADMINISTRATOR:
        raise SelfModificationForbidden("Administrators cannot remove their own role")

    user.role = role
    session.flush()
    logger.info("User %s role=%s (by %s)", user.id, role, actor.id)
    return user


def delete_user(session, actor, user_id):
    _require_admin(actor)
    user = get_user(session, user_id)
    if user.id == actor.id:
        raise SelfModificationForbidden("Administrators cannot delete themselves")

    open_loans = session.execute(
        select(func.count(Loan.id)).where(
            Loan.user_id == user.id, Loan.returned_at.is_(None)
        )
    ).scalar_one()
    if open_loans:
        raise UserHasOpenLoans(user_id=user.id)
    if count_loans_involving(session, user.id):
        raise ValidationError("User has loan history; deactivate the account instead")

    session.delete(user)
    try:
        session.flush()
    except IntegrityError as exc:
        raise ValidationError(
            "User has loan history; deactivate the account instead"
        ) from exc
    logger.info("Deleted user %s (by %s)", user_id, actor.id)
