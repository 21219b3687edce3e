import atexit
import logging
import os
from datetime import datetime
from functools import wraps

import click
from flask import Blueprint, Flask, abort, current_app, g, jsonify, request
from flask.cli import with_appcontext
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from . import catalog, directory, ledger, lifecycle
from .config import Config
from .db import build_engine, build_session_factory, create_tables, session_scope
from .errors import (
    AuthenticationRequired,
    InfrastructureError,
    LibraryError,
    PermissionDenied,
    UserNotFound,
)
from .models import ROLE_ADMINISTRATOR, STAFF_ROLES
from .notifications import build_notifier
from .reminders import ReminderScheduler
from .serializers import book_summary, book_to_dict, loan_to_dict, user_to_dict

# ---------------------------------------------------------
# Logging
# ---------------------------------------------------------
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

def _sessions():
    return current_app.extensions["library"]["sessions"]


def _scheduler():
    return current_app.extensions["library"]["scheduler"]


def _json_body():
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        abort(400, description="JSON object body required")
    return data


def _pick(data, *names):
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return None


def _int_field(data, *names, required=True):
    value = _pick(data, *names)
    if value is None:
        if required:
            abort(400, description=f"{names[0]} is required")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        abort(400, description=f"{names[0]} must be an integer")


def _parse_datetime(value, name):
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        abort(400, description=f"{name} must be an ISO-8601 date")


def authenticated(*roles):
    """
    X-API-Key must match the service key; X-User-Id names the acting user.
    The loaded user is exposed as ``g.actor``.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            expected = current_app.config.get("SERVICE_API_KEY")
            if not expected or request.headers.get("X-API-Key") != expected:
                logger.warning("Invalid API key on %s", request.path)
                abort(401, description="Invalid or missing service API key")

            raw_id = request.headers.get("X-User-Id", "")
            if not raw_id.isdigit():
                raise AuthenticationRequired()
            with session_scope(_sessions()) as session:
                try:
                    actor = directory.get_user(session, int(raw_id))
                except UserNotFound:
                    raise AuthenticationRequired("Unknown user") from None

            if not actor.is_active:
                raise PermissionDenied("This user account is not active")
            if roles and actor.role not in roles:
                logger.warning(
                    "User %s (%s) denied on %s", actor.id, actor.role, request.path
                )
                raise PermissionDenied()

            g.actor = actor
            return func(*args, **kwargs)

        return wrapper

    return decorator


staff_only = authenticated(*STAFF_ROLES)
admin_only = authenticated(ROLE_ADMINISTRATOR)


# ---------------------------------------------------------
# Error handlers
# ---------------------------------------------------------

@api.app_errorhandler(LibraryError)
def handle_library_error(err):
    logger.info("Rejected %s %s: %s", request.method, request.path, err.code)
    return jsonify(err.to_dict()), err.status


@api.app_errorhandler(InfrastructureError)
def handle_infrastructure_error(err):
    return jsonify(err.to_dict()), err.status


@api.app_errorhandler(HTTPException)
def handle_http_error(err):
    return jsonify({"error": err.description, "code": err.name}), err.code


# ---------------------------------------------------------
# Health
# ---------------------------------------------------------

@api.get("/health")
def health_check():
    return jsonify({"status": "ok", "service": "library_service"}), 200


# ---------------------------------------------------------
# Books
# ---------------------------------------------------------

@api.get("/books")
@authenticated()
def list_books():
    with session_scope(_sessions()) as session:
        books, pagination = catalog.list_books(
            session,
            search=request.args.get("search"),
            category=request.args.get("category"),
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", 20, type=int),
        )
        return jsonify(
            {"books": [book_to_dict(b) for b in books], "pagination": pagination}
        )


@api.get("/books/categories")
@authenticated()
def list_categories():
    with session_scope(_sessions()) as session:
        return jsonify({"categories": catalog.list_categories(session)})


@api.get("/books/<int:book_id>")
@authenticated()
def get_book(book_id):
    with session_scope(_sessions()) as session:
        return jsonify({"book": book_to_dict(catalog.get_book(session, book_id))})


@api.post("/books")
@staff_only
def create_book():
    data = _json_body()
    total_copies = _int_field(data, "total_copies", "quantityTotal", required=False)
    with session_scope(_sessions()) as session:
        book = catalog.create_book(
            session,
            title=data.get("title"),
            author=data.get("author"),
            isbn=data.get("isbn"),
            category=data.get("category"),
            description=data.get("description"),
            cover_image=_pick(data, "cover_image", "coverImage"),
            total_copies=1 if total_copies is None else total_copies,
            added_by_id=g.actor.id,
        )
        return jsonify({"book": book_to_dict(book)}), 201


@api.put("/books/<int:book_id>")
@staff_only
def update_book(book_id):
    data = _json_body()
    changes = {k: v for k, v in data.items() if k in catalog.EDITABLE_FIELDS}
    if "coverImage" in data:
        changes["cover_image"] = data["coverImage"]
    if _pick(data, "total_copies", "quantityTotal") is not None:
        changes["total_copies"] = _int_field(data, "total_copies", "quantityTotal")

    with session_scope(_sessions()) as session:
        book = catalog.update_book(session, book_id, changes)
        return jsonify({"book": book_to_dict(book)})


@api.post("/books/<int:book_id>/add-copies")
@staff_only
def add_copies(book_id):
    data = _json_body()
    quantity = data.get("quantity")
    with session_scope(_sessions()) as session:
        book = catalog.add_copies(session, book_id, quantity)
        return jsonify({"book": book_to_dict(book)})


@api.delete("/books/<int:book_id>")
@admin_only
def delete_book(book_id):
    with session_scope(_sessions()) as session:
        catalog.delete_book(session, book_id)
    return jsonify({"message": "Book deleted"}), 200


# ---------------------------------------------------------
# Users
# ---------------------------------------------------------

@api.post("/users")
@admin_only
def create_user():
    data = _json_body()
    with session_scope(_sessions()) as session:
        user = directory.create_user(
            session,
            email=data.get("email"),
            password=data.get("password"),
            full_name=_pick(data, "full_name", "fullName"),
            phone=data.get("phone"),
            role=data.get("role", "patron"),
        )
        return jsonify({"user": user_to_dict(user)}), 201


@api.get("/users")
@admin_only
def list_users():
    active = request.args.get("active")
    with session_scope(_sessions()) as session:
        users = directory.list_users(
            session,
            role=request.args.get("role"),
            active=None if active is None else active.lower() in ("1", "true", "yes"),
        )
        return jsonify({"users": [user_to_dict(u) for u in users]})


@api.get("/users/stats")
@admin_only
def user_stats():
    with session_scope(_sessions()) as session:
        return jsonify({"stats": directory.user_stats(session)})


@api.put("/users/me/password")
@authenticated()
def change_password():
    data = _json_body()
    with session_scope(_sessions()) as session:
        directory.change_password(
            session,
            g.actor.id,
            _pick(data, "current_password", "currentPassword"),
            _pick(data, "new_password", "newPassword"),
        )
    return jsonify({"message": "Password changed"}), 200


@api.get("/users/<int:user_id>")
@authenticated()
def get_user(user_id):
    if g.actor.id != user_id and not g.actor.is_staff:
        raise PermissionDenied()
    with session_scope(_sessions()) as session:
        return jsonify({"user": user_to_dict(directory.get_user(session, user_id))})


@api.put("/users/<int:user_id>")
@admin_only
def update_user(user_id):
    data = _json_body()
    changes = {k: data[k] for k in ("full_name", "email", "phone") if k in data}
    if "fullName" in data:
        changes["full_name"] = data["fullName"]
    with session_scope(_sessions()) as session:
        user = directory.update_user(session, g.actor, user_id, changes)
        return jsonify({"user": user_to_dict(user)})


@api.patch("/users/<int:user_id>/active")
@admin_only
def set_user_active(user_id):
    data = _json_body()
    if not isinstance(data.get("is_active"), bool):
        abort(400, description="is_active must be true or false")
    with session_scope(_sessions()) as session:
        user = directory.set_active(session, g.actor, user_id, data["is_active"])
        return jsonify({"user": user_to_dict(user)})


@api.patch("/users/<int:user_id>/role")
@admin_only
def set_user_role(user_id):
    data = _json_body()
    with session_scope(_sessions()) as session:
        user = directory.set_role(session, g.actor, user_id, data.get("role"))
        return jsonify({"user": user_to_dict(user)})


@api.delete("/users/<int:user_id>")
@admin_only
def delete_user(user_id):
    with session_scope(_sessions()) as session:
        directory.delete_user(session, g.actor, user_id)
    return jsonify({"message": "User deleted"}), 200


# ---------------------------------------------------------
# Loans
# ---------------------------------------------------------

def _loan_page(loans, pagination):
    return jsonify({"loans": [loan_to_dict(l) for l in loans], "pagination": pagination})


@api.get("/loans")
@staff_only
def list_loans():
    with session_scope(_sessions()) as session:
        loans, pagination = ledger.list_loans(
            session,
            status=request.args.get("status") or None,
            user_id=request.args.get("user_id", type=int),
            book_id=request.args.get("book_id", type=int),
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", 20, type=int),
        )
        return _loan_page(loans, pagination)


@api.get("/loans/my")
@authenticated()
def my_loans():
    with session_scope(_sessions()) as session:
        loans, pagination = ledger.list_user_loans(
            session,
            g.actor.id,
            status=request.args.get("status") or None,
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", 20, type=int),
        )
        return _loan_page(loans, pagination)


@api.get("/loans/overdue")
@staff_only
def overdue_loans():
    with session_scope(_sessions()) as session:
        loans = ledger.list_overdue_loans(session)
        return jsonify({"loans": [loan_to_dict(l) for l in loans], "count": len(loans)})


@api.get("/loans/stats")
@staff_only
def loan_stats():
    with session_scope(_sessions()) as session:
        stats, popular = ledger.loan_stats(session)
        return jsonify(
            {
                "stats": stats,
                "popular_books": [
                    {"book": book_summary(book), "loan_count": count}
                    for book, count in popular
                ],
            }
        )


@api.get("/loans/<int:loan_id>")
@authenticated()
def get_loan(loan_id):
    with session_scope(_sessions()) as session:
        loan = ledger.get_loan(session, loan_id)
        if loan.user_id != g.actor.id and not g.actor.is_staff:
            raise PermissionDenied("You may only view your own loans")
        return jsonify({"loan": loan_to_dict(loan)})


@api.post("/loans")
@staff_only
def borrow_book():
    data = _json_body()
    book_id = _int_field(data, "book_id", "bookId")
    user_id = _int_field(data, "user_id", "userId")
    raw_due = _pick(data, "due_at", "dueDate")
    due_at = _parse_datetime(raw_due, "due_at") if raw_due is not None else None

    with session_scope(_sessions()) as session:
        loan = lifecycle.borrow(
            session,
            book_id=book_id,
            borrower_id=user_id,
            processor_id=g.actor.id,
            due_at=due_at,
            loan_days=current_app.config["DEFAULT_LOAN_DAYS"],
        )
        return jsonify({"loan": loan_to_dict(loan)}), 201


@api.put("/loans/<int:loan_id>/return")
@staff_only
def return_book(loan_id):
    with session_scope(_sessions()) as session:
        loan = lifecycle.return_book(session, loan_id)
        return jsonify({"loan": loan_to_dict(loan)}), 200


# ---------------------------------------------------------
# Scheduler (manual trigger)
# ---------------------------------------------------------

@api.post("/admin/reminders/run")
@admin_only
def run_reminders():
    logger.info("Manual trigger of daily loan jobs by user %s", g.actor.id)
    summary = _scheduler().run_now()
    if summary is None:
        return jsonify({"error": "A reminder run is already in progress"}), 409
    return jsonify(summary.to_dict()), 200


# ---------------------------------------------------------
# CLI
# ---------------------------------------------------------

@click.command("init-db")
@with_appcontext
def init_db_command():
    create_tables(current_app.extensions["library"]["engine"])
    click.echo("Database tables created")


@click.command("create-admin")
@click.option("--email", prompt=True)
@click.option("--full-name", prompt=True)
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@with_appcontext
def create_admin_command(email, full_name, password):
    with session_scope(_sessions()) as session:
        user = directory.create_user(
            session, email, password, full_name, role=ROLE_ADMINISTRATOR
        )
        click.echo(f"Administrator {user.email} created with id {user.id}")


@click.command("run-reminders")
@with_appcontext
def run_reminders_command():
    summary = _scheduler().run_now()
    if summary is None:
        click.echo("A reminder run is already in progress")
        return
    click.echo(
        f"overdue marked: {summary.overdue_marked}, candidates: {summary.total}, "
        f"sent: {summary.sent}, failed: {summary.failed}"
    )


# ---------------------------------------------------------
# Application factory
# ---------------------------------------------------------

def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    CORS(app, origins=[app.config["FRONTEND_URL"]])

    engine = build_engine(
        app.config["SQLALCHEMY_DATABASE_URI"], echo=app.config["SQLALCHEMY_ECHO"]
    )
    sessions = build_session_factory(engine)
    create_tables(engine)

    notifier = app.config.get("NOTIFIER") or build_notifier(app.config)
    scheduler = ReminderScheduler(
        sessions,
        notifier,
        lead_days=app.config["REMINDER_DAYS_BEFORE"],
        cron_schedule=app.config["REMINDER_CRON_SCHEDULE"],
    )
    app.extensions["library"] = {
        "engine": engine,
        "sessions": sessions,
        "scheduler": scheduler,
    }

    app.register_blueprint(api)
    app.cli.add_command(init_db_command)
    app.cli.add_command(create_admin_command)
    app.cli.add_command(run_reminders_command)

    if app.config["SCHEDULER_ENABLED"]:
        scheduler.start()
        atexit.register(scheduler.shutdown)

    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
