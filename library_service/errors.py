"""
Domain errors raised by the catalog, directory, inventory and loan modules.

Each error carries a stable ``code`` (the class name) and the HTTP status the
API layer answers with. ``InfrastructureError`` deliberately sits outside the
``LibraryError`` tree: it signals a database problem, not a rejected action.
"""


class LibraryError(Exception):
    status = 400
    default_message = "Request rejected"

    def __init__(self, message=None, **context):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.context = context

    @property
    def code(self):
        return type(self).__name__

    def to_dict(self):
        return {"error": self.message, "code": self.code}


# ----------------- not found -----------------

class NotFound(LibraryError):
    status = 404


class BookNotFound(NotFound):
    default_message = "Book not found"


class UserNotFound(NotFound):
    default_message = "User not found"


class LoanNotFound(NotFound):
    default_message = "Loan not found"


# ----------------- rejected actions -----------------

class NoCopiesAvailable(LibraryError):
    default_message = "No copies of this book are available"


class AllCopiesAlreadyAvailable(LibraryError):
    default_message = "All copies of this book are already available"


class UserInactive(LibraryError):
    default_message = "This user account is not active"


class DuplicateActiveLoan(LibraryError):
    default_message = "This user already has this book on loan"


class AlreadyReturned(LibraryError):
    default_message = "This book was already returned"


class InvalidQuantity(LibraryError):
    default_message = "Quantity must be a positive whole number"


class QuantityBelowLoanedCount(LibraryError):
    default_message = "Cannot reduce quantity below the number of copies on loan"


class ValidationError(LibraryError):
    default_message = "Invalid input"


class InvalidRole(ValidationError):
    default_message = "Role must be one of patron, editor, administrator"


class BookHasOpenLoans(LibraryError):
    default_message = "Cannot delete a book with open loans"


class UserHasOpenLoans(LibraryError):
    default_message = "Cannot delete a user with open loans"


# ----------------- conflicts / permissions -----------------

class DuplicateIsbn(LibraryError):
    status = 409
    default_message = "A book with this ISBN already exists"


class DuplicateEmail(LibraryError):
    status = 409
    default_message = "A user with this email already exists"


class AuthenticationRequired(LibraryError):
    status = 401
    default_message = "Authentication required"


class PermissionDenied(LibraryError):
    status = 403
    default_message = "You do not have permission to perform this action"


class SelfModificationForbidden(PermissionDenied):
    default_message = "Administrators cannot revoke their own access"


# ----------------- infrastructure -----------------

class InfrastructureError(Exception):
    """Database unavailable, lock timeout, serialization conflict. Safe to retry."""

    status = 503
    retryable = True

    def to_dict(self):
        return {"error": "Service temporarily unavailable", "code": "InfrastructureError"}
