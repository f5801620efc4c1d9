"""
Domain error taxonomy.

Services raise these exceptions; the API layer converts them to HTTP
responses in one exception handler (see ``app.main``).  Every error
carries a short user-facing ``message`` and a machine-readable ``code``;
neither ever contains stack traces, SQL or which credential field failed.
"""
import enum
import logging
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    VALIDATION = "VALIDATION"
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    NOT_FOUND = "NOT_FOUND"
    BUSINESS = "BUSINESS"
    INTERNAL = "INTERNAL"


# Business codes that describe a clash with existing data
_CONFLICT_CODES = frozenset(
    {
        "EMAIL_EXISTS",
        "USERNAME_EXISTS",
        "ALREADY_ASSIGNED",
        "ROLE_EXISTS",
        "PERMISSION_EXISTS",
        "ROLE_NAME_EXISTS",
        "PERMISSION_NAME_EXISTS",
        "VOTE_CONFLICT",
        "REPORT_CONFLICT",
    }
)


class AppError(Exception):
    """
    Base class for all domain errors.

    Attributes:
        message: Human-readable, user-safe message.
        code: Machine-readable error code.
        kind: Category from ``ErrorKind``.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    default_code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code or self.default_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "code": self.code, "message": self.message}


class ValidationError(AppError):
    """Malformed or semantically invalid input."""

    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(AppError):
    """Bad credentials or an invalid / expired token."""

    kind = ErrorKind.AUTHENTICATION
    default_code = "AUTHENTICATION_ERROR"
    status_code = 401


class AuthorizationError(AppError):
    """Caller is authenticated but lacks a role or permission."""

    kind = ErrorKind.AUTHORIZATION
    default_code = "AUTHORIZATION_ERROR"
    status_code = 403


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"
    status_code = 404


class BusinessError(AppError):
    """A domain rule was violated (duplicate email, banned IP, bad captcha...)."""

    kind = ErrorKind.BUSINESS
    default_code = "BUSINESS_ERROR"
    status_code = 400

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message, code)
        if self.code in _CONFLICT_CODES:
            self.status_code = 409
        elif self.code == "IP_BANNED":
            self.status_code = 403


class InternalError(AppError):
    """Unexpected storage or crypto failure, already scrubbed of detail."""


class TransactionError(InternalError):
    """A unit of work was started under an incompatible propagation policy."""

    default_code = "TRANSACTION_ERROR"


@contextmanager
def wrap_unexpected(code: str, message: str) -> Iterator[None]:
    """
    Re-raise anything that is not an ``AppError`` as ``InternalError``.

    Domain errors pass through untouched.  The original exception is kept
    as ``__cause__`` and logged with its traceback, but never reaches the
    user-facing message::

        with wrap_unexpected("REGISTER_FAILED", "Registration failed"):
            ...
    """
    try:
        yield
    except AppError:
        raise
    except Exception as exc:
        logger.exception("Unexpected error (%s)", code)
        raise InternalError(message, code) from exc
