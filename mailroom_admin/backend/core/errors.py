"""Structured error codes and whitelist domain errors.

Usage:
    from mailroom_admin.backend.core.errors import api_error, E

    raise api_error(404, E.WHITELIST_ENTRY_NOT_FOUND)
    raise api_error(400, E.INVALID_ADDRESS, "Invalid IP or CIDR.")

Whitelist operations raise ``WhitelistError`` subclasses; each one knows its
code and HTTP status so routers can convert it with ``to_http()``.
"""
from enum import Enum
from fastapi import HTTPException


class ErrorCode(str, Enum):
    """All API error codes. Frontend maps these to i18n translations."""

    # ── Auth ──────────────────────────────────────────────────
    INVALID_TOKEN = "INVALID_TOKEN"
    FORBIDDEN = "FORBIDDEN"
    IP_NOT_WHITELISTED = "IP_NOT_WHITELISTED"

    # ── IP whitelist ──────────────────────────────────────────
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    WHITELIST_DUPLICATE = "WHITELIST_DUPLICATE"
    WHITELIST_ENTRY_NOT_FOUND = "WHITELIST_ENTRY_NOT_FOUND"
    WHITELIST_LAST_ENTRY = "WHITELIST_LAST_ENTRY"
    WHITELIST_SELF_LOCKOUT = "WHITELIST_SELF_LOCKOUT"

    # ── Generic ───────────────────────────────────────────────
    DB_UNAVAILABLE = "DB_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Shorthand alias
E = ErrorCode

# Default human-readable messages per code (English fallback)
_DEFAULT_MESSAGES: dict[str, str] = {
    E.INVALID_TOKEN: "Invalid or expired token",
    E.FORBIDDEN: "Access denied",
    E.IP_NOT_WHITELISTED: "Access denied",
    E.INVALID_INPUT: "IP or CIDR is required.",
    E.INVALID_ADDRESS: "Invalid IP or CIDR.",
    E.WHITELIST_DUPLICATE: "IP or CIDR already exists in the whitelist.",
    E.WHITELIST_ENTRY_NOT_FOUND: "Entry not found.",
    E.WHITELIST_LAST_ENTRY: "Cannot remove the last whitelist entry.",
    E.WHITELIST_SELF_LOCKOUT: (
        "Change would remove your current IP from the whitelist. Add another entry first."
    ),
    E.DB_UNAVAILABLE: "Server error",
    E.INTERNAL_ERROR: "Server error",
}


def api_error(
    status_code: int,
    code: ErrorCode,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> HTTPException:
    """Create an HTTPException with a structured error code.

    Args:
        status_code: HTTP status code (400, 404, 500, etc.)
        code: ErrorCode enum value
        detail: Human-readable message. If None, uses default for the code.
        headers: Extra response headers (e.g. WWW-Authenticate).

    Returns:
        HTTPException with JSON body {"detail": "...", "code": "ERROR_CODE"}
    """
    message = detail or _DEFAULT_MESSAGES.get(code, code.value)
    return HTTPException(
        status_code=status_code,
        detail={"detail": message, "code": code.value},
        headers=headers,
    )


# ── Whitelist domain errors ─────────────────────────────────────

class WhitelistError(Exception):
    """Base class for rejected whitelist operations."""

    code: ErrorCode = E.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, message: str | None = None):
        self.message = message or _DEFAULT_MESSAGES.get(self.code, self.code.value)
        super().__init__(self.message)

    def to_http(self) -> HTTPException:
        return api_error(self.status_code, self.code, self.message)


class InvalidInputError(WhitelistError, ValueError):
    """Empty or whitespace-only IP/CIDR text."""

    code = E.INVALID_INPUT
    status_code = 400


class InvalidAddressError(WhitelistError, ValueError):
    """Unparsable address, out-of-range octet or prefix length."""

    code = E.INVALID_ADDRESS
    status_code = 400


class DuplicateEntryError(WhitelistError):
    code = E.WHITELIST_DUPLICATE
    status_code = 409


class EntryNotFoundError(WhitelistError):
    code = E.WHITELIST_ENTRY_NOT_FOUND
    status_code = 404


class LastEntryError(WhitelistError):
    code = E.WHITELIST_LAST_ENTRY
    status_code = 400


class SelfLockoutError(WhitelistError):
    code = E.WHITELIST_SELF_LOCKOUT
    status_code = 400


class StoreUnavailableError(WhitelistError):
    """Store of record failed in a way that is not otherwise classified.

    The underlying cause is kept on ``__cause__`` for server-side logging; the
    client only ever sees the generic message.
    """

    code = E.DB_UNAVAILABLE
    status_code = 500
