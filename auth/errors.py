"""
auth/errors.py -- Stable error codes and the (errno, data) result pair.

Public operations on AuthController and UserManager never raise for expected
failures. They return a Result whose first element is an ErrorCode (OK on
success) and whose second element is an optional payload. Callers can unpack
it like a plain tuple:

    errno, data = ctrl.login({"uname": "root", "upass": "admin"})

Code values are grouped by category in the high byte:
  0x00xx  configuration
  0x02xx  credential
  0x03xx  session
  0x04xx  authorization
  0x05xx  input validation

Exceptions exist only for conditions that must abort startup: AdminError for
invalid resolver configuration and SchemaError for failed DDL.

Layer rule: no imports from other project packages.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, NamedTuple


class ErrorCode(IntEnum):
    OK = 0

    # configuration
    TOKEN_NAME_NOT_SET = 0x0001
    EXPIRATION_INVALID = 0x0002

    # credential
    PASSWORD_INVALID = 0x0200
    PASSWORD_MISMATCH = 0x0201
    PASSWORD_TOO_SHORT = 0x0202
    OLD_PASSWORD_INVALID = 0x0203
    WRONG_PASSWORD = 0x0204

    # session
    NOT_LOGGED_IN = 0x0300
    ALREADY_LOGGED_IN = 0x0301
    USER_NOT_FOUND = 0x0302
    NOT_AUTHORIZED = 0x0305

    # authorization
    SELF_REGISTER_NOT_ALLOWED = 0x0401

    # input validation
    DATA_INCOMPLETE = 0x0501
    SITE_URL_INVALID = 0x0502
    USERNAME_TOO_LONG = 0x0503
    USERNAME_HAS_WHITESPACE = 0x0504
    USERNAME_LEADING_PLUS = 0x0505
    EMAIL_INVALID = 0x0506
    EMAIL_EXISTS = 0x0507
    USERNAME_EXISTS = 0x0508


class Result(NamedTuple):
    """Outcome of a public operation: (errno, data)."""

    errno: ErrorCode
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.errno == ErrorCode.OK


class AdminError(Exception):
    """Fatal configuration error. Raised at construction time, never per request."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class SchemaError(Exception):
    """A DDL statement failed. The schema may be partially applied; startup must abort."""
