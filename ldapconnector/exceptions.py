"""
Exception taxonomy for ldapconnector.

Every failure raised by ``python-ldap`` is translated into one of a small,
closed set of :py:class:`LdapError` subclasses before it leaves a
:py:class:`~ldapconnector.connection.LdapConnection` or a
:py:class:`~ldapconnector.cursor.ResultCursor`.  Callers can either catch the
specific subclass or branch on :py:attr:`LdapError.kind`.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any

from django.core.exceptions import ImproperlyConfigured

from ldapconnector import ldap

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """The closed set of error kinds surfaced to callers."""

    AUTHENTICATION_FAILED = "AuthenticationFailed"
    NAME_NOT_FOUND = "NameNotFound"
    COMMUNICATION_FAILURE = "CommunicationFailure"
    NO_PERMISSION = "NoPermission"
    INVALID_ATTRIBUTE = "InvalidAttribute"
    INVALID_ENTRY = "InvalidEntry"
    NAME_ALREADY_BOUND = "NameAlreadyBound"
    CONTEXT_NOT_EMPTY = "ContextNotEmpty"
    INVALID_CONFIGURATION = "InvalidConfiguration"
    UNKNOWN = "Unknown"


def describe(exc: BaseException) -> str:
    """
    Build a human readable message from a native exception.

    ``python-ldap`` exceptions carry a dict as their first argument with
    ``desc`` and, sometimes, ``info`` keys.

    Args:
        exc: the exception to describe

    Returns:
        A one line description of ``exc``.

    """
    if exc.args and isinstance(exc.args[0], dict):
        details = exc.args[0]
        desc = details.get("desc", type(exc).__name__)
        info = details.get("info")
        if info:
            return f"{desc}: {info}".strip()
        return str(desc)
    return str(exc) or type(exc).__name__


class LdapError(Exception):
    """
    Base class for all ldapconnector errors.

    This is also the generic error used when a native failure has no more
    specific mapping.

    Args:
        message: description of what went wrong

    Keyword Args:
        cause: the native exception that caused this one, if any

    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def code(self) -> str | None:
        """
        The diagnostic code reported by the underlying failure.

        For ``python-ldap`` errors this is the server supplied ``info``
        message, falling back to ``desc``.  For any other cause it is the
        string form of the cause.
        """
        if self.cause is None:
            return None
        if self.cause.args and isinstance(self.cause.args[0], dict):
            details = self.cause.args[0]
            info = details.get("info")
            if isinstance(info, bytes):
                info = info.decode("utf-8", errors="replace")
            return (info or details.get("desc") or "").strip() or None
        return str(self.cause) or None

    def __str__(self) -> str:
        return self.message


class AuthenticationFailed(LdapError):
    """Bad credentials or an authentication mechanism mismatch."""

    kind = ErrorKind.AUTHENTICATION_FAILED


class NameNotFound(LdapError):
    """The target DN, or one of its ancestors, does not exist."""

    kind = ErrorKind.NAME_NOT_FOUND


class CommunicationFailure(LdapError):
    """
    The server could not be reached, or the connection dropped.

    Args:
        message: description of what went wrong

    Keyword Args:
        cause: the native exception that caused this one, if any
        unknown_host: ``True`` if the server hostname could not be resolved

    """

    kind = ErrorKind.COMMUNICATION_FAILURE

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        unknown_host: bool = False,
    ) -> None:
        super().__init__(message, cause=cause)
        self.unknown_host = unknown_host


class NoPermission(LdapError):
    """The bound identity is not authorized for the operation."""

    kind = ErrorKind.NO_PERMISSION


class InvalidAttribute(LdapError):
    """An attribute value or identifier is invalid, or the value is in use."""

    kind = ErrorKind.INVALID_ATTRIBUTE


class InvalidEntry(LdapError):
    """The entry violates the directory schema or is otherwise malformed."""

    kind = ErrorKind.INVALID_ENTRY


class NameAlreadyBound(LdapError):
    """An entry already exists at the target DN."""

    kind = ErrorKind.NAME_ALREADY_BOUND


class ContextNotEmpty(LdapError):
    """Attempted to delete an entry that still has children."""

    kind = ErrorKind.CONTEXT_NOT_EMPTY


class InvalidConfiguration(LdapError, ImproperlyConfigured):
    """The connection configuration is missing something or is malformed."""

    kind = ErrorKind.INVALID_CONFIGURATION


class ConnectionFailureReason(Enum):
    """Why :py:meth:`~ldapconnector.client.LdapClient.connect` failed."""

    UNKNOWN_HOST = "UNKNOWN_HOST"
    CANNOT_REACH = "CANNOT_REACH"
    INCORRECT_CREDENTIALS = "INCORRECT_CREDENTIALS"
    UNKNOWN = "UNKNOWN"


class ConnectionFailure(LdapError):
    """
    A failure to establish an authenticated connection.

    This wraps the translated bind failure and classifies it into a
    :py:class:`ConnectionFailureReason`.

    Args:
        reason: the classified reason
        message: description of what went wrong

    Keyword Args:
        cause: the translated :py:class:`LdapError`, if any

    """

    def __init__(
        self,
        reason: ConnectionFailureReason,
        message: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.reason = reason
        if isinstance(cause, LdapError):
            self.kind = cause.kind

    @property
    def code(self) -> str | None:
        if isinstance(self.cause, LdapError):
            return self.cause.code
        return super().code

    @classmethod
    def from_error(cls, error: LdapError) -> "ConnectionFailure":
        """
        Classify a translated bind failure.

        Args:
            error: the translated failure

        Returns:
            A :py:class:`ConnectionFailure` with the proper reason.

        """
        if isinstance(error, CommunicationFailure):
            if error.unknown_host:
                reason = ConnectionFailureReason.UNKNOWN_HOST
            else:
                reason = ConnectionFailureReason.CANNOT_REACH
        elif isinstance(error, (AuthenticationFailed, NameNotFound)):
            reason = ConnectionFailureReason.INCORRECT_CREDENTIALS
        else:
            reason = ConnectionFailureReason.UNKNOWN
        return cls(reason, error.message, cause=error)


#: Maps the concrete ``python-ldap`` exception class to our error class.
#: Anything not listed here becomes a plain :py:class:`LdapError`.
ERROR_MAP: dict[type[BaseException], type[LdapError]] = {
    ldap.INVALID_CREDENTIALS: AuthenticationFailed,
    ldap.INAPPROPRIATE_AUTH: AuthenticationFailed,
    ldap.AUTH_UNKNOWN: AuthenticationFailed,
    ldap.STRONG_AUTH_REQUIRED: AuthenticationFailed,
    ldap.NO_SUCH_OBJECT: NameNotFound,
    ldap.SERVER_DOWN: CommunicationFailure,
    ldap.CONNECT_ERROR: CommunicationFailure,
    ldap.TIMEOUT: CommunicationFailure,
    ldap.INSUFFICIENT_ACCESS: NoPermission,
    ldap.INVALID_DN_SYNTAX: InvalidAttribute,
    ldap.NAMING_VIOLATION: InvalidAttribute,
    ldap.INVALID_SYNTAX: InvalidAttribute,
    ldap.UNDEFINED_TYPE: InvalidAttribute,
    ldap.TYPE_OR_VALUE_EXISTS: InvalidAttribute,
    ldap.CONSTRAINT_VIOLATION: InvalidAttribute,
    ldap.NO_SUCH_ATTRIBUTE: InvalidAttribute,
    ldap.OBJECT_CLASS_VIOLATION: InvalidEntry,
    ldap.NOT_ALLOWED_ON_RDN: InvalidEntry,
    ldap.OBJECT_CLASS_MODS_PROHIBITED: InvalidEntry,
    ldap.ALREADY_EXISTS: NameAlreadyBound,
    ldap.NOT_ALLOWED_ON_NONLEAF: ContextNotEmpty,
}


def translate(
    exc: BaseException,
    message: str | None = None,
    mapping: dict[type[BaseException], type[LdapError]] | None = None,
    **kwargs: Any,
) -> LdapError:
    """
    Translate a native failure into an :py:class:`LdapError`.

    Translation never fails: if ``exc`` has no mapping, or if building the
    mapped error raises, the result is a generic :py:class:`LdapError` with
    ``exc`` attached as its cause.

    Args:
        exc: the native exception

    Keyword Args:
        message: use this as the message instead of describing ``exc``
        mapping: use this table instead of :py:data:`ERROR_MAP`
        **kwargs: extra keyword arguments for the mapped error class

    Returns:
        The translated error.  It is not raised.

    """
    if isinstance(exc, LdapError):
        return exc
    if mapping is None:
        mapping = ERROR_MAP
    if message is None:
        message = describe(exc)
    error_class = mapping.get(type(exc), LdapError)
    try:
        return error_class(message, cause=exc, **kwargs)
    except Exception:  # noqa: BLE001
        logger.warning(
            "ldapconnector.translate.fallback error_class=%s", error_class.__name__
        )
        return LdapError(message, cause=exc)


@contextmanager
def translate_errors(operation: str, dn: str | None = None) -> Iterator[None]:
    """
    Translate any ``python-ldap`` failure raised inside the block.

    Example:
        >>> with translate_errors("delete", dn=dn):
        ...     session.delete_s(dn)

    Args:
        operation: the name of the operation, used for logging

    Keyword Args:
        dn: the DN the operation acts upon, used for logging

    Raises:
        LdapError: a translated failure, chained to the native one

    """
    try:
        yield
    except ldap.LDAPError as exc:
        error = translate(exc)
        logger.debug(
            "ldapconnector.%s.failed dn=%s kind=%s code=%s",
            operation,
            dn,
            error.kind.value,
            error.code,
        )
        raise error from exc
