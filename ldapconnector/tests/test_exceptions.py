"""
Tests for the exception taxonomy and the python-ldap error translator.
"""

import unittest
from unittest.mock import patch

import ldap
from django.core.exceptions import ImproperlyConfigured

from ldapconnector.exceptions import (
    AuthenticationFailed,
    CommunicationFailure,
    ConnectionFailure,
    ConnectionFailureReason,
    ContextNotEmpty,
    ErrorKind,
    InvalidAttribute,
    InvalidConfiguration,
    InvalidEntry,
    LdapError,
    NameAlreadyBound,
    NameNotFound,
    NoPermission,
    describe,
    translate,
    translate_errors,
)


class TestTranslate(unittest.TestCase):
    """Test mapping native failures to our error classes."""

    def test_mapped_errors(self):
        cases = [
            (ldap.INVALID_CREDENTIALS, AuthenticationFailed),
            (ldap.NO_SUCH_OBJECT, NameNotFound),
            (ldap.SERVER_DOWN, CommunicationFailure),
            (ldap.TIMEOUT, CommunicationFailure),
            (ldap.INSUFFICIENT_ACCESS, NoPermission),
            (ldap.INVALID_DN_SYNTAX, InvalidAttribute),
            (ldap.TYPE_OR_VALUE_EXISTS, InvalidAttribute),
            (ldap.OBJECT_CLASS_VIOLATION, InvalidEntry),
            (ldap.ALREADY_EXISTS, NameAlreadyBound),
            (ldap.NOT_ALLOWED_ON_NONLEAF, ContextNotEmpty),
        ]
        for native, expected in cases:
            with self.subTest(native=native.__name__):
                exc = native({"desc": "boom"})
                error = translate(exc)
                self.assertIsInstance(error, expected)
                self.assertIs(error.cause, exc)

    def test_unmapped_error_is_generic(self):
        error = translate(ldap.OTHER({"desc": "Other (e.g., implementation specific) error"}))
        self.assertIs(type(error), LdapError)
        self.assertIs(error.kind, ErrorKind.UNKNOWN)

    def test_translated_errors_pass_through(self):
        error = NameNotFound("gone")
        self.assertIs(translate(error), error)

    def test_constructor_failure_falls_back(self):
        class Broken(LdapError):
            def __init__(self, *args, **kwargs):
                raise RuntimeError("nope")

        exc = ldap.NO_SUCH_OBJECT({"desc": "No such object"})
        with self.assertLogs("ldapconnector.exceptions", level="WARNING"):
            error = translate(exc, mapping={ldap.NO_SUCH_OBJECT: Broken})
        self.assertIs(type(error), LdapError)
        self.assertIs(error.cause, exc)

    def test_message_and_code(self):
        exc = ldap.INVALID_CREDENTIALS(
            {"desc": "Invalid credentials", "info": "80090308: LdapErr"}
        )
        error = translate(exc)
        self.assertEqual(error.message, "Invalid credentials: 80090308: LdapErr")
        self.assertEqual(str(error), error.message)
        self.assertEqual(error.code, "80090308: LdapErr")
        self.assertIs(error.kind, ErrorKind.AUTHENTICATION_FAILED)

    def test_code_falls_back_to_desc(self):
        error = translate(ldap.NO_SUCH_OBJECT({"desc": "No such object"}))
        self.assertEqual(error.code, "No such object")
        self.assertIsNone(LdapError("plain").code)

    def test_describe(self):
        self.assertEqual(describe(ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})),
                         "Can't contact LDAP server")
        self.assertEqual(describe(ValueError("bad")), "bad")


class TestTranslateErrors(unittest.TestCase):
    """Test the translate_errors context manager."""

    def test_translates_and_chains(self):
        with self.assertRaises(ContextNotEmpty) as ctx:
            with translate_errors("delete", dn="ou=users,dc=example,dc=com"):
                raise ldap.NOT_ALLOWED_ON_NONLEAF({"desc": "Operation not allowed on non-leaf"})
        self.assertIsInstance(ctx.exception.__cause__, ldap.NOT_ALLOWED_ON_NONLEAF)

    def test_other_exceptions_pass_through(self):
        with self.assertRaises(KeyError):
            with translate_errors("search"):
                raise KeyError("x")

    def test_logs_failures(self):
        with self.assertLogs("ldapconnector.exceptions", level="DEBUG") as logs:
            with self.assertRaises(NameNotFound):
                with translate_errors("lookup", dn="uid=nobody,dc=example,dc=com"):
                    raise ldap.NO_SUCH_OBJECT({"desc": "No such object"})
        self.assertIn("ldapconnector.lookup.failed", logs.output[0])


class TestErrorClasses(unittest.TestCase):
    """Test the error classes themselves."""

    def test_invalid_configuration_is_improperly_configured(self):
        error = InvalidConfiguration("bad url")
        self.assertIsInstance(error, ImproperlyConfigured)
        self.assertIsInstance(error, LdapError)
        self.assertIs(error.kind, ErrorKind.INVALID_CONFIGURATION)

    def test_communication_failure_unknown_host(self):
        self.assertFalse(CommunicationFailure("down").unknown_host)
        self.assertTrue(CommunicationFailure("down", unknown_host=True).unknown_host)

    def test_all_errors_are_ldap_errors(self):
        for error_class in (
            AuthenticationFailed,
            NameNotFound,
            CommunicationFailure,
            NoPermission,
            InvalidAttribute,
            InvalidEntry,
            NameAlreadyBound,
            ContextNotEmpty,
        ):
            with self.subTest(error_class=error_class.__name__):
                self.assertTrue(issubclass(error_class, LdapError))
                self.assertEqual(error_class.kind.value, error_class.__name__)


class TestConnectionFailure(unittest.TestCase):
    """Test classifying bind failures."""

    def test_unknown_host(self):
        failure = ConnectionFailure.from_error(CommunicationFailure("x", unknown_host=True))
        self.assertIs(failure.reason, ConnectionFailureReason.UNKNOWN_HOST)
        self.assertIs(failure.kind, ErrorKind.COMMUNICATION_FAILURE)

    def test_cannot_reach(self):
        failure = ConnectionFailure.from_error(CommunicationFailure("x"))
        self.assertIs(failure.reason, ConnectionFailureReason.CANNOT_REACH)

    def test_incorrect_credentials(self):
        for error in (AuthenticationFailed("x"), NameNotFound("x")):
            with self.subTest(error=type(error).__name__):
                failure = ConnectionFailure.from_error(error)
                self.assertIs(failure.reason, ConnectionFailureReason.INCORRECT_CREDENTIALS)

    def test_unknown(self):
        failure = ConnectionFailure.from_error(NoPermission("x"))
        self.assertIs(failure.reason, ConnectionFailureReason.UNKNOWN)

    def test_code_comes_from_cause(self):
        cause = translate(ldap.INVALID_CREDENTIALS({"desc": "Invalid credentials", "info": "52e"}))
        failure = ConnectionFailure.from_error(cause)
        self.assertEqual(failure.code, "52e")
        self.assertIs(failure.cause, cause)


@patch.dict("ldapconnector.exceptions.ERROR_MAP", {ldap.OTHER: NoPermission})
class TestCustomMapping(unittest.TestCase):
    """The translation table is a plain dict and can be extended."""

    def test_patched_mapping(self):
        self.assertIsInstance(translate(ldap.OTHER({"desc": "x"})), NoPermission)
