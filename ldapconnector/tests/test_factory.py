"""
Tests for the connection registry and factory.
"""

import unittest

from ldapconnector.config import Authentication, ConnectionConfig, Referral
from ldapconnector.connection import PythonLdapConnection
from ldapconnector.exceptions import InvalidConfiguration, LdapError, NameNotFound
from ldapconnector.factory import (
    ConnectionFactory,
    ConnectionRegistry,
    default_registry,
    get_connection,
)


class RecordingConnection(PythonLdapConnection):
    """Remembers the configuration it was built with."""

    created = []

    def __init__(self, config):
        super().__init__(config)
        self.created.append(config)


class ExplodingConnection(PythonLdapConnection):
    def __init__(self, config):
        raise RuntimeError("no sockets today")


class RefusingConnection(PythonLdapConnection):
    def __init__(self, config):
        raise NameNotFound("no such server")


class TestConnectionRegistry(unittest.TestCase):
    """Test registering and looking up connection types."""

    def test_default_registry_knows_python_ldap(self):
        self.assertIn("python-ldap", default_registry)
        self.assertIs(default_registry.get("python-ldap"), PythonLdapConnection)

    def test_register_and_unregister(self):
        registry = ConnectionRegistry()
        self.assertNotIn("recording", registry)
        registry.register("recording", RecordingConnection)
        registry.register("exploding", ExplodingConnection)
        self.assertEqual(registry.types, ["exploding", "recording"])
        registry.unregister("exploding")
        registry.unregister("exploding")
        self.assertEqual(registry.types, ["recording"])
        self.assertIsNone(registry.get("exploding"))

    def test_register_replaces(self):
        registry = ConnectionRegistry()
        registry.register("python-ldap", PythonLdapConnection)
        with self.assertLogs("ldapconnector.factory", level="DEBUG"):
            registry.register("python-ldap", RecordingConnection)
        self.assertIs(registry.get("python-ldap"), RecordingConnection)


class TestConnectionFactory(unittest.TestCase):
    """Test building connections from configurations."""

    def setUp(self):
        self.registry = ConnectionRegistry()
        self.registry.register("recording", RecordingConnection)
        self.factory = ConnectionFactory(self.registry)
        RecordingConnection.created.clear()

    def test_create_from_config(self):
        config = ConnectionConfig("ldap://localhost", type="recording")
        connection = self.factory.create(config)
        self.assertIsInstance(connection, RecordingConnection)
        self.assertIs(connection.config, config)
        self.assertTrue(connection.is_closed())

    def test_create_from_dict(self):
        connection = self.factory.create(
            {"url": "ldap://localhost/dc=example,dc=com", "type": "recording"}
        )
        self.assertEqual(connection.config.base_dn, "dc=example,dc=com")
        self.assertEqual(len(RecordingConnection.created), 1)

    def test_default_factory_uses_default_registry(self):
        connection = ConnectionFactory().create(
            {"url": "ldap://localhost", "type": "python-ldap"}
        )
        self.assertIs(type(connection), PythonLdapConnection)

    def test_missing_type(self):
        with self.assertRaises(InvalidConfiguration):
            self.factory.create({"url": "ldap://localhost"})
        with self.assertRaises(InvalidConfiguration):
            self.factory.create({"url": "ldap://localhost", "type": ""})
        with self.assertRaises(InvalidConfiguration):
            self.factory.create(ConnectionConfig("ldap://localhost", type=""))

    def test_unknown_type_lists_registered_types(self):
        with self.assertRaises(InvalidConfiguration) as ctx:
            self.factory.create({"url": "ldap://localhost", "type": "jndi"})
        self.assertIn("jndi", str(ctx.exception))
        self.assertIn("recording", str(ctx.exception))

    def test_not_a_configuration(self):
        with self.assertRaises(InvalidConfiguration):
            self.factory.create("ldap://localhost")  # type: ignore[arg-type]

    def test_bad_url(self):
        with self.assertRaises(InvalidConfiguration):
            self.factory.create({"url": "http://localhost", "type": "recording"})

    def test_constructor_failures_are_wrapped(self):
        self.registry.register("exploding", ExplodingConnection)
        with self.assertRaises(LdapError) as ctx:
            self.factory.create({"url": "ldap://localhost", "type": "exploding"})
        self.assertIs(type(ctx.exception), LdapError)
        self.assertIsInstance(ctx.exception.cause, RuntimeError)
        self.assertIn("exploding", str(ctx.exception))

    def test_constructor_ldap_errors_pass_through(self):
        self.registry.register("refusing", RefusingConnection)
        with self.assertRaises(NameNotFound):
            self.factory.create({"url": "ldap://localhost", "type": "refusing"})


class TestGetConnection(unittest.TestCase):
    """Test the keyword argument shortcut."""

    def test_builds_configuration(self):
        connection = get_connection(
            "python-ldap",
            "ldaps://ldap.example.com/dc=example,dc=com",
            authentication="none",
            referral="follow",
            network_timeout=3,
            extended={"tls_verify": "never"},
        )
        config = connection.config
        self.assertIs(config.authentication, Authentication.NONE)
        self.assertIs(config.referral, Referral.FOLLOW)
        self.assertEqual(config.network_timeout, 3.0)
        self.assertEqual(config.port, 636)
        self.assertEqual(config.extended, {"tls_verify": "never"})

    def test_custom_registry(self):
        registry = ConnectionRegistry()
        registry.register("recording", RecordingConnection)
        connection = get_connection("recording", "ldap://localhost", registry=registry)
        self.assertIsInstance(connection, RecordingConnection)

    def test_invalid_pool_sizes(self):
        with self.assertRaises(InvalidConfiguration):
            get_connection("python-ldap", "ldap://localhost", initial_pool_size=5, max_pool_size=1)
