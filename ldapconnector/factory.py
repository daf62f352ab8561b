"""
Building connections from configuration.

Connection types are looked up by name in a :py:class:`ConnectionRegistry`.
The module level :py:data:`default_registry` knows the ``python-ldap`` type;
register your own :py:class:`~ldapconnector.connection.LdapConnection`
subclasses there, or hand a registry of your own to
:py:class:`ConnectionFactory`.
"""

import logging
from typing import Any

from .config import Authentication, ConnectionConfig, Referral
from .connection import LdapConnection, PythonLdapConnection
from .exceptions import InvalidConfiguration, LdapError
from .typing import ConfigMap

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """A table of connection types, keyed by name."""

    def __init__(self) -> None:
        self._types: dict[str, type[LdapConnection]] = {}

    def register(self, name: str, connection_class: type[LdapConnection]) -> None:
        """
        Make ``connection_class`` available as the type ``name``.

        Registering a name twice replaces the earlier class.
        """
        if name in self._types:
            logger.debug("ldapconnector.registry.replace type=%s", name)
        self._types[name] = connection_class

    def unregister(self, name: str) -> None:
        self._types.pop(name, None)

    def get(self, name: str) -> type[LdapConnection] | None:
        return self._types.get(name)

    @property
    def types(self) -> list[str]:
        return sorted(self._types)

    def __contains__(self, name: object) -> bool:
        return name in self._types


#: The registry used when :py:class:`ConnectionFactory` is not given one
default_registry = ConnectionRegistry()
default_registry.register("python-ldap", PythonLdapConnection)


class ConnectionFactory:
    """
    Creates :py:class:`~ldapconnector.connection.LdapConnection` objects.

    Keyword Args:
        registry: where to look up connection types; defaults to
            :py:data:`default_registry`

    """

    def __init__(self, registry: ConnectionRegistry | None = None) -> None:
        self.registry = registry if registry is not None else default_registry

    def create(self, conf: ConnectionConfig | ConfigMap) -> LdapConnection:
        """
        Instantiate the connection type named by ``conf``.

        Args:
            conf: a configuration, or a dictionary to build one from

        Raises:
            InvalidConfiguration: ``conf`` is malformed, names no type, or
                names a type that is not registered
            LdapError: the connection class itself failed to initialize

        Returns:
            A new, unbound connection.

        """
        if isinstance(conf, dict):
            if not conf.get("type"):
                msg = 'A connection configuration requires a "type"'
                raise InvalidConfiguration(msg)
            config = ConnectionConfig.from_map(conf)
        elif isinstance(conf, ConnectionConfig):
            config = conf
        else:
            msg = f"Cannot build a connection from {type(conf).__name__}"
            raise InvalidConfiguration(msg)
        if not config.type:
            msg = 'A connection configuration requires a "type"'
            raise InvalidConfiguration(msg)
        connection_class = self.registry.get(config.type)
        if connection_class is None:
            msg = (
                f'Unknown connection type "{config.type}"; registered types are: '
                f"{', '.join(self.registry.types) or 'none'}"
            )
            raise InvalidConfiguration(msg)
        try:
            connection = connection_class(config)
        except LdapError:
            raise
        except Exception as exc:
            msg = (
                f'Could not instantiate a "{config.type}" connection from '
                f"configuration {config.server_uri}: {exc}"
            )
            raise LdapError(msg, cause=exc) from exc
        logger.debug(
            "ldapconnector.factory.create type=%s uri=%s", config.type, config.server_uri
        )
        return connection


def get_connection(  # noqa: PLR0913
    type: str,  # noqa: A002
    url: str,
    authentication: Authentication | str = Authentication.SIMPLE,
    initial_pool_size: int = 0,
    max_pool_size: int = 0,
    pool_timeout: int = 0,
    referral: Referral | str = Referral.IGNORE,
    network_timeout: float = 15.0,
    extended: dict[str, Any] | None = None,
    registry: ConnectionRegistry | None = None,
) -> LdapConnection:
    """
    Build a connection from keyword arguments.

    This is a shortcut for building a
    :py:class:`~ldapconnector.config.ConnectionConfig` and passing it to
    :py:meth:`ConnectionFactory.create`.

    Raises:
        InvalidConfiguration: the arguments do not make a valid configuration

    Returns:
        A new, unbound connection.

    """
    config = ConnectionConfig(
        url=url,
        type=type,
        authentication=authentication,
        initial_pool_size=initial_pool_size,
        max_pool_size=max_pool_size,
        pool_timeout=pool_timeout,
        referral=referral,
        network_timeout=network_timeout,
        extended=dict(extended or {}),
    )
    return ConnectionFactory(registry).create(config)
