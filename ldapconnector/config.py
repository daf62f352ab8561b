"""
Connection configuration.

A :py:class:`ConnectionConfig` describes one LDAP server: where it is, how
to authenticate to it, how to pool sessions against it and how to treat
referrals.  Configurations can be built directly, from a plain dictionary,
or from an entry in Django's ``settings.LDAP_SERVERS``.

Example:
    .. code-block:: python

        LDAP_SERVERS = {
            "default": {
                "url": "ldaps://ldap.example.com/dc=example,dc=com",
                "type": "python-ldap",
                "authentication": "simple",
                "initial_pool_size": 1,
                "max_pool_size": 5,
                "pool_timeout": 300,
                "referral": "ignore",
                "user": "cn=admin,dc=example,dc=com",
                "password": "secret",
                "tls_verify": "always",
            }
        }
"""

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, cast
from urllib.parse import unquote, urlparse

from django.conf import settings

from ldapconnector import ldap

from .exceptions import InvalidConfiguration
from .typing import ConfigMap

logger = logging.getLogger(__name__)

#: The connection type used when a configuration does not name one
DEFAULT_TYPE = "python-ldap"
DEFAULT_PORTS = {"ldap": 389, "ldaps": 636}


class Referral(Enum):
    """What to do with search continuation references."""

    FOLLOW = "follow"
    IGNORE = "ignore"
    THROW = "throw"

    @classmethod
    def from_value(cls, value: "Referral | str | None") -> "Referral":
        if isinstance(value, Referral):
            return value
        if value is None or not str(value).strip():
            return cls.IGNORE
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            msg = f'Invalid referral value "{value}"; use follow, ignore or throw'
            raise InvalidConfiguration(msg, cause=exc) from exc


class Authentication(Enum):
    """How to authenticate on bind."""

    NONE = "none"
    SIMPLE = "simple"

    @classmethod
    def from_value(cls, value: "Authentication | str | None") -> "Authentication":
        if isinstance(value, Authentication):
            return value
        if value is None or not str(value).strip():
            return cls.SIMPLE
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            msg = f'Unsupported authentication "{value}"; use none or simple'
            raise InvalidConfiguration(msg, cause=exc) from exc


def _as_int(name: str, value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError) as exc:
        msg = f'"{name}" must be an integer, not {value!r}'
        raise InvalidConfiguration(msg, cause=exc) from exc


def _as_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        msg = f'"{name}" must be a number, not {value!r}'
        raise InvalidConfiguration(msg, cause=exc) from exc


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass
class ConnectionConfig:
    """
    Configuration for one LDAP server.

    Args:
        url: ``ldap[s]://host[:port][/baseDN]``

    Keyword Args:
        type: the connection registry key to instantiate
        authentication: ``none`` for anonymous binds, ``simple`` otherwise
        initial_pool_size: sessions to open up front; pooling is enabled
            only when this is greater than ``0``
        max_pool_size: maximum sessions per bound identity; ``0`` means
            unbounded
        pool_timeout: seconds an idle pooled session may live; ``0`` means
            forever
        referral: how to treat search continuation references
        network_timeout: seconds to wait when connecting
        extended: free-form provider properties.  Named fields always win
            over these.

    """

    url: str
    type: str = DEFAULT_TYPE
    authentication: Authentication = Authentication.SIMPLE
    initial_pool_size: int = 0
    max_pool_size: int = 0
    pool_timeout: int = 0
    referral: Referral = Referral.IGNORE
    network_timeout: float = 15.0
    extended: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.url or not isinstance(self.url, str):
            msg = 'A connection configuration requires a "url"'
            raise InvalidConfiguration(msg)
        self.authentication = Authentication.from_value(self.authentication)
        self.referral = Referral.from_value(self.referral)
        self.initial_pool_size = _as_int("initial_pool_size", self.initial_pool_size)
        self.max_pool_size = _as_int("max_pool_size", self.max_pool_size)
        self.pool_timeout = _as_int("pool_timeout", self.pool_timeout)
        self.network_timeout = _as_float("network_timeout", self.network_timeout)
        if self.max_pool_size and self.initial_pool_size > self.max_pool_size:
            msg = (
                f"initial_pool_size ({self.initial_pool_size}) cannot be greater "
                f"than max_pool_size ({self.max_pool_size})"
            )
            raise InvalidConfiguration(msg)
        parsed = urlparse(self.url)
        if parsed.scheme.lower() not in DEFAULT_PORTS:
            msg = f'Invalid LDAP url "{self.url}": scheme must be ldap or ldaps'
            raise InvalidConfiguration(msg)
        if not parsed.hostname:
            msg = f'Invalid LDAP url "{self.url}": no host'
            raise InvalidConfiguration(msg)
        try:
            port = parsed.port
        except ValueError as exc:
            msg = f'Invalid LDAP url "{self.url}": bad port'
            raise InvalidConfiguration(msg, cause=exc) from exc
        self._scheme = parsed.scheme.lower()
        self._host = parsed.hostname
        self._port = port or DEFAULT_PORTS[self._scheme]
        self._base_dn = unquote(parsed.path.lstrip("/"))

    @property
    def scheme(self) -> str:
        return self._scheme

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def base_dn(self) -> str:
        """The base DN from the url path; empty if there was none."""
        return self._base_dn

    @property
    def server_uri(self) -> str:
        """The url without its base DN, as ``ldap.initialize`` wants it."""
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def pool_key(self) -> str:
        """
        Identifies the session pool shared by equivalent configurations.

        Sessions are opened with our options already set, so configurations
        that differ in any session option get separate pools.

        Raises:
            InvalidConfiguration: an extended property has a bad value

        """
        session_options = repr(
            (
                sorted(self.ldap_options()),
                self.use_starttls,
                self.referral.value,
                float(self.network_timeout),
            )
        )
        digest = hashlib.sha256(session_options.encode("utf-8")).hexdigest()
        return (
            f"{self.server_uri}|{self.authentication.value}|{self.initial_pool_size}|"
            f"{self.max_pool_size}|{self.pool_timeout}|{digest}"
        )

    @property
    def pooling_enabled(self) -> bool:
        return self.initial_pool_size > 0

    @property
    def anonymous(self) -> bool:
        return self.authentication is Authentication.NONE

    @classmethod
    def from_map(cls, data: ConfigMap) -> "ConnectionConfig":
        """
        Build a configuration from a dictionary.

        Keys naming one of our fields set that field.  Every other key,
        except the ``user`` and ``password`` default credentials, is kept in
        :py:attr:`extended`.  An explicit ``extended`` dictionary is merged
        in as well.

        Args:
            data: the configuration dictionary

        Raises:
            InvalidConfiguration: the configuration is malformed

        Returns:
            The new configuration.

        """
        if not isinstance(data, dict):
            msg = f"A connection configuration must be a dict, not {type(data).__name__}"
            raise InvalidConfiguration(msg)
        named = {
            "url",
            "type",
            "authentication",
            "initial_pool_size",
            "max_pool_size",
            "pool_timeout",
            "referral",
            "network_timeout",
        }
        kwargs: dict[str, Any] = {}
        extended: dict[str, Any] = dict(data.get("extended") or {})
        for key, value in data.items():
            if key in named:
                kwargs[key] = value
            elif key not in ("extended", "user", "password"):
                extended[key] = value
        if "network_timeout" not in kwargs and "timeout" in extended:
            kwargs["network_timeout"] = extended.pop("timeout")
        if "referral" not in kwargs and "follow_referrals" in extended:
            if _as_bool(extended.pop("follow_referrals")):
                kwargs["referral"] = Referral.FOLLOW
        if "url" not in kwargs:
            msg = 'A connection configuration requires a "url"'
            raise InvalidConfiguration(msg)
        return cls(extended=extended, **kwargs)

    @classmethod
    def from_settings(cls, name: str = "default") -> "ConnectionConfig":
        """
        Build a configuration from ``settings.LDAP_SERVERS[name]``.

        Args:
            name: the key in ``settings.LDAP_SERVERS``

        Raises:
            InvalidConfiguration: the setting is missing or malformed

        Returns:
            The new configuration.

        """
        return cls.from_map(get_server_settings(name))

    def ldap_options(self) -> list[tuple[int, Any]]:
        """
        Return the ``(option, value)`` pairs to set on a new session.

        Options derived from :py:attr:`extended` come first, followed by the
        options derived from our named fields, so that the named fields
        always win.

        Raises:
            InvalidConfiguration: an extended property has a bad value

        Returns:
            A list of ``(option, value)`` tuples for ``set_option``.

        """
        options: dict[int, Any] = {}
        options.update(self._extended_options())
        options[ldap.OPT_REFERRALS] = 1 if self.referral is Referral.FOLLOW else 0
        options[ldap.OPT_NETWORK_TIMEOUT] = float(self.network_timeout)
        return list(options.items())

    def _extended_options(self) -> dict[int, Any]:  # noqa: PLR0912
        options: dict[int, Any] = {}
        extended = self.extended
        for key, value in extended.items():
            if key.upper().startswith("OPT_"):
                option = getattr(ldap, key.upper(), None)
                if not isinstance(option, int):
                    msg = f'Unknown python-ldap option "{key}"'
                    raise InvalidConfiguration(msg)
                options[option] = value
        if extended.get("sizelimit"):
            options[ldap.OPT_SIZELIMIT] = int(extended["sizelimit"])
        tls_verify = extended.get("tls_verify")
        if tls_verify is not None:
            if tls_verify == "never":
                options[ldap.OPT_X_TLS_REQUIRE_CERT] = ldap.OPT_X_TLS_NEVER
            elif tls_verify == "always":
                options[ldap.OPT_X_TLS_REQUIRE_CERT] = ldap.OPT_X_TLS_DEMAND
            else:
                msg = f"Invalid tls_verify value: {tls_verify}"
                raise InvalidConfiguration(msg)
        tls_files = (
            ("tls_ca_certfile", ldap.OPT_X_TLS_CACERTFILE, "CA Certificate file"),
            ("tls_certfile", ldap.OPT_X_TLS_CERTFILE, "TLS Certificate file"),
            ("tls_keyfile", ldap.OPT_X_TLS_KEYFILE, "TLS Key file"),
        )
        tls_configured = tls_verify is not None
        for key, option, label in tls_files:
            filename = extended.get(key)
            if not filename:
                continue
            path = Path(filename)
            if not path.exists():
                msg = f"{label} does not exist: {filename}"
                raise InvalidConfiguration(msg)
            if not path.is_file():
                msg = f"{label} is not a file: {filename}"
                raise InvalidConfiguration(msg)
            options[option] = filename
            tls_configured = True
        if tls_configured:
            options[ldap.OPT_X_TLS_NEWCTX] = 0
        return options

    @property
    def use_starttls(self) -> bool:
        """Whether to negotiate StartTLS on plain ``ldap://`` connections."""
        return self.scheme == "ldap" and _as_bool(self.extended.get("use_starttls", False))


def get_server_settings(name: str = "default") -> ConfigMap:
    """
    Return ``settings.LDAP_SERVERS[name]``.

    Args:
        name: the key in ``settings.LDAP_SERVERS``

    Raises:
        InvalidConfiguration: ``LDAP_SERVERS`` or ``name`` is missing

    Returns:
        The raw configuration dictionary.

    """
    servers = getattr(settings, "LDAP_SERVERS", None)
    if not servers:
        msg = "settings.LDAP_SERVERS is not defined"
        raise InvalidConfiguration(msg)
    try:
        return cast("ConfigMap", servers[name])
    except KeyError as exc:
        msg = f'settings.LDAP_SERVERS has no server named "{name}"'
        raise InvalidConfiguration(msg, cause=exc) from exc
