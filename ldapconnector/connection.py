"""
LDAP connections.

:py:class:`LdapConnection` is the interface every connection type
implements; :py:class:`PythonLdapConnection` implements it on top of
``python-ldap`` and is registered as the ``python-ldap`` connection type.

A connection holds at most one bound session.  It starts out unbound,
becomes bound on :py:meth:`LdapConnection.bind` and closed on
:py:meth:`LdapConnection.close`; binding again while bound closes the old
session first.  Every failure coming out of ``python-ldap`` is translated
into an :py:class:`~ldapconnector.exceptions.LdapError`.
"""

import logging
import socket
import warnings
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from enum import Enum
from functools import partial
from typing import Any

from ldap_filter import Filter

from ldapconnector import ldap

from .capabilities import ServerCapabilities
from .config import ConnectionConfig
from .controls import SearchControls, SearchScope, ServerSideSortControl
from .cursor import PagedResultCursor, ResultCursor, SimpleResultCursor
from .entries import Attribute, Entry, build_attribute
from .exceptions import (
    CommunicationFailure,
    InvalidAttribute,
    InvalidEntry,
    LdapError,
    NameNotFound,
    translate,
    translate_errors,
)
from .pool import SessionPool
from .typing import ConfigMap, ModifyModlist

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    CLOSED = "closed"


def split_dn(dn: str) -> tuple[str, str]:
    """
    Split ``dn`` into its first RDN and its parent DN.

    Args:
        dn: the DN to split

    Raises:
        InvalidAttribute: ``dn`` is not a valid DN

    Returns:
        A ``(rdn, parent_dn)`` tuple.  The parent is empty for a single RDN.

    """
    try:
        parts = ldap.dn.str2dn(dn)
    except ldap.DECODING_ERROR as exc:
        msg = f'Invalid DN "{dn}"'
        raise InvalidAttribute(msg, cause=exc) from exc
    if not parts:
        msg = "The DN must not be empty"
        raise InvalidAttribute(msg)
    return ldap.dn.dn2str(parts[:1]), ldap.dn.dn2str(parts[1:])


def _host_resolves(host: str, port: int) -> bool:
    try:
        socket.getaddrinfo(host, port)
    except socket.gaierror:
        return False
    return True


def open_session(config: ConnectionConfig, dn: str | None, password: str | None) -> Any:
    """
    Open a ``python-ldap`` session for ``config`` and bind it.

    The bind is anonymous when ``config`` says so or when ``dn`` is empty.

    Args:
        config: the connection configuration
        dn: the DN to bind as
        password: the password for ``dn``

    Raises:
        InvalidConfiguration: an extended option is malformed
        CommunicationFailure: the server could not be reached;
            ``unknown_host`` is set if its hostname does not resolve
        LdapError: any other translated bind failure

    Returns:
        The bound session.

    """
    options = config.ldap_options()
    session = None
    try:
        session = ldap.initialize(config.server_uri)
        for option, value in options:
            session.set_option(option, value)
        if config.use_starttls:
            session.start_tls_s()
        if config.anonymous or not dn:
            session.simple_bind_s()
        else:
            session.simple_bind_s(dn, password or "")
    except ldap.LDAPError as exc:
        error = translate(exc)
        if isinstance(error, CommunicationFailure) and not _host_resolves(
            config.host, config.port
        ):
            error.unknown_host = True
        if session is not None:
            with suppress(ldap.LDAPError):
                session.unbind_s()
        logger.debug(
            "ldapconnector.bind.failed uri=%s dn=%s kind=%s",
            config.server_uri,
            dn,
            error.kind.value,
        )
        raise error from exc
    return session


class LdapConnection(ABC):
    """
    A connection to one LDAP server.

    Connections are not thread safe; use one per thread.

    Args:
        config: the configuration for the server
    """

    def __init__(self, config: ConnectionConfig | ConfigMap) -> None:
        if not isinstance(config, ConnectionConfig):
            config = ConnectionConfig.from_map(config)
        self.config = config

    @abstractmethod
    def bind(self, dn: str | None, password: str | None) -> None:
        """Authenticate as ``dn``; anonymously if ``dn`` is empty."""

    @abstractmethod
    def is_closed(self) -> bool: ...

    @abstractmethod
    def get_bound_user_dn(self) -> str | None:
        """The DN we are bound as, or ``None`` if anonymous or unbound."""

    @abstractmethod
    def close(self) -> None:
        """Release the session.  Safe to call more than once."""

    def invalidate(self) -> None:
        """
        Close the connection after a communication failure.

        Connection types that reuse sessions must not reuse this one.
        """
        self.close()

    @abstractmethod
    def search(
        self,
        base_dn: str,
        search_filter: str,
        controls: SearchControls | None = None,
    ) -> ResultCursor: ...

    @abstractmethod
    def lookup(self, dn: str, attributes: list[str] | None = None) -> Entry: ...

    @abstractmethod
    def add_entry(self, entry: Entry) -> None: ...

    @abstractmethod
    def update_entry(self, entry: Entry) -> None: ...

    @abstractmethod
    def delete_entry(self, target: str | Entry) -> None: ...

    @abstractmethod
    def rename_entry(self, old_dn: str, new_dn: str) -> None: ...

    @abstractmethod
    def add_attribute(self, dn: str, attribute: Attribute) -> None: ...

    @abstractmethod
    def update_attribute(self, dn: str, attribute: Attribute) -> None: ...

    @abstractmethod
    def delete_attribute(self, dn: str, attribute: Attribute) -> None: ...

    def search_by_attributes(
        self,
        base_dn: str,
        matching_attributes: list[Attribute] | dict[str, Any],
    ) -> ResultCursor:
        """
        Find the entries directly under ``base_dn`` that have every value
        of every attribute in ``matching_attributes``.

        Args:
            base_dn: the search base
            matching_attributes: the attributes that must match, either as
                attributes or as a ``{name: value(s)}`` dictionary

        Returns:
            A cursor over the matching entries.

        """
        if isinstance(matching_attributes, dict):
            matching_attributes = [
                build_attribute(name, value)
                for name, value in matching_attributes.items()
            ]
        clauses = [
            Filter.attribute(attribute.name).equal_to(
                value.decode("utf-8", errors="replace")
                if isinstance(value, bytes)
                else str(value)
            )
            for attribute in matching_attributes
            for value in attribute.values
        ]
        if clauses:
            search_filter = Filter.AND(clauses).simplify().to_string()
        else:
            search_filter = Filter.attribute("objectClass").present().to_string()
        return self.search(
            base_dn, search_filter, SearchControls(scope=SearchScope.ONE_LEVEL)
        )


class PythonLdapConnection(LdapConnection):
    """
    :py:class:`LdapConnection` backed by ``python-ldap``.

    When the configuration enables pooling, bound sessions are borrowed from
    the shared :py:class:`~ldapconnector.pool.SessionPool` and returned to
    it on close.
    """

    def __init__(self, config: ConnectionConfig | ConfigMap) -> None:
        super().__init__(config)
        self.state = ConnectionState.UNBOUND
        self._session: Any = None
        self._bound_dn: str | None = None
        self._password: str | None = None
        # Bumped on every bind and close so that cursors can tell their
        # session has gone away
        self._generation = 0
        # Set once a communication failure shows the session is unusable
        self._broken = False
        self.pool: SessionPool | None = None
        if self.config.pooling_enabled:
            self.pool = SessionPool.for_config(
                self.config, partial(open_session, self.config)
            )

    @property
    def session(self) -> Any:
        """
        The bound ``python-ldap`` session.

        Raises:
            CommunicationFailure: the connection is not bound

        """
        if self._session is None:
            msg = f"The connection to {self.config.server_uri} is not bound"
            raise CommunicationFailure(msg)
        return self._session

    def _open(self, dn: str | None, password: str | None) -> Any:
        if self.pool is not None:
            return self.pool.checkout(dn, password)
        return open_session(self.config, dn, password)

    def _release(self, session: Any, broken: bool = False) -> None:
        if broken:
            self._discard(session)
            return
        if self.pool is not None:
            self.pool.checkin(session)
            return
        with translate_errors("unbind"):
            session.unbind_s()

    def bind(self, dn: str | None, password: str | None) -> None:
        if self._session is not None:
            logger.info(
                "ldapconnector.bind.rebind uri=%s old_dn=%s new_dn=%s",
                self.config.server_uri,
                self._bound_dn,
                dn,
            )
            try:
                self.close()
            except LdapError as exc:
                logger.warning("ldapconnector.bind.close-failed error=%s", exc)
        anonymous = self.config.anonymous or not dn
        if anonymous:
            dn = password = None
        self._session = self._open(dn, password)
        self._broken = False
        self._bound_dn = dn
        self._password = password
        self._generation += 1
        self.state = ConnectionState.BOUND
        logger.debug(
            "ldapconnector.bind.success uri=%s dn=%s", self.config.server_uri, dn
        )

    def is_closed(self) -> bool:
        return self._session is None

    def get_bound_user_dn(self) -> str | None:
        return self._bound_dn

    def close(self) -> None:
        if self._session is None:
            return
        session = self._session
        self._session = None
        broken = self._broken
        self._broken = False
        self._bound_dn = None
        self._password = None
        self._generation += 1
        self.state = ConnectionState.CLOSED
        logger.debug(
            "ldapconnector.close uri=%s broken=%s", self.config.server_uri, broken
        )
        self._release(session, broken=broken)

    def invalidate(self) -> None:
        self._broken = True
        self.close()

    @contextmanager
    def _errors(self, operation: str, dn: str | None = None) -> Iterator[None]:
        """Translate failures, remembering when the session has gone bad."""
        try:
            with translate_errors(operation, dn=dn):
                yield
        except CommunicationFailure:
            self._broken = True
            raise

    def _sort_control(self, controls: SearchControls) -> ServerSideSortControl | None:
        if not controls.order_by:
            return None
        with self._errors("capabilities"):
            supported = ServerCapabilities.check_server_sorting_support(
                self.session, self.config.server_uri
            )
        if not supported:
            logger.warning(
                "ldapconnector.search.sort-unsupported uri=%s order_by=%s",
                self.config.server_uri,
                ",".join(controls.order_by),
            )
            warnings.warn(
                "LDAP server does not support server-side sorting; "
                "results will be returned unsorted.",
                stacklevel=3,
            )
            return None
        return ServerSideSortControl(controls.sort_keys)

    def search(
        self,
        base_dn: str,
        search_filter: str,
        controls: SearchControls | dict[str, Any] | None = None,
    ) -> ResultCursor:
        """
        Search below ``base_dn``.

        With a positive ``page_size`` the search runs as an RFC 2696 paged
        search on a newly opened session dedicated to the returned cursor,
        which unbinds it on close.  Otherwise the search runs on our own
        session.

        Args:
            base_dn: the search base
            search_filter: an RFC 2254 filter, sent as is

        Keyword Args:
            controls: the search controls; defaults to a one level search
                returning all attributes

        Raises:
            CommunicationFailure: the connection is not bound
            LdapError: the server rejected the search

        Returns:
            A cursor over the results.  Close it when done.

        """
        if not isinstance(controls, SearchControls):
            controls = SearchControls.from_map(controls)
        session = self.session
        sort_control = self._sort_control(controls)
        logger.debug(
            "ldapconnector.search base=%s filter=%s scope=%s page_size=%s",
            base_dn,
            search_filter,
            controls.scope.value,
            controls.page_size,
        )
        if not controls.paging_enabled:
            generation = self._generation
            with self._errors("search", dn=base_dn):
                return SimpleResultCursor(
                    session,
                    base_dn,
                    search_filter,
                    controls,
                    referral=self.config.referral,
                    sort_control=sort_control,
                    is_valid=lambda: self._generation == generation,
                )
        # Opened outside the pool, which may allow no session beyond our own
        paging_session = open_session(self.config, self._bound_dn, self._password)
        try:
            return PagedResultCursor(
                paging_session,
                base_dn,
                search_filter,
                controls,
                referral=self.config.referral,
                sort_control=sort_control,
                release=self._release_paging_session,
            )
        except BaseException:
            with suppress(ldap.LDAPError):
                paging_session.unbind_s()
            raise

    def _release_paging_session(self, session: Any) -> None:
        with translate_errors("unbind"):
            session.unbind_s()

    def _discard(self, session: Any) -> None:
        if self.pool is not None:
            self.pool.discard(session)
            return
        with suppress(ldap.LDAPError):
            session.unbind_s()

    def lookup(self, dn: str, attributes: list[str] | None = None) -> Entry:
        """
        Read the entry at ``dn``.

        Raises:
            NameNotFound: there is no entry at ``dn``

        """
        with self._errors("lookup", dn=dn):
            data = self.session.search_s(
                dn, ldap.SCOPE_BASE, "(objectClass=*)", attributes
            )
        records = [(rdn, attrs) for rdn, attrs in data if isinstance(attrs, dict)]
        if not records:
            msg = f"No entry found at {dn}"
            raise NameNotFound(msg)
        return Entry.from_ldap(records[0][0] or dn, records[0][1])

    def _exists(self, dn: str) -> bool:
        try:
            with self._errors("exists", dn=dn):
                self.session.search_s(dn, ldap.SCOPE_BASE, "(objectClass=*)", ["objectClass"])
        except NameNotFound:
            return False
        return True

    def add_entry(self, entry: Entry) -> None:
        if not entry.dn:
            msg = "Cannot add an entry without a DN"
            raise InvalidEntry(msg)
        with self._errors("add", dn=entry.dn):
            self.session.add_s(entry.dn, entry.to_add_modlist())

    def update_entry(self, entry: Entry) -> None:
        """
        Replace the values of every attribute present on ``entry``.

        Attributes the entry does not carry are left untouched on the server.
        """
        if not entry.dn:
            msg = "Cannot update an entry without a DN"
            raise InvalidEntry(msg)
        _modlist: ModifyModlist = [
            (ldap.MOD_REPLACE, attribute.name, attribute.encoded())
            for attribute in entry.attributes
        ]
        if not _modlist:
            logger.debug("ldapconnector.update.no-changes dn=%s", entry.dn)
            return
        with self._errors("update", dn=entry.dn):
            self.session.modify_s(entry.dn, _modlist)

    def delete_entry(self, target: str | Entry) -> None:
        """
        Delete the entry at ``target``.

        Deleting an entry that is already gone succeeds as long as its
        parent exists.

        Args:
            target: a DN, or an :py:class:`~ldapconnector.entries.Entry`

        Raises:
            NameNotFound: the parent of ``target`` does not exist
            ContextNotEmpty: ``target`` has children

        """
        dn = target.dn if isinstance(target, Entry) else target
        if not dn:
            msg = "Cannot delete an entry without a DN"
            raise InvalidEntry(msg)
        try:
            with self._errors("delete", dn=dn):
                self.session.delete_s(dn)
        except NameNotFound:
            _, parent = split_dn(dn)
            if parent and not self._exists(parent):
                raise
            logger.debug("ldapconnector.delete.already-absent dn=%s", dn)

    def rename_entry(self, old_dn: str, new_dn: str) -> None:
        newrdn, new_parent = split_dn(new_dn)
        _, old_parent = split_dn(old_dn)
        newsuperior = None
        if new_parent.lower() != old_parent.lower():
            newsuperior = new_parent
        with self._errors("rename", dn=old_dn):
            self.session.rename_s(old_dn, newrdn, newsuperior)

    def _modify_attribute(self, operation: str, op: int, dn: str, values: Any, name: str) -> None:
        with self._errors(operation, dn=dn):
            self.session.modify_s(dn, [(op, name, values)])

    def add_attribute(self, dn: str, attribute: Attribute) -> None:
        self._modify_attribute(
            "add_attribute", ldap.MOD_ADD, dn, attribute.encoded(), attribute.name
        )

    def update_attribute(self, dn: str, attribute: Attribute) -> None:
        self._modify_attribute(
            "update_attribute", ldap.MOD_REPLACE, dn, attribute.encoded(), attribute.name
        )

    def delete_attribute(self, dn: str, attribute: Attribute) -> None:
        """
        Remove values from an attribute.

        If ``attribute`` has no values the whole attribute is removed,
        otherwise only the given values are.
        """
        self._modify_attribute(
            "delete_attribute",
            ldap.MOD_DELETE,
            dn,
            attribute.encoded() or None,
            attribute.name,
        )

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}: {self.config.server_uri} "
            f"state={self.state.value} dn={self._bound_dn}>"
        )
