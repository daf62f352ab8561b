"""
A high level, thread aware client.

:py:class:`LdapClient` keeps one bound
:py:class:`~ldapconnector.connection.LdapConnection` per thread and offers
the everyday directory operations on top of it.  Methods decorated with
:py:func:`atomic` open a connection with the client's default credentials
when the calling thread has none, and close it again when they return:

.. code-block:: python

    client = LdapClient.from_settings("default")

    # One connection per call
    entry = client.lookup("uid=user1,ou=users,dc=example,dc=com")

    # One connection for several calls
    client.connect()
    try:
        client.modify_single_value_attribute(dn, "mail", "user1@example.com")
        client.delete_multi_value_attribute(dn, "memberUid", ["user2"])
    finally:
        client.disconnect()
"""

import logging
import threading
from collections.abc import Callable, Iterator
from functools import wraps
from itertools import islice
from typing import Any

from .config import ConnectionConfig, get_server_settings
from .connection import LdapConnection
from .controls import SearchControls, SearchScope
from .entries import Entry, MultiValuedAttribute, SingleValuedAttribute
from .exceptions import (
    CommunicationFailure,
    ConnectionFailure,
    InvalidConfiguration,
    LdapError,
    NameNotFound,
)
from .factory import ConnectionFactory
from .typing import ConfigMap

logger = logging.getLogger(__name__)


def atomic(func: Callable) -> Callable:
    """
    Decorator for :py:class:`LdapClient` methods that need a connection.

    If the current thread already has a connection, use it; a
    :py:class:`~ldapconnector.exceptions.CommunicationFailure` drops that
    connection so that the next call starts afresh.  Otherwise connect with
    the client's default credentials, call the method, and disconnect.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs) -> Any:
        if self.has_connection():
            try:
                return func(self, *args, **kwargs)
            except CommunicationFailure:
                logger.warning(
                    "ldapconnector.client.invalidate uri=%s", self.config.server_uri
                )
                self.disconnect(invalidate=True)
                raise
        self.connect()
        try:
            retval = func(self, *args, **kwargs)
        finally:
            self.disconnect()
        return retval

    return wrapper


class LdapClient:
    """
    Directory operations against one LDAP server.

    Args:
        config: the server configuration, or a dictionary to build one from

    Keyword Args:
        user: the DN to bind as when no other is given; ``None`` binds
            anonymously
        password: the password for ``user``
        factory: builds our connections

    """

    def __init__(
        self,
        config: ConnectionConfig | ConfigMap,
        user: str | None = None,
        password: str | None = None,
        factory: ConnectionFactory | None = None,
    ) -> None:
        if isinstance(config, dict):
            user = user if user is not None else config.get("user")
            password = password if password is not None else config.get("password")
            config = ConnectionConfig.from_map(config)
        self.config: ConnectionConfig = config
        self.user = user
        self.password = password
        self.factory = factory if factory is not None else ConnectionFactory()
        self._connections: dict[threading.Thread, LdapConnection] = {}

    @classmethod
    def from_settings(cls, name: str = "default", **kwargs) -> "LdapClient":
        """
        Build a client from ``settings.LDAP_SERVERS[name]``.

        The ``user`` and ``password`` keys of that setting become the
        client's default credentials.
        """
        return cls(dict(get_server_settings(name)), **kwargs)

    # Connection management

    def has_connection(self) -> bool:
        return threading.current_thread() in self._connections

    @property
    def connection(self) -> LdapConnection:
        """
        The current thread's connection.

        Raises:
            CommunicationFailure: this thread is not connected

        """
        try:
            return self._connections[threading.current_thread()]
        except KeyError as exc:
            msg = f"Not connected to {self.config.server_uri}"
            raise CommunicationFailure(msg) from exc

    def set_connection(self, connection: LdapConnection) -> None:
        self._connections[threading.current_thread()] = connection

    def remove_connection(self) -> None:
        self._connections.pop(threading.current_thread(), None)

    def new_connection(
        self, dn: str | None = None, password: str | None = None
    ) -> LdapConnection:
        """
        Open and return a new bound connection without making it the
        thread's connection.

        Keyword Args:
            dn: the DN to bind as; defaults to :py:attr:`user`
            password: the password for ``dn``

        Raises:
            InvalidConfiguration: our configuration is unusable
            ConnectionFailure: the bind failed

        Returns:
            A bound connection.  Close it when done.

        """
        if dn is None:
            dn, password = self.user, self.password
        connection = self.factory.create(self.config)
        try:
            connection.bind(dn, password)
        except InvalidConfiguration:
            raise
        except LdapError as exc:
            error = ConnectionFailure.from_error(exc)
            logger.warning(
                "ldapconnector.client.connect.failed uri=%s dn=%s reason=%s",
                self.config.server_uri,
                dn,
                error.reason.value,
            )
            raise error from exc
        return connection

    def connect(self, dn: str | None = None, password: str | None = None) -> None:
        """
        Bind a connection for the current thread, replacing any existing one.

        Keyword Args:
            dn: the DN to bind as; defaults to :py:attr:`user`
            password: the password for ``dn``

        Raises:
            ConnectionFailure: the bind failed

        """
        if self.has_connection():
            self.disconnect()
        self.set_connection(self.new_connection(dn, password))

    def disconnect(self, invalidate: bool = False) -> None:
        """
        Close and forget the current thread's connection, if any.

        Keyword Args:
            invalidate: the connection failed; do not let its session be reused
        """
        connection = self._connections.pop(threading.current_thread(), None)
        if connection is None:
            return
        try:
            if invalidate:
                connection.invalidate()
            else:
                connection.close()
        except LdapError as exc:
            logger.warning(
                "ldapconnector.client.disconnect.failed uri=%s error=%s",
                self.config.server_uri,
                exc,
            )

    def is_connected(self) -> bool:
        return self.has_connection() and not self.connection.is_closed()

    def bind(self, dn: str | None = None, password: str | None = None) -> Entry | None:
        """
        Connect as ``dn`` and return the entry we are now bound as.

        The connection stays open for the current thread; call
        :py:meth:`disconnect` when done.

        Returns:
            The bound user's entry, or ``None`` for an anonymous bind.

        """
        self.connect(dn, password)
        bound_dn = self.connection.get_bound_user_dn()
        if not bound_dn:
            return None
        return self.lookup(bound_dn)

    # Reads

    @atomic
    def lookup(self, dn: str, attributes: list[str] | None = None) -> Entry:
        return self.connection.lookup(dn, attributes)

    @atomic
    def exists(self, dn: str) -> bool:
        try:
            self.connection.lookup(dn, ["objectClass"])
        except NameNotFound:
            return False
        return True

    @atomic
    def search(
        self,
        base_dn: str,
        search_filter: str,
        controls: SearchControls | None = None,
        **kwargs,
    ) -> list[Entry]:
        """
        Search below ``base_dn`` and return every matching entry.

        Args:
            base_dn: the search base
            search_filter: an RFC 2254 filter

        Keyword Args:
            controls: the search controls
            **kwargs: overrides for individual :py:class:`SearchControls`
                fields, e.g. ``scope="SUB_TREE"``

        Returns:
            The matching entries.

        """
        controls = controls if controls is not None else SearchControls()
        if kwargs:
            controls = controls.copy(**kwargs)
        with self.connection.search(base_dn, search_filter, controls) as cursor:
            return cursor.get_all_entries()

    def search_one(
        self,
        base_dn: str,
        search_filter: str,
        controls: SearchControls | None = None,
        **kwargs,
    ) -> Entry | None:
        """
        Return the first entry matching ``search_filter``, or ``None``.

        A warning is logged when more than one entry matches.
        """
        entries = self.search(base_dn, search_filter, controls, **kwargs)
        if len(entries) > 1:
            logger.warning(
                "ldapconnector.client.search-one.multiple base=%s filter=%s count=%s",
                base_dn,
                search_filter,
                len(entries),
            )
        return entries[0] if entries else None

    def paged_result_search(  # noqa: PLR0913
        self,
        base_dn: str,
        search_filter: str,
        scope: SearchScope | str = SearchScope.ONE_LEVEL,
        attributes: list[str] | None = None,
        time_limit: int = 0,
        return_object: bool = False,
        max_results: int = 0,
        page_size: int = 0,
        order_by: list[str] | tuple[str, ...] = (),
        result_page_size: int = 1,
        result_offset: int = 0,
        result_page_count: int = 0,
    ) -> Iterator[Entry | list[Entry]]:
        """
        Run a paged search and yield its results lazily.

        ``page_size`` is the RFC 2696 page size sent to the server; ``0``
        runs an ordinary search.  ``result_page_size`` is independent of it
        and only decides how results are handed back.

        With a ``result_page_size`` of 1 single entries are yielded, and
        ``result_offset`` and ``result_page_count`` count entries.  Otherwise
        lists of up to ``result_page_size`` entries are yielded, and the
        other two count pages.

        The thread's connection is used if there is one, otherwise a private
        connection is opened for the lifetime of the generator.

        Args:
            base_dn: the search base
            search_filter: an RFC 2254 filter

        Keyword Args:
            scope: the search scope
            attributes: the attributes to return; ``None`` returns all
            time_limit: server time limit in seconds; ``0`` for none
            return_object: passed through to the search controls
            max_results: stop after this many entries; ``0`` for no limit
            page_size: entries per server page; ``0`` disables paging
            order_by: server side sort keys
            result_page_size: entries per yielded list; values below 1 mean 1
            result_offset: pages (or entries) to skip
            result_page_count: pages (or entries) to return; ``0`` or less
                returns everything

        Yields:
            An :py:class:`~ldapconnector.entries.Entry` per result, or lists
            of entries.

        """
        group_size = max(result_page_size, 1)
        offset = max(result_offset, 0)
        page_count = max(result_page_count, 0)
        controls = SearchControls(
            scope=scope,
            attributes=attributes,
            time_limit=time_limit,
            return_object=return_object,
            max_results=max_results,
            page_size=page_size,
            order_by=order_by,
        )
        private = not self.has_connection()
        connection = self.new_connection() if private else self.connection
        try:
            with connection.search(base_dn, search_filter, controls) as cursor:
                if group_size == 1:
                    stop = offset + page_count if page_count else None
                    yield from islice(cursor, offset, stop)
                    return
                entries = islice(cursor, group_size * offset, None)
                emitted = 0
                while not page_count or emitted < page_count:
                    page = list(islice(entries, group_size))
                    if not page:
                        break
                    emitted += 1
                    yield page
        finally:
            if private:
                try:
                    connection.close()
                except LdapError as exc:
                    logger.warning("ldapconnector.client.paged.close-failed error=%s", exc)

    # Writes

    @atomic
    def add(self, entry: Entry) -> None:
        self.connection.add_entry(entry)

    def add_from_map(self, entry_map: dict[str, Any], dn: str | None = None) -> Entry:
        """
        Add the entry described by ``entry_map``.

        Args:
            entry_map: ``{"dn": ..., attribute: value(s), ...}``

        Keyword Args:
            dn: if given, overrides ``entry_map["dn"]``

        Raises:
            InvalidEntry: there is no DN

        Returns:
            The entry that was added.

        """
        entry = Entry.from_map(entry_map, dn=dn)
        self.add(entry)
        return entry

    @atomic
    def modify(self, entry: Entry) -> None:
        """Replace the attributes present on ``entry``, leaving the rest alone."""
        self.connection.update_entry(entry)

    def modify_from_map(self, entry_map: dict[str, Any], dn: str | None = None) -> Entry:
        entry = Entry.from_map(entry_map, dn=dn)
        self.modify(entry)
        return entry

    @atomic
    def delete(self, dn: str) -> None:
        self.connection.delete_entry(dn)

    @atomic
    def rename(self, old_dn: str, new_dn: str) -> None:
        self.connection.rename_entry(old_dn, new_dn)

    @atomic
    def add_single_value_attribute(self, dn: str, name: str, value: Any) -> None:
        self.connection.add_attribute(dn, SingleValuedAttribute(name, value))

    @atomic
    def modify_single_value_attribute(self, dn: str, name: str, value: Any) -> None:
        self.connection.update_attribute(dn, SingleValuedAttribute(name, value))

    @atomic
    def delete_single_value_attribute(
        self, dn: str, name: str, value: Any = None
    ) -> None:
        """
        Remove ``value`` from attribute ``name``, or the whole attribute if
        ``value`` is ``None``.
        """
        self.connection.delete_attribute(dn, SingleValuedAttribute(name, value))

    @atomic
    def add_multi_value_attribute(self, dn: str, name: str, values: list[Any]) -> None:
        self.connection.add_attribute(dn, MultiValuedAttribute(name, list(values)))

    @atomic
    def modify_multi_value_attribute(
        self, dn: str, name: str, values: list[Any]
    ) -> None:
        self.connection.update_attribute(dn, MultiValuedAttribute(name, list(values)))

    @atomic
    def delete_multi_value_attribute(
        self, dn: str, name: str, values: list[Any] | None = None
    ) -> None:
        """
        Remove ``values`` from attribute ``name``, or the whole attribute if
        ``values`` is empty.
        """
        self.connection.delete_attribute(
            dn, MultiValuedAttribute(name, list(values or []))
        )
