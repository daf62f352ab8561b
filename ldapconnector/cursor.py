"""
Search result cursors.

A :py:class:`ResultCursor` lazily walks the entries of one search.  There
are two implementations:

* :py:class:`SimpleResultCursor` reads a single result stream on the
  connection's own session.
* :py:class:`PagedResultCursor` runs an RFC 2696 paged search on a session
  it owns, transparently requesting the next page whenever the current one
  is drained and the server handed back a non-empty cookie.

Cursors are Python iterators and context managers:

.. code-block:: python

    with connection.search(base_dn, "(objectClass=person)", controls) as cursor:
        for entry in cursor:
            print(entry.dn)
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from enum import Enum
from typing import Any

from ldapconnector import ldap

from .config import Referral
from .controls import (
    SearchControls,
    ServerSideSortControl,
    get_paged_cookie,
    paged_results_control,
)
from .entries import Entry
from .exceptions import CommunicationFailure, LdapError, translate_errors
from .typing import LDAPData

logger = logging.getLogger(__name__)


def absolute_dn(name: str, base_dn: str) -> str:
    """
    Return ``name`` as a DN under ``base_dn``.

    Servers normally report full DNs, but a name that is not already under
    ``base_dn`` is treated as relative to it.

    Args:
        name: the DN (or relative name) reported by the server
        base_dn: the search base

    Returns:
        The absolute DN.

    """
    if not base_dn:
        return name
    if not name:
        return base_dn
    try:
        name_parts = ldap.dn.explode_dn(name.lower())
        base_parts = ldap.dn.explode_dn(base_dn.lower())
    except ldap.DECODING_ERROR:
        if name.lower().endswith(base_dn.lower()):
            return name
        return f"{name},{base_dn}"
    if len(name_parts) >= len(base_parts) and name_parts[-len(base_parts):] == base_parts:
        return name
    return f"{name},{base_dn}"


class CursorState(Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"


class _ResultStream:
    """
    The responses to one ``search_ext`` request.

    The first response is read as soon as the stream is created, so that
    failures such as a missing base DN surface from the search call itself.

    Args:
        session: the ``python-ldap`` session the request was sent on
        msgid: the message id returned by ``search_ext``
        referral: how to treat search continuation references

    Keyword Args:
        timeout: seconds to wait for each response; ``None`` waits forever

    """

    def __init__(
        self,
        session: Any,
        msgid: int,
        referral: Referral,
        timeout: int | None = None,
    ) -> None:
        self.session = session
        self.msgid = msgid
        self.referral = referral
        self.timeout = timeout
        self.done = False
        #: The controls returned with the final search result
        self.controls: list[Any] = []
        self.size_limit_exceeded = False
        self._buffer: deque[LDAPData] = deque()
        self._fetch()

    def _fetch(self) -> None:
        try:
            with translate_errors("search.result"):
                try:
                    rtype, rdata, _, serverctrls = self.session.result3(
                        self.msgid, all=0, timeout=self.timeout
                    )
                except ldap.SIZELIMIT_EXCEEDED:
                    logger.warning(
                        "ldapconnector.search.sizelimit-exceeded msgid=%s", self.msgid
                    )
                    self.size_limit_exceeded = True
                    self.done = True
                    return
        except LdapError:
            self.done = True
            raise
        for dn, attrs in rdata or []:
            if isinstance(attrs, dict):
                self._buffer.append((dn, attrs))
            elif self.referral is Referral.THROW:
                self.close()
                msg = f"The search returned a continuation reference: {attrs}"
                raise LdapError(msg)
            else:
                logger.debug("ldapconnector.search.reference.skipped refs=%s", attrs)
        if rtype == ldap.RES_SEARCH_RESULT:
            self.done = True
            self.controls = list(serverctrls or [])

    def has_entry(self) -> bool:
        while not self._buffer and not self.done:
            self._fetch()
        return bool(self._buffer)

    def pop(self) -> LDAPData:
        return self._buffer.popleft()

    def close(self) -> None:
        """Abandon the request if the server has not finished answering it."""
        if not self.done:
            self.done = True
            with suppress(ldap.LDAPError, AttributeError):
                self.session.abandon(self.msgid)
        self._buffer.clear()


class ResultCursor(ABC):
    """
    Iterates over the entries returned by a search.

    Args:
        base_dn: the search base
        search_filter: the RFC 2254 filter
        controls: the search controls

    Keyword Args:
        referral: how to treat search continuation references
        sort_control: an optional server side sort control to send

    """

    def __init__(
        self,
        base_dn: str,
        search_filter: str,
        controls: SearchControls,
        referral: Referral = Referral.IGNORE,
        sort_control: ServerSideSortControl | None = None,
    ) -> None:
        self.base_dn = base_dn
        self.search_filter = search_filter
        self.controls = controls
        self.referral = referral
        self.sort_control = sort_control
        self.state = CursorState.ACTIVE
        self._returned = 0

    def _send(self, session: Any, serverctrls: list[Any]) -> _ResultStream:
        timeout = self.controls.time_limit or None
        with translate_errors("search", dn=self.base_dn):
            msgid = session.search_ext(
                self.base_dn,
                self.controls.scope.ldap_scope,
                self.search_filter,
                self.controls.attrlist,
                serverctrls=serverctrls or None,
                timeout=timeout or -1,
                sizelimit=self.controls.max_results,
            )
        return _ResultStream(session, msgid, self.referral, timeout=timeout)

    def _limit_reached(self) -> bool:
        return bool(self.controls.max_results) and self._returned >= self.controls.max_results

    @abstractmethod
    def has_next(self) -> bool:
        """
        Return ``True`` if another entry is available.

        Calling this repeatedly without calling :py:meth:`next` does not
        skip or consume anything.
        """

    @abstractmethod
    def _pop(self) -> LDAPData: ...

    @abstractmethod
    def close(self) -> None:
        """Release everything this cursor holds.  Safe to call twice."""

    def next(self) -> Entry:
        """
        Return the next entry.

        Raises:
            StopIteration: there are no more entries

        """
        if not self.has_next():
            raise StopIteration
        dn, attrs = self._pop()
        self._returned += 1
        return Entry.from_ldap(absolute_dn(dn, self.base_dn), attrs)

    def get_all_entries(self) -> list[Entry]:
        """Drain the cursor into a list."""
        return list(self)

    def __iter__(self) -> "ResultCursor":
        return self

    def __next__(self) -> Entry:
        return self.next()

    def __enter__(self) -> "ResultCursor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SimpleResultCursor(ResultCursor):
    """
    A cursor over a single, unpaged result stream.

    The stream lives on the session of the connection that ran the search,
    so the cursor stops working once that connection is closed or rebound.

    Args:
        session: the connection's ``python-ldap`` session
        is_valid: returns ``False`` once the connection's session is gone

    """

    def __init__(
        self,
        session: Any,
        base_dn: str,
        search_filter: str,
        controls: SearchControls,
        referral: Referral = Referral.IGNORE,
        sort_control: ServerSideSortControl | None = None,
        is_valid: Callable[[], bool] | None = None,
    ) -> None:
        super().__init__(base_dn, search_filter, controls, referral, sort_control)
        self._is_valid = is_valid
        self._stream = self._send(session, [sort_control] if sort_control else [])

    def _check_valid(self) -> None:
        if self._is_valid is not None and not self._is_valid():
            self.close()
            msg = "The connection this cursor was created on has been closed"
            raise CommunicationFailure(msg)

    def has_next(self) -> bool:
        if self.state is CursorState.EXHAUSTED:
            return False
        self._check_valid()
        if self._limit_reached() or not self._stream.has_entry():
            self.state = CursorState.EXHAUSTED
            return False
        return True

    def _pop(self) -> LDAPData:
        return self._stream.pop()

    def close(self) -> None:
        self.state = CursorState.EXHAUSTED
        self._stream.close()


class PagedResultCursor(ResultCursor):
    """
    A cursor over an RFC 2696 paged search.

    The cursor owns ``session``: it was opened for this search alone, and
    ``release`` is called with it exactly once when the cursor is closed.

    Args:
        session: a bound session dedicated to this search
        release: gives ``session`` back when we are done with it

    """

    def __init__(
        self,
        session: Any,
        base_dn: str,
        search_filter: str,
        controls: SearchControls,
        referral: Referral = Referral.IGNORE,
        sort_control: ServerSideSortControl | None = None,
        release: Callable[[Any], None] | None = None,
    ) -> None:
        super().__init__(base_dn, search_filter, controls, referral, sort_control)
        self.session = session
        self._release = release
        self._released = False
        #: The cookie from the most recently completed page
        self.cookie: bytes | None = None
        self.pages = 0
        self._stream = self._request_page(b"")

    def _request_page(self, cookie: bytes) -> _ResultStream:
        serverctrls: list[Any] = [paged_results_control(self.controls.page_size, cookie)]
        if self.sort_control:
            serverctrls.append(self.sort_control)
        self.pages += 1
        logger.debug(
            "ldapconnector.search.page base=%s page=%s size=%s",
            self.base_dn,
            self.pages,
            self.controls.page_size,
        )
        return self._send(self.session, serverctrls)

    def has_next(self) -> bool:
        if self.state is CursorState.EXHAUSTED:
            return False
        if self._limit_reached():
            self.state = CursorState.EXHAUSTED
            return False
        while not self._stream.has_entry():
            if self._stream.size_limit_exceeded:
                self.state = CursorState.EXHAUSTED
                return False
            self.cookie = get_paged_cookie(self._stream.controls)
            if not self.cookie:
                self.state = CursorState.EXHAUSTED
                return False
            self._stream.close()
            self._stream = self._request_page(self.cookie)
        return True

    def _pop(self) -> LDAPData:
        return self._stream.pop()

    def close(self) -> None:
        self.state = CursorState.EXHAUSTED
        try:
            self._stream.close()
        finally:
            if not self._released:
                self._released = True
                if self._release is not None:
                    self._release(self.session)
