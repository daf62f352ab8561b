"""
Session pooling.

When a :py:class:`~ldapconnector.config.ConnectionConfig` has an
``initial_pool_size`` greater than zero, connections borrow their bound
``python-ldap`` sessions from a :py:class:`SessionPool` instead of opening a
new one on every bind.

Pools are shared by every connection in the process that uses an
equivalent configuration.  Sessions are bound, so a pool is split into one
slot per bound identity: a session bound as one DN is never handed to a
caller binding as another.
"""

import hashlib
import logging
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, ClassVar

from ldapconnector import ldap

from .config import ConnectionConfig
from .exceptions import CommunicationFailure, LdapError

logger = logging.getLogger(__name__)

#: ``opener(dn, password)`` returns a new bound ``python-ldap`` session
SessionOpener = Callable[[str | None, str | None], Any]
Identity = tuple[str, str]


def identity_for(dn: str | None, password: str | None) -> Identity:
    """
    Return the pool slot key for a bound identity.

    The password is hashed so that it is not kept around as a dict key.
    """
    digest = hashlib.sha256((password or "").encode("utf-8")).hexdigest()
    return ((dn or "").lower(), digest)


@dataclass
class PooledSession:
    """An idle session waiting in a slot."""

    session: Any
    last_used: float = field(default_factory=time.monotonic)


class _Slot:
    """The sessions for one bound identity."""

    def __init__(self) -> None:
        self.idle: list[PooledSession] = []
        self.in_use: int = 0
        self.prefilled: bool = False
        self.condition = threading.Condition()

    @property
    def size(self) -> int:
        return self.in_use + len(self.idle)


class SessionPool:
    """
    A bounded, identity-scoped pool of bound sessions.

    Args:
        config: the configuration whose pool settings we honor
        opener: opens and binds a new session

    """

    #: Process wide registry of pools, keyed by :py:attr:`ConnectionConfig.pool_key`
    _pools: ClassVar[dict[str, "SessionPool"]] = {}
    #: Thread lock for registry access
    _lock = threading.Lock()

    def __init__(self, config: ConnectionConfig, opener: SessionOpener) -> None:
        self.config = config
        self.opener = opener
        self._slots: dict[Identity, _Slot] = {}
        self._slots_lock = threading.Lock()
        # id(session) -> identity, for the sessions we have handed out
        self._leases: dict[int, Identity] = {}

    @classmethod
    def for_config(cls, config: ConnectionConfig, opener: SessionOpener) -> "SessionPool":
        """
        Return the shared pool for ``config``, creating it if needed.

        Args:
            config: the connection configuration
            opener: used to open sessions if the pool is created by this call

        Returns:
            The shared pool.

        """
        with cls._lock:
            pool = cls._pools.get(config.pool_key)
            if pool is None:
                pool = cls(config, opener)
                cls._pools[config.pool_key] = pool
            return pool

    @classmethod
    def close_all_pools(cls) -> None:
        """Close and forget every shared pool."""
        with cls._lock:
            pools = list(cls._pools.values())
            cls._pools.clear()
        for pool in pools:
            pool.close()

    def _slot(self, identity: Identity) -> _Slot:
        with self._slots_lock:
            slot = self._slots.get(identity)
            if slot is None:
                slot = _Slot()
                self._slots[identity] = slot
            return slot

    def _expired(self, pooled: PooledSession, now: float) -> bool:
        timeout = self.config.pool_timeout
        return bool(timeout) and (now - pooled.last_used) > timeout

    def _evict_expired(self, slot: _Slot) -> list[PooledSession]:
        """
        Remove expired idle sessions from ``slot``, keeping at least
        ``initial_pool_size`` sessions.  Call with ``slot.condition`` held.
        """
        now = time.monotonic()
        evicted: list[PooledSession] = []
        for pooled in list(slot.idle):
            if slot.size <= self.config.initial_pool_size:
                break
            if self._expired(pooled, now):
                slot.idle.remove(pooled)
                evicted.append(pooled)
        return evicted

    def _unbind(self, session: Any) -> None:
        with suppress(ldap.LDAPError):
            session.unbind_s()

    def checkout(self, dn: str | None, password: str | None) -> Any:
        """
        Borrow a session bound as ``dn``.

        An idle session for this identity is reused if there is one.
        Otherwise a new session is opened, unless the slot is already at
        ``max_pool_size``, in which case we wait up to ``network_timeout``
        seconds for a session to be returned.

        Args:
            dn: the DN to bind as; ``None`` for anonymous
            password: the password for ``dn``

        Raises:
            CommunicationFailure: timed out waiting for a free session
            LdapError: opening a new session failed

        Returns:
            A bound ``python-ldap`` session.

        """
        identity = identity_for(dn, password)
        slot = self._slot(identity)
        deadline = time.monotonic() + self.config.network_timeout
        prefill = 0
        with slot.condition:
            evicted = self._evict_expired(slot)
            while True:
                if slot.idle:
                    pooled = slot.idle.pop()
                    slot.in_use += 1
                    self._leases[id(pooled.session)] = identity
                    session = pooled.session
                    break
                if not self.config.max_pool_size or slot.size < self.config.max_pool_size:
                    # Reserve our place so that we can open the session unlocked
                    slot.in_use += 1
                    session = None
                    if not slot.prefilled:
                        slot.prefilled = True
                        prefill = max(self.config.initial_pool_size - slot.size, 0)
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    msg = (
                        f"Timed out waiting for a pooled session to "
                        f"{self.config.server_uri} (max_pool_size="
                        f"{self.config.max_pool_size})"
                    )
                    raise CommunicationFailure(msg)
                slot.condition.wait(remaining)
        for pooled in evicted:
            logger.debug("ldapconnector.pool.evict uri=%s", self.config.server_uri)
            self._unbind(pooled.session)
        if session is not None:
            logger.debug("ldapconnector.pool.checkout.reuse uri=%s", self.config.server_uri)
            return session
        try:
            session = self.opener(dn, password)
        except BaseException:
            with slot.condition:
                slot.in_use -= 1
                slot.condition.notify()
            raise
        with slot.condition:
            self._leases[id(session)] = identity
        logger.debug("ldapconnector.pool.checkout.new uri=%s", self.config.server_uri)
        self._prefill(slot, dn, password, prefill)
        return session

    def _prefill(self, slot: _Slot, dn: str | None, password: str | None, count: int) -> None:
        for _ in range(count):
            with slot.condition:
                if self.config.max_pool_size and slot.size >= self.config.max_pool_size:
                    return
            try:
                session = self.opener(dn, password)
            except LdapError as exc:
                logger.warning(
                    "ldapconnector.pool.prefill.failed uri=%s error=%s",
                    self.config.server_uri,
                    exc,
                )
                return
            with slot.condition:
                slot.idle.append(PooledSession(session))
                slot.condition.notify()

    def checkin(self, session: Any) -> None:
        """
        Return a borrowed session to its slot.

        Sessions we did not hand out are simply unbound.
        """
        identity = self._leases.pop(id(session), None)
        if identity is None:
            self._unbind(session)
            return
        slot = self._slot(identity)
        with slot.condition:
            slot.in_use -= 1
            slot.idle.append(PooledSession(session))
            slot.condition.notify()
        logger.debug("ldapconnector.pool.checkin uri=%s", self.config.server_uri)

    def discard(self, session: Any) -> None:
        """
        Drop a borrowed session that should not be reused, and unbind it.
        """
        identity = self._leases.pop(id(session), None)
        if identity is not None:
            slot = self._slot(identity)
            with slot.condition:
                slot.in_use -= 1
                slot.condition.notify()
        logger.debug("ldapconnector.pool.discard uri=%s", self.config.server_uri)
        self._unbind(session)

    def evict_idle(self) -> int:
        """
        Unbind idle sessions older than ``pool_timeout``.

        Returns:
            The number of sessions evicted.

        """
        with self._slots_lock:
            slots = list(self._slots.values())
        evicted: list[PooledSession] = []
        for slot in slots:
            with slot.condition:
                evicted.extend(self._evict_expired(slot))
        for pooled in evicted:
            self._unbind(pooled.session)
        return len(evicted)

    def stats(self) -> dict[str, int]:
        """Return counts of idle and in use sessions across all slots."""
        with self._slots_lock:
            slots = list(self._slots.values())
        idle = in_use = 0
        for slot in slots:
            with slot.condition:
                idle += len(slot.idle)
                in_use += slot.in_use
        return {"idle": idle, "in_use": in_use, "identities": len(slots)}

    def close(self) -> None:
        """Unbind every idle session and forget all slots."""
        with self._slots_lock:
            slots = list(self._slots.values())
            self._slots.clear()
        for slot in slots:
            with slot.condition:
                idle = list(slot.idle)
                slot.idle.clear()
            for pooled in idle:
                self._unbind(pooled.session)
