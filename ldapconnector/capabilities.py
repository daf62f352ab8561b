"""
LDAP server capability detection and caching.

Before sending an optional request control (such as the server side sort
control) we check the Root DSE ``supportedControl`` attribute to see whether
the server understands it.  Results are cached per server for
``settings.LDAPCONNECTOR_CACHE_TTL`` seconds.
"""

import logging
import threading
import time
from typing import Any, ClassVar

from django.conf import settings

from ldapconnector import ldap

from .controls import SORTING_OID

logger = logging.getLogger(__name__)


class ServerCapabilities:
    """
    Detects and caches the controls an LDAP server supports.

    All methods are class methods; the cache is shared by every connection
    in the process.
    """

    #: server key -> {"flavor": ..., "controls": {oid, ...}, "cached_at": ...}
    _server_cache: ClassVar[dict[str, dict[str, Any]]] = {}
    _lock = threading.Lock()

    @classmethod
    def _get_cache_ttl(cls) -> int:
        """Seconds to trust a cached Root DSE; ``settings.LDAPCONNECTOR_CACHE_TTL``."""
        return getattr(settings, "LDAPCONNECTOR_CACHE_TTL", 3600)

    @classmethod
    def _is_cache_valid(cls, cached_info: dict[str, Any]) -> bool:
        if "cached_at" not in cached_info:
            return False
        return (time.time() - cached_info["cached_at"]) < cls._get_cache_ttl()

    @classmethod
    def _flavor_from_root_dse(cls, root_dse_attrs: dict[str, Any]) -> str:
        if "forestFunctionality" in root_dse_attrs:
            return "active_directory"
        vendor_names = root_dse_attrs.get("vendorName", [])
        if not vendor_names:
            return "unknown"
        vendor_name = vendor_names[0].decode("utf-8", errors="ignore")
        if any(
            name in vendor_name
            for name in ("Fedora Project", "Red Hat", "Oracle", "ForgeRock", "389")
        ):
            return "389"
        if "OpenLDAP Foundation" in vendor_name:
            return "openldap"
        return "unknown"

    @classmethod
    def _get_server_info(cls, session: Any, key: str) -> dict[str, Any]:
        """
        Get server information from the Root DSE, querying once per TTL.

        Args:
            session: a bound ``python-ldap`` session
            key: identifies the server in our cache

        Raises:
            ldap.SERVER_DOWN, ldap.CONNECT_ERROR: propagated up

        Returns:
            The cached server information.

        """
        with cls._lock:
            cached_info = cls._server_cache.get(key)
            if cached_info and cls._is_cache_valid(cached_info):
                return cached_info
            try:
                result = session.search_s(
                    "",
                    ldap.SCOPE_BASE,
                    "(objectClass=*)",
                    ["vendorName", "forestFunctionality", "supportedControl"],
                )
            except ldap.LDAPError as exc:
                if isinstance(exc, (ldap.SERVER_DOWN, ldap.CONNECT_ERROR)):
                    raise
                logger.warning(
                    "LDAP error while querying Root DSE for server '%s': %s", key, exc
                )
                return {"flavor": "unknown", "controls": set(), "cached_at": time.time()}
            root_dse_attrs = result[0][1] if result else {}
            server_info = {
                "flavor": cls._flavor_from_root_dse(root_dse_attrs),
                "controls": {
                    control.decode("utf-8")
                    for control in root_dse_attrs.get("supportedControl", [])
                },
                "cached_at": time.time(),
            }
            cls._server_cache[key] = server_info
            return server_info

    @classmethod
    def check_control_support(cls, session: Any, oid: str, key: str) -> bool:
        """
        Check whether the server supports the control ``oid``.

        Args:
            session: a bound ``python-ldap`` session
            oid: the control OID
            key: identifies the server in our cache

        Raises:
            ldap.SERVER_DOWN, ldap.CONNECT_ERROR: propagated up

        Returns:
            ``True`` if the control is supported.

        """
        return oid in cls._get_server_info(session, key)["controls"]

    @classmethod
    def check_server_sorting_support(cls, session: Any, key: str) -> bool:
        is_supported = cls.check_control_support(session, SORTING_OID, key)
        if not is_supported:
            if cls.detect_server_flavor(session, key) == "openldap":
                logger.warning(
                    "OpenLDAP server '%s' does not support server-side sorting. "
                    "Add 'overlay sssvlv' to your OpenLDAP configuration to enable it.",
                    key,
                )
        return is_supported

    @classmethod
    def detect_server_flavor(cls, session: Any, key: str) -> str:
        """
        Return the server implementation: ``"openldap"``,
        ``"active_directory"``, ``"389"`` or ``"unknown"``.
        """
        return cls._get_server_info(session, key)["flavor"]

    @classmethod
    def clear_cache(cls, key: str | None = None) -> None:
        """
        Forget what we know about the server ``key``, or about every server.

        Args:
            key: the server to forget; ``None`` forgets them all

        """
        with cls._lock:
            if key is None:
                cls._server_cache.clear()
            else:
                cls._server_cache.pop(key, None)
