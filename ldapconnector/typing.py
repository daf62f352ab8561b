"""
ldapconnector type definitions.

Type aliases for the raw payloads exchanged with ``python-ldap``, using
Python 3.10+ type hinting conventions.
"""

from typing import Any

#: Raw attribute dictionary as returned by ``python-ldap``
LDAPAttributes = dict[str, list[bytes]]
#: A single ``(dn, attrs)`` search record
LDAPData = tuple[str, LDAPAttributes]
AddModlist = list[tuple[str, list[bytes]]]
ModifyModlistEntry = tuple[int, str, list[bytes] | None]
ModifyModlist = list[ModifyModlistEntry]
#: Configuration mapping as found in ``settings.LDAP_SERVERS``
ConfigMap = dict[str, Any]
