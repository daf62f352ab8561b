from .client import LdapClient, atomic
from .config import Authentication, ConnectionConfig, Referral, get_server_settings
from .connection import ConnectionState, LdapConnection, PythonLdapConnection
from .controls import SearchControls, SearchScope
from .cursor import CursorState, PagedResultCursor, ResultCursor, SimpleResultCursor
from .entries import (
    Entry,
    MultiValuedAttribute,
    SingleValuedAttribute,
    entry_to_ldif,
    entry_to_map,
    map_to_entry,
)
from .exceptions import (
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
)
from .factory import ConnectionFactory, ConnectionRegistry, default_registry, get_connection

__version__ = "1.0.0"

__all__ = [
    "AuthenticationFailed",
    "Authentication",
    "CommunicationFailure",
    "ConnectionConfig",
    "ConnectionFactory",
    "ConnectionFailure",
    "ConnectionFailureReason",
    "ConnectionRegistry",
    "ConnectionState",
    "ContextNotEmpty",
    "CursorState",
    "Entry",
    "ErrorKind",
    "InvalidAttribute",
    "InvalidConfiguration",
    "InvalidEntry",
    "LdapClient",
    "LdapConnection",
    "LdapError",
    "MultiValuedAttribute",
    "NameAlreadyBound",
    "NameNotFound",
    "NoPermission",
    "PagedResultCursor",
    "PythonLdapConnection",
    "Referral",
    "ResultCursor",
    "SearchControls",
    "SearchScope",
    "SimpleResultCursor",
    "SingleValuedAttribute",
    "atomic",
    "default_registry",
    "get_connection",
    "get_server_settings",
    "entry_to_ldif",
    "entry_to_map",
    "map_to_entry",
]
