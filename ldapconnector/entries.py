"""
Directory entry model.

An :py:class:`Entry` is a DN plus a collection of attributes.  Each
attribute is either a :py:class:`SingleValuedAttribute` or a
:py:class:`MultiValuedAttribute`; the :py:data:`Attribute` alias is the union
of the two.

Entries can be projected to and from plain dictionaries (the "entry map",
where the reserved key ``dn`` holds the DN), to and from the raw
``(dn, attrs)`` records ``python-ldap`` returns, and to LDIF.
"""

import re
from base64 import b64encode
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from ldapconnector import ldap

from .exceptions import InvalidEntry
from .typing import AddModlist, LDAPAttributes

#: The reserved key holding the DN in an entry map
MAP_DN_KEY = "dn"

#: Attributes whose values are never decoded as text.  Compared lowercased.
BINARY_ATTRIBUTES: frozenset[str] = frozenset(
    {
        "audio",
        "cacertificate",
        "certificaterevocationlist",
        "crosscertificatepair",
        "jpegphoto",
        "objectguid",
        "objectsid",
        "photo",
        "thumbnailphoto",
        "usercertificate",
        "userpkcs12",
        "usersmimecertificate",
    }
)

_LDIF_UNSAFE_RE = re.compile(r"(^[ :<])|[\r\n\x00]|[^\x00-\x7f]|( $)")

AttributeValue = str | bytes


def is_binary_attribute(name: str) -> bool:
    """
    Return ``True`` if values of attribute ``name`` should be kept as bytes.
    """
    lowered = name.lower()
    return lowered.endswith(";binary") or lowered in BINARY_ATTRIBUTES


def decode_value(name: str, value: bytes) -> AttributeValue:
    """
    Decode a raw attribute value from the server.

    Values are decoded as UTF-8 text unless the attribute is a known binary
    attribute or the bytes are not valid UTF-8, in which case the bytes are
    returned untouched.

    Args:
        name: the attribute name
        value: the raw value

    Returns:
        The decoded value.

    """
    if is_binary_attribute(name):
        return value
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value


def encode_value(value: Any) -> bytes:
    """
    Encode a single attribute value for ``python-ldap``.

    Args:
        value: the value to encode.  ``bytes`` pass through, booleans become
            ``TRUE``/``FALSE``, anything else is stringified and UTF-8 encoded.

    Returns:
        The encoded value.

    """
    if isinstance(value, bytes):
        return value
    if isinstance(value, bool):
        return b"TRUE" if value else b"FALSE"
    return str(value).encode("utf-8")


@dataclass
class SingleValuedAttribute:
    """An attribute holding at most one value."""

    name: str
    value: AttributeValue | None = None

    @property
    def values(self) -> list[AttributeValue]:
        if self.value is None:
            return []
        return [self.value]

    @property
    def is_multi_valued(self) -> bool:
        return False

    def encoded(self) -> list[bytes]:
        return [encode_value(v) for v in self.values]


@dataclass
class MultiValuedAttribute:
    """An attribute holding an ordered list of values."""

    name: str
    values: list[AttributeValue] = field(default_factory=list)

    @property
    def value(self) -> AttributeValue | None:
        """The first value, or ``None`` if there are no values."""
        if self.values:
            return self.values[0]
        return None

    @property
    def is_multi_valued(self) -> bool:
        return True

    def add_value(self, value: AttributeValue) -> None:
        self.values.append(value)

    def encoded(self) -> list[bytes]:
        return [encode_value(v) for v in self.values]


Attribute = SingleValuedAttribute | MultiValuedAttribute


def build_attribute(name: str, value: Any) -> Attribute:
    """
    Build an attribute from a Python value.

    Lists, tuples and sets become a :py:class:`MultiValuedAttribute`;
    anything else becomes a :py:class:`SingleValuedAttribute`.

    Args:
        name: the attribute name
        value: the value or values

    Returns:
        The new attribute.

    """
    if isinstance(value, (list, tuple, set, frozenset)):
        return MultiValuedAttribute(name, list(value))
    return SingleValuedAttribute(name, value)


def attribute_from_ldap(name: str, raw: list[bytes]) -> Attribute:
    """
    Build an attribute from raw server values.

    The attribute is multi-valued only if the server returned more than one
    value.

    Args:
        name: the attribute name
        raw: the raw values

    Returns:
        The new attribute.

    """
    values = [decode_value(name, v) for v in raw]
    if len(values) > 1:
        return MultiValuedAttribute(name, values)
    return SingleValuedAttribute(name, values[0] if values else None)


def _ldif_line(name: str, value: AttributeValue) -> str:
    if isinstance(value, bytes):
        return f"{name}:: {b64encode(value).decode('ascii')}"
    if _LDIF_UNSAFE_RE.search(value):
        return f"{name}:: {b64encode(value.encode('utf-8')).decode('ascii')}"
    return f"{name}: {value}"


class Entry:
    """
    A directory entry: a DN plus its attributes.

    Attribute lookup is case-insensitive, but each attribute keeps the name
    it was added with.  Two entries are equal when their DNs are equal.

    Args:
        dn: the distinguished name of the entry

    Keyword Args:
        attributes: initial attributes for the entry

    """

    def __init__(
        self, dn: str | None = None, attributes: Iterable[Attribute] | None = None
    ) -> None:
        self.dn = dn
        self._attributes: dict[str, Attribute] = {}
        for attribute in attributes or []:
            self.add_attribute(attribute)

    @classmethod
    def from_ldap(cls, dn: str, attrs: LDAPAttributes) -> "Entry":
        """
        Build an entry from a ``python-ldap`` search record.

        Args:
            dn: the DN of the record
            attrs: the raw attribute dictionary

        Returns:
            The new entry.

        """
        return cls(dn, [attribute_from_ldap(name, raw) for name, raw in attrs.items()])

    @classmethod
    def from_map(cls, data: dict[str, Any], dn: str | None = None) -> "Entry":
        """
        Build an entry from an entry map.

        Args:
            data: a dictionary with the DN under ``dn`` and one key per
                attribute.  List, tuple and set values become multi-valued
                attributes.

        Keyword Args:
            dn: if this is a non-blank string, use it as the DN instead of
                ``data["dn"]``

        Raises:
            InvalidEntry: no usable DN was found

        Returns:
            The new entry.

        """
        if not (isinstance(dn, str) and dn.strip()):
            dn = data.get(MAP_DN_KEY)
        if not isinstance(dn, str) or not dn.strip():
            msg = f'The entry map must contain a string value for the "{MAP_DN_KEY}" key'
            raise InvalidEntry(msg)
        entry = cls(dn)
        for name, value in data.items():
            if name == MAP_DN_KEY:
                continue
            entry.set_attribute(name, value)
        return entry

    def add_attribute(self, attribute: Attribute) -> None:
        """
        Add ``attribute``, replacing any attribute with the same name.
        """
        self._attributes[attribute.name.lower()] = attribute

    def set_attribute(self, name: str, value: Any) -> Attribute:
        """
        Build an attribute from ``value`` and add it.

        Returns:
            The attribute that was added.

        """
        attribute = build_attribute(name, value)
        self.add_attribute(attribute)
        return attribute

    def get_attribute(self, name: str) -> Attribute | None:
        return self._attributes.get(name.lower())

    def has_attribute(self, name: str) -> bool:
        return name.lower() in self._attributes

    def remove_attribute(self, name: str) -> Attribute | None:
        return self._attributes.pop(name.lower(), None)

    @property
    def attributes(self) -> list[Attribute]:
        return list(self._attributes.values())

    @property
    def attribute_names(self) -> list[str]:
        return [attribute.name for attribute in self._attributes.values()]

    @property
    def attribute_count(self) -> int:
        return len(self._attributes)

    def reset_attributes(self) -> None:
        """Remove all attributes, keeping the DN."""
        self._attributes.clear()

    def to_map(self) -> dict[str, Any]:
        """
        Project this entry to an entry map.

        Single-valued attributes map to their scalar value, multi-valued
        attributes map to a list.

        Returns:
            The entry map.

        """
        data: dict[str, Any] = {MAP_DN_KEY: self.dn}
        for attribute in self._attributes.values():
            if attribute.is_multi_valued:
                data[attribute.name] = list(attribute.values)
            else:
                data[attribute.name] = attribute.value
        return data

    def to_ldap(self) -> LDAPAttributes:
        """
        Return our attributes in ``python-ldap`` form, skipping empty ones.
        """
        return {
            attribute.name: attribute.encoded()
            for attribute in self._attributes.values()
            if attribute.values
        }

    def to_add_modlist(self) -> AddModlist:
        return ldap.modlist.addModlist(self.to_ldap())

    def to_ldif(self) -> str:
        """
        Render this entry as an LDIF record.

        Binary values, and text values that LDIF cannot carry verbatim, are
        base64 encoded.

        Returns:
            The LDIF record, terminated by a blank line.

        """
        lines = [_ldif_line(MAP_DN_KEY, self.dn or "")]
        for attribute in self._attributes.values():
            lines.extend(_ldif_line(attribute.name, value) for value in attribute.values)
        return "\n".join(lines) + "\n\n"

    def __iter__(self) -> Iterator[Attribute]:
        return iter(self._attributes.values())

    def __len__(self) -> int:
        return len(self._attributes)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has_attribute(name)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entry):
            return NotImplemented
        return self.dn == other.dn

    def __hash__(self) -> int:
        return hash(self.dn)

    def __repr__(self) -> str:
        return f"<Entry: {self.dn}>"

    def __str__(self) -> str:
        return self.to_ldif()


def map_to_entry(data: dict[str, Any], dn: str | None = None) -> Entry:
    """Shortcut for :py:meth:`Entry.from_map`."""
    return Entry.from_map(data, dn=dn)


def entry_to_map(entry: Entry) -> dict[str, Any]:
    """Shortcut for :py:meth:`Entry.to_map`."""
    return entry.to_map()


def entry_to_ldif(entry: Entry) -> str:
    """Shortcut for :py:meth:`Entry.to_ldif`."""
    return entry.to_ldif()
