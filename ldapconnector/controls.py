"""
Search controls.

This module holds :py:class:`SearchControls`, the immutable description of
how a search should run, plus the LDAP protocol controls we send along with
searches: the RFC 2696 paged results control and the RFC 2891 server side
sort control.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar

from ldap.controls import LDAPControl, SimplePagedResultsControl
from pyasn1.codec.ber import encoder  # type: ignore[import]
from pyasn1.type import namedtype, tag, univ  # type: ignore[import]

from ldapconnector import ldap

#: OID of the RFC 2696 Simple Paged Results control
PAGING_OID = SimplePagedResultsControl.controlType
#: OID of the RFC 2891 Server Side Sort request control
SORTING_OID = "1.2.840.113556.1.4.473"


class SearchScope(Enum):
    """How deep below the base DN a search reaches."""

    OBJECT = "OBJECT"
    ONE_LEVEL = "ONE_LEVEL"
    SUB_TREE = "SUB_TREE"

    @property
    def ldap_scope(self) -> int:
        """The matching ``python-ldap`` ``SCOPE_*`` constant."""
        return {
            SearchScope.OBJECT: ldap.SCOPE_BASE,
            SearchScope.ONE_LEVEL: ldap.SCOPE_ONELEVEL,
            SearchScope.SUB_TREE: ldap.SCOPE_SUBTREE,
        }[self]

    @classmethod
    def from_value(cls, value: "SearchScope | str | int | None") -> "SearchScope":
        """
        Coerce ``value`` into a :py:class:`SearchScope`.

        Accepts a :py:class:`SearchScope`, its name (case-insensitive, with
        ``BASE``, ``ONELEVEL`` and ``SUBTREE`` as aliases) or a
        ``python-ldap`` ``SCOPE_*`` constant.  Anything unrecognized falls
        back to :py:attr:`ONE_LEVEL`.
        """
        if isinstance(value, SearchScope):
            return value
        if isinstance(value, int):
            for scope in cls:
                if scope.ldap_scope == value:
                    return scope
            return cls.ONE_LEVEL
        if isinstance(value, str):
            normalized = value.strip().upper().replace("-", "_")
            aliases = {
                "BASE": "OBJECT",
                "ONELEVEL": "ONE_LEVEL",
                "SUBTREE": "SUB_TREE",
            }
            normalized = aliases.get(normalized, normalized)
            if normalized in cls.__members__:
                return cls[normalized]
        return cls.ONE_LEVEL


@dataclass(frozen=True)
class SearchControls:
    """
    Immutable settings for a single search.

    Negative limits are normalized to ``0``, which means "unbounded".  A
    ``page_size`` of ``0`` or less disables paging.

    Keyword Args:
        scope: search scope; defaults to :py:attr:`SearchScope.ONE_LEVEL`
        attributes: attribute names to return; ``None`` returns all
        time_limit: server side time limit in seconds
        max_results: maximum number of entries to return
        return_object: kept for compatibility with older callers; has no
            effect on what is returned
        page_size: RFC 2696 page size
        order_by: attribute names to sort by server side.  A leading ``-``
            sorts that attribute descending.

    """

    scope: SearchScope = SearchScope.ONE_LEVEL
    attributes: tuple[str, ...] | None = None
    time_limit: int = 0
    max_results: int = 0
    return_object: bool = False
    page_size: int = 0
    order_by: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "scope", SearchScope.from_value(self.scope))
        if self.attributes is not None:
            object.__setattr__(self, "attributes", tuple(self.attributes))
        object.__setattr__(
            self,
            "order_by",
            tuple(str(SortKey.parse(key)) for key in self.order_by or () if str(key).strip()),
        )
        object.__setattr__(self, "time_limit", max(int(self.time_limit or 0), 0))
        object.__setattr__(self, "max_results", max(int(self.max_results or 0), 0))
        object.__setattr__(self, "page_size", max(int(self.page_size or 0), 0))

    @property
    def paging_enabled(self) -> bool:
        return self.page_size > 0

    @property
    def sort_keys(self) -> tuple["SortKey", ...]:
        """:py:attr:`order_by` parsed into :py:class:`SortKey` objects."""
        return tuple(SortKey.parse(name) for name in self.order_by)

    @property
    def attrlist(self) -> list[str] | None:
        """The attribute list in the form ``search_ext`` wants it."""
        if self.attributes is None:
            return None
        return list(self.attributes)

    def copy(self, **changes: Any) -> "SearchControls":
        """Return a copy of these controls with ``changes`` applied."""
        return replace(self, **changes)

    @classmethod
    def from_map(cls, data: dict[str, Any] | None) -> "SearchControls":
        """
        Build controls from a plain dictionary, ignoring unknown keys.
        """
        if not data:
            return cls()
        known = {
            "scope",
            "attributes",
            "time_limit",
            "max_results",
            "return_object",
            "page_size",
            "order_by",
        }
        return cls(**{key: value for key, value in data.items() if key in known})


# -----------------------
# RFC 2891 Server Side Sort
# -----------------------


@dataclass(frozen=True)
class SortKey:
    """
    One server side sort criterion.

    ``SortKey.parse("-sn")`` sorts by ``sn`` descending; ``str()`` turns a
    key back into that form.
    """

    attribute: str
    reverse: bool = False

    @classmethod
    def parse(cls, value: "str | SortKey") -> "SortKey":
        if isinstance(value, SortKey):
            return value
        value = value.strip()
        if value.startswith("-"):
            return cls(value[1:], reverse=True)
        return cls(value)

    def __str__(self) -> str:
        return f"-{self.attribute}" if self.reverse else self.attribute


_REVERSE_ORDER_TAG = tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 1)


class SortKeySequence(univ.Sequence):
    """``SortKey ::= SEQUENCE { attributeType, orderingRule [0], reverseOrder [1] }``"""

    componentType: ClassVar[namedtype.NamedTypes] = namedtype.NamedTypes(  # noqa: N815
        namedtype.NamedType("attributeType", univ.OctetString()),
        namedtype.OptionalNamedType(
            "orderingRule",
            univ.OctetString().subtype(
                explicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 0)
            ),
        ),
        namedtype.DefaultedNamedType(
            "reverseOrder",
            univ.Boolean(False).subtype(explicitTag=_REVERSE_ORDER_TAG),  # noqa: FBT003
        ),
    )


class SortKeyList(univ.SequenceOf):
    """The control value: ``SEQUENCE OF SortKey``."""

    componentType: ClassVar[SortKeySequence] = SortKeySequence()  # noqa: N815


def encode_sort_keys(sort_keys: Iterable[SortKey | str]) -> bytes:
    """
    BER-encode ``sort_keys`` as a sort control value.

    ``reverseOrder`` is only written for descending keys, since it defaults
    to ascending.  Returns ``b""`` when there are no keys.
    """
    keys = [SortKey.parse(key) for key in sort_keys]
    if not keys:
        return b""
    value = SortKeyList()
    for key in keys:
        component = SortKeySequence()
        component["attributeType"] = univ.OctetString(key.attribute.encode("utf-8"))
        if key.reverse:
            component["reverseOrder"] = univ.Boolean(True).subtype(  # noqa: FBT003
                explicitTag=_REVERSE_ORDER_TAG
            )
        value.append(component)
    return encoder.encode(value)


class ServerSideSortControl(LDAPControl):
    """
    The RFC 2891 sort request control.

    Args:
        sort_keys: :py:class:`SortKey` objects, or ``order_by`` style names

    Keyword Args:
        criticality: whether the server must refuse the search if it cannot
            sort

    """

    def __init__(
        self, sort_keys: Iterable[SortKey | str] = (), criticality: bool = False
    ) -> None:
        self.sort_keys = tuple(SortKey.parse(key) for key in sort_keys)
        super().__init__(SORTING_OID, criticality, encode_sort_keys(self.sort_keys))


def paged_results_control(page_size: int, cookie: bytes = b"") -> SimplePagedResultsControl:
    """
    Build an RFC 2696 paged results request control.

    Args:
        page_size: number of entries per page

    Keyword Args:
        cookie: the cookie from the previous page; empty for the first page

    Returns:
        The request control.

    """
    return SimplePagedResultsControl(True, size=page_size, cookie=cookie)  # noqa: FBT003


def get_paged_cookie(serverctrls: list[LDAPControl] | None) -> bytes | None:
    """
    Find the RFC 2696 cookie in the controls a server returned.

    Args:
        serverctrls: the controls returned with the search result

    Returns:
        The cookie, or ``None`` if the server returned no paged results
        control.  An empty cookie means there are no more pages.

    """
    for control in serverctrls or []:
        if control.controlType == PAGING_OID:
            return getattr(control, "cookie", None) or b""
    return None
