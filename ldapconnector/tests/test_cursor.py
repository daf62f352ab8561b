"""
Tests for the simple and paged result cursors.

These drive the cursors with hand-built sessions so that we can control
exactly what each page, cookie and result message looks like.
"""

import unittest
from unittest.mock import MagicMock

import ldap
from ldap.controls import SimplePagedResultsControl

from ldapconnector.config import Referral
from ldapconnector.controls import PAGING_OID, SORTING_OID, SearchControls, ServerSideSortControl
from ldapconnector.cursor import (
    CursorState,
    PagedResultCursor,
    SimpleResultCursor,
    absolute_dn,
)
from ldapconnector.exceptions import CommunicationFailure, LdapError, NameNotFound

BASE_DN = "ou=users,dc=example,dc=com"


def record(uid):
    return (f"uid={uid},{BASE_DN}", {"uid": [uid.encode("utf-8")]})


class PagingSession:
    """
    A session that serves ``pages`` one RFC 2696 page at a time.

    The cookie for page ``n`` is ``b"n"``; the last page carries an empty
    cookie.
    """

    def __init__(self, pages, return_paging_control=True):
        self.pages = pages
        self.return_paging_control = return_paging_control
        self.requests = []
        self.abandoned = []

    def search_ext(self, base, scope, filterstr, attrlist, serverctrls=None, timeout=-1, sizelimit=0):
        self.requests.append(list(serverctrls or []))
        cookie = serverctrls[0].cookie if serverctrls else b""
        return int(cookie or b"0") + 1

    def result3(self, msgid, all=1, timeout=None):  # noqa: A002
        index = msgid - 1
        controls = []
        if self.return_paging_control:
            cookie = b"%d" % (index + 1) if index + 1 < len(self.pages) else b""
            controls.append(SimplePagedResultsControl(True, size=0, cookie=cookie))
        return (ldap.RES_SEARCH_RESULT, self.pages[index], msgid, controls)

    def abandon(self, msgid):
        self.abandoned.append(msgid)


class TestAbsoluteDn(unittest.TestCase):
    """Test rebuilding DNs reported relative to the search base."""

    def test_absolute_names_are_kept(self):
        self.assertEqual(absolute_dn(f"uid=alice,{BASE_DN}", BASE_DN), f"uid=alice,{BASE_DN}")
        self.assertEqual(
            absolute_dn("uid=alice,OU=Users,DC=example,DC=com", BASE_DN),
            "uid=alice,OU=Users,DC=example,DC=com",
        )

    def test_relative_names_are_joined(self):
        self.assertEqual(absolute_dn("uid=alice", BASE_DN), f"uid=alice,{BASE_DN}")

    def test_empty_parts(self):
        self.assertEqual(absolute_dn("", BASE_DN), BASE_DN)
        self.assertEqual(absolute_dn("uid=alice", ""), "uid=alice")


class TestPagedResultCursor(unittest.TestCase):
    """Test walking an RFC 2696 paged search."""

    def setUp(self):
        self.release = MagicMock()

    def make_cursor(self, session, **kwargs):
        controls = kwargs.pop("controls", SearchControls(page_size=2))
        return PagedResultCursor(
            session, BASE_DN, "(objectClass=*)", controls, release=self.release, **kwargs
        )

    def test_walks_every_page(self):
        session = PagingSession([[record("a"), record("b")], [record("c"), record("d")], [record("e")]])
        cursor = self.make_cursor(session)
        uids = [entry.get_attribute("uid").value for entry in cursor]
        self.assertEqual(uids, ["a", "b", "c", "d", "e"])
        self.assertEqual(cursor.pages, 3)
        self.assertEqual([ctrls[0].cookie for ctrls in session.requests], [b"", b"1", b"2"])
        self.assertTrue(all(ctrls[0].controlType == PAGING_OID for ctrls in session.requests))
        self.assertIs(cursor.state, CursorState.EXHAUSTED)

    def test_has_next_is_idempotent(self):
        session = PagingSession([[record("a")], [record("b")]])
        cursor = self.make_cursor(session)
        for _ in range(3):
            self.assertTrue(cursor.has_next())
        self.assertEqual(len(session.requests), 1)
        self.assertEqual(cursor.next().dn, f"uid=a,{BASE_DN}")
        self.assertTrue(cursor.has_next())
        self.assertTrue(cursor.has_next())
        self.assertEqual(len(session.requests), 2)
        self.assertEqual(cursor.next().dn, f"uid=b,{BASE_DN}")
        self.assertFalse(cursor.has_next())
        self.assertFalse(cursor.has_next())
        with self.assertRaises(StopIteration):
            cursor.next()

    def test_empty_pages_with_cookie_are_skipped(self):
        session = PagingSession([[record("a")], [], [record("b")]])
        cursor = self.make_cursor(session)
        self.assertEqual(len(cursor.get_all_entries()), 2)
        self.assertEqual(len(session.requests), 3)

    def test_missing_paging_control_means_one_page(self):
        session = PagingSession([[record("a")], [record("b")]], return_paging_control=False)
        cursor = self.make_cursor(session)
        self.assertEqual([entry.dn for entry in cursor], [f"uid=a,{BASE_DN}"])
        self.assertEqual(len(session.requests), 1)

    def test_empty_result(self):
        cursor = self.make_cursor(PagingSession([[]]))
        self.assertFalse(cursor.has_next())
        self.assertEqual(cursor.get_all_entries(), [])

    def test_sort_control_follows_paging_control(self):
        session = PagingSession([[record("a")]])
        sort_control = ServerSideSortControl(["uid"])
        self.make_cursor(session, sort_control=sort_control)
        self.assertEqual(
            [ctrl.controlType for ctrl in session.requests[0]], [PAGING_OID, SORTING_OID]
        )

    def test_max_results_caps_entries(self):
        session = PagingSession([[record("a"), record("b")], [record("c"), record("d")]])
        cursor = self.make_cursor(session, controls=SearchControls(page_size=2, max_results=3))
        self.assertEqual(len(cursor.get_all_entries()), 3)

    def test_relative_names_are_made_absolute(self):
        session = PagingSession([[("uid=a", {"uid": [b"a"]})]])
        entry = self.make_cursor(session).next()
        self.assertEqual(entry.dn, f"uid=a,{BASE_DN}")

    def test_references_are_skipped(self):
        session = PagingSession([[record("a"), (None, ["ldap://other.example.com/dc=other"])]])
        cursor = self.make_cursor(session, referral=Referral.FOLLOW)
        self.assertEqual(len(cursor.get_all_entries()), 1)

    def test_references_raise_when_throwing(self):
        session = PagingSession([[(None, ["ldap://other.example.com/dc=other"])]])
        with self.assertRaises(LdapError):
            self.make_cursor(session, referral=Referral.THROW)

    def test_size_limit_is_normal_exhaustion(self):
        session = MagicMock()
        session.search_ext.return_value = 1
        session.result3.side_effect = ldap.SIZELIMIT_EXCEEDED({"desc": "Size limit exceeded"})
        with self.assertLogs("ldapconnector.cursor", level="WARNING"):
            cursor = self.make_cursor(session)
        self.assertFalse(cursor.has_next())

    def test_close_releases_session_once(self):
        session = PagingSession([[record("a")], [record("b")]])
        cursor = self.make_cursor(session)
        cursor.close()
        cursor.close()
        self.release.assert_called_once_with(session)
        self.assertFalse(cursor.has_next())

    def test_close_abandons_unfinished_request(self):
        session = MagicMock()
        session.search_ext.return_value = 7
        session.result3.return_value = (ldap.RES_SEARCH_ENTRY, [record("a")], 7, [])
        cursor = self.make_cursor(session)
        cursor.close()
        session.abandon.assert_called_once_with(7)
        self.release.assert_called_once_with(session)

    def test_context_manager_closes(self):
        session = PagingSession([[record("a")]])
        with self.make_cursor(session) as cursor:
            self.assertTrue(cursor.has_next())
        self.release.assert_called_once_with(session)

    def test_release_runs_even_if_stream_close_fails(self):
        session = PagingSession([[record("a")]])
        cursor = self.make_cursor(session)
        cursor._stream = MagicMock()
        cursor._stream.close.side_effect = RuntimeError("boom")
        with self.assertRaises(RuntimeError):
            cursor.close()
        self.release.assert_called_once_with(session)

    def test_search_errors_are_translated(self):
        session = MagicMock()
        session.search_ext.side_effect = ldap.NO_SUCH_OBJECT({"desc": "No such object"})
        with self.assertRaises(NameNotFound):
            self.make_cursor(session)


class TestSimpleResultCursor(unittest.TestCase):
    """Test reading a single, unpaged result stream."""

    def test_streams_entries(self):
        session = MagicMock()
        session.search_ext.return_value = 3
        session.result3.side_effect = [
            (ldap.RES_SEARCH_ENTRY, [record("a")], 3, []),
            (ldap.RES_SEARCH_ENTRY, [record("b")], 3, []),
            (ldap.RES_SEARCH_RESULT, [], 3, []),
        ]
        cursor = SimpleResultCursor(session, BASE_DN, "(uid=*)", SearchControls())
        self.assertEqual([entry.dn for entry in cursor], [f"uid=a,{BASE_DN}", f"uid=b,{BASE_DN}"])
        self.assertEqual(session.result3.call_count, 3)
        _, kwargs = session.search_ext.call_args
        self.assertIsNone(kwargs["serverctrls"])
        self.assertEqual(kwargs["timeout"], -1)

    def test_search_arguments(self):
        session = MagicMock()
        session.search_ext.return_value = 1
        session.result3.return_value = (ldap.RES_SEARCH_RESULT, [], 1, [])
        controls = SearchControls(scope="SUB_TREE", attributes=["uid"], time_limit=5, max_results=10)
        SimpleResultCursor(session, BASE_DN, "(uid=a*)", controls)
        args, kwargs = session.search_ext.call_args
        self.assertEqual(args, (BASE_DN, ldap.SCOPE_SUBTREE, "(uid=a*)", ["uid"]))
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["sizelimit"], 10)
        self.assertEqual(session.result3.call_args.kwargs["timeout"], 5)

    def test_stale_connection_refuses_reads(self):
        session = PagingSession([[record("a")]])
        valid = [True]
        cursor = SimpleResultCursor(
            session, BASE_DN, "(uid=*)", SearchControls(), is_valid=lambda: valid[0]
        )
        valid[0] = False
        with self.assertRaises(CommunicationFailure):
            cursor.has_next()
        self.assertIs(cursor.state, CursorState.EXHAUSTED)
        self.assertFalse(cursor.has_next())
