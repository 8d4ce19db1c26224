#!/usr/bin/env python3
"""
Unit tests for the HR/IM source clients.

HTTPSConnection is mocked; each test queues the JSON responses the platform
would send and checks the requests the client makes.
"""

import json
import os
import sys
import unittest
from unittest.mock import Mock, patch
from urllib.parse import parse_qs, urlparse

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_reconcile.errors import RemoteFetchError
from ldap_reconcile.sources.base import LeaverListingUnsupported, SourceAuthenticationError
from ldap_reconcile.sources.dingtalk import DingTalkAPI
from ldap_reconcile.sources.wecom import WeComAPI

TOKEN_RESPONSE = {'errcode': 0, 'access_token': 'tok-123', 'expires_in': 7200}


def response(payload, status=200, reason='OK'):
    mock_response = Mock()
    mock_response.status = status
    mock_response.reason = reason
    mock_response.read.return_value = json.dumps(payload).encode('utf-8')
    return mock_response


class SourceTestCase(unittest.TestCase):

    def setUp(self):
        patcher = patch('ldap_reconcile.sources.base.HTTPSConnection')
        self.mock_connection_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.conn = Mock()
        self.mock_connection_class.return_value = self.conn

    def queue(self, *payloads):
        self.conn.getresponse.side_effect = [p if isinstance(p, Mock) else response(p) for p in payloads]

    def requests(self):
        """(method, path, query, body) of every request sent."""
        sent = []
        for call in self.conn.request.call_args_list:
            method, full_path, body, _headers = call.args
            url = urlparse(full_path)
            sent.append((method, url.path, parse_qs(url.query), json.loads(body) if body else None))
        return sent


class TestDingTalkAPI(SourceTestCase):
    """Test cases for DingTalkAPI."""

    def setUp(self):
        super().setUp()
        self.api = DingTalkAPI({
            'name': 'dingtalk',
            'module': 'dingtalk',
            'base_url': 'https://oapi.dingtalk.com',
            'auth': {'app_key': 'key', 'app_secret': 'secret'},
        })

    def test_supports_leaver_listing(self):
        self.assertTrue(self.api.supports_leaver_listing)

    def test_authenticate_fetches_token(self):
        self.queue(TOKEN_RESPONSE)

        self.assertTrue(self.api.authenticate())

        method, path, query, _ = self.requests()[0]
        self.assertEqual((method, path), ('GET', '/gettoken'))
        self.assertEqual(query, {'appkey': ['key'], 'appsecret': ['secret']})

    def test_rejected_credentials(self):
        self.queue({'errcode': 40089, 'errmsg': 'invalid appkey'})

        with self.assertRaises(SourceAuthenticationError):
            self.api.authenticate()

    def test_token_is_cached(self):
        self.queue(TOKEN_RESPONSE, {'errcode': 0, 'department': []}, {'errcode': 0, 'department': []})

        self.api.fetch_all_departments()
        self.api.fetch_all_departments()

        paths = [path for _, path, _, _ in self.requests()]
        self.assertEqual(paths, ['/gettoken', '/department/list', '/department/list'])

    def test_fetch_all_departments(self):
        departments = [{'id': 2, 'parentid': 1, 'name': 'Eng'}, {'id': 3, 'parentid': 2, 'name': 'QA'}]
        self.queue(TOKEN_RESPONSE, {'errcode': 0, 'department': departments})

        self.assertEqual(self.api.fetch_all_departments(), departments)

        _, _, query, _ = self.requests()[1]
        self.assertEqual(query['access_token'], ['tok-123'])
        self.assertEqual(query['id'], ['1'])
        self.assertEqual(query['fetch_child'], ['true'])

    def test_fetch_all_users_pages_and_dedupes(self):
        alice = {'userid': 'u1', 'name': 'Alice', 'dept_id_list': [1, 2]}
        bob = {'userid': 'u2', 'name': 'Bob', 'dept_id_list': [2]}
        self.queue(
            TOKEN_RESPONSE,
            {'errcode': 0, 'department': [{'id': 2, 'parentid': 1, 'name': 'Eng'}]},
            {'errcode': 0, 'result': {'list': [alice], 'has_more': False}},
            {'errcode': 0, 'result': {'list': [alice], 'has_more': True, 'next_cursor': 100}},
            {'errcode': 0, 'result': {'list': [bob], 'has_more': False}},
        )

        users = self.api.fetch_all_users()

        self.assertEqual([u['userid'] for u in users], ['u1', 'u2'])
        bodies = [body for _, path, _, body in self.requests() if path == '/topapi/v2/user/list']
        self.assertEqual(bodies, [
            {'dept_id': 1, 'cursor': 0, 'size': 100},
            {'dept_id': 2, 'cursor': 0, 'size': 100},
            {'dept_id': 2, 'cursor': 100, 'size': 100},
        ])

    def test_fetch_leaver_ids(self):
        self.queue(
            TOKEN_RESPONSE,
            {'errcode': 0, 'result': {'data_list': ['u2', 'u3'], 'next_cursor': 50}},
            {'errcode': 0, 'result': {'data_list': ['u4']}},
        )

        self.assertEqual(self.api.fetch_leaver_ids(), ['u2', 'u3', 'u4'])

    @patch('ldap_reconcile.sources.dingtalk.time.time')
    def test_fetch_leaver_ids_within_window(self, mock_time):
        now = 1_700_000_000
        mock_time.return_value = now
        day_ms = 86400 * 1000
        self.queue(
            TOKEN_RESPONSE,
            {'errcode': 0, 'result': {'data_list': ['u2', 'u3']}},
            {'errcode': 0, 'result': [
                {'userid': 'u2', 'last_work_day': now * 1000 - 2 * day_ms},
                {'userid': 'u3', 'last_work_day': now * 1000 - 30 * day_ms},
            ]},
        )

        self.assertEqual(self.api.fetch_leaver_ids(window_days=7), ['u2'])

        _, path, _, body = self.requests()[-1]
        self.assertEqual(path, '/topapi/smartwork/hrm/employee/listdimission')
        self.assertEqual(body, {'userid_list': 'u2,u3'})

    def test_platform_error_code(self):
        self.queue(TOKEN_RESPONSE, {'errcode': 60011, 'errmsg': 'no permission'})

        with self.assertRaises(RemoteFetchError) as ctx:
            self.api.fetch_all_departments()
        self.assertIn('60011', str(ctx.exception))

    def test_http_error(self):
        self.queue(TOKEN_RESPONSE, response({}, status=502, reason='Bad Gateway'))

        with self.assertRaises(RemoteFetchError):
            self.api.fetch_all_departments()

    def test_connection_error(self):
        self.conn.request.side_effect = OSError('connection refused')

        with self.assertRaises(RemoteFetchError):
            self.api.authenticate()
        self.assertIsNone(self.api.connection)

    def test_invalid_json(self):
        bad = Mock(status=200, reason='OK')
        bad.read.return_value = b'<html>maintenance</html>'
        self.queue(TOKEN_RESPONSE, bad)

        with self.assertRaises(RemoteFetchError):
            self.api.fetch_all_departments()


class TestWeComAPI(SourceTestCase):
    """Test cases for WeComAPI."""

    def setUp(self):
        super().setUp()
        self.api = WeComAPI({
            'name': 'wecom',
            'module': 'wecom',
            'base_url': 'https://qyapi.weixin.qq.com/cgi-bin',
            'auth': {'app_key': 'corp-id', 'app_secret': 'corp-secret'},
        })

    def test_token_uses_corp_credentials(self):
        self.queue(TOKEN_RESPONSE)

        self.api.authenticate()

        _, path, query, _ = self.requests()[0]
        self.assertEqual(path, '/cgi-bin/gettoken')
        self.assertEqual(query, {'corpid': ['corp-id'], 'corpsecret': ['corp-secret']})

    def test_fetch_all_users_keeps_active_only(self):
        self.queue(TOKEN_RESPONSE, {'errcode': 0, 'userlist': [
            {'userid': 'alice', 'status': 1},
            {'userid': 'bob', 'status': 2},
            {'userid': 'carol', 'status': 4},
            {'userid': 'dave'},
        ]})

        users = self.api.fetch_all_users()

        self.assertEqual([u['userid'] for u in users], ['alice', 'dave'])
        _, path, query, _ = self.requests()[1]
        self.assertEqual(path, '/cgi-bin/user/list')
        self.assertEqual(query['department_id'], ['1'])

    def test_no_leaver_listing(self):
        self.assertFalse(self.api.supports_leaver_listing)
        with self.assertRaises(LeaverListingUnsupported):
            self.api.fetch_leaver_ids()


if __name__ == '__main__':
    unittest.main()
