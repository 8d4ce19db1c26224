#!/usr/bin/env python3
"""
Unit tests for the sync-state tracker.
"""

import os
import sys
import unittest
from unittest.mock import patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_reconcile.errors import InvariantError
from ldap_reconcile.models import Department, EntityKind, SyncState, User, UserStatus
from ldap_reconcile.state import SyncStateTracker
from ldap_reconcile.store import Criteria, InMemoryStore


class TestSyncStateTracker(unittest.TestCase):
    """Test cases for SyncStateTracker."""

    def setUp(self):
        self.store = InMemoryStore()
        self.tracker = SyncStateTracker(self.store)
        self.dept = self.store.add_department(Department(name='Eng', source_dept_id='hr_2',
                                                         source_dept_parent_id='hr_1',
                                                         group_dn='cn=Eng,dc=example,dc=com'))
        self.user = self.store.add_user(User(username='alice', source_user_id='hr_u1', source='hr',
                                             user_dn='uid=alice,ou=people,dc=example,dc=com'))

    def test_state_transitions(self):
        self.tracker.mark_synced(EntityKind.DEPARTMENT, self.dept.id)
        self.assertEqual(self.store.find_department(Criteria.where(id=self.dept.id)).sync_state, SyncState.SYNCED)

        self.tracker.mark_stale(EntityKind.DEPARTMENT, self.dept.id)
        self.assertEqual(self.store.find_department(Criteria.where(id=self.dept.id)).sync_state, SyncState.STALE)

        self.tracker.mark_pending(EntityKind.USER, self.user.id)
        self.assertEqual(self.store.find_user(Criteria.where(id=self.user.id)).sync_state, SyncState.PENDING)

    @patch('ldap_reconcile.state.audit_logger')
    def test_mark_left(self, mock_audit):
        self.tracker.mark_left(self.user)

        self.assertEqual(self.store.find_user(Criteria.where(id=self.user.id)).status, UserStatus.LEFT)
        mock_audit.log_status_change.assert_called_once_with('alice', 'active', 'left', 'hr')

    def test_mark_left_requires_active(self):
        self.tracker.mark_left(self.user)
        left = self.store.find_user(Criteria.where(id=self.user.id))

        with self.assertRaises(InvariantError):
            self.tracker.mark_left(left)


if __name__ == '__main__':
    unittest.main()
