#!/usr/bin/env python3
"""
Unit tests for the record stores.

The same behaviour is checked against the in-memory store and the SQL store
on an in-memory SQLite database.
"""

import os
import sys
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_reconcile.errors import NotFoundError, PersistenceError
from ldap_reconcile.models import Department, EntityKind, SyncState, User, UserStatus
from ldap_reconcile.store import Criteria, InMemoryStore, create_store
from ldap_reconcile.store.sql import SQLStore


def make_department(name='Eng', remote_id='2', parent_dn='dc=example,dc=com'):
    return Department(name=name, source_dept_id=f"hr_{remote_id}", source_dept_parent_id='hr_1',
                      group_dn=f"cn={name},{parent_dn}", source='hr', creator='system')


def make_user(username='alice', remote_id='u1', **overrides):
    values = dict(username=username, source_user_id=f"hr_{remote_id}", source='hr', creator='system',
                  user_dn=f"uid={username},ou=people,dc=example,dc=com")
    values.update(overrides)
    return User(**values)


class StoreContract:
    """Behaviour every RecordStore implementation must provide."""

    def create_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.create_store()

    def tearDown(self):
        self.store.close()

    def test_add_department_assigns_id(self):
        stored = self.store.add_department(make_department())

        self.assertIsNotNone(stored.id)
        self.assertEqual(stored.group_dn, 'cn=Eng,dc=example,dc=com')
        self.assertEqual(stored.sync_state, SyncState.PENDING)

    def test_duplicate_group_dn_rejected(self):
        self.store.add_department(make_department())
        with self.assertRaises(PersistenceError):
            self.store.add_department(make_department())

    def test_filter_departments(self):
        self.store.add_department(make_department('Eng', '2'))
        self.store.add_department(make_department('Ops', '3'))

        rows = self.store.filter_departments(Criteria.where(source_dept_id='hr_3'))
        self.assertEqual([row.name for row in rows], ['Ops'])
        self.assertEqual(len(self.store.list_departments()), 2)
        self.assertTrue(self.store.department_exists(Criteria.where(group_dn='cn=Eng,dc=example,dc=com')))
        self.assertFalse(self.store.department_exists(Criteria.where(group_dn='cn=None,dc=example,dc=com')))

    def test_find_department_not_found(self):
        with self.assertRaises(NotFoundError):
            self.store.find_department(Criteria.where(source_dept_id='hr_404'))

    def test_add_and_find_user(self):
        stored = self.store.add_user(make_user(mail='alice@example.com', department_ids='1,2'))

        found = self.store.find_user(Criteria.where(username='alice'))
        self.assertEqual(found.id, stored.id)
        self.assertEqual(found.mail, 'alice@example.com')
        self.assertEqual(found.status, UserStatus.ACTIVE)
        self.assertEqual(found.department_id_list, [1, 2])

    def test_duplicate_user_dn_rejected(self):
        self.store.add_user(make_user())
        with self.assertRaises(PersistenceError):
            self.store.add_user(make_user(remote_id='u2'))

    def test_filter_users_by_enum_or_value(self):
        self.store.add_user(make_user('alice', 'u1'))
        left = self.store.add_user(make_user('bob', 'u2'))
        self.store.change_user_status(left.id, UserStatus.LEFT)

        by_enum = self.store.filter_users(Criteria.where(source='hr', status=UserStatus.ACTIVE))
        by_value = self.store.filter_users(Criteria.where(source='hr', status='active'))
        self.assertEqual([u.username for u in by_enum], ['alice'])
        self.assertEqual([u.username for u in by_value], ['alice'])

    def test_update_user(self):
        stored = self.store.add_user(make_user())
        stored.mobile = '13900000000'

        self.store.update_user(stored)

        self.assertEqual(self.store.find_user(Criteria.where(id=stored.id)).mobile, '13900000000')

    def test_update_missing_user_raises(self):
        with self.assertRaises(NotFoundError):
            self.store.update_user(make_user(id=404))

    def test_change_status_missing_user_raises(self):
        with self.assertRaises(NotFoundError):
            self.store.change_user_status(404, UserStatus.LEFT)

    def test_change_sync_state(self):
        dept = self.store.add_department(make_department())
        user = self.store.add_user(make_user())

        self.store.change_sync_state(EntityKind.DEPARTMENT, dept.id, SyncState.SYNCED)
        self.store.change_sync_state(EntityKind.USER, user.id, SyncState.STALE)

        self.assertEqual(self.store.find_department(Criteria.where(id=dept.id)).sync_state, SyncState.SYNCED)
        self.assertEqual(self.store.find_user(Criteria.where(id=user.id)).sync_state, SyncState.STALE)

    def test_get_by_ids(self):
        first = self.store.add_department(make_department('Eng', '2'))
        self.store.add_department(make_department('Ops', '3'))
        third = self.store.add_department(make_department('QA', '4'))

        rows = self.store.get_departments_by_ids([third.id, first.id, 999])
        self.assertEqual([row.name for row in rows], ['Eng', 'QA'])

        user = self.store.add_user(make_user())
        self.assertEqual([u.username for u in self.store.get_users_by_ids([user.id])], ['alice'])

    def test_department_members(self):
        eng = self.store.add_department(make_department('Eng', '2'))
        ops = self.store.add_department(make_department('Ops', '3'))
        self.store.add_user(make_user('alice', 'u1', department_ids=f"{eng.id}"))
        self.store.add_user(make_user('bob', 'u2', department_ids=f"{eng.id},{ops.id}"))

        self.assertEqual([u.username for u in self.store.department_members(eng.id)], ['alice', 'bob'])
        self.assertEqual([u.username for u in self.store.department_members(ops.id)], ['bob'])


class TestInMemoryStore(StoreContract, unittest.TestCase):
    """Test cases for InMemoryStore."""

    def create_store(self):
        return InMemoryStore()

    def test_returns_copies(self):
        stored = self.store.add_user(make_user())
        stored.mobile = 'changed'

        self.assertEqual(self.store.find_user(Criteria.where(id=stored.id)).mobile, '')

    def test_write_count(self):
        dept = self.store.add_department(make_department())
        self.store.change_sync_state(EntityKind.DEPARTMENT, dept.id, SyncState.SYNCED)
        self.store.list_departments()

        self.assertEqual(self.store.write_count, 2)


class TestSQLStore(StoreContract, unittest.TestCase):
    """Test cases for SQLStore on in-memory SQLite."""

    def create_store(self):
        return SQLStore('sqlite://')

    def test_unknown_filter_field(self):
        with self.assertRaises(PersistenceError):
            self.store.filter_users(Criteria.where(shoe_size=42))


class TestCreateStore(unittest.TestCase):

    def test_memory_url(self):
        self.assertIsInstance(create_store({'url': 'memory://'}), InMemoryStore)

    def test_default_is_memory(self):
        self.assertIsInstance(create_store(None), InMemoryStore)

    def test_memory_store_warns_records_are_not_kept(self):
        with self.assertLogs('ldap_reconcile.store', level='WARNING') as logs:
            create_store({'url': 'memory://'})

        self.assertIn('database.url', logs.output[0])

    def test_sql_url(self):
        store = create_store({'url': 'sqlite://'})
        try:
            self.assertIsInstance(store, SQLStore)
        finally:
            store.close()


if __name__ == '__main__':
    unittest.main()
