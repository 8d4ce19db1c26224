"""
Push rows from the relational store into the directory.

The store is itself a source of truth: operators can create departments and
users there and push them to LDAP by id. Pushing is idempotent; entries that
already exist in the directory are left as they are and only marked synced.
"""

import logging
import time
from typing import Any, Dict, Iterable

from ldap_reconcile.directory import LDAPDirectory
from ldap_reconcile.errors import NotFoundError, ReconcileError
from ldap_reconcile.models import EntityKind, SyncResult, UserStatus
from ldap_reconcile.state import SyncStateTracker
from ldap_reconcile.store.base import Criteria, RecordStore

logger = logging.getLogger(__name__)


class StorePush:
    """Creates directory entries for stored users and departments."""

    def __init__(self, directory: LDAPDirectory, store: RecordStore, ldap_config: Dict[str, Any]):
        self.directory = directory
        self.store = store
        self.tracker = SyncStateTracker(store)
        self.admin_dn = ldap_config.get('admin_dn') or ldap_config.get('bind_dn')

    def _check_ids(self, kind: EntityKind, ids: Iterable[int]):
        """Every requested id must exist before anything is written."""
        exists = self.store.department_exists if kind is EntityKind.DEPARTMENT else self.store.user_exists
        for entity_id in ids:
            if not exists(Criteria.where(id=entity_id)):
                raise NotFoundError(f"{kind.value} id {entity_id} does not exist", str(entity_id))

    def push_users(self, user_ids: Iterable[int]) -> SyncResult:
        """Create the directory entry of each user, add it to its departments and mark it synced."""
        user_ids = list(user_ids)
        result = SyncResult(source='store', operation='user push', counts={'pushed': 0})
        started = time.time()
        try:
            self._check_ids(EntityKind.USER, user_ids)
            users = self.store.get_users_by_ids(user_ids)
            for i, user in enumerate(users, 1):
                self.directory.create_user(user)
                for dept in self.store.get_departments_by_ids(user.department_id_list):
                    self.directory.add_user_to_group(dept.group_dn, user.user_dn)
                self.tracker.mark_synced(EntityKind.USER, user.id)
                result.count('pushed')
                logger.info(f"Pushed user {user.username} ({i}/{len(users)})")
        except ReconcileError as e:
            result.success = False
            result.error = e
            logger.error(f"User push aborted: {e}")

        result.runtime_seconds = time.time() - started
        logger.info(result.summary)
        return result

    def push_groups(self, group_ids: Iterable[int]) -> SyncResult:
        """Create the directory entry of each department, add its members and mark it synced."""
        group_ids = list(group_ids)
        result = SyncResult(source='store', operation='group push', counts={'pushed': 0, 'members': 0})
        started = time.time()
        try:
            self._check_ids(EntityKind.DEPARTMENT, group_ids)
            # A parent DN is a suffix of its children's DNs, so shorter DNs go first
            departments = sorted(self.store.get_departments_by_ids(group_ids), key=lambda dept: len(dept.group_dn))
            for dept in departments:
                self.directory.create_group(dept)
                for member in self.store.department_members(dept.id):
                    if member.user_dn == self.admin_dn or member.status is not UserStatus.ACTIVE:
                        continue
                    self.directory.add_user_to_group(dept.group_dn, member.user_dn)
                    result.count('members')
                self.tracker.mark_synced(EntityKind.DEPARTMENT, dept.id)
                result.count('pushed')
                logger.info(f"Pushed department {dept.group_dn}")
        except ReconcileError as e:
            result.success = False
            result.error = e
            logger.error(f"Group push aborted: {e}")

        result.runtime_seconds = time.time() - started
        logger.info(result.summary)
        return result
