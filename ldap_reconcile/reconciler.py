"""
Per-source reconciliation of departments and users.

A Reconciler converges the directory and the store to one source: it creates
the department tree top-down, creates or refreshes every active staff member,
and deprovisions the people who have left. Each pass stops at the first failing
entity; entities committed before it stay committed, so a pass can simply be
run again once the cause is fixed.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from ldap3.utils.dn import escape_rdn

from ldap_reconcile.directory import LDAPDirectory, hash_password
from ldap_reconcile.errors import InvariantError, NotFoundError, ReconcileError
from ldap_reconcile.merge import changed_fields, merge_user
from ldap_reconcile.models import (Department, EntityKind, SyncResult, User, UserStatus,
                                   source_key)
from ldap_reconcile.normalizer import coerce_id, normalize_departments, normalize_users
from ldap_reconcile.sources.base import SourceAPIBase
from ldap_reconcile.state import SyncStateTracker
from ldap_reconcile.store.base import Criteria, RecordStore
from ldap_reconcile.tree import build_tree, iter_preorder

logger = logging.getLogger(__name__)

SYSTEM_CREATOR = 'system'


class Reconciler:
    """
    Sync passes for a single source.

    Args:
        source_api: Client of the HR/IM platform
        directory: Connected LDAP directory
        store: Relational store
        source_config: The source's configuration entry
        ldap_config: The ``ldap`` configuration section
    """

    def __init__(self, source_api: SourceAPIBase, directory: LDAPDirectory, store: RecordStore,
                 source_config: Dict[str, Any], ldap_config: Dict[str, Any]):
        self.source_api = source_api
        self.directory = directory
        self.store = store
        self.tracker = SyncStateTracker(store)

        self.flag = source_config.get('flag', source_config['name'])
        self.update_on_sync = source_config.get('update_on_sync', False)
        self.leave_range_days = source_config.get('leave_range_days', 0)
        self.root_key = source_key(self.flag, '1')

        self.default_role = ldap_config.get('default_role', 'user')
        self.init_password = ldap_config['user_init_password']
        self.admin_dn = ldap_config.get('admin_dn') or ldap_config.get('bind_dn')

    # Departments

    def sync_departments(self) -> SyncResult:
        """
        Create every department of the source that the store does not know yet.

        Departments are walked parent-first, so a child's parent row always exists
        when the child is created. Known departments cause no writes.
        """
        result = SyncResult(source=self.flag, operation='departments',
                            counts={'created': 0, 'unchanged': 0})
        started = time.time()
        logger.info(f"Starting department sync for {self.flag}")

        try:
            raw_departments = self.source_api.fetch_all_departments()
            departments = normalize_departments(self.flag, raw_departments)
            tree = build_tree(self.root_key, departments)

            resolved: Dict[str, Department] = {}
            for node, parent_key in iter_preorder(tree):
                if self._add_department(node.department, parent_key, resolved):
                    result.count('created')
                else:
                    result.count('unchanged')
        except ReconcileError as e:
            self._fail(result, e)

        result.runtime_seconds = time.time() - started
        logger.info(result.summary)
        return result

    def _resolve_parent(self, department: Department, parent_key: Optional[str],
                        resolved: Dict[str, Department]) -> Optional[Department]:
        """
        Find the stored parent row; None means the department hangs off the group base DN.

        Rows matched by DN earlier in this walk stand in for parents whose row
        was created by a different source under the same DN.
        """
        if parent_key is None:
            return None
        rows = self.store.filter_departments(Criteria.where(source_dept_id=parent_key))
        if rows:
            return rows[0]
        if parent_key in resolved:
            return resolved[parent_key]
        raise NotFoundError(f"Parent department {parent_key} of {department.name} is not stored; "
                            f"the department tree was walked out of order", department.source_dept_id)

    def _add_department(self, department: Department, parent_key: Optional[str],
                        resolved: Dict[str, Department]) -> bool:
        """Persist one department unless a row with its DN exists; returns True if created."""
        parent = self._resolve_parent(department, parent_key, resolved)
        parent_dn = parent.group_dn if parent else self.directory.group_base_dn

        department.parent_id = parent.id if parent else 0
        department.group_dn = f"{department.group_type}={escape_rdn(department.name)},{parent_dn}"
        department.creator = SYSTEM_CREATOR
        department.source = self.flag

        existing = self.store.filter_departments(Criteria.where(group_dn=department.group_dn))
        if existing:
            resolved[department.source_dept_id] = existing[0]
            logger.debug(f"Department {department.group_dn} already stored")
            return False

        self.directory.create_group(department)
        stored = self.store.add_department(department)
        self.tracker.mark_synced(EntityKind.DEPARTMENT, stored.id)
        resolved[department.source_dept_id] = stored
        logger.info(f"Created department {stored.group_dn}")
        return True

    # Users

    def sync_users(self) -> SyncResult:
        """
        Create or refresh every active staff member, then deprovision leavers.

        Counts: ``synced`` (users processed), of which ``created``, ``updated``,
        ``reactivated`` and ``unchanged``; ``deprovisioned`` leavers.
        """
        result = SyncResult(source=self.flag, operation='users',
                            counts={'synced': 0, 'created': 0, 'updated': 0, 'reactivated': 0,
                                    'unchanged': 0, 'deprovisioned': 0})
        started = time.time()
        logger.info(f"Starting user sync for {self.flag}")

        try:
            raw_users = self.source_api.fetch_all_users()
            users = normalize_users(self.flag, raw_users)

            for i, user in enumerate(users, 1):
                outcome = self._sync_user(user)
                result.count(outcome)
                result.count('synced')
                logger.info(f"Synced user {user.username} ({outcome}) ({i}/{len(users)})")

            for leaver in self._find_leavers(users):
                self._deprovision(leaver)
                result.count('deprovisioned')
        except ReconcileError as e:
            self._fail(result, e)

        result.runtime_seconds = time.time() - started
        logger.info(result.summary)
        return result

    def _resolve_user_departments(self, user: User) -> List[Department]:
        """
        Stored departments for the user's remote department references, in reference order.

        The root key is resolved like any other department; platforms that do
        not list their root department simply have no row for it.
        """
        departments = []
        for dept_key in user.source_dept_ids:
            rows = self.store.filter_departments(Criteria.where(source_dept_id=dept_key))
            if rows:
                departments.append(rows[0])
            elif dept_key == self.root_key:
                logger.debug(f"User {user.username} belongs to the unlisted root department {dept_key}")
            else:
                logger.warning(f"Department {dept_key} of user {user.username} is not stored; "
                               f"run the department sync first")
        return departments

    def _sync_user(self, user: User) -> str:
        """Create, refresh or leave one user; returns the outcome name."""
        user.user_dn = self.directory.user_dn(user.username)
        departments = self._resolve_user_departments(user)
        user.departments = ','.join(dept.name for dept in departments)
        user.department_ids = ','.join(str(dept.id) for dept in departments)

        existing = self.store.filter_users(Criteria.where(user_dn=user.user_dn))
        if not existing:
            self._create_user(user, departments)
            return 'created'

        stored = existing[0]
        if stored.status is UserStatus.LEFT:
            self._reactivate_user(stored, user)
            return 'reactivated'
        if not self.update_on_sync:
            return 'unchanged'
        return self._update_user(stored, user)

    def _create_user(self, user: User, departments: List[Department]):
        user.role = self.default_role
        user.password = hash_password(self.init_password)
        user.creator = SYSTEM_CREATOR
        user.source = self.flag
        user.status = UserStatus.ACTIVE

        self.directory.create_user(user)
        for dept in departments:
            self.directory.add_user_to_group(dept.group_dn, user.user_dn)
        stored = self.store.add_user(user)
        self.tracker.mark_synced(EntityKind.USER, stored.id)

    def _update_user(self, stored: User, incoming: User) -> str:
        merged = merge_user(stored, incoming)
        changes = changed_fields(stored, merged)
        if not changes:
            return 'unchanged'

        logger.debug(f"User {stored.username} changed: {', '.join(changes)}")
        self.directory.update_user(merged)
        self._update_memberships(stored, merged)
        self.store.update_user(merged)
        self.tracker.mark_synced(EntityKind.USER, merged.id)
        return 'updated'

    def _update_memberships(self, before: User, after: User):
        old_ids = set(before.department_id_list)
        new_ids = set(after.department_id_list)
        for dept in self.store.get_departments_by_ids(new_ids - old_ids):
            self.directory.add_user_to_group(dept.group_dn, after.user_dn)
        for dept in self.store.get_departments_by_ids(old_ids - new_ids):
            self.directory.remove_user_from_group(dept.group_dn, after.user_dn)

    def _reactivate_user(self, stored: User, incoming: User):
        """Bring back a user marked left who is on the active roster again."""
        merged = merge_user(stored, incoming)
        merged.status = UserStatus.ACTIVE
        self.directory.create_user(merged)
        for dept in self.store.get_departments_by_ids(merged.department_id_list):
            self.directory.add_user_to_group(dept.group_dn, merged.user_dn)
        self.store.update_user(merged)
        self.tracker.mark_synced(EntityKind.USER, merged.id)
        logger.info(f"Reactivated user {merged.username}")

    # Leavers

    def _find_leavers(self, roster: List[User]) -> List[User]:
        """
        Active stored users of this source who have left.

        Platforms with a leaver listing report them directly; for the others,
        every active user of this source missing from the roster has left.
        """
        if self.source_api.supports_leaver_listing:
            leavers = []
            for remote_id in self.source_api.fetch_leaver_ids(self.leave_range_days):
                leavers.extend(self.store.filter_users(Criteria.where(
                    source_user_id=source_key(self.flag, coerce_id(remote_id)),
                    status=UserStatus.ACTIVE)))
        else:
            active = self.store.filter_users(Criteria.where(source=self.flag, status=UserStatus.ACTIVE))
            if active and not roster:
                raise InvariantError(f"{self.flag} returned an empty roster while {len(active)} users are "
                                     f"active; refusing to deprovision everyone")
            present = {user.username for user in roster}
            leavers = [user for user in active if user.username not in present]

        leavers = [user for user in leavers if user.user_dn != self.admin_dn]
        logger.info(f"Found {len(leavers)} leavers for {self.flag}")
        return leavers

    def _deprovision(self, user: User):
        """Delete the directory entry first; the status flips to left only once that succeeded."""
        self.directory.delete_user(user.user_dn)
        self.tracker.mark_left(user)
        logger.info(f"Deprovisioned leaver {user.username}")

    def _fail(self, result: SyncResult, error: ReconcileError):
        result.success = False
        result.error = error
        logger.error(f"{self.flag} {result.operation} sync aborted: {error}")
