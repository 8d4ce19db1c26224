"""
Drift audit between the store and the live directory.

Finds stored departments and users whose DN is missing from the directory and
marks them stale. The audit never writes to the directory; a later sync pass
or store push is what brings the entries back.
"""

import logging
import time
from typing import Any, Dict

from ldap_reconcile.diff import diff_by_key, normalize_dn
from ldap_reconcile.directory import LDAPDirectory
from ldap_reconcile.errors import ReconcileError
from ldap_reconcile.models import EntityKind, SyncResult, UserStatus
from ldap_reconcile.state import SyncStateTracker
from ldap_reconcile.store.base import RecordStore

logger = logging.getLogger(__name__)


class DriftDetector:
    """Marks stored entities stale when the directory has no entry for them."""

    def __init__(self, directory: LDAPDirectory, store: RecordStore, ldap_config: Dict[str, Any]):
        self.directory = directory
        self.store = store
        self.tracker = SyncStateTracker(store)
        self.base_dn = ldap_config['base_dn']
        self.admin_dn = ldap_config.get('admin_dn') or ldap_config.get('bind_dn')

    def detect_department_drift(self) -> SyncResult:
        """Mark every stored department whose group DN is absent from the directory stale."""
        result = SyncResult(source='store', operation='department drift', counts={'checked': 0, 'stale': 0})
        started = time.time()
        try:
            departments = self.store.list_departments()
            directory_dns = self.directory.list_group_dns()
            missing = diff_by_key(departments, directory_dns,
                                  key=lambda dept: normalize_dn(dept.group_dn), their_key=normalize_dn)
            result.count('checked', len(departments))

            for dept in missing:
                if normalize_dn(dept.group_dn) == normalize_dn(self.base_dn):
                    continue
                self.tracker.mark_stale(EntityKind.DEPARTMENT, dept.id)
                result.count('stale')
        except ReconcileError as e:
            result.success = False
            result.error = e
            logger.error(f"Department drift audit aborted: {e}")

        result.runtime_seconds = time.time() - started
        logger.info(result.summary)
        return result

    def detect_user_drift(self) -> SyncResult:
        """Mark every active stored user whose DN is absent from the directory stale."""
        result = SyncResult(source='store', operation='user drift', counts={'checked': 0, 'stale': 0})
        started = time.time()
        try:
            # Users that left are expected to be missing
            users = [user for user in self.store.list_users() if user.status is UserStatus.ACTIVE]
            directory_dns = self.directory.list_user_dns()
            missing = diff_by_key(users, directory_dns,
                                  key=lambda user: normalize_dn(user.user_dn), their_key=normalize_dn)
            result.count('checked', len(users))

            for user in missing:
                if self.admin_dn and normalize_dn(user.user_dn) == normalize_dn(self.admin_dn):
                    continue
                self.tracker.mark_stale(EntityKind.USER, user.id)
                result.count('stale')
        except ReconcileError as e:
            result.success = False
            result.error = e
            logger.error(f"User drift audit aborted: {e}")

        result.runtime_seconds = time.time() - started
        logger.info(result.summary)
        return result
