"""
Per-entity sync state and user lifecycle transitions.

The tracker is the only place that writes ``sync_state`` and ``status``
columns, so every transition is logged the same way.
"""

import logging

from ldap_reconcile.errors import InvariantError
from ldap_reconcile.logging_setup import audit_logger
from ldap_reconcile.models import EntityKind, SyncState, User, UserStatus
from ldap_reconcile.store.base import RecordStore

logger = logging.getLogger(__name__)


class SyncStateTracker:
    """
    Records whether stored entities are present in the directory.

    ``synced`` is set after a successful directory write, ``stale`` by the
    drift audit when a stored entity is missing from the directory. Stale is
    advisory: nothing is repaired automatically.
    """

    def __init__(self, store: RecordStore):
        self.store = store

    def mark_synced(self, kind: EntityKind, entity_id: int):
        self.store.change_sync_state(kind, entity_id, SyncState.SYNCED)
        logger.debug(f"Marked {kind.value} {entity_id} synced")

    def mark_pending(self, kind: EntityKind, entity_id: int):
        self.store.change_sync_state(kind, entity_id, SyncState.PENDING)
        logger.debug(f"Marked {kind.value} {entity_id} pending")

    def mark_stale(self, kind: EntityKind, entity_id: int):
        self.store.change_sync_state(kind, entity_id, SyncState.STALE)
        logger.info(f"Marked {kind.value} {entity_id} stale")

    def mark_left(self, user: User):
        """
        Flip an active user to ``left``.

        Only call this after the directory entry has been removed.

        Raises:
            InvariantError: If the user is not currently active
        """
        if user.status is not UserStatus.ACTIVE:
            raise InvariantError(f"Cannot mark {user.username} left from status {user.status.value}",
                                 user.source_user_id)
        self.store.change_user_status(user.id, UserStatus.LEFT)
        audit_logger.log_status_change(user.username, UserStatus.ACTIVE.value, UserStatus.LEFT.value, user.source)
