"""
In-process record store.

Keeps rows in dictionaries and hands out copies, so callers never share state
with the store. Used for dry runs and in tests.
"""

import copy
import logging
from typing import Dict, List

from ldap_reconcile.errors import NotFoundError, PersistenceError
from ldap_reconcile.models import Department, EntityKind, SyncState, User, UserStatus
from .base import Criteria, RecordStore

logger = logging.getLogger(__name__)


class InMemoryStore(RecordStore):
    """Dictionary-backed RecordStore; ``write_count`` counts every mutation."""

    def __init__(self):
        self.departments: Dict[int, Department] = {}
        self.users: Dict[int, User] = {}
        self.write_count = 0
        self._next_id = {EntityKind.DEPARTMENT: 1, EntityKind.USER: 1}

    def _allocate_id(self, kind: EntityKind) -> int:
        entity_id = self._next_id[kind]
        self._next_id[kind] += 1
        return entity_id

    def filter_departments(self, criteria: Criteria) -> List[Department]:
        return [copy.deepcopy(dept) for _, dept in sorted(self.departments.items())
                if criteria.matches(dept)]

    def filter_users(self, criteria: Criteria) -> List[User]:
        return [copy.deepcopy(user) for _, user in sorted(self.users.items())
                if criteria.matches(user)]

    def add_department(self, department: Department) -> Department:
        if any(dept.group_dn == department.group_dn for dept in self.departments.values()):
            raise PersistenceError(f"Duplicate group_dn {department.group_dn}", department.source_dept_id)
        stored = copy.deepcopy(department)
        stored.id = self._allocate_id(EntityKind.DEPARTMENT)
        self.departments[stored.id] = stored
        self.write_count += 1
        logger.debug(f"Stored department {stored.group_dn} as id {stored.id}")
        return copy.deepcopy(stored)

    def add_user(self, user: User) -> User:
        if any(existing.user_dn == user.user_dn for existing in self.users.values()):
            raise PersistenceError(f"Duplicate user_dn {user.user_dn}", user.source_user_id)
        stored = copy.deepcopy(user)
        stored.id = self._allocate_id(EntityKind.USER)
        self.users[stored.id] = stored
        self.write_count += 1
        logger.debug(f"Stored user {stored.user_dn} as id {stored.id}")
        return copy.deepcopy(stored)

    def update_user(self, user: User) -> User:
        if user.id not in self.users:
            raise NotFoundError(f"User id {user.id} not found", user.source_user_id)
        self.users[user.id] = copy.deepcopy(user)
        self.write_count += 1
        return copy.deepcopy(user)

    def change_user_status(self, user_id: int, status: UserStatus):
        if user_id not in self.users:
            raise NotFoundError(f"User id {user_id} not found")
        self.users[user_id].status = status
        self.write_count += 1

    def change_sync_state(self, kind: EntityKind, entity_id: int, state: SyncState):
        rows = self.departments if kind is EntityKind.DEPARTMENT else self.users
        if entity_id not in rows:
            raise NotFoundError(f"{kind.value} id {entity_id} not found")
        rows[entity_id].sync_state = state
        self.write_count += 1
