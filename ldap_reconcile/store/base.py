"""
Relational store interface.

The store is the engine's record of every department and user it has seen,
with their lifecycle status and sync state. Implementations must inherit from
RecordStore and implement the abstract methods.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Tuple

from ldap_reconcile.errors import NotFoundError
from ldap_reconcile.models import Department, EntityKind, SyncState, User, UserStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Criteria:
    """
    Typed equality filter over entity fields.

    All pairs must match. Enum values compare equal to their members, so
    ``Criteria.where(status='active')`` and ``Criteria.where(status=UserStatus.ACTIVE)``
    select the same rows.
    """
    pairs: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def where(cls, **fields) -> 'Criteria':
        return cls(tuple(fields.items()))

    def matches(self, entity: Any) -> bool:
        for name, expected in self.pairs:
            if plain_value(getattr(entity, name)) != plain_value(expected):
                return False
        return True

    def plain_pairs(self) -> Tuple[Tuple[str, Any], ...]:
        """Pairs with enum members replaced by their values."""
        return tuple((name, plain_value(value)) for name, value in self.pairs)

    def __str__(self) -> str:
        return ', '.join(f"{name}={value!r}" for name, value in self.plain_pairs()) or '<all>'


def plain_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class RecordStore(ABC):
    """
    Abstract base class for relational stores.

    Lookups that must find a row raise NotFoundError; every other failure of
    the backing store raises PersistenceError.
    """

    @abstractmethod
    def filter_departments(self, criteria: Criteria) -> List[Department]:
        """Departments matching ``criteria`` ordered by id."""
        pass

    @abstractmethod
    def filter_users(self, criteria: Criteria) -> List[User]:
        """Users matching ``criteria`` ordered by id."""
        pass

    @abstractmethod
    def add_department(self, department: Department) -> Department:
        """Persist a new department and return it with its id assigned."""
        pass

    @abstractmethod
    def add_user(self, user: User) -> User:
        """Persist a new user and return it with its id assigned."""
        pass

    @abstractmethod
    def update_user(self, user: User) -> User:
        """Overwrite the stored row with the same id."""
        pass

    @abstractmethod
    def change_user_status(self, user_id: int, status: UserStatus):
        pass

    @abstractmethod
    def change_sync_state(self, kind: EntityKind, entity_id: int, state: SyncState):
        pass

    def close(self):
        """Release any resources held by the store."""
        pass

    # Lookups shared by all implementations

    def find_department(self, criteria: Criteria) -> Department:
        rows = self.filter_departments(criteria)
        if not rows:
            raise NotFoundError(f"No department matches {criteria}")
        return rows[0]

    def department_exists(self, criteria: Criteria) -> bool:
        return bool(self.filter_departments(criteria))

    def list_departments(self) -> List[Department]:
        return self.filter_departments(Criteria())

    def get_departments_by_ids(self, ids: Iterable[int]) -> List[Department]:
        wanted = set(ids)
        return [dept for dept in self.list_departments() if dept.id in wanted]

    def find_user(self, criteria: Criteria) -> User:
        rows = self.filter_users(criteria)
        if not rows:
            raise NotFoundError(f"No user matches {criteria}")
        return rows[0]

    def user_exists(self, criteria: Criteria) -> bool:
        return bool(self.filter_users(criteria))

    def list_users(self) -> List[User]:
        return self.filter_users(Criteria())

    def get_users_by_ids(self, ids: Iterable[int]) -> List[User]:
        wanted = set(ids)
        return [user for user in self.list_users() if user.id in wanted]

    def department_members(self, department_id: int) -> List[User]:
        """Users whose department assignment includes ``department_id``."""
        return [user for user in self.list_users() if department_id in user.department_id_list]

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
