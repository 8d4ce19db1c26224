"""
Canonical entity models shared by the reconciliation engine.

Source payloads are normalized into these shapes before they reach the
tree builder, the reconciler or the store.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class UserStatus(Enum):
    """Lifecycle status of a person in their source system"""
    ACTIVE = "active"
    LEFT = "left"


class SyncState(Enum):
    """Whether a stored entity is known to be present in the directory"""
    SYNCED = "synced"
    PENDING = "pending"
    STALE = "stale"


class EntityKind(Enum):
    """Kinds of entities tracked by the store"""
    DEPARTMENT = "department"
    USER = "user"


@dataclass
class Department:
    """A department (LDAP group) from one source"""
    name: str
    source_dept_id: str
    source_dept_parent_id: str
    id: Optional[int] = None
    parent_id: int = 0
    group_dn: str = ""
    group_type: str = "cn"
    source: str = ""
    creator: str = ""
    remark: str = ""
    sync_state: SyncState = SyncState.PENDING


@dataclass
class User:
    """A person (LDAP user entry) from one source"""
    username: str
    source_user_id: str
    id: Optional[int] = None
    nickname: str = ""
    given_name: str = ""
    introduction: str = ""
    mail: str = ""
    job_number: str = ""
    mobile: str = ""
    postal_address: str = ""
    position: str = ""
    departments: str = ""
    department_ids: str = ""
    source_dept_ids: List[str] = field(default_factory=list)
    role: str = ""
    password: str = ""
    creator: str = ""
    source: str = ""
    user_dn: str = ""
    status: UserStatus = UserStatus.ACTIVE
    sync_state: SyncState = SyncState.PENDING

    @property
    def department_id_list(self) -> List[int]:
        """Internal department ids parsed from the comma-joined column."""
        return [int(part) for part in self.department_ids.split(',') if part.strip()]


def source_key(source_flag: str, remote_id: str) -> str:
    """Compose the per-source identity key used for departments and users."""
    return f"{source_flag}_{remote_id}"


@dataclass
class SyncResult:
    """Outcome of one sync pass or audit for one source"""
    source: str
    operation: str
    success: bool = True
    counts: Dict[str, int] = field(default_factory=dict)
    error: Optional[Exception] = None
    runtime_seconds: float = 0.0

    def count(self, name: str, amount: int = 1):
        self.counts[name] = self.counts.get(name, 0) + amount

    @property
    def summary(self) -> str:
        """Human-readable one-line summary."""
        parts = ', '.join(f"{value} {name}" for name, value in self.counts.items()) or 'no changes'
        status = 'completed' if self.success else f'FAILED ({self.error})'
        return f"{self.source} {self.operation} {status}: {parts}"
