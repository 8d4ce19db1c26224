"""
SQLAlchemy-backed record store.

Persists departments and users in two tables of any database SQLAlchemy can
reach (PostgreSQL or MySQL in production, SQLite for local runs).
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import (Column, Engine, Integer, MetaData, String, Table, Text, and_,
                        create_engine, insert, select, update)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ldap_reconcile.errors import NotFoundError, PersistenceError
from ldap_reconcile.models import Department, EntityKind, SyncState, User, UserStatus
from .base import Criteria, RecordStore

logger = logging.getLogger(__name__)

metadata = MetaData()

departments_table = Table(
    'departments', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(128), nullable=False),
    Column('source_dept_id', String(128), nullable=False, index=True),
    Column('source_dept_parent_id', String(128), nullable=False),
    Column('parent_id', Integer, nullable=False, default=0),
    Column('group_dn', String(512), nullable=False, unique=True),
    Column('group_type', String(16), nullable=False, default='cn'),
    Column('source', String(64), nullable=False, default=''),
    Column('creator', String(64), nullable=False, default=''),
    Column('remark', Text, nullable=False, default=''),
    Column('sync_state', String(16), nullable=False, default=SyncState.PENDING.value),
)

users_table = Table(
    'users', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('username', String(128), nullable=False, index=True),
    Column('source_user_id', String(128), nullable=False, index=True),
    Column('nickname', String(128), nullable=False, default=''),
    Column('given_name', String(128), nullable=False, default=''),
    Column('introduction', Text, nullable=False, default=''),
    Column('mail', String(256), nullable=False, default=''),
    Column('job_number', String(64), nullable=False, default=''),
    Column('mobile', String(32), nullable=False, default=''),
    Column('postal_address', Text, nullable=False, default=''),
    Column('position', String(128), nullable=False, default=''),
    Column('departments', Text, nullable=False, default=''),
    Column('department_ids', Text, nullable=False, default=''),
    Column('role', String(64), nullable=False, default=''),
    Column('password', String(256), nullable=False, default=''),
    Column('creator', String(64), nullable=False, default=''),
    Column('source', String(64), nullable=False, default=''),
    Column('user_dn', String(512), nullable=False, unique=True),
    Column('status', String(16), nullable=False, default=UserStatus.ACTIVE.value),
    Column('sync_state', String(16), nullable=False, default=SyncState.PENDING.value),
)

DEPARTMENT_COLUMNS = [column.name for column in departments_table.columns]
USER_COLUMNS = [column.name for column in users_table.columns]


def _department_row(department: Department) -> Dict[str, Any]:
    row = {name: getattr(department, name) for name in DEPARTMENT_COLUMNS if name != 'id'}
    row['sync_state'] = department.sync_state.value
    return row


def _user_row(user: User) -> Dict[str, Any]:
    row = {name: getattr(user, name) for name in USER_COLUMNS if name != 'id'}
    row['status'] = user.status.value
    row['sync_state'] = user.sync_state.value
    return row


def _to_department(row) -> Department:
    values = dict(row._mapping)
    values['sync_state'] = SyncState(values['sync_state'])
    return Department(**values)


def _to_user(row) -> User:
    values = dict(row._mapping)
    values['status'] = UserStatus(values['status'])
    values['sync_state'] = SyncState(values['sync_state'])
    return User(**values)


class SQLStore(RecordStore):
    """
    RecordStore over SQLAlchemy Core.

    Every mutation runs in its own transaction, so a failure mid-pass leaves
    earlier entities committed.
    """

    def __init__(self, database_url: str, pool_size: int = 5, create_schema: bool = True,
                 engine: Optional[Engine] = None):
        """
        Initialize the store.

        Args:
            database_url: SQLAlchemy URL (``postgresql+psycopg2://...``, ``sqlite:///reconcile.db``)
            pool_size: Connection pool size for server databases
            create_schema: Create missing tables on startup
            engine: Pre-built engine, mainly for tests
        """
        self.database_url = database_url
        try:
            self.engine = engine or self._create_engine(database_url, pool_size)
            if create_schema:
                metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to initialize database {self._safe_url()}: {e}")
        logger.info(f"SQL store initialized for {self._safe_url()}")

    def _create_engine(self, database_url: str, pool_size: int) -> Engine:
        if database_url.startswith('sqlite'):
            return create_engine(database_url)
        return create_engine(database_url, pool_size=pool_size, pool_pre_ping=True)

    def _safe_url(self) -> str:
        """Database URL with the password masked, for log messages."""
        try:
            return self.engine.url.render_as_string(hide_password=True)
        except AttributeError:
            return self.database_url.split('@')[-1]

    def _where(self, table: Table, criteria: Criteria):
        clauses = []
        for name, value in criteria.plain_pairs():
            if name not in table.c:
                raise PersistenceError(f"Unknown {table.name} field in filter: {name}")
            clauses.append(table.c[name] == value)
        return and_(*clauses) if clauses else None

    def _select(self, table: Table, criteria: Criteria):
        statement = select(table).order_by(table.c.id)
        clause = self._where(table, criteria)
        if clause is not None:
            statement = statement.where(clause)
        try:
            with self.engine.connect() as connection:
                return connection.execute(statement).fetchall()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Query on {table.name} ({criteria}) failed: {e}")

    def filter_departments(self, criteria: Criteria) -> List[Department]:
        return [_to_department(row) for row in self._select(departments_table, criteria)]

    def filter_users(self, criteria: Criteria) -> List[User]:
        return [_to_user(row) for row in self._select(users_table, criteria)]

    def _insert(self, table: Table, row: Dict[str, Any], entity_id: str) -> int:
        try:
            with self.engine.begin() as connection:
                result = connection.execute(insert(table).values(**row))
                return result.inserted_primary_key[0]
        except IntegrityError as e:
            raise PersistenceError(f"Duplicate {table.name} row: {e.orig}", entity_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Insert into {table.name} failed: {e}", entity_id)

    def _update(self, table: Table, row_id: int, values: Dict[str, Any], entity_id: Optional[str] = None):
        try:
            with self.engine.begin() as connection:
                result = connection.execute(update(table).where(table.c.id == row_id).values(**values))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Update of {table.name} id {row_id} failed: {e}", entity_id)
        if result.rowcount == 0:
            raise NotFoundError(f"{table.name} id {row_id} not found", entity_id)

    def add_department(self, department: Department) -> Department:
        new_id = self._insert(departments_table, _department_row(department), department.source_dept_id)
        return self.find_department(Criteria.where(id=new_id))

    def add_user(self, user: User) -> User:
        new_id = self._insert(users_table, _user_row(user), user.source_user_id)
        return self.find_user(Criteria.where(id=new_id))

    def update_user(self, user: User) -> User:
        self._update(users_table, user.id, _user_row(user), user.source_user_id)
        return self.find_user(Criteria.where(id=user.id))

    def change_user_status(self, user_id: int, status: UserStatus):
        self._update(users_table, user_id, {'status': status.value})

    def change_sync_state(self, kind: EntityKind, entity_id: int, state: SyncState):
        table = departments_table if kind is EntityKind.DEPARTMENT else users_table
        self._update(table, entity_id, {'sync_state': state.value})

    def close(self):
        self.engine.dispose()
        logger.debug("SQL store connections released")
