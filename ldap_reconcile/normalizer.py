"""
Normalization of source payloads into canonical entities.

HR/IM platforms return departments and staff in their own shapes. This module
maps them onto the engine's Department and User models and tags every record
with the flag of the source it came from.
"""

import logging
from typing import Any, Dict, Iterable, List, Tuple

from ldap_reconcile.errors import ValidationError
from ldap_reconcile.models import Department, User, source_key

logger = logging.getLogger(__name__)


# Field aliases, most specific first
DEPT_ID_FIELDS = ('dept_id', 'department_id', 'id')
DEPT_PARENT_FIELDS = ('parent_id', 'parentid', 'parent')
DEPT_NAME_FIELDS = ('name', 'dept_name')
DEPT_REMARK_FIELDS = ('remark', 'description')

USER_ID_FIELDS = ('userid', 'userId', 'user_id', 'id')
USER_FIELD_ALIASES = {
    'nickname': ('nickname', 'name'),
    'given_name': ('given_name', 'givenName'),
    'introduction': ('introduction', 'remark'),
    'mail': ('mail', 'email', 'org_email', 'biz_mail'),
    'job_number': ('job_number', 'jobnumber', 'job_num'),
    'mobile': ('mobile', 'phone'),
    'postal_address': ('postal_address', 'address', 'work_place'),
    'position': ('position', 'title'),
}
USER_DEPT_FIELDS = ('dept_id_list', 'department', 'departments', 'dept_ids')


def coerce_id(value: Any) -> str:
    """
    Coerce a numeric or string identifier to its canonical string form.

    Integral floats (``10.0``) become ``"10"``; ``None`` becomes ``""``.
    """
    if value is None:
        return ''
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _pick(record: Dict[str, Any], fields: Tuple[str, ...]) -> Any:
    """Return the first present, non-None value among alias fields."""
    for name in fields:
        value = record.get(name)
        if value is not None and value != '':
            return value
    return None


def _pick_text(record: Dict[str, Any], fields: Tuple[str, ...]) -> str:
    value = _pick(record, fields)
    return '' if value is None else str(value).strip()


def _describe(record: Any) -> str:
    """Short description of a raw record for error messages."""
    if isinstance(record, dict):
        name = record.get('name') or record.get('username')
        ident = _pick(record, DEPT_ID_FIELDS + USER_ID_FIELDS)
        return f"id={ident!r} name={name!r}"
    return repr(record)[:80]


def _split_ids(value: Any) -> List[str]:
    """Split a list or comma/semicolon-joined string of ids into strings."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        parts = list(value)
    else:
        parts = str(value).replace(';', ',').split(',')
    return [coerce_id(part) for part in parts if coerce_id(part)]


def normalize_departments(source_flag: str, raw_departments: Iterable[Dict[str, Any]]) -> List[Department]:
    """
    Map raw department payloads to Department models.

    Args:
        source_flag: Flag of the originating source (e.g. ``dingtalk``)
        raw_departments: Department dictionaries as returned by the source API

    Returns:
        Departments keyed ``<flag>_<remoteId>`` with parent keys in the same form

    Raises:
        ValidationError: If a record lacks an id, a parent id or a name
    """
    departments = []
    for index, record in enumerate(raw_departments):
        if not isinstance(record, dict):
            raise ValidationError(f"Department record #{index} is not a mapping: {_describe(record)}")

        remote_id = coerce_id(_pick(record, DEPT_ID_FIELDS))
        if not remote_id:
            raise ValidationError(f"Department record #{index} has no remote id: {_describe(record)}")

        entity_id = source_key(source_flag, remote_id)
        parent_id = coerce_id(_pick(record, DEPT_PARENT_FIELDS))
        if not parent_id:
            raise ValidationError(f"Department has no parent id: {_describe(record)}", entity_id)

        name = _pick_text(record, DEPT_NAME_FIELDS)
        if not name:
            raise ValidationError(f"Department has no name: {_describe(record)}", entity_id)

        departments.append(Department(
            name=name,
            source_dept_id=entity_id,
            source_dept_parent_id=source_key(source_flag, parent_id),
            source=source_flag,
            remark=_pick_text(record, DEPT_REMARK_FIELDS),
        ))

    logger.debug(f"Normalized {len(departments)} departments from {source_flag}")
    return departments


def derive_username(record: Dict[str, Any], remote_id: str) -> str:
    """Pick the login id: explicit username, else mail local part, else remote id."""
    username = _pick_text(record, ('username', 'login'))
    if not username:
        mail = _pick_text(record, USER_FIELD_ALIASES['mail'])
        if '@' in mail:
            username = mail.split('@', 1)[0]
    if not username:
        username = remote_id
    return username.lower()


def normalize_users(source_flag: str, raw_users: Iterable[Dict[str, Any]]) -> List[User]:
    """
    Map raw staff payloads to User models.

    Optional fields missing from the payload stay empty; nothing is synthesized
    beyond the username fallback.

    Raises:
        ValidationError: If a record lacks a remote id
    """
    users = []
    for index, record in enumerate(raw_users):
        if not isinstance(record, dict):
            raise ValidationError(f"User record #{index} is not a mapping: {_describe(record)}")

        remote_id = coerce_id(_pick(record, USER_ID_FIELDS))
        if not remote_id:
            raise ValidationError(f"User record #{index} has no remote id: {_describe(record)}")

        fields = {name: _pick_text(record, aliases) for name, aliases in USER_FIELD_ALIASES.items()}
        dept_ids = _split_ids(_pick(record, USER_DEPT_FIELDS))

        users.append(User(
            username=derive_username(record, remote_id),
            source_user_id=source_key(source_flag, remote_id),
            source=source_flag,
            source_dept_ids=[source_key(source_flag, dept_id) for dept_id in dept_ids],
            **fields
        ))

    duplicates = find_duplicates(user.username for user in users)
    if duplicates:
        raise ValidationError(f"Usernames map to more than one remote user: {', '.join(duplicates)}")

    logger.debug(f"Normalized {len(users)} users from {source_flag}")
    return users


def find_duplicates(keys: Iterable[str]) -> List[str]:
    """Return keys that occur more than once, in first-seen order."""
    seen = set()
    duplicates: List[str] = []
    for key in keys:
        if key in seen and key not in duplicates:
            duplicates.append(key)
        seen.add(key)
    return duplicates

