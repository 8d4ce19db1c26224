"""
Declarative field-merge policy for updating existing users.

An incoming record from a source only replaces a stored value when it actually
carries one. Identity and credential fields are never taken from the source.
"""

from dataclasses import dataclass, replace
from typing import Tuple

from ldap_reconcile.models import User


@dataclass(frozen=True)
class FieldPolicy:
    """How one attribute is merged: ``overwrite_if_nonempty`` or always keep the stored value."""
    name: str
    overwrite_if_nonempty: bool = True


USER_MERGE_POLICY: Tuple[FieldPolicy, ...] = (
    FieldPolicy('nickname'),
    FieldPolicy('given_name'),
    FieldPolicy('introduction'),
    FieldPolicy('mail'),
    FieldPolicy('job_number'),
    FieldPolicy('mobile'),
    FieldPolicy('postal_address'),
    FieldPolicy('position'),
    FieldPolicy('departments'),
    FieldPolicy('department_ids'),
    # Identity and credentials always come from the stored record
    FieldPolicy('id', overwrite_if_nonempty=False),
    FieldPolicy('user_dn', overwrite_if_nonempty=False),
    FieldPolicy('creator', overwrite_if_nonempty=False),
    FieldPolicy('source', overwrite_if_nonempty=False),
    FieldPolicy('password', overwrite_if_nonempty=False),
    FieldPolicy('role', overwrite_if_nonempty=False),
    FieldPolicy('status', overwrite_if_nonempty=False),
    FieldPolicy('sync_state', overwrite_if_nonempty=False),
)


def merge_user(stored: User, incoming: User, policy: Tuple[FieldPolicy, ...] = USER_MERGE_POLICY) -> User:
    """
    Build the updated user from the stored record and a freshly fetched one.

    Returns a new User; neither argument is modified. Fields not named in the
    policy (username, source ids) keep the stored values.
    """
    changes = {}
    for rule in policy:
        value = getattr(incoming, rule.name)
        if rule.overwrite_if_nonempty and value not in ('', None):
            changes[rule.name] = value
    return replace(stored, **changes)


def changed_fields(before: User, after: User, policy: Tuple[FieldPolicy, ...] = USER_MERGE_POLICY) -> Tuple[str, ...]:
    """Names of mutable fields whose value differs between two versions of a user."""
    return tuple(rule.name for rule in policy
                 if rule.overwrite_if_nonempty and getattr(before, rule.name) != getattr(after, rule.name))
