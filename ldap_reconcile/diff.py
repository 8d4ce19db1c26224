"""
Set difference between two directory snapshots.
"""

from typing import Callable, Hashable, Iterable, List, TypeVar

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn

from ldap_reconcile.errors import ValidationError

T = TypeVar('T')
U = TypeVar('U')


def diff_by_key(ours: Iterable[T], theirs: Iterable[U], key: Callable[[T], Hashable],
                their_key: Callable[[U], Hashable] = None) -> List[T]:
    """
    Return every element of ``ours`` whose key is absent from ``theirs``.

    The result keeps the order of ``ours``. Neither input is modified.

    Args:
        ours: Snapshot to check (e.g. store rows)
        theirs: Snapshot to check against (e.g. directory DNs)
        key: Key function applied to elements of ``ours``
        their_key: Key function for ``theirs``; defaults to ``key``
    """
    their_key = their_key or key
    present = {their_key(item) for item in theirs}
    return [item for item in ours if key(item) not in present]


def normalize_dn(dn: str) -> str:
    """
    Compare DNs case-insensitively and without spaces around separators.

    Raises:
        ValidationError: If ``dn`` is not a valid DN
    """
    try:
        avas = parse_dn(dn, strip=True)
    except LDAPInvalidDnError as e:
        raise ValidationError(f"Invalid DN: {e}", dn)
    return ''.join(f"{attr.lower()}={value.lower()}{separator}" for attr, value, separator in avas)
