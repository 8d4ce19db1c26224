"""
LDAP directory connector.

This module connects to the target LDAP server and performs the group and
user operations the reconciler needs: lookups, idempotent creation, profile
updates, membership changes, deletion and full DN listings.
"""

import logging
import ssl
import time
from typing import Any, Dict, List, Optional

from ldap3 import (ALL, BASE, HASHED_SALTED_SHA, MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE,
                   SUBTREE, Connection, Server, Tls)
from ldap3.core.exceptions import LDAPBindError, LDAPException, LDAPSocketOpenError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn
from ldap3.utils.hashed import hashed

from ldap_reconcile.errors import DirectoryError
from ldap_reconcile.logging_setup import audit_logger
from ldap_reconcile.models import Department, User

logger = logging.getLogger(__name__)

# LDAP result codes the connector tolerates
RESULT_NO_SUCH_OBJECT = 32
RESULT_ATTRIBUTE_OR_VALUE_EXISTS = 20
RESULT_NO_SUCH_ATTRIBUTE = 16

GROUP_OBJECT_CLASSES = ['top', 'groupOfUniqueNames']
OU_OBJECT_CLASSES = ['top', 'organizationalUnit']
USER_OBJECT_CLASSES = ['top', 'person', 'organizationalPerson', 'inetOrgPerson']

GROUP_LIST_FILTER = '(|(objectClass=groupOfUniqueNames)(objectClass=organizationalUnit))'
USER_LIST_FILTER = '(objectClass=inetOrgPerson)'

# User model field -> inetOrgPerson attribute
USER_ATTRIBUTE_MAP = {
    'nickname': 'displayName',
    'given_name': 'givenName',
    'introduction': 'description',
    'mail': 'mail',
    'job_number': 'employeeNumber',
    'mobile': 'mobile',
    'postal_address': 'postalAddress',
    'position': 'title',
    'departments': 'departmentNumber',
}


def hash_password(password: str) -> str:
    """Salted-SHA hash a clear-text password; values already carrying a {SCHEME} prefix pass through."""
    if password.startswith('{'):
        return password
    return hashed(HASHED_SALTED_SHA, password)


class DirectoryConnectionError(DirectoryError):
    """Raised when the LDAP connection or bind fails."""
    pass


class EntryNotFoundError(DirectoryError):
    """Raised when a lookup matches no entry."""
    pass


class LDAPDirectory:
    """
    Connector for the target LDAP directory.

    Groups are stored as ``groupOfUniqueNames`` (or ``organizationalUnit`` for
    ``ou`` departments) and users as ``inetOrgPerson`` under the user base DN.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the connector with the ``ldap`` configuration section.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config['base_dn']
        self.user_base_dn = config.get('user_base_dn') or f"ou=people,{self.base_dn}"
        self.group_base_dn = config.get('group_base_dn') or self.base_dn
        self.admin_dn = config.get('admin_dn') or self.bind_dn

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Open and bind the connection, retrying socket and bind failures.

        Raises:
            DirectoryConnectionError: If every attempt fails
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait if retry_wait is not None else self.retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPException(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Connected and bound to LDAP server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._drop_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        raise DirectoryConnectionError(
            f"Failed to connect to LDAP after {max_retries} attempts: {last_exception}")

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
        return Tls(**tls_config)

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring unbind failure on broken connection: {e}")
            self.connection = None

    def disconnect(self):
        """Close the LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _require_connection(self):
        if not self._connected:
            raise DirectoryConnectionError("Not connected to LDAP server")

    def _result_code(self) -> int:
        return self.connection.result.get('result', -1)

    def _result_text(self) -> str:
        result = self.connection.result
        return f"{result.get('description')} ({result.get('result')}): {result.get('message', '')}".strip()

    # Lookups

    def find_by_filter(self, search_filter: str, search_base: Optional[str] = None,
                       attributes: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Return the first entry matching ``search_filter`` as ``{'dn': ..., attr: value}``.

        Raises:
            EntryNotFoundError: If nothing matches
            DirectoryError: If the search fails
        """
        entries = self._search(search_base or self.base_dn, search_filter, SUBTREE,
                               attributes or ['*'], size_limit=1)
        if not entries:
            raise EntryNotFoundError(f"No entry matches {search_filter} under {search_base or self.base_dn}")
        return entries[0]

    def exists(self, search_filter: str, search_base: Optional[str] = None) -> bool:
        """True if any entry below ``search_base`` matches ``search_filter``."""
        return bool(self._search(search_base or self.base_dn, search_filter, SUBTREE, [], size_limit=1))

    def entry_exists(self, dn: str) -> bool:
        """True if an entry with exactly this DN exists."""
        return bool(self._search(dn, '(objectClass=*)', BASE, [], size_limit=1))

    def _search(self, search_base: str, search_filter: str, scope, attributes: List[str],
                size_limit: int = 0) -> List[Dict[str, Any]]:
        self._require_connection()
        try:
            success = self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes,
                size_limit=size_limit
            )
        except LDAPException as e:
            raise DirectoryError(f"Search {search_filter} under {search_base} failed: {e}")

        if not success:
            if self._result_code() == RESULT_NO_SUCH_OBJECT:
                return []
            # sizeLimitExceeded still returns the entries asked for
            if not self.connection.entries:
                raise DirectoryError(f"Search {search_filter} under {search_base} failed: {self._result_text()}")

        results = []
        for entry in self.connection.entries:
            data = {'dn': str(entry.entry_dn)}
            for attribute in entry.entry_attributes:
                data[attribute] = entry[attribute].value
            results.append(data)
        return results

    def _list_dns(self, search_base: str, search_filter: str) -> List[str]:
        self._require_connection()
        try:
            entries = self.connection.extend.standard.paged_search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=[],
                paged_size=self.page_size,
                generator=False
            )
        except LDAPException as e:
            raise DirectoryError(f"Listing {search_filter} under {search_base} failed: {e}")
        return [entry['dn'] for entry in entries if entry.get('type') == 'searchResEntry']

    def list_group_dns(self) -> List[str]:
        """DNs of every group or organizational unit below the group base DN."""
        dns = self._list_dns(self.group_base_dn, GROUP_LIST_FILTER)
        logger.info(f"Directory holds {len(dns)} groups under {self.group_base_dn}")
        return dns

    def list_user_dns(self) -> List[str]:
        """DNs of every user entry below the user base DN."""
        dns = self._list_dns(self.user_base_dn, USER_LIST_FILTER)
        logger.info(f"Directory holds {len(dns)} users under {self.user_base_dn}")
        return dns

    # Mutations

    def user_dn(self, username: str) -> str:
        return f"uid={escape_rdn(username)},{self.user_base_dn}"

    def create_group(self, department: Department) -> bool:
        """
        Create the directory entry for a department.

        Returns:
            True if the entry was created, False if it already existed

        Raises:
            DirectoryError: If the add fails
        """
        dn = department.group_dn
        if self.entry_exists(dn):
            logger.debug(f"Group {dn} already present in directory")
            return False

        if department.group_type == 'ou':
            object_classes = OU_OBJECT_CLASSES
            attributes = {'ou': department.name}
        else:
            object_classes = GROUP_OBJECT_CLASSES
            # groupOfUniqueNames requires at least one member
            attributes = {'cn': department.name, 'uniqueMember': [self.admin_dn]}
        if department.remark:
            attributes['description'] = department.remark

        self._add(dn, object_classes, attributes, department.source_dept_id)
        return True

    def create_user(self, user: User) -> bool:
        """
        Create the directory entry for a user; clear-text passwords are stored salted-SHA hashed.

        Returns:
            True if the entry was created, False if it already existed
        """
        dn = user.user_dn
        if self.entry_exists(dn):
            logger.debug(f"User {dn} already present in directory")
            return False

        attributes = {
            'uid': user.username,
            'cn': user.username,
            'sn': user.nickname or user.username,
        }
        attributes.update(self._profile_attributes(user))
        if user.password:
            attributes['userPassword'] = hash_password(user.password)

        self._add(dn, USER_OBJECT_CLASSES, attributes, user.source_user_id)
        return True

    def _profile_attributes(self, user: User) -> Dict[str, Any]:
        return {attribute: getattr(user, field) for field, attribute in USER_ATTRIBUTE_MAP.items()
                if getattr(user, field)}

    def _add(self, dn: str, object_classes: List[str], attributes: Dict[str, Any], entity_id: str):
        self._require_connection()
        try:
            success = self.connection.add(dn, object_classes, attributes)
        except LDAPException as e:
            audit_logger.log_directory_operation('add', dn, False)
            raise DirectoryError(f"Failed to add {dn}: {e}", entity_id)
        audit_logger.log_directory_operation('add', dn, success)
        if not success:
            raise DirectoryError(f"Failed to add {dn}: {self._result_text()}", entity_id)
        logger.info(f"Added directory entry {dn}")

    def update_user(self, user: User):
        """Replace the profile attributes of an existing user entry; empty fields are left untouched."""
        changes = {attribute: [(MODIFY_REPLACE, [value])]
                   for attribute, value in self._profile_attributes(user).items()}
        if user.nickname:
            changes['sn'] = [(MODIFY_REPLACE, [user.nickname])]
        if not changes:
            return
        self._modify(user.user_dn, changes, user.source_user_id)
        logger.info(f"Updated directory entry {user.user_dn}")

    def add_user_to_group(self, group_dn: str, user_dn: str):
        """Add ``user_dn`` as a uniqueMember of ``group_dn``; existing membership is not an error."""
        self._modify(group_dn, {'uniqueMember': [(MODIFY_ADD, [user_dn])]}, user_dn,
                     tolerated=(RESULT_ATTRIBUTE_OR_VALUE_EXISTS,))
        logger.debug(f"Added {user_dn} to group {group_dn}")

    def remove_user_from_group(self, group_dn: str, user_dn: str):
        self._modify(group_dn, {'uniqueMember': [(MODIFY_DELETE, [user_dn])]}, user_dn,
                     tolerated=(RESULT_NO_SUCH_ATTRIBUTE,))
        logger.debug(f"Removed {user_dn} from group {group_dn}")

    def _modify(self, dn: str, changes: Dict[str, Any], entity_id: str, tolerated: tuple = ()):
        self._require_connection()
        try:
            success = self.connection.modify(dn, changes)
        except LDAPException as e:
            audit_logger.log_directory_operation('modify', dn, False)
            raise DirectoryError(f"Failed to modify {dn}: {e}", entity_id)
        if not success and self._result_code() not in tolerated:
            audit_logger.log_directory_operation('modify', dn, False)
            raise DirectoryError(f"Failed to modify {dn}: {self._result_text()}", entity_id)
        audit_logger.log_directory_operation('modify', dn, True)

    def delete_user(self, user_dn: str):
        """
        Remove a user from every group it belongs to, then delete the entry.

        A DN that is already gone counts as deleted.

        Raises:
            DirectoryError: If a membership removal or the delete fails
        """
        member_filter = f"(uniqueMember={escape_filter_chars(user_dn)})"
        for group in self._search(self.group_base_dn, member_filter, SUBTREE, []):
            self.remove_user_from_group(group['dn'], user_dn)

        self._require_connection()
        try:
            success = self.connection.delete(user_dn)
        except LDAPException as e:
            audit_logger.log_directory_operation('delete', user_dn, False)
            raise DirectoryError(f"Failed to delete {user_dn}: {e}", user_dn)
        if not success and self._result_code() != RESULT_NO_SUCH_OBJECT:
            audit_logger.log_directory_operation('delete', user_dn, False)
            raise DirectoryError(f"Failed to delete {user_dn}: {self._result_text()}", user_dn)
        audit_logger.log_directory_operation('delete', user_dn, True)
        logger.info(f"Deleted directory entry {user_dn}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
