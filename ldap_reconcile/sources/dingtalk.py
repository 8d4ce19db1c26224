"""
DingTalk API integration module.

Implements SourceAPIBase against the DingTalk open platform (``oapi``). DingTalk
publishes departed employees, so leavers are taken from its listing.
"""

import logging
import time
from typing import Any, Dict, List, Tuple

from .base import SourceAPIBase, SourceAuthenticationError

logger = logging.getLogger(__name__)

ROOT_DEPT_ID = 1
USER_PAGE_SIZE = 100
LEAVER_PAGE_SIZE = 50


class DingTalkAPI(SourceAPIBase):
    """DingTalk client: departments, staff per department, departed employees."""

    supports_leaver_listing = True

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.app_key = self.auth_config.get('app_key')
        self.app_secret = self.auth_config.get('app_secret')
        logger.info(f"Initialized DingTalk API client for {self.name}")

    def _fetch_token(self) -> Tuple[str, int]:
        payload = self.request('GET', '/gettoken',
                               params={'appkey': self.app_key, 'appsecret': self.app_secret},
                               authenticated=False)
        token = payload.get('access_token')
        if not token:
            raise SourceAuthenticationError(f"DingTalk token response for {self.name} has no access_token")
        return token, payload.get('expires_in', 7200)

    def fetch_all_departments(self) -> List[Dict[str, Any]]:
        """
        List all departments below the root.

        The root department itself is not returned by DingTalk; its children
        reference it as parent ``1``.
        """
        payload = self.request('GET', '/department/list', params={'id': ROOT_DEPT_ID, 'fetch_child': 'true'})
        departments = payload.get('department', [])
        logger.info(f"Retrieved {len(departments)} departments from {self.name}")
        return departments

    def fetch_all_users(self) -> List[Dict[str, Any]]:
        """List every user of every department, each user once."""
        dept_ids = [ROOT_DEPT_ID] + [dept['id'] for dept in self.fetch_all_departments()]
        users: Dict[str, Dict[str, Any]] = {}
        for dept_id in dept_ids:
            for user in self._fetch_department_users(dept_id):
                users.setdefault(str(user.get('userid')), user)
        logger.info(f"Retrieved {len(users)} users from {self.name}")
        return list(users.values())

    def _fetch_department_users(self, dept_id: int) -> List[Dict[str, Any]]:
        users = []
        cursor = 0
        while True:
            payload = self.request('POST', '/topapi/v2/user/list',
                                   body={'dept_id': dept_id, 'cursor': cursor, 'size': USER_PAGE_SIZE})
            result = payload.get('result', {})
            users.extend(result.get('list', []))
            if not result.get('has_more'):
                return users
            cursor = result.get('next_cursor')

    def fetch_leaver_ids(self, window_days: int = 0) -> List[str]:
        """
        List ids of departed employees.

        Args:
            window_days: Keep only employees whose last working day falls within
                this many days; 0 returns every departed employee
        """
        leaver_ids = []
        offset = 0
        while True:
            payload = self.request('POST', '/topapi/smartwork/hrm/employee/querydimission',
                                   body={'offset': offset, 'size': LEAVER_PAGE_SIZE})
            result = payload.get('result', {})
            leaver_ids.extend(str(user_id) for user_id in result.get('data_list', []))
            next_cursor = result.get('next_cursor')
            if next_cursor is None:
                break
            offset = next_cursor

        if window_days:
            leaver_ids = self._filter_by_last_work_day(leaver_ids, window_days)

        logger.info(f"Retrieved {len(leaver_ids)} departed employees from {self.name}")
        return leaver_ids

    def _filter_by_last_work_day(self, user_ids: List[str], window_days: int) -> List[str]:
        cutoff_ms = (time.time() - window_days * 86400) * 1000
        recent = []
        for start in range(0, len(user_ids), LEAVER_PAGE_SIZE):
            batch = user_ids[start:start + LEAVER_PAGE_SIZE]
            payload = self.request('POST', '/topapi/smartwork/hrm/employee/listdimission',
                                   body={'userid_list': ','.join(batch)})
            for record in payload.get('result', []):
                if int(record.get('last_work_day', 0)) >= cutoff_ms:
                    recent.append(str(record.get('userid')))
        return recent
