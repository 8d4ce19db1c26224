"""
WeCom (WeChat Work) API integration module.

Implements SourceAPIBase against the WeCom server API. WeCom exposes no
departed-employee listing, so the reconciler infers leavers from the roster.
"""

import logging
from typing import Any, Dict, List, Tuple

from .base import SourceAPIBase, SourceAuthenticationError

logger = logging.getLogger(__name__)

ROOT_DEPT_ID = 1


class WeComAPI(SourceAPIBase):
    """WeCom client: departments and staff of the whole organization."""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.corp_id = self.auth_config.get('app_key')
        self.corp_secret = self.auth_config.get('app_secret')
        logger.info(f"Initialized WeCom API client for {self.name}")

    def _fetch_token(self) -> Tuple[str, int]:
        payload = self.request('GET', '/gettoken',
                               params={'corpid': self.corp_id, 'corpsecret': self.corp_secret},
                               authenticated=False)
        token = payload.get('access_token')
        if not token:
            raise SourceAuthenticationError(f"WeCom token response for {self.name} has no access_token")
        return token, payload.get('expires_in', 7200)

    def fetch_all_departments(self) -> List[Dict[str, Any]]:
        """List all departments including the root, which has parent ``0``."""
        payload = self.request('GET', '/department/list')
        departments = payload.get('department', [])
        logger.info(f"Retrieved {len(departments)} departments from {self.name}")
        return departments

    def fetch_all_users(self) -> List[Dict[str, Any]]:
        payload = self.request('GET', '/user/list', params={'department_id': ROOT_DEPT_ID, 'fetch_child': 1})
        # status 1 = activated; disabled (2) and unactivated (4) accounts are not active staff
        users = [user for user in payload.get('userlist', []) if user.get('status', 1) == 1]
        logger.info(f"Retrieved {len(users)} active users from {self.name}")
        return users
