"""
Base source API interface and common HTTP functionality.

This module defines the abstract base class every HR/IM platform integration
implements, along with the shared JSON-over-HTTPS client and access-token
handling used to talk to those platforms.
"""

import json
import logging
import ssl
import time
from abc import ABC, abstractmethod
from http.client import HTTPConnection, HTTPSConnection
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlencode, urlparse

from ldap_reconcile.errors import RemoteFetchError

logger = logging.getLogger(__name__)


class SourceAuthenticationError(RemoteFetchError):
    """Raised when the platform rejects the app credentials."""
    pass


class LeaverListingUnsupported(RemoteFetchError):
    """Raised by sources whose platform exposes no leaver API."""
    pass


class SourceAPIBase(ABC):
    """
    Abstract base class for HR/IM platform integrations.

    Subclasses implement token retrieval and the department, staff and leaver
    listings. Listings return raw platform payloads; the normalizer maps them
    onto the engine's models.
    """

    # Platforms that publish departed employees set this to True
    supports_leaver_listing = False

    # Seconds subtracted from the advertised token lifetime
    TOKEN_EXPIRY_MARGIN = 60

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize source API client.

        Args:
            config: Source configuration dictionary
        """
        self.config = config
        self.name = config['name']
        self.flag = config.get('flag', self.name)
        self.base_url = config['base_url']
        self.auth_config = config.get('auth', {})
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = self._create_ssl_context()

        self._access_token = None
        self._token_expires_at = 0.0

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        if self.parsed_url.scheme != 'https':
            return None
        if not self.verify_ssl:
            logger.warning(f"SSL verification disabled for {self.name}")
            return ssl._create_unverified_context()
        context = ssl.create_default_context()
        ca_file = self.config.get('ca_cert_file')
        if ca_file:
            context.load_verify_locations(cafile=ca_file)
            logger.info(f"Loaded CA certificates for {self.name}: {ca_file}")
        return context

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        if self.connection:
            return self.connection
        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)
        return self.connection

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                body: Optional[Dict[str, Any]] = None, authenticated: bool = True) -> Dict[str, Any]:
        """
        Make a JSON request to the platform API.

        Args:
            method: HTTP method
            path: Endpoint path relative to base_url
            params: Query parameters
            body: JSON request body
            authenticated: Append the access token as ``access_token`` query parameter

        Returns:
            Parsed JSON response

        Raises:
            RemoteFetchError: On transport failure, HTTP error or platform error code
        """
        query = dict(params or {})
        if authenticated:
            query['access_token'] = self.get_access_token()
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if query:
            full_path = f"{full_path}?{urlencode(query)}"

        headers = {'Accept': 'application/json'}
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{self.base_path}/{path.lstrip('/')}")
            conn.request(method, full_path, request_body, headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError) as e:
            self.close_connection()
            raise RemoteFetchError(f"Connection error to {self.name}: {e}")

        if response.status >= 400:
            raise RemoteFetchError(f"HTTP {response.status} from {self.name} {path}: {response.reason}")

        try:
            payload = json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise RemoteFetchError(f"Invalid JSON response from {self.name} {path}: {e}")

        self._check_error(payload, path)
        return payload

    def _check_error(self, payload: Dict[str, Any], path: str):
        """Raise for platform-level error codes; both supported platforms use ``errcode``/``errmsg``."""
        errcode = payload.get('errcode', 0)
        if errcode:
            raise RemoteFetchError(f"{self.name} {path} returned error {errcode}: {payload.get('errmsg', '')}")

    def get_access_token(self) -> str:
        """Return a cached access token, fetching a new one when it is missing or about to expire."""
        if self._access_token and time.time() < self._token_expires_at:
            return self._access_token

        try:
            token, expires_in = self._fetch_token()
        except SourceAuthenticationError:
            raise
        except RemoteFetchError as e:
            raise SourceAuthenticationError(f"Failed to obtain access token for {self.name}: {e}")

        self._access_token = token
        self._token_expires_at = time.time() + int(expires_in) - self.TOKEN_EXPIRY_MARGIN
        logger.info(f"Obtained access token for {self.name}")
        return token

    def authenticate(self) -> bool:
        """Fetch an access token up front so credential problems surface before the pass starts."""
        self.get_access_token()
        return True

    def close_connection(self):
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    @abstractmethod
    def _fetch_token(self) -> Tuple[str, int]:
        """
        Request a new access token from the platform.

        Returns:
            Tuple of (access token, lifetime in seconds)
        """
        pass

    @abstractmethod
    def fetch_all_departments(self) -> List[Dict[str, Any]]:
        """
        List every department of the organization.

        Returns:
            Raw department dictionaries carrying an id, a parent id and a name
        """
        pass

    @abstractmethod
    def fetch_all_users(self) -> List[Dict[str, Any]]:
        """
        List every active staff member.

        Returns:
            Raw user dictionaries carrying a remote user id
        """
        pass

    def fetch_leaver_ids(self, window_days: int = 0) -> List[str]:
        """
        List remote ids of employees who have left.

        Args:
            window_days: Only report departures within this many days; 0 for all

        Raises:
            LeaverListingUnsupported: If the platform has no leaver API
        """
        raise LeaverListingUnsupported(f"{self.name} does not publish departed employees")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
