"""
Rate-limited HTTP transport for the directory API.

Every outbound call goes through APITransport.send(). The transport stamps
the authorization header, classifies the call into the REST or V1 lane
(each with its own leaky bucket), appends the REST API version, retries
transient failures of idempotent requests, and turns error statuses into
exceptions.
"""

import json
import ssl
import logging
from typing import Dict, Any, Optional, Tuple, Union
from urllib.parse import urlparse, urlsplit, parse_qsl, quote
from http.client import HTTPSConnection, HTTPConnection, HTTPException, RemoteDisconnected

from sso_membership import __version__
from sso_membership.ratelimit import LeakyBucket
from sso_membership.retry import (
    retry_call, is_idempotent, is_retryable_error, create_retry_callback,
    RetryableError, MaxRetriesExceeded
)

logger = logging.getLogger(__name__)

REST_PREFIX = '/rest'
LANE_REST = 'rest'
LANE_V1 = 'v1'

CONTENT_TYPES = {
    LANE_REST: 'application/vnd.api+json',
    LANE_V1: 'application/json',
}

# Raised when a kept-alive socket was closed by the peer before the request got through
STALE_CONNECTION_ERRORS = (BrokenPipeError, ConnectionResetError, RemoteDisconnected)


class TransportError(Exception):
    """Raised when a request cannot be completed at the connection level."""
    pass


class RemoteError(Exception):
    """Raised when the directory API answers with an error status."""

    def __init__(self, status: int, method: str, path: str, body: bytes = b''):
        self.status = status
        self.method = method
        self.path = path
        self.body = body
        super().__init__(f"failed to {method} {path}: {status}")

    @property
    def is_conflict(self) -> bool:
        return self.status == 409


class TransientRemoteError(RemoteError, RetryableError):
    """Error status that may clear up on its own (429 and 5xx)."""
    pass


def classify_lane(path: str) -> str:
    """Return the rate limit lane for an API path."""
    return LANE_REST if path.startswith(REST_PREFIX) else LANE_V1


class APITransport:
    """
    HTTP transport shared by all API clients of a run.

    Holds one keep-alive connection to the API host. Not meant to be used
    from several threads at once, although the rate limiters are.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the transport.

        Args:
            config: Full application configuration (api, rate_limits and
                error_handling sections are used)
        """
        self.api_config = config.get('api', {})
        rate_config = config.get('rate_limits', {})
        error_config = config.get('error_handling', {})

        self.base_url = self.api_config.get('base_url', 'https://api.snyk.io')
        self.version = self.api_config.get('version', '2024-10-15')
        self.verify_ssl = self.api_config.get('verify_ssl', True)
        self.timeout = self.api_config.get('timeout_seconds', 30)

        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 1)
        self.retry_backoff = error_config.get('retry_backoff', 2.0)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.limiters = {
            LANE_REST: LeakyBucket(rate_config.get('rest_per_minute', 1620), 60.0, name=LANE_REST),
            LANE_V1: LeakyBucket(rate_config.get('v1_per_minute', 2000), 60.0, name=LANE_V1),
        }

        self.connection = None
        self.connection_used = False
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"TLS certificate verification disabled for {self.host}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.api_config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom truststore/CA certificates."""
        truststore_type = str(self.api_config.get('truststore_type', 'PEM')).upper()
        truststore_password = self.api_config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
                logger.info(f"Loaded PEM truststore: {truststore_file}")

            elif truststore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM))

                if not ca_certs:
                    raise TransportError(f"No certificates found in {truststore_file}")

                self.ssl_context.load_verify_locations(cadata=b'\n'.join(ca_certs).decode('ascii'))
                logger.info(f"Loaded PKCS12 truststore: {truststore_file}")

            else:
                raise TransportError(f"Unsupported truststore type: {truststore_type}")

        except TransportError:
            raise
        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise TransportError(f"Truststore loading failed: {e}")

    def _setup_authentication(self):
        """Set up the static authorization header."""
        token = self.api_config.get('token')
        auth_method = str(self.api_config.get('auth_method', 'token')).lower()

        if not token:
            logger.error("No API token configured, requests will be unauthenticated")
            return

        if auth_method == 'bearer':
            self.auth_headers['Authorization'] = f"Bearer {token}"
        else:
            self.auth_headers['Authorization'] = f"token {token}"
        logger.debug(f"Configured {auth_method} authentication for {self.host}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def build_path(self, path: str) -> str:
        """
        Build the request target for an API path.

        REST paths get the API version appended unless the query already
        carries one.
        """
        if not path.startswith('/'):
            path = '/' + path

        if classify_lane(path) == LANE_REST:
            query = urlsplit(path).query
            if not any(key == 'version' for key, _ in parse_qsl(query, keep_blank_values=True)):
                separator = '&' if query else ('' if path.endswith('?') else '?')
                path = f"{path}{separator}version={quote(str(self.version), safe='')}"

        return self.base_path + path

    def build_headers(self, lane: str) -> Dict[str, str]:
        """Fresh header set for one request."""
        headers = dict(self.auth_headers)
        headers['Content-Type'] = CONTENT_TYPES[lane]
        headers['Accept'] = CONTENT_TYPES[lane]
        headers['User-Agent'] = f"sso-membership-sync/{__version__}"
        return headers

    def send(self, method: str, path: str, body: Optional[Any] = None) -> Tuple[int, bytes]:
        """
        Send one request to the directory API.

        Args:
            method: HTTP method
            path: API path, including any query string
            body: JSON-serializable request body

        Returns:
            Tuple of (status code, response body bytes)

        Raises:
            TransportError: If the connection fails after all attempts
            RemoteError: If the response status is 400 or higher
        """
        method = method.upper()
        lane = classify_lane(path)
        target = self.build_path(path)
        payload = json.dumps(body) if body is not None else None

        # POST and PATCH are never re-sent, a retry could duplicate the change
        attempts = self.max_retries + 1 if is_idempotent(method) else 1

        try:
            return retry_call(
                self._attempt,
                args=(method, path, target, payload, lane),
                max_attempts=attempts,
                delay=self.retry_wait,
                backoff=self.retry_backoff,
                exceptions=(TransportError, TransientRemoteError),
                on_retry=create_retry_callback(f"{method} {path}")
            )
        except MaxRetriesExceeded as e:
            if attempts > 1:
                logger.debug(f"{method} {path} gave up after {e.attempts} attempts")
            raise e.last_exception

    def _attempt(self, method: str, path: str, target: str, payload: Optional[str],
                 lane: str) -> Tuple[int, bytes]:
        self.limiters[lane].take()
        headers = self.build_headers(lane)

        try:
            logger.debug(f"Making {method} request to {self.host}{target}")
            response = self._exchange(method, target, payload, headers)
            data = response.read()
        except (OSError, HTTPException) as e:
            self.close_connection()
            raise TransportError(f"Connection error during {method} {path}: {e}")

        status = response.status
        logger.debug(f"Response status: {status} {response.reason}")

        if status >= 400:
            logger.debug(f"{method} {path} returned {status}: {data.decode('utf-8', errors='replace')}")
            error = RemoteError(status, method, path, data)
            if is_retryable_error(error):
                raise TransientRemoteError(status, method, path, data)
            raise error

        return status, data

    def _exchange(self, method: str, target: str, payload: Optional[str], headers: Dict[str, str]):
        """
        Send a request and wait for the response head.

        A request that fails on a reused connection before any response
        arrives never reached the server, so it is sent once more on a new
        connection whatever the method.
        """
        conn = self._get_connection()
        reused = self.connection_used
        self.connection_used = True

        try:
            conn.request(method, target, payload, headers)
            return conn.getresponse()
        except STALE_CONNECTION_ERRORS as e:
            if not reused:
                raise
            logger.debug(f"Kept-alive connection to {self.host} was closed ({e}), reconnecting")
            self.close_connection()

        conn = self._get_connection()
        self.connection_used = True
        conn.request(method, target, payload, headers)
        return conn.getresponse()

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection to {self.host}: {e}")
            finally:
                self.connection = None
        self.connection_used = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
