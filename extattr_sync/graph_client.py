"""
Microsoft Graph client for the cloud directory side of the sync.

This module holds the authenticated session handle (OAuth2 client credentials)
and the device query/update operations the identity matcher and sync engine
consume. The session is acquired once per run and injected into the client;
it is never re-acquired while a batch is running.
"""

import json
import ssl
import time
import logging
import threading
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from extattr_sync.logging_setup import security_logger
from extattr_sync.models import RemoteDevice
from extattr_sync.retry import (
    RetryableError,
    MaxRetriesExceeded,
    retry_call,
    retry_settings,
    is_retryable_error,
    is_throttled_error,
    create_retry_callback
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://graph.microsoft.com/v1.0'
DEFAULT_AUTHORITY = 'https://login.microsoftonline.com'
DEFAULT_SCOPE = 'https://graph.microsoft.com/.default'
DEVICE_FIELDS = 'id,displayName,onPremisesSecurityIdentifier'


class RemoteAPIError(Exception):
    """Base exception for remote directory errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteAuthenticationError(RemoteAPIError):
    """Raised when the remote directory rejects the session's credentials."""
    pass


class RemoteConnectionError(RemoteAPIError, RetryableError):
    """Raised when the remote directory cannot be reached."""
    pass


class RemoteSessionError(RemoteAPIError):
    """Raised when the session cannot be acquired; fatal for the whole run."""
    pass


def escape_odata_string(value: str) -> str:
    """Escape a value for use inside a single-quoted OData string literal."""
    return value.replace("'", "''")


def build_ssl_context(config: Dict[str, Any]) -> ssl.SSLContext:
    """
    Build the SSL context used for token and Graph requests.

    Args:
        config: Graph configuration dictionary (verify_ssl, truststore_file,
            truststore_type, truststore_password, cert_file, key_file)

    Returns:
        Configured SSL context

    Raises:
        RemoteSessionError: If a trust store or client certificate cannot be loaded
    """
    if not config.get('verify_ssl', True):
        logger.warning("SSL verification disabled for Microsoft Graph")
        return ssl._create_unverified_context()

    context = ssl.create_default_context()

    truststore_file = config.get('truststore_file')
    if truststore_file:
        _load_truststore(context, truststore_file, config)

    cert_file = config.get('cert_file')
    if cert_file:
        try:
            context.load_cert_chain(cert_file, config.get('key_file'), password=config.get('key_password'))
            logger.info(f"Loaded client certificate: {cert_file}")
        except (OSError, ssl.SSLError) as e:
            raise RemoteSessionError(f"Client certificate loading failed: {e}")

    return context


def _load_truststore(context: ssl.SSLContext, truststore_file: str, config: Dict[str, Any]):
    """Load extra CA certificates, e.g. for a TLS-inspecting proxy."""
    truststore_type = config.get('truststore_type', 'PEM').upper()
    truststore_password = config.get('truststore_password')

    try:
        if truststore_type == 'PEM':
            context.load_verify_locations(cafile=truststore_file)

        elif truststore_type == 'PKCS12':
            with open(truststore_file, 'rb') as f:
                p12_data = f.read()

            _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                p12_data, truststore_password.encode() if truststore_password else None
            )

            certificates: List[x509.Certificate] = []
            if certificate:
                certificates.append(certificate)
            certificates.extend(additional_certificates or [])

            if not certificates:
                raise RemoteSessionError(f"No certificates found in {truststore_file}")

            ca_data = '\n'.join(cert.public_bytes(serialization.Encoding.PEM).decode('ascii')
                                for cert in certificates)
            context.load_verify_locations(cadata=ca_data)

        else:
            raise RemoteSessionError(f"Unsupported truststore type: {truststore_type}")

        logger.info(f"Loaded {truststore_type} truststore: {truststore_file}")

    except RemoteSessionError:
        raise
    except Exception as e:
        logger.error(f"Failed to load truststore {truststore_file}: {e}")
        raise RemoteSessionError(f"Truststore loading failed: {e}")


def open_connection(url: str, ssl_context: Optional[ssl.SSLContext], proxy_url: Optional[str] = None,
                    timeout: int = 30) -> Union[HTTPSConnection, HTTPConnection]:
    """
    Open an HTTP(S) connection to the host of ``url``, tunnelling through a proxy if given.

    Args:
        url: Any URL on the target host
        ssl_context: Context for HTTPS targets
        proxy_url: Optional http://host:port proxy; HTTPS targets use a CONNECT tunnel
        timeout: Socket timeout in seconds

    Returns:
        Unconnected http.client connection
    """
    target = urlparse(url)

    if proxy_url:
        proxy = urlparse(proxy_url)
        if target.scheme == 'https':
            conn = HTTPSConnection(proxy.hostname, proxy.port or 8080, context=ssl_context, timeout=timeout)
        else:
            conn = HTTPConnection(proxy.hostname, proxy.port or 8080, timeout=timeout)
        conn.set_tunnel(target.hostname, target.port)
        return conn

    if target.scheme == 'https':
        return HTTPSConnection(target.netloc, context=ssl_context, timeout=timeout)
    return HTTPConnection(target.netloc, timeout=timeout)


class GraphSession:
    """
    Authenticated handle for Microsoft Graph.

    Acquired once at the start of a run with acquire(). Tokens are not
    refreshed implicitly; a run that outlives its token fails its remaining
    remote calls with RemoteAuthenticationError.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize session settings.

        Args:
            config: Graph configuration dictionary
        """
        self.config = config
        self.tenant_id = config['tenant_id']
        self.client_id = config['client_id']
        self.client_secret = config['client_secret']
        self.base_url = config.get('base_url', DEFAULT_BASE_URL).rstrip('/')
        self.authority = config.get('authority', DEFAULT_AUTHORITY).rstrip('/')
        self.scope = config.get('scope', DEFAULT_SCOPE)
        self.proxy_url = config.get('proxy_url')
        self.timeout = config.get('timeout', 30)

        self.ssl_context = build_ssl_context(config)
        self._access_token = None
        self._expires_at = None

    @property
    def token_url(self) -> str:
        return f"{self.authority}/{self.tenant_id}/oauth2/v2.0/token"

    @property
    def acquired(self) -> bool:
        return self._access_token is not None

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.time() >= self._expires_at

    def acquire(self) -> 'GraphSession':
        """
        Obtain an access token with the client credentials flow.

        Returns:
            This session, for chaining

        Raises:
            RemoteSessionError: If the token cannot be obtained
        """
        body = urlencode({
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'scope': self.scope
        })
        headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        conn = open_connection(self.token_url, self.ssl_context, self.proxy_url, self.timeout)
        try:
            logger.debug(f"Requesting Graph token for tenant {self.tenant_id}")
            conn.request('POST', urlparse(self.token_url).path, body, headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (OSError, HTTPException) as e:
            security_logger.log_authentication_attempt('graph', self.client_id, False)
            raise RemoteSessionError(f"Token request to {self.authority} failed: {e}")
        finally:
            conn.close()

        if response.status != 200:
            security_logger.log_authentication_attempt('graph', self.client_id, False)
            raise RemoteSessionError(
                f"Token request failed: HTTP {response.status} {_error_message(response_data)}",
                status_code=response.status
            )

        try:
            token_response = json.loads(response_data)
        except json.JSONDecodeError as e:
            raise RemoteSessionError(f"Invalid JSON in token response: {e}")

        access_token = token_response.get('access_token')
        if not access_token:
            raise RemoteSessionError("Token response missing access_token")

        self._access_token = access_token
        expires_in = token_response.get('expires_in')
        if expires_in:
            self._expires_at = time.time() + int(expires_in)

        security_logger.log_authentication_attempt('graph', self.client_id, True)
        logger.info(f"Acquired Microsoft Graph session for tenant {self.tenant_id}")
        return self

    def authorization_header(self) -> Dict[str, str]:
        """
        Return the Authorization header for Graph requests.

        Raises:
            RemoteSessionError: If acquire() has not succeeded
        """
        if not self._access_token:
            raise RemoteSessionError("Graph session has not been acquired")
        return {'Authorization': f"Bearer {self._access_token}"}


def _error_message(response_data: str) -> str:
    """Pull the message out of a Graph or token endpoint error body."""
    try:
        payload = json.loads(response_data)
    except (ValueError, TypeError):
        return response_data[:200]
    if not isinstance(payload, dict):
        return str(payload)[:200]

    error = payload.get('error')
    if isinstance(error, dict):
        code = error.get('code', '')
        message = error.get('message', '')
        return f"{code}: {message}" if code else message
    return payload.get('error_description') or str(error or '')


class RemoteDirectoryClient:
    """
    Device query and update operations against Microsoft Graph.

    Safe to share between worker threads: each thread gets its own HTTP connection.
    """

    def __init__(self, session: GraphSession, error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize the client.

        Args:
            session: Acquired Graph session
            error_handling: error_handling configuration section (retry settings)
        """
        self.session = session
        self.base_url = session.base_url
        self.base_path = urlparse(self.base_url).path.rstrip('/')
        self.retry = retry_settings(error_handling or {})

        self._local = threading.local()
        self._connections = []
        self._lock = threading.Lock()

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        conn = getattr(self._local, 'connection', None)
        if conn is None:
            conn = open_connection(self.base_url, self.session.ssl_context,
                                   self.session.proxy_url, self.session.timeout)
            self._local.connection = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    def _drop_connection(self):
        conn = getattr(self._local, 'connection', None)
        if conn is not None:
            conn.close()
            self._local.connection = None

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                body: Optional[Dict] = None, headers: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make one Graph request.

        Args:
            method: HTTP method
            path: Path relative to the Graph base URL
            params: Query parameters
            body: JSON body
            headers: Additional headers

        Returns:
            Parsed JSON response ({} for empty bodies)

        Raises:
            RemoteAuthenticationError: On HTTP 401
            RemoteConnectionError: If the request could not be sent
            RemoteAPIError: On any other failure
        """
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            full_path += '?' + urlencode(params, quote_via=quote, safe="$',")

        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.session.authorization_header())
        if headers:
            request_headers.update(headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {full_path}")
            conn.request(method, full_path, request_body, request_headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (OSError, HTTPException) as e:
            self._drop_connection()
            raise RemoteConnectionError(f"Connection error to Microsoft Graph: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status == 401:
            raise RemoteAuthenticationError(
                f"Authentication failed: {_error_message(response_data)}", status_code=401
            )
        if response.status >= 400:
            raise RemoteAPIError(
                f"HTTP {response.status}: {_error_message(response_data) or response.reason}",
                status_code=response.status
            )

        if not response_data:
            return {}
        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise RemoteAPIError(f"Invalid JSON response from Microsoft Graph: {e}")

    def _with_retry(self, operation: str, should_retry, func, *args, **kwargs):
        try:
            return retry_call(
                func, args, kwargs,
                exceptions=(RemoteAPIError,),
                should_retry=should_retry,
                on_retry=create_retry_callback(operation),
                **self.retry
            )
        except MaxRetriesExceeded as e:
            last = e.last_exception
            raise RemoteAPIError(f"{operation} failed after {e.attempts} attempts: {last}",
                                 status_code=getattr(last, 'status_code', None))

    def find_devices(self, odata_filter: str, top: int = 1) -> List[RemoteDevice]:
        """
        Query devices with an OData filter.

        Args:
            odata_filter: Filter expression, values already escaped
            top: Maximum number of devices to return

        Returns:
            Devices in the order the remote directory returned them
        """
        params = {
            '$filter': odata_filter,
            '$select': DEVICE_FIELDS,
            '$top': top,
            '$count': 'true'
        }
        response = self._with_retry(
            'Device query', is_retryable_error,
            self.request, 'GET', '/devices', params=params,
            headers={'ConsistencyLevel': 'eventual'}
        )

        devices = []
        for item in response.get('value', []):
            devices.append(RemoteDevice(
                id=item['id'],
                display_name=item.get('displayName') or '',
                security_identifier=item.get('onPremisesSecurityIdentifier')
            ))
        return devices

    def find_device_by_security_identifier(self, security_identifier: str) -> Optional[RemoteDevice]:
        devices = self.find_devices(
            f"onPremisesSecurityIdentifier eq '{escape_odata_string(security_identifier)}'"
        )
        return devices[0] if devices else None

    def find_device_by_display_name(self, display_name: str) -> Optional[RemoteDevice]:
        devices = self.find_devices(f"displayName eq '{escape_odata_string(display_name)}'")
        return devices[0] if devices else None

    def update_device(self, device_id: str, attributes: Dict[str, Optional[str]]):
        """
        Set or clear extension attributes on one device in a single PATCH.

        Only throttled requests (HTTP 429) are retried, since they were
        rejected before being applied.

        Args:
            device_id: Remote device object id
            attributes: extensionAttributeN name to value, None to clear

        Raises:
            RemoteAPIError: If the update fails
        """
        self._with_retry(
            'Device update', is_throttled_error,
            self.request, 'PATCH', f"/devices/{quote(device_id)}",
            body={'extensionAttributes': dict(attributes)}
        )
        logger.debug(f"Updated device {device_id}: {sorted(attributes)}")

    def close(self):
        """Close every connection opened by any thread."""
        with self._lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except Exception as e:
                logger.warning(f"Error closing Graph connection: {e}")
        self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
