"""
Cloud Connection - Communication with the control plane.

This module provides the CloudConnection class for all communication with
the cloud control plane. It handles:
- Session pooling for efficient connection reuse
- Bearer token authentication with the host token
- Timeout handling with proper error types
- Automatic retry for transient failures
- Dispatch of pushed control plane messages to registered handlers

Pushed messages arrive through a relay (see routes/cloud.py) as JSON
objects of the form {"type": "...", "payload": {...}}.

Example:
    from edge_hub.services.cloud_connection import CloudConnection

    cloud = CloudConnection(config.cloud_url, config.host_id, config.host_token)
    pending = cloud.get(f'/api/service-hosts/{cloud.host_id}/pending-deployments')
"""

import logging
import os
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from requests.exceptions import (
    ConnectionError as RequestsConnectionError,
    RequestException,
    Timeout,
)
from urllib3.util.retry import Retry

from edge_hub import __version__
from edge_hub.services import (
    CloudAuthenticationError,
    CloudClientError,
    CloudConnectionError,
    CloudTimeoutError,
)


logger = logging.getLogger(__name__)


# Default configuration
DEFAULT_TIMEOUT = 30  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 0.5

MessageHandler = Callable[[Any], None]


class CloudConnection:
    """
    Client for communicating with the cloud control plane.

    Attributes:
        base_url: Control plane base URL
        host_id: Identifier of this hub at the control plane
        timeout: Request timeout in seconds
        session: Requests session for connection pooling
    """

    def __init__(
        self,
        base_url: str,
        host_id: str = '',
        token: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    ):
        """
        Initialize the cloud connection.

        Args:
            base_url: Control plane base URL (e.g., 'https://cloud.example.com')
            host_id: This hub's service host identifier
            token: Optional host token (can be set later)
            timeout: Request timeout in seconds (default: 30)
            max_retries: Maximum retry attempts for transient failures (default: 3)
            backoff_factor: Exponential backoff factor for retries (default: 0.5)
        """
        self.base_url = base_url.rstrip('/')
        self.host_id = host_id
        self.timeout = timeout
        self._token: Optional[str] = None
        self._handlers: Dict[str, List[MessageHandler]] = {}

        self.session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=['HEAD', 'GET', 'POST', 'PUT', 'DELETE', 'OPTIONS'],
        )
        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_connections=10,
            pool_maxsize=10,
        )
        self.session.mount('http://', adapter)
        self.session.mount('https://', adapter)

        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'User-Agent': f'StoreEdgeHub/{__version__}',
        })

        if token:
            self.set_token(token)

        logger.info(f"Cloud connection initialized with base URL: {self.base_url}")

    def set_token(self, token: str) -> None:
        """
        Set or update the authentication token.

        Args:
            token: Bearer token for control plane authentication
        """
        self._token = token
        self.session.headers['Authorization'] = f'Bearer {token}'
        logger.debug("Cloud connection token updated")

    def clear_token(self) -> None:
        """Remove authentication token from session."""
        self._token = None
        self.session.headers.pop('Authorization', None)

    @property
    def is_authenticated(self) -> bool:
        """Check if a host token is set."""
        return self._token is not None

    @property
    def is_configured(self) -> bool:
        """Check if both host id and token are available."""
        return bool(self.host_id) and self.is_authenticated

    def _build_url(self, endpoint: str) -> str:
        """
        Build full URL from endpoint.

        Args:
            endpoint: API endpoint path (e.g., '/api/sync/transactions')

        Returns:
            Full URL string
        """
        endpoint = endpoint.lstrip('/')
        return f"{self.base_url}/{endpoint}"

    def is_cloud_url(self, url: str) -> bool:
        """
        Check whether a URL is served by the control plane.

        Relative paths and absolute URLs under base_url are both cloud URLs
        and are fetched with the host token; anything else is external.
        """
        if not urlparse(url).scheme:
            return True
        return url == self.base_url or url.startswith(self.base_url + '/')

    def _handle_response(self, response: requests.Response, endpoint: str) -> Dict[str, Any]:
        """
        Handle HTTP response and convert errors to exceptions.

        Raises:
            CloudAuthenticationError: When authentication fails (401/403)
            CloudClientError: For other HTTP errors
        """
        if response.status_code in (401, 403):
            logger.error(f"Cloud authentication failed for {endpoint}: {response.status_code}")
            raise CloudAuthenticationError(
                message=f"Authentication failed for {endpoint}",
                status_code=response.status_code,
                response_body=response.text,
            )

        if not response.ok:
            logger.error(f"Cloud request failed for {endpoint}: {response.status_code}")
            raise CloudClientError(
                message=f"Request failed for {endpoint}",
                status_code=response.status_code,
                response_body=response.text,
            )

        try:
            return response.json()
        except ValueError:
            # Response was successful but not JSON
            return {'status': 'ok', 'raw': response.text}

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Send a request and map transport failures to CloudClientError types.

        Raises:
            CloudConnectionError: When connection fails
            CloudTimeoutError: When request times out
            CloudAuthenticationError: When authentication fails
            CloudClientError: For other request errors
        """
        url = self._build_url(endpoint)

        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            return self._handle_response(response, endpoint)

        except Timeout as e:
            logger.error(f"Cloud request timeout for {endpoint}: {e}")
            raise CloudTimeoutError(
                message=f"Request timed out for {endpoint}",
                details={'timeout': self.timeout},
            )

        except RequestsConnectionError as e:
            logger.error(f"Cloud connection failed for {endpoint}: {e}")
            raise CloudConnectionError(
                message=f"Connection failed for {endpoint}",
                details={'error': str(e)},
            )

        except RequestException as e:
            logger.error(f"Cloud request error for {endpoint}: {e}")
            raise CloudClientError(
                message=f"Request error for {endpoint}",
                details={'error': str(e)},
            )

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make authenticated GET request to the control plane.

        Args:
            endpoint: API endpoint path
            params: Optional query parameters

        Returns:
            Parsed JSON response
        """
        return self._request('GET', endpoint, params=params)

    def post(self, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make authenticated POST request with a JSON body.

        Args:
            endpoint: API endpoint path
            data: JSON-serializable request body

        Returns:
            Parsed JSON response
        """
        return self._request('POST', endpoint, json=data)

    def _stream_to_file(
        self,
        url: str,
        destination: str,
        label: str,
        chunk_size: int,
        headers: Optional[Dict[str, Any]] = None,
    ) -> str:
        # Download to a temp file first so a broken transfer never leaves
        # a truncated file at the destination
        temp_path = os.path.join(
            os.path.dirname(destination) or '.',
            f".{os.path.basename(destination)}.tmp",
        )
        try:
            with self.session.get(url, stream=True, timeout=self.timeout, headers=headers) as response:
                if response.status_code in (401, 403):
                    raise CloudAuthenticationError(
                        message=f"Authentication failed for {label}",
                        status_code=response.status_code,
                    )

                if not response.ok:
                    raise CloudClientError(
                        message=f"Download failed for {label}",
                        status_code=response.status_code,
                    )

                with open(temp_path, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=chunk_size):
                        if chunk:
                            f.write(chunk)

            os.replace(temp_path, destination)
            logger.info(f"Downloaded {label} to {destination}")
            return destination

        except Timeout as e:
            logger.error(f"Download timeout for {label}: {e}")
            self._cleanup_temp_file(temp_path)
            raise CloudTimeoutError(
                message=f"Download timed out for {label}",
                details={'timeout': self.timeout},
            )

        except RequestsConnectionError as e:
            logger.error(f"Connection failed for {label}: {e}")
            self._cleanup_temp_file(temp_path)
            raise CloudConnectionError(
                message=f"Connection failed for {label}",
                details={'error': str(e)},
            )

        except RequestException as e:
            logger.error(f"Download error for {label}: {e}")
            self._cleanup_temp_file(temp_path)
            raise CloudClientError(
                message=f"Download error for {label}",
                details={'error': str(e)},
            )

        except BaseException:
            self._cleanup_temp_file(temp_path)
            raise

    def _cleanup_temp_file(self, temp_path: str) -> None:
        """Remove a partial download if it exists."""
        try:
            if os.path.exists(temp_path):
                os.remove(temp_path)
        except OSError as e:
            logger.warning(f"Could not remove partial download {temp_path}: {e}")

    def download_file(self, endpoint: str, destination: str, chunk_size: int = 8192) -> str:
        """
        Download a file from the control plane with authentication.

        Args:
            endpoint: Relative path or absolute URL under base_url
            destination: Local file path to save download
            chunk_size: Download chunk size in bytes

        Returns:
            Path to downloaded file
        """
        url = endpoint if urlparse(endpoint).scheme else self._build_url(endpoint)
        return self._stream_to_file(url, destination, endpoint, chunk_size)

    def download_external(self, url: str, destination: str, chunk_size: int = 8192) -> str:
        """
        Download a file from a third-party URL without the host token.

        Args:
            url: Absolute URL outside the control plane
            destination: Local file path to save download
            chunk_size: Download chunk size in bytes

        Returns:
            Path to downloaded file
        """
        # A None value drops the session-level header for this request only
        return self._stream_to_file(
            url, destination, url, chunk_size, headers={'Authorization': None},
        )

    # -------------------------------------------------------------------------
    # Pushed messages
    # -------------------------------------------------------------------------

    def on_message(self, message_type: str, handler: MessageHandler) -> None:
        """
        Register a handler for a pushed message type.

        Args:
            message_type: Message type (e.g., 'DEPLOYMENT_AVAILABLE')
            handler: Callable receiving the message payload
        """
        self._handlers.setdefault(message_type, []).append(handler)
        logger.debug(f"Registered handler for {message_type}")

    def handle_message(self, message: Dict[str, Any]) -> int:
        """
        Dispatch a pushed message to its handlers.

        A failing handler is logged and does not prevent the others
        from running.

        Args:
            message: Dict with 'type' and optional 'payload'

        Returns:
            Number of handlers invoked
        """
        message_type = message.get('type')
        handlers = self._handlers.get(message_type, [])
        if not handlers:
            logger.warning(f"No handler for cloud message type: {message_type}")
            return 0

        payload = message.get('payload')
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Handler for {message_type} failed: {e}")
        return len(handlers)

    def close(self) -> None:
        """Close the session and release resources."""
        self.session.close()
        logger.info("Cloud connection session closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        return f"CloudConnection(base_url={self.base_url}, host_id={self.host_id})"
