"""
HTTP API client with retry logic and rate limiting for the Grafana HTTP API.
"""

import threading
import time
from typing import Dict, Any, Optional, List, Union
import httpx
from tenacity import Retrying, stop_after_attempt, wait_exponential, retry_if_exception_type
import structlog

from .config import Config, InstanceConfig


class GrafanaAPIError(Exception):
    """Base exception for Grafana API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_data: Optional[Union[Dict, List, str]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


class TransportError(GrafanaAPIError):
    """Connection refused, DNS failure or timeout; raised once retries are exhausted."""


class AuthError(GrafanaAPIError):
    """The instance rejected the credential (HTTP 401/403)."""


class RemoteError(GrafanaAPIError):
    """Any other non-2xx response. Specific to the entity being processed."""

    @property
    def status(self) -> Optional[int]:
        return self.status_code

    @property
    def body(self) -> Optional[Union[Dict, List, str]]:
        return self.response_data


class APIClient:
    """HTTP client for one Grafana instance with retry logic and rate limiting."""

    def __init__(self, instance: InstanceConfig, config: Config, name: str = 'src',
                 transport: Optional[httpx.BaseTransport] = None):
        """
        Initialize API client.

        Args:
            instance: Host and credential of the instance
            config: Configuration object (timeouts, retries, rate limit)
            name: Label used in log events ('src' or 'dst')
            transport: Optional httpx transport, used to plug in a mock instance
        """
        self.config = config
        self.name = name
        self.logger = structlog.get_logger(f"api_client_{name}")

        self.base_url = instance.host.rstrip('/')
        self.headers = instance.headers

        # Initialize HTTP client
        self.client = httpx.Client(
            base_url=self.base_url,
            headers=self.headers,
            timeout=config.api_timeout_seconds,
            transport=transport,
        )

        # Rate limiting, shared by all worker threads using this client
        self._rate_lock = threading.Lock()
        self.last_request_time = 0.0
        rate = config.api_rate_limit_per_second
        self.min_request_interval = 1.0 / rate if rate > 0 else 0.0

        # Only transport level failures are retried
        self._retrying = Retrying(
            stop=stop_after_attempt(config.api_retry_max_attempts),
            wait=wait_exponential(multiplier=config.api_retry_backoff_factor, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _rate_limit(self):
        """Implement rate limiting."""
        if self.min_request_interval <= 0:
            return

        with self._rate_lock:
            current_time = time.monotonic()
            sleep_time = self.last_request_time + self.min_request_interval - current_time

            if sleep_time > 0:
                time.sleep(sleep_time)

            self.last_request_time = time.monotonic()

    def _log_retry(self, retry_state):
        self.logger.warning(
            "API request retrying",
            attempt=retry_state.attempt_number,
            max_attempts=self.config.api_retry_max_attempts,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None
        )

    def _send(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        self._rate_limit()
        return self.client.request(method, endpoint, **kwargs)

    def _make_request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """
        Make HTTP request with retry logic.

        Args:
            method: HTTP method
            endpoint: API endpoint
            **kwargs: Additional arguments for httpx request

        Returns:
            HTTP response

        Raises:
            TransportError: Network failure after all retries
            AuthError: HTTP 401 or 403
            RemoteError: Any other non-2xx status
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        start_time = time.time()

        try:
            response = self._retrying.copy()(self._send, method, endpoint, **kwargs)
        except httpx.TransportError as e:
            response_time = time.time() - start_time

            self.logger.error(
                "API request error",
                method=method,
                url=url,
                response_time_ms=round(response_time * 1000, 2),
                error=str(e)
            )

            raise TransportError(f"Request error: {e}") from e

        response_time = time.time() - start_time

        if response.is_success:
            self.logger.debug(
                "API request completed",
                method=method,
                url=url,
                status_code=response.status_code,
                response_time_ms=round(response_time * 1000, 2)
            )
            return response

        # Try to get error details from response
        try:
            error_data = response.json()
        except ValueError:
            error_data = response.text

        error_message = f"API request failed: {method} {url} returned {response.status_code}"
        if isinstance(error_data, dict) and 'message' in error_data:
            error_message += f" - {error_data['message']}"

        log = self.logger.debug if response.status_code == 404 else self.logger.error
        log(
            "API request failed",
            method=method,
            url=url,
            status_code=response.status_code,
            response_time_ms=round(response_time * 1000, 2),
            response_text=response.text[:500]
        )

        if response.status_code in (401, 403):
            raise AuthError(error_message, status_code=response.status_code, response_data=error_data)

        raise RemoteError(error_message, status_code=response.status_code, response_data=error_data)

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        return response.json()

    def get(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        """Make GET request."""
        response = self._make_request("GET", endpoint, params=params)
        return self._json(response)

    def get_optional(self, endpoint: str, params: Optional[Dict] = None) -> Optional[Any]:
        """Make GET request, returning None when the resource does not exist."""
        try:
            return self.get(endpoint, params=params)
        except RemoteError as e:
            if e.status_code == 404:
                return None
            raise

    def post(self, endpoint: str, json_data: Optional[Dict] = None,
             params: Optional[Dict] = None) -> Any:
        """Make POST request."""
        response = self._make_request("POST", endpoint, json=json_data, params=params)
        return self._json(response)

    def put(self, endpoint: str, json_data: Optional[Dict] = None) -> Any:
        """Make PUT request."""
        response = self._make_request("PUT", endpoint, json=json_data)
        return self._json(response)

    def get_paginated(self, endpoint: str, params: Optional[Dict] = None,
                      page_size: int = 1000) -> List[Dict[str, Any]]:
        """
        Get all results from a paginated endpoint.

        Grafana's search API pages with ``limit`` and ``page`` (1-based) and
        returns a bare list; a short page marks the end.

        Args:
            endpoint: API endpoint
            params: Query parameters
            page_size: Number of items per page

        Returns:
            List of all items
        """
        all_items = []
        page = 1
        params = params or {}

        while True:
            page_params = {
                **params,
                'page': page,
                'limit': page_size
            }

            items = self.get(endpoint, params=page_params)
            if not isinstance(items, list):
                items = []

            all_items.extend(items)

            if len(items) < page_size:
                break

            page += 1

        self.logger.info(
            "Paginated request completed",
            endpoint=endpoint,
            total_items=len(all_items),
            pages_fetched=page
        )

        return all_items

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
