"""Cloud Records HTTP Client.

Low-level HTTP client for the cloud records API.
Handles authentication headers, retries, and error mapping.
"""

from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
import json
import asyncio

import aiohttp

from core.observability.logging import get_logger

logger = get_logger(__name__)


class CloudApiError(Exception):
    """Base exception for cloud API errors."""
    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class CloudAuthError(CloudApiError):
    """Authentication failed (401/403)."""
    pass


class CloudNotFoundError(CloudApiError):
    """Resource not found (404)."""
    pass


class CloudRateLimitError(CloudApiError):
    """Rate limit exceeded (429)."""
    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(message, 429)
        self.retry_after = retry_after


class CloudValidationError(CloudApiError):
    """Payload rejected by the API (400/422)."""
    pass


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 10.0  # seconds
    exponential_base: float = 2.0
    retry_on_status: Tuple[int, ...] = (429, 500, 502, 503, 504)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt (exponential backoff)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


@dataclass
class RemoteApiConfig:
    """Configuration for the cloud API client."""
    base_url: str = "http://localhost:8080/api/v1"
    api_key: Optional[str] = None
    retry_config: RetryConfig = field(default_factory=RetryConfig)
    timeout_seconds: float = 30.0
    health_path: str = "/health"

    def build_url(self, path: str) -> str:
        """Join the base URL and an API path."""
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


class RemoteApiClient:
    """HTTP client for the cloud records API.

    Provides:
    - Authenticated API calls
    - Error handling and retries
    - 404 mapped to None / False for reads and deletes

    Usage:
        client = RemoteApiClient(RemoteApiConfig(base_url="https://sync.example.com/api/v1"))
        await client.connect()
        shipment = await client.get_json("owners/u1/shipments/KS0001")
    """

    def __init__(self, api_config: RemoteApiConfig, session: Optional[aiohttp.ClientSession] = None):
        """Initialize API client.

        Args:
            api_config: API configuration
            session: Pre-built session (tests); created on connect() otherwise
        """
        self.api_config = api_config
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> bool:
        """Initialize HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return True

    async def disconnect(self) -> None:
        """Close HTTP session."""
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for API requests."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_config.api_key:
            headers["Authorization"] = f"Bearer {self.api_config.api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        data: Optional[Any] = None,
    ) -> Any:
        """Make an API request with automatic retries.

        Args:
            method: HTTP method
            path: API path relative to the base URL
            params: Query parameters
            data: JSON request body

        Returns:
            Parsed response JSON ({} for empty bodies)

        Raises:
            CloudAuthError: Authentication failed
            CloudNotFoundError: Resource not found
            CloudRateLimitError: Rate limit exceeded
            CloudValidationError: Payload rejected
            CloudApiError: Other API or transport errors
        """
        if not self._session:
            await self.connect()

        url = self.api_config.build_url(path)
        retry_config = self.api_config.retry_config
        last_error: Optional[Exception] = None

        for attempt in range(retry_config.max_retries + 1):
            try:
                timeout = aiohttp.ClientTimeout(total=self.api_config.timeout_seconds)

                async with self._session.request(
                    method,
                    url,
                    headers=self._get_headers(),
                    params=params,
                    json=data,
                    timeout=timeout,
                ) as response:
                    response_text = await response.text()

                    # Success
                    if response.status < 400:
                        if response.status == 204:  # No content
                            return {}
                        return json.loads(response_text) if response_text else {}

                    if response.status in (401, 403):
                        raise CloudAuthError(
                            f"Authentication failed: {response_text}",
                            response.status,
                            response_text
                        )

                    if response.status == 404:
                        raise CloudNotFoundError(
                            f"Resource not found: {url}",
                            response.status,
                            response_text
                        )

                    if response.status == 429:
                        retry_after = int(response.headers.get("Retry-After", 1))
                        if attempt < retry_config.max_retries:
                            logger.warning(f"Rate limited, waiting {retry_after}s...")
                            await asyncio.sleep(min(retry_after, retry_config.max_delay))
                            continue
                        raise CloudRateLimitError(
                            "Rate limit exceeded",
                            retry_after
                        )

                    if response.status in (400, 422):
                        raise CloudValidationError(
                            f"Validation error: {response_text}",
                            response.status,
                            response_text
                        )

                    # Retry on server errors
                    if response.status in retry_config.retry_on_status:
                        if attempt < retry_config.max_retries:
                            delay = retry_config.get_delay(attempt)
                            logger.warning(
                                f"Request failed with {response.status}, "
                                f"retrying in {delay:.1f}s (attempt {attempt + 1}/{retry_config.max_retries})"
                            )
                            await asyncio.sleep(delay)
                            continue

                    # Non-retryable error
                    raise CloudApiError(
                        f"API error {response.status}: {response_text}",
                        response.status,
                        response_text
                    )

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                if attempt < retry_config.max_retries:
                    delay = retry_config.get_delay(attempt)
                    logger.warning(
                        f"Request failed with {type(e).__name__}: {e}, "
                        f"retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise CloudApiError(f"Request failed after {retry_config.max_retries} retries: {e}") from e

        raise CloudApiError(f"Request failed: {last_error}")

    # =========================================================================
    # Convenience verbs
    # =========================================================================

    async def get_json(self, path: str) -> Optional[Dict[str, Any]]:
        """GET a single resource. Returns None on 404."""
        try:
            return await self._request("GET", path)
        except CloudNotFoundError:
            return None

    async def list_json(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        """GET a collection.

        Accepts either a bare JSON array or an envelope with ``items``.
        A missing collection (404) is treated as empty.
        """
        try:
            response = await self._request("GET", path, params=params)
        except CloudNotFoundError:
            return []
        if isinstance(response, list):
            return response
        return response.get("items", [])

    async def put_json(self, path: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """PUT (create or replace) a resource."""
        return await self._request("PUT", path, data=data)

    async def delete(self, path: str) -> bool:
        """DELETE a resource. Returns False if it did not exist."""
        try:
            await self._request("DELETE", path)
        except CloudNotFoundError:
            return False
        return True

    async def health(self) -> bool:
        """True if the health endpoint answers 2xx."""
        try:
            await self._request("GET", self.api_config.health_path)
        except CloudApiError:
            return False
        return True
