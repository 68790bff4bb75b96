"""Cloud connector - REST records API over aiohttp."""

from connectors.cloud.cloud_client import (
    RemoteApiClient,
    RemoteApiConfig,
    RetryConfig,
    CloudApiError,
    CloudAuthError,
    CloudNotFoundError,
    CloudRateLimitError,
    CloudValidationError,
)
from connectors.cloud.cloud_store import CloudRecordStore

__all__ = [
    "RemoteApiClient",
    "RemoteApiConfig",
    "RetryConfig",
    "CloudApiError",
    "CloudAuthError",
    "CloudNotFoundError",
    "CloudRateLimitError",
    "CloudValidationError",
    "CloudRecordStore",
]
