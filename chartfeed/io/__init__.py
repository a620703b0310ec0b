"""Network collaborators: REST client, request cache and realtime feed."""

from .api_client import ApiClient, ApiError, RequestRecord
from .auth import StaticTokenProvider, TokenProvider
from .realtime import (
    RealtimeError,
    RealtimeSubscriptionManager,
    SubscriptionHandle,
    backoff_delay,
    subscription_key,
)
from .request_cache import RequestCache, request_key

__all__ = [
    "ApiClient",
    "ApiError",
    "RealtimeError",
    "RealtimeSubscriptionManager",
    "RequestCache",
    "RequestRecord",
    "StaticTokenProvider",
    "SubscriptionHandle",
    "TokenProvider",
    "backoff_delay",
    "request_key",
    "subscription_key",
]
