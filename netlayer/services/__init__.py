"""
Service layer infrastructure - resilience patterns for backend API calls.

Provides:
- CacheManager: TTL cache with stale-while-revalidate hints
- TokenRefreshCoordinator: Single-flight access token renewal
- RequestLifecycleRegistry: Cancellation, debounce/throttle and stale sweep
- NetworkMonitor: Connectivity tracking and offline gating
- ErrorHandler: Error classification and user-facing side effects
- ApiClient: Unified dispatcher combining all patterns
"""

from netlayer.services.errors import (
    ServiceError,
    ErrorKind,
    ErrorLevel,
    NetworkError,
    AuthError,
    PermissionDeniedError,
    ValidationFailedError,
    BusinessError,
    TransportError,
    RequestCancelledError,
)
from netlayer.services.cache import CacheManager, CacheEntry, CacheResult
from netlayer.services.token import (
    CredentialStore,
    MemoryCredentialStore,
    TokenGrant,
    TokenRefreshCoordinator,
)
from netlayer.services.lifecycle import RequestLifecycleRegistry
from netlayer.services.network import NetworkMonitor, NetworkState, NetworkType
from netlayer.services.notifier import Notifier, LoggingNotifier
from netlayer.services.transport import (
    HttpxTransport,
    Transport,
    TransportHandle,
    TransportRequest,
    TransportResponse,
)
from netlayer.services.error_handler import ErrorHandler
from netlayer.services.client import ApiClient, RequestDescriptor

__all__ = [
    # Errors
    "ServiceError",
    "ErrorKind",
    "ErrorLevel",
    "NetworkError",
    "AuthError",
    "PermissionDeniedError",
    "ValidationFailedError",
    "BusinessError",
    "TransportError",
    "RequestCancelledError",
    # Cache
    "CacheManager",
    "CacheEntry",
    "CacheResult",
    # Tokens
    "CredentialStore",
    "MemoryCredentialStore",
    "TokenGrant",
    "TokenRefreshCoordinator",
    # Lifecycle
    "RequestLifecycleRegistry",
    # Network
    "NetworkMonitor",
    "NetworkState",
    "NetworkType",
    # UI
    "Notifier",
    "LoggingNotifier",
    # Transport
    "HttpxTransport",
    "Transport",
    "TransportHandle",
    "TransportRequest",
    "TransportResponse",
    # Errors handling
    "ErrorHandler",
    # Client
    "ApiClient",
    "RequestDescriptor",
]
