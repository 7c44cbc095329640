"""
Service layer infrastructure - resilience patterns for API calls.

Provides:
- CacheManager: Response cache with caller-supplied max-age
- RequestDeduplicator: Collapses duplicate concurrent reads
- Throttle / Debounce / Batcher: Call-shaping primitives
- OfflineQueue: Durable queue of writes made while offline
- ConnectivityMonitor: Online/offline tracking
- ApiClient: Unified client combining all patterns
"""

from expense_sync.services.errors import (
    ErrorKind,
    ServiceError,
    NetworkUnavailableError,
    RequestTimeoutError,
    ServerError,
    ClientError,
    UnauthorizedError,
    RateLimitError,
)
from expense_sync.services.results import Ok, Queued, Err, RequestResult
from expense_sync.services.cache import CacheManager, CacheEntry, CacheResult
from expense_sync.services.deduplicator import RequestDeduplicator
from expense_sync.services.rate_controls import (
    Throttle,
    Debounce,
    Batcher,
    throttle,
    debounce,
    batch,
)
from expense_sync.services.connectivity import ConnectivityMonitor
from expense_sync.services.credentials import CredentialStore
from expense_sync.services.offline_queue import (
    OfflineQueue,
    QueuedRequest,
    DrainResult,
    SyncCompleted,
)
from expense_sync.services.client import ApiClient

__all__ = [
    # Errors
    "ErrorKind",
    "ServiceError",
    "NetworkUnavailableError",
    "RequestTimeoutError",
    "ServerError",
    "ClientError",
    "UnauthorizedError",
    "RateLimitError",
    # Results
    "Ok",
    "Queued",
    "Err",
    "RequestResult",
    # Cache
    "CacheManager",
    "CacheEntry",
    "CacheResult",
    # Deduplicator
    "RequestDeduplicator",
    # Rate controls
    "Throttle",
    "Debounce",
    "Batcher",
    "throttle",
    "debounce",
    "batch",
    # Offline
    "ConnectivityMonitor",
    "CredentialStore",
    "OfflineQueue",
    "QueuedRequest",
    "DrainResult",
    "SyncCompleted",
    # Client
    "ApiClient",
]
