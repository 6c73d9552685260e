"""querysync - Typed request cache with invalidation, dedup and a session gate."""

# Context
from querysync.context import SyncConfig, SyncContext, create_context

# Duration parsing
from querysync.duration import parse_duration

# Errors
from querysync.errors import (
    AccessPolicyError,
    ErrorKind,
    SubscriptionClosed,
    SyncError,
    TransportError,
    classify_exception,
)

# Key codec
from querysync.keys import encode, format_key, matches_prefix

# Coordinators
from querysync.mutation import Action, MutationCoordinator
from querysync.notifications import (
    CollectingSink,
    LoggingSink,
    NotificationSink,
    Notifier,
)
from querysync.query import QueryCoordinator, QueryHandle
from querysync.session import (
    LoggingNavigator,
    Navigator,
    Policy,
    PolicyRegistry,
    SessionGate,
)
from querysync.store import CacheStore
from querysync.transport import HttpTransport, Transport

# Core types
from querysync.types import (
    CacheEntry,
    CacheKey,
    Duration,
    EntryStatus,
    Notification,
    NotificationKind,
    RequestDescriptor,
    Session,
    SessionStatus,
    User,
)

__version__ = "0.1.0"

__all__ = [
    "AccessPolicyError",
    "Action",
    "CacheEntry",
    "CacheKey",
    "CacheStore",
    "CollectingSink",
    "Duration",
    "EntryStatus",
    "ErrorKind",
    "HttpTransport",
    "LoggingNavigator",
    "LoggingSink",
    "MutationCoordinator",
    "Navigator",
    "Notification",
    "NotificationKind",
    "NotificationSink",
    "Notifier",
    "Policy",
    "PolicyRegistry",
    "QueryCoordinator",
    "QueryHandle",
    "RequestDescriptor",
    "Session",
    "SessionGate",
    "SessionStatus",
    "SubscriptionClosed",
    "SyncConfig",
    "SyncContext",
    "SyncError",
    "Transport",
    "TransportError",
    "User",
    "classify_exception",
    "create_context",
    "encode",
    "format_key",
    "matches_prefix",
    "parse_duration",
]
