"""Core types for the querysync request cache."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from querysync.errors import TransportError

T = TypeVar("T")

# Duration type alias
Duration = str | int  # "30s", "5m", "2h", "1d" or milliseconds

Scalar = str | int | float | bool | None

_SCALAR_TYPES = (str, int, float, bool, type(None))


@dataclass(frozen=True, slots=True)
class RequestDescriptor:
    """A semantic read request: a resource name plus scalar parameters.

    The resource is a "/"-separated path such as "items" or "users/42/posts".
    Parameters are copied into a read-only mapping at construction.
    """

    resource: str
    params: Mapping[str, Scalar] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.resource or not self.resource.strip("/"):
            raise ValueError("resource must be a non-empty path")
        params = dict(self.params)
        for name, value in params.items():
            if not isinstance(name, str):
                raise TypeError(f"parameter names must be strings, got {name!r}")
            if not isinstance(value, _SCALAR_TYPES):
                raise TypeError(
                    f"parameter {name!r} must be a scalar, got {type(value).__name__}"
                )
        object.__setattr__(self, "params", MappingProxyType(params))

    def __hash__(self) -> int:
        return hash((self.resource, frozenset(self.params.items())))

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(part for part in self.resource.split("/") if part)


@dataclass(frozen=True, slots=True)
class CacheKey:
    """Canonical cache key derived from a RequestDescriptor.

    ``params`` holds ``(name, type_tag, value)`` triples sorted by name; the
    type tag keeps 1, 1.0, True and "1" apart.
    """

    path: tuple[str, ...]
    params: tuple[tuple[str, str, Any], ...] = ()

    def __repr__(self) -> str:
        from querysync.keys import format_key

        return f"CacheKey({format_key(self)})"


class EntryStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    FRESH = "fresh"
    STALE = "stale"
    ERRORED = "errored"


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """Snapshot of a cached query result.

    ``updated_at`` is None until data has been stored at least once; stale,
    pending and errored entries keep their last data.
    """

    key: CacheKey
    status: EntryStatus = EntryStatus.IDLE
    data: T | None = None
    error: TransportError | None = None
    stale_at: int | None = None  # Unix timestamp ms
    updated_at: int | None = None  # Unix timestamp ms of the last put
    subscriber_count: int = 0
    session_scoped: bool = True

    @property
    def has_data(self) -> bool:
        return self.updated_at is not None


class SessionStatus(str, Enum):
    UNKNOWN = "unknown"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True, slots=True)
class User:
    """A verified identity returned by the identity or login endpoint."""

    id: str
    name: str | None = None
    roles: frozenset[str] = frozenset()
    claims: Mapping[str, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def from_payload(cls, payload: Any) -> User:
        """Build a User from a response body (bare or under a "user" key)."""
        if isinstance(payload, Mapping) and isinstance(payload.get("user"), Mapping):
            payload = payload["user"]
        if not isinstance(payload, Mapping) or payload.get("id") in (None, ""):
            raise ValueError("identity payload has no user id")
        known = {"id", "name", "roles"}
        return cls(
            id=str(payload["id"]),
            name=payload.get("name"),
            roles=frozenset(payload.get("roles") or ()),
            claims=MappingProxyType(
                {k: v for k, v in payload.items() if k not in known}
            ),
        )


@dataclass(frozen=True, slots=True)
class Session:
    """Process-wide authentication state.

    ``epoch`` increases on every credential loss; requests stamped with an
    older epoch belong to a rejected credential context.
    """

    status: SessionStatus = SessionStatus.UNKNOWN
    identity: User | None = None
    epoch: int = 0


class NotificationKind(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


@dataclass(frozen=True, slots=True)
class Notification:
    """A human-readable event for the UI layer."""

    kind: NotificationKind
    title: str
    message: str
