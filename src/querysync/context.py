"""Process-scoped context wiring the cache, session and coordinators."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import TracebackType

from querysync.duration import parse_duration, parse_optional_duration
from querysync.mutation import MutationCoordinator
from querysync.notifications import NotificationSink, Notifier
from querysync.query import QueryCoordinator
from querysync.session import Navigator, PolicyRegistry, SessionGate
from querysync.store import CacheStore, Clock, system_clock
from querysync.transport import Transport
from querysync.types import Duration, Scalar

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Configuration for a SyncContext."""

    stale_time: Duration = "30s"
    retries: int = 1
    retry_delay: Duration = 0
    idle_eviction: Duration | None = None  # None: never evict
    identity_path: str = "/session"
    login_path: str = "/session/login"
    logout_path: str = "/session/logout"
    defaults: Mapping[str, Mapping[str, Scalar]] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise ValueError/TypeError for unusable values."""
        parse_duration(self.stale_time)
        parse_duration(self.retry_delay)
        parse_optional_duration(self.idle_eviction)
        if self.retries < 0:
            raise ValueError("retries must not be negative")


class SyncContext:
    """Owns the shared mutable state: one CacheStore and one Session.

    Usage:
        async with create_context(transport=HttpTransport(url)) as ctx:
            items = await ctx.queries.fetch(RequestDescriptor("items"))
    """

    def __init__(
        self,
        transport: Transport,
        *,
        config: SyncConfig | None = None,
        navigator: Navigator | None = None,
        sink: NotificationSink | None = None,
        policies: PolicyRegistry | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.config = config or SyncConfig()
        self.config.validate()
        self.transport = transport
        self.store = CacheStore(
            clock=clock,
            idle_eviction=parse_optional_duration(self.config.idle_eviction),
        )
        self.policies = policies if policies is not None else PolicyRegistry()
        self.policies.freeze()
        self.notifier = Notifier(sink)
        self.gate = SessionGate(
            transport,
            self.store,
            navigator=navigator,
            policies=self.policies,
            identity_path=self.config.identity_path,
            login_path=self.config.login_path,
            logout_path=self.config.logout_path,
        )
        self.queries = QueryCoordinator(
            self.store,
            transport,
            self.gate,
            self.notifier,
            stale_time=self.config.stale_time,
            retries=self.config.retries,
            retry_delay=self.config.retry_delay,
            defaults=self.config.defaults,
        )
        self.mutations = MutationCoordinator(
            self.queries, transport, self.gate, self.notifier
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self, *, close_transport: bool = True) -> None:
        """Cancel outstanding fetches and drop all state. Nothing is persisted."""
        if self._closed:
            return
        self._closed = True
        await self.queries.aclose()
        self.store.clear()
        self.gate.reset()
        if close_transport:
            await self.transport.aclose()
        logger.debug("Sync context closed")

    async def __aenter__(self) -> SyncContext:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


def create_context(
    *,
    transport: Transport,
    navigator: Navigator | None = None,
    sink: NotificationSink | None = None,
    policies: PolicyRegistry | None = None,
    clock: Clock = system_clock,
    stale_time: Duration = "30s",
    retries: int = 1,
    retry_delay: Duration = 0,
    idle_eviction: Duration | None = None,
    defaults: Mapping[str, Mapping[str, Scalar]] | None = None,
) -> SyncContext:
    """Create a SyncContext.

    Args:
        transport: Transport used for every network call
        navigator: Receives redirect_to_login() on credential loss
        sink: Receives notifications (default: log them)
        policies: Authorization policies; frozen by the context
        clock: Millisecond clock for freshness bookkeeping
        stale_time: Default freshness window
        retries: Automatic retries for transient query failures
        retry_delay: Pause between retries
        idle_eviction: Evict unsubscribed entries after this long (None: never)
        defaults: Per-resource default parameter values omitted from keys

    Returns:
        SyncContext with store, gate, queries and mutations
    """
    config = SyncConfig(
        stale_time=stale_time,
        retries=retries,
        retry_delay=retry_delay,
        idle_eviction=idle_eviction,
        defaults=dict(defaults or {}),
    )
    return SyncContext(
        transport,
        config=config,
        navigator=navigator,
        sink=sink,
        policies=policies,
        clock=clock,
    )
