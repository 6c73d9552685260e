"""Query coordinator: fetch-or-reuse for reads.

Provides:
- QueryCoordinator.query(): cached read with deduplication and retries
- QueryHandle: awaitable result plus a live subscription to the entry
- invalidate(): mark entries stale and revalidate the subscribed ones
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Generator, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from querysync.duration import parse_duration
from querysync.errors import (
    ErrorKind,
    SubscriptionClosed,
    TransportError,
    classify_exception,
)
from querysync.keys import KeyTarget, encode, format_key
from querysync.notifications import Notifier
from querysync.session import SessionGate
from querysync.store import CacheStore
from querysync.transport import Transport
from querysync.types import (
    CacheEntry,
    CacheKey,
    Duration,
    EntryStatus,
    NotificationKind,
    RequestDescriptor,
    Scalar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EntryCallback = Callable[[CacheEntry[Any]], None]


@dataclass(frozen=True, slots=True)
class QueryOptions:
    """How to fetch and keep a key; the latest query() call for a key wins."""

    descriptor: RequestDescriptor
    path: str
    stale_time: int
    retries: int
    session_scoped: bool


@dataclass(eq=False)
class InFlightRequest:
    """An outstanding fetch; at most one exists per key."""

    key: CacheKey
    options: QueryOptions
    generation: int
    epoch: int
    task: asyncio.Task[None] | None = None
    ref_count: int = 0
    attempts: int = 0
    detached: bool = False
    settled: bool = False
    result: Any = None
    error: TransportError | None = None
    waiters: set[asyncio.Future[Any]] = field(default_factory=set)


class QueryHandle(Generic[T]):
    """Result of QueryCoordinator.query().

    Usage:
        handle = queries.query(RequestDescriptor("items", {"page": 1}))
        items = await handle         # data, or raises TransportError
        handle.snapshot.status       # current CacheEntry
        handle.unsubscribe()
    """

    __slots__ = (
        "_active",
        "_coordinator",
        "_inflight",
        "_key",
        "_last",
        "_on_change",
        "_unsubscribe",
        "_waiter",
    )

    def __init__(
        self,
        coordinator: QueryCoordinator,
        key: CacheKey,
        on_change: EntryCallback | None,
    ) -> None:
        self._coordinator = coordinator
        self._key = key
        self._on_change = on_change
        self._active = True
        self._inflight: InFlightRequest | None = None
        self._waiter: asyncio.Future[Any] | None = None
        self._last: CacheEntry[Any] = CacheEntry(key=key)
        self._unsubscribe: Callable[[], None] = lambda: None

    def __repr__(self) -> str:
        return f"QueryHandle({format_key(self._key)}, {self._last.status.value})"

    @property
    def key(self) -> CacheKey:
        return self._key

    @property
    def active(self) -> bool:
        return self._active

    @property
    def snapshot(self) -> CacheEntry[T]:
        """Latest entry seen by this subscription."""
        if self._active:
            entry = self._coordinator.store.get(self._key)
            if entry is not None:
                self._last = entry
        return self._last

    @property
    def data(self) -> T | None:
        return self.snapshot.data

    @property
    def status(self) -> EntryStatus:
        return self.snapshot.status

    @property
    def error(self) -> TransportError | None:
        return self.snapshot.error

    def unsubscribe(self) -> None:
        """Stop deliveries. The underlying request, if any, keeps running."""
        if not self._active:
            return
        self._active = False
        self._unsubscribe()
        if self._inflight is not None:
            self._coordinator._detach(self._inflight)
        if self._waiter is not None and not self._waiter.done():
            self._waiter.cancel()

    def __enter__(self) -> QueryHandle[T]:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()

    def __await__(self) -> Generator[Any, None, T]:
        return self._result().__await__()

    def _deliver(self, entry: CacheEntry[Any]) -> None:
        self._last = entry
        if self._on_change is not None and self._active:
            self._on_change(entry)

    async def _result(self) -> T:
        if not self._active:
            raise SubscriptionClosed(f"{format_key(self._key)} was unsubscribed")
        inflight = self._inflight
        if inflight is None:
            entry = self.snapshot
            if entry.status is EntryStatus.ERRORED and entry.error is not None:
                raise entry.error
            return entry.data  # type: ignore[return-value]
        if inflight.settled:
            if inflight.error is not None:
                raise inflight.error
            return inflight.result  # type: ignore[no-any-return]

        waiter: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        inflight.waiters.add(waiter)
        self._waiter = waiter
        try:
            return await waiter  # type: ignore[no-any-return]
        except asyncio.CancelledError:
            if not self._active:
                raise SubscriptionClosed(
                    f"{format_key(self._key)} was unsubscribed"
                ) from None
            raise
        finally:
            inflight.waiters.discard(waiter)


class QueryCoordinator:
    """Orchestrates cached reads against a Transport.

    Fresh entries are served without a network call. Stale, errored or
    missing entries trigger one background fetch per key; concurrent
    callers attach to it. Must be used from within a running event loop.
    """

    def __init__(
        self,
        store: CacheStore,
        transport: Transport,
        gate: SessionGate,
        notifier: Notifier,
        *,
        stale_time: Duration = "30s",
        retries: int = 1,
        retry_delay: Duration = 0,
        defaults: Mapping[str, Mapping[str, Scalar]] | None = None,
    ) -> None:
        if retries < 0:
            raise ValueError("retries must not be negative")
        self._store = store
        self._transport = transport
        self._gate = gate
        self._notifier = notifier
        self._stale_time = parse_duration(stale_time)
        self._retries = retries
        self._retry_delay = parse_duration(retry_delay)
        self._defaults = dict(defaults or {})
        self._options: dict[CacheKey, QueryOptions] = {}
        self._in_flight: dict[CacheKey, InFlightRequest] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._store.add_eviction_listener(self._forget)

    @property
    def store(self) -> CacheStore:
        return self._store

    def key_for(self, descriptor: RequestDescriptor) -> CacheKey:
        """Encode a descriptor with the defaults registered for its resource."""
        return encode(descriptor, defaults=self._defaults.get(descriptor.resource))

    def in_flight(self, key: CacheKey) -> InFlightRequest | None:
        return self._in_flight.get(key)

    def query(
        self,
        descriptor: RequestDescriptor,
        *,
        on_change: EntryCallback | None = None,
        stale_time: Duration | None = None,
        retries: int | None = None,
        session_scoped: bool = True,
        path: str | None = None,
    ) -> QueryHandle[Any]:
        """Subscribe to a descriptor, fetching it unless a fresh entry exists.

        Args:
            descriptor: Resource and parameters to read
            on_change: Called synchronously with every new entry snapshot
            stale_time: Freshness window (default: coordinator default)
            retries: Automatic retries for transient failures
            session_scoped: Drop the entry when credentials are lost
            path: Transport path (default: "/" + resource)

        Returns:
            A QueryHandle; await it for the data.
        """
        key = self._register(descriptor, stale_time, retries, session_scoped, path)
        handle: QueryHandle[Any] = QueryHandle(self, key, on_change)
        handle._unsubscribe = self._store.subscribe(
            key, handle._deliver, session_scoped=session_scoped
        )
        entry = self._store.get(key)
        if entry is not None:
            handle._last = entry
        if entry is None or entry.status is not EntryStatus.FRESH:
            inflight = self._ensure_fetch(key)
            inflight.ref_count += 1
            handle._inflight = inflight
        else:
            logger.debug("Cache hit for %s", format_key(key))
        return handle

    async def fetch(self, descriptor: RequestDescriptor, **kwargs: Any) -> Any:
        """Query, await the data and unsubscribe."""
        handle = self.query(descriptor, **kwargs)
        try:
            return await handle
        finally:
            handle.unsubscribe()

    def prefetch(
        self,
        descriptor: RequestDescriptor,
        *,
        stale_time: Duration | None = None,
        retries: int | None = None,
        session_scoped: bool = True,
        path: str | None = None,
    ) -> None:
        """Warm the cache without subscribing."""
        key = self._register(descriptor, stale_time, retries, session_scoped, path)
        entry = self._store.get(key)
        if entry is None or entry.status is not EntryStatus.FRESH:
            self._ensure_fetch(key)

    def get_entry(self, descriptor: RequestDescriptor) -> CacheEntry[Any] | None:
        return self._store.get(self.key_for(descriptor))

    def set_query_data(
        self,
        descriptor: RequestDescriptor,
        data: Any,
        *,
        stale_time: Duration | None = None,
    ) -> CacheEntry[Any]:
        """Write data for a descriptor directly, e.g. from a mutation result."""
        key = self.key_for(descriptor)
        options = self._options.get(key)
        if stale_time is not None:
            window = parse_duration(stale_time)
        elif options is not None:
            window = options.stale_time
        else:
            window = self._stale_time
        # the outstanding fetch still settles last
        return self._store.put(key, data, window, pending=key in self._in_flight)

    def invalidate(self, *targets: KeyTarget) -> list[CacheKey]:
        """Mark matching entries stale and revalidate those with subscribers.

        Targets are resource prefixes ("items"), CacheKeys or descriptors.
        Keys with a fetch already in flight are revalidated once it settles.
        """
        matched: dict[CacheKey, None] = {}
        for target in targets:
            if isinstance(target, RequestDescriptor):
                target = self.key_for(target)
            for key in self._store.mark_stale(target):
                matched[key] = None
        for key in matched:
            if key in self._in_flight or key not in self._options:
                continue
            if self._store.subscriber_count(key) > 0:
                logger.debug("Revalidating %s", format_key(key))
                self._dispatch(key)
        return list(matched)

    async def wait_idle(self) -> None:
        """Wait until no fetch is outstanding."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel outstanding fetches and drop all references."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for inflight in self._in_flight.values():
            for waiter in inflight.waiters:
                waiter.cancel()
        self._in_flight.clear()
        self._options.clear()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _register(
        self,
        descriptor: RequestDescriptor,
        stale_time: Duration | None,
        retries: int | None,
        session_scoped: bool,
        path: str | None,
    ) -> CacheKey:
        key = self.key_for(descriptor)
        self._options[key] = QueryOptions(
            descriptor=descriptor,
            path=path or "/" + descriptor.resource.strip("/"),
            stale_time=(
                parse_duration(stale_time)
                if stale_time is not None
                else self._stale_time
            ),
            retries=self._retries if retries is None else retries,
            session_scoped=session_scoped,
        )
        return key

    def _ensure_fetch(self, key: CacheKey) -> InFlightRequest:
        inflight = self._in_flight.get(key)
        if inflight is not None:
            logger.debug("Attached to in-flight request for %s", format_key(key))
            inflight.detached = False
            return inflight
        return self._dispatch(key)

    def _dispatch(self, key: CacheKey) -> InFlightRequest:
        options = self._options[key]
        inflight = InFlightRequest(
            key=key,
            options=options,
            generation=self._store.generation(key),
            epoch=self._gate.epoch,
        )
        self._in_flight[key] = inflight
        task = asyncio.create_task(self._run(inflight))
        inflight.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._store.mark_pending(key, session_scoped=options.session_scoped)
        logger.debug("Fetching %s", format_key(key))
        return inflight

    def _forget(self, key: CacheKey) -> None:
        self._options.pop(key, None)

    def _detach(self, inflight: InFlightRequest) -> None:
        inflight.ref_count -= 1
        if inflight.ref_count <= 0 and not inflight.settled:
            inflight.detached = True

    def _should_retry(self, inflight: InFlightRequest, error: TransportError) -> bool:
        if not error.kind.retryable:
            return False
        if inflight.attempts > inflight.options.retries:
            return False
        if inflight.detached:
            return False
        return self._gate.is_current(inflight.epoch)

    async def _run(self, inflight: InFlightRequest) -> None:
        options = inflight.options
        params = {k: v for k, v in options.descriptor.params.items() if v is not None}
        try:
            while True:
                inflight.attempts += 1
                try:
                    data = await self._transport.send(
                        "GET", options.path, params or None
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    error = classify_exception(e)
                    if self._should_retry(inflight, error):
                        logger.warning(
                            "Retrying %s after %s (attempt %d)",
                            format_key(inflight.key),
                            error.kind.value,
                            inflight.attempts,
                        )
                        if self._retry_delay:
                            await asyncio.sleep(self._retry_delay / 1000)
                        # handles may detach or the epoch move during the delay
                        if self._should_retry(inflight, error):
                            continue
                    self._settle_failure(inflight, error)
                else:
                    self._settle_success(inflight, data)
                return
        except asyncio.CancelledError:
            self._release(inflight)
            self._store.restore(inflight.key)
            for waiter in list(inflight.waiters):
                waiter.cancel()
            raise

    def _release(self, inflight: InFlightRequest) -> None:
        inflight.settled = True
        if self._in_flight.get(inflight.key) is inflight:
            del self._in_flight[inflight.key]

    def _settle_success(self, inflight: InFlightRequest, data: Any) -> None:
        key = inflight.key
        options = inflight.options
        self._release(inflight)

        if options.session_scoped and not self._gate.is_current(inflight.epoch):
            # fetched under credentials that have since been dropped
            self._store.restore(key)
            self._reject(
                inflight,
                TransportError(
                    ErrorKind.CREDENTIAL_REJECTED,
                    "Session changed while the request was in flight",
                ),
            )
            return

        self._store.put(
            key, data, options.stale_time, session_scoped=options.session_scoped
        )
        inflight.result = data
        for waiter in list(inflight.waiters):
            if not waiter.done():
                waiter.set_result(data)

        if self._store.generation(key) != inflight.generation:
            # invalidated while in flight; the result predates the write
            self._store.mark_stale(key)
            if (
                self._store.subscriber_count(key) > 0
                and key not in self._in_flight
                and key in self._options
            ):
                self._dispatch(key)

    def _settle_failure(self, inflight: InFlightRequest, error: TransportError) -> None:
        key = inflight.key
        self._release(inflight)
        if error.is_credential_failure or not self._gate.is_current(inflight.epoch):
            # credential loss is reported through the redirect alone
            self._store.restore(key)
            self._gate.handle_failure(error, inflight.epoch)
            self._reject(inflight, error)
            return

        self._store.mark_error(key, error)
        self._reject(inflight, error)
        logger.debug("Fetch failed for %s: %r", format_key(key), error)
        self._notifier.emit(
            NotificationKind.ERROR,
            error.message,
            title=f"Could not load {inflight.options.descriptor.resource}",
        )

    def _reject(self, inflight: InFlightRequest, error: TransportError) -> None:
        inflight.error = error
        for waiter in list(inflight.waiters):
            if not waiter.done():
                waiter.set_exception(error)
