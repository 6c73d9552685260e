"""In-memory cache store with freshness and subscriber bookkeeping."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from typing import Any

from querysync.errors import TransportError
from querysync.keys import KeyTarget, format_key, matches_prefix
from querysync.types import CacheEntry, CacheKey, EntryStatus

logger = logging.getLogger(__name__)

Listener = Callable[[CacheEntry[Any]], None]
EvictionListener = Callable[[CacheKey], None]
Clock = Callable[[], int]


def system_clock() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


@dataclass
class _Slot:
    entry: CacheEntry[Any]
    listeners: dict[int, Listener] = field(default_factory=dict)
    generation: int = 0
    eviction: asyncio.TimerHandle | None = None


class CacheStore:
    """Mapping from CacheKey to CacheEntry.

    Every method is synchronous. Listeners run synchronously after each
    status or data transition with the new snapshot. Freshness is checked
    lazily on read; nothing sweeps the store in the background.
    """

    def __init__(
        self,
        *,
        clock: Clock = system_clock,
        idle_eviction: int | None = None,
    ) -> None:
        self._slots: dict[CacheKey, _Slot] = {}
        self._clock = clock
        self._idle_eviction = idle_eviction
        self._tokens = itertools.count()
        self._eviction_listeners: list[EvictionListener] = []

    def __contains__(self, key: object) -> bool:
        return key in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def keys(self) -> list[CacheKey]:
        return list(self._slots)

    def now(self) -> int:
        return self._clock()

    def get(self, key: CacheKey) -> CacheEntry[Any] | None:
        """Return the entry for ``key``, or None if it was never fetched.

        An expired fresh entry is flipped to stale here (stale-on-read).
        """
        slot = self._slots.get(key)
        if slot is None:
            return None
        entry = slot.entry
        if (
            entry.status is EntryStatus.FRESH
            and entry.stale_at is not None
            and self._clock() >= entry.stale_at
        ):
            self._transition(slot, status=EntryStatus.STALE)
        return slot.entry

    def generation(self, key: CacheKey) -> int:
        """Invalidation counter for ``key``; bumped by mark_stale."""
        slot = self._slots.get(key)
        return slot.generation if slot is not None else 0

    def subscriber_count(self, key: CacheKey) -> int:
        slot = self._slots.get(key)
        return len(slot.listeners) if slot is not None else 0

    def put(
        self,
        key: CacheKey,
        data: Any,
        freshness_window: int,
        *,
        session_scoped: bool | None = None,
        pending: bool = False,
    ) -> CacheEntry[Any]:
        """Store ``data`` as fresh until ``now + freshness_window`` ms.

        With ``pending`` the entry keeps its pending status; the outstanding
        fetch settles it.
        """
        slot = self._ensure(key, session_scoped)
        now = self._clock()
        self._transition(
            slot,
            status=EntryStatus.PENDING if pending else EntryStatus.FRESH,
            data=data,
            error=None,
            stale_at=now + freshness_window,
            updated_at=now,
        )
        return slot.entry

    def mark_pending(
        self, key: CacheKey, *, session_scoped: bool | None = None
    ) -> CacheEntry[Any]:
        slot = self._ensure(key, session_scoped)
        if slot.entry.status is not EntryStatus.PENDING:
            self._transition(slot, status=EntryStatus.PENDING)
        return slot.entry

    def restore(self, key: CacheKey) -> None:
        """Leave pending without recording a result."""
        slot = self._slots.get(key)
        if slot is None or slot.entry.status is not EntryStatus.PENDING:
            return
        status = EntryStatus.STALE if slot.entry.has_data else EntryStatus.IDLE
        self._transition(slot, status=status)

    def mark_stale(self, target: KeyTarget) -> list[CacheKey]:
        """Mark every fresh entry matching ``target`` stale, keeping data.

        Returns all matched keys. The invalidation generation is bumped for
        each of them, including entries currently pending, so that a fetch
        settling afterwards can tell its result predates the invalidation.
        """
        matched = [key for key in self._slots if matches_prefix(key, target)]
        for key in matched:
            slot = self._slots[key]
            slot.generation += 1
            if slot.entry.status is EntryStatus.FRESH:
                self._transition(slot, status=EntryStatus.STALE)
        if matched:
            logger.debug("Marked %d entries stale for %r", len(matched), target)
        return matched

    def mark_error(self, key: CacheKey, error: TransportError) -> CacheEntry[Any]:
        """Record a failed fetch; previously cached data is kept."""
        slot = self._ensure(key, None)
        self._transition(slot, status=EntryStatus.ERRORED, error=error)
        return slot.entry

    def subscribe(
        self,
        key: CacheKey,
        listener: Listener,
        *,
        session_scoped: bool | None = None,
    ) -> Callable[[], None]:
        """Register ``listener`` for ``key``; returns an idempotent unsubscribe."""
        slot = self._ensure(key, session_scoped)
        if slot.eviction is not None:
            slot.eviction.cancel()
            slot.eviction = None
        token = next(self._tokens)
        slot.listeners[token] = listener
        slot.entry = replace(slot.entry, subscriber_count=len(slot.listeners))

        def unsubscribe() -> None:
            current = self._slots.get(key)
            if current is not slot or token not in slot.listeners:
                return
            del slot.listeners[token]
            slot.entry = replace(slot.entry, subscriber_count=len(slot.listeners))
            if not slot.listeners:
                self._schedule_eviction(key, slot)

        return unsubscribe

    def add_eviction_listener(self, listener: EvictionListener) -> Callable[[], None]:
        """Call ``listener`` with each key removed from the store."""
        self._eviction_listeners.append(listener)

        def remove() -> None:
            if listener in self._eviction_listeners:
                self._eviction_listeners.remove(listener)

        return remove

    def evict(self, key: CacheKey) -> None:
        """Remove an entry that has no subscribers."""
        slot = self._slots.get(key)
        if slot is None:
            return
        if slot.listeners:
            raise ValueError(
                f"cannot evict {format_key(key)}: "
                f"{len(slot.listeners)} subscribers remain"
            )
        if slot.eviction is not None:
            slot.eviction.cancel()
        del self._slots[key]
        logger.debug("Evicted %s", format_key(key))
        self._notify_evicted([key])

    def clear_session_scoped(self) -> list[CacheKey]:
        """Drop session-scoped data.

        Unsubscribed entries are removed; subscribed ones are reset to blank
        entries so their listeners see the data disappear.
        """
        cleared = []
        for key, slot in list(self._slots.items()):
            if not slot.entry.session_scoped:
                continue
            cleared.append(key)
            slot.generation += 1
            pending = slot.entry.status is EntryStatus.PENDING
            if not slot.listeners and not pending:
                self.evict(key)
                continue
            slot.entry = CacheEntry(
                key=key,
                status=EntryStatus.PENDING if pending else EntryStatus.IDLE,
                subscriber_count=len(slot.listeners),
                session_scoped=True,
            )
            self._publish(slot)
        return cleared

    def clear(self) -> None:
        """Drop every entry and pending eviction timer."""
        for slot in self._slots.values():
            if slot.eviction is not None:
                slot.eviction.cancel()
        keys = list(self._slots)
        self._slots.clear()
        self._notify_evicted(keys)

    def entries(self) -> Iterator[CacheEntry[Any]]:
        return (slot.entry for slot in list(self._slots.values()))

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _ensure(self, key: CacheKey, session_scoped: bool | None) -> _Slot:
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot(
                entry=CacheEntry(
                    key=key,
                    session_scoped=True if session_scoped is None else session_scoped,
                )
            )
            self._slots[key] = slot
        elif session_scoped is not None and slot.entry.session_scoped != session_scoped:
            slot.entry = replace(slot.entry, session_scoped=session_scoped)
        return slot

    def _transition(self, slot: _Slot, **changes: Any) -> None:
        slot.entry = replace(slot.entry, **changes)
        self._publish(slot)

    def _publish(self, slot: _Slot) -> None:
        entry = slot.entry
        for listener in list(slot.listeners.values()):
            try:
                listener(entry)
            except Exception:
                logger.exception("Cache listener failed for %s", format_key(entry.key))

    def _notify_evicted(self, keys: list[CacheKey]) -> None:
        for listener in list(self._eviction_listeners):
            for key in keys:
                try:
                    listener(key)
                except Exception:
                    logger.exception("Eviction listener failed for %s", format_key(key))

    def _schedule_eviction(self, key: CacheKey, slot: _Slot) -> None:
        if self._idle_eviction is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; idle eviction skipped for %s", key)
            return
        slot.eviction = loop.call_later(
            self._idle_eviction / 1000, self._evict_idle, key, slot
        )

    def _evict_idle(self, key: CacheKey, slot: _Slot) -> None:
        slot.eviction = None
        if self._slots.get(key) is not slot or slot.listeners:
            return
        if slot.entry.status is EntryStatus.PENDING:
            # Let the fetch settle first
            self._schedule_eviction(key, slot)
            return
        self.evict(key)
