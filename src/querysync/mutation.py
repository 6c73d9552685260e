"""Mutation coordinator: writes followed by cache invalidation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from querysync.errors import TransportError, classify_exception
from querysync.keys import KeyTarget
from querysync.notifications import Notifier
from querysync.query import QueryCoordinator
from querysync.session import SessionGate
from querysync.transport import Transport
from querysync.types import NotificationKind, RequestDescriptor, User

logger = logging.getLogger(__name__)

SettledCallback = Callable[[Any, TransportError | None], None]
CacheUpdates = Callable[[Any], Iterable[tuple[RequestDescriptor, Any]]]


@dataclass(frozen=True, slots=True)
class Action:
    """A named write. ``path`` defaults to "/" + name."""

    name: str
    method: str = "POST"
    path: str | None = None

    @property
    def target(self) -> str:
        return self.path or "/" + self.name.strip("/")


class MutationCoordinator:
    """Issues writes and invalidates the cache entries they affect.

    Mutations are never retried: each call is exactly one Transport call.
    """

    def __init__(
        self,
        queries: QueryCoordinator,
        transport: Transport,
        gate: SessionGate,
        notifier: Notifier,
    ) -> None:
        self._queries = queries
        self._transport = transport
        self._gate = gate
        self._notifier = notifier

    async def mutate(
        self,
        action: Action | str,
        payload: Any = None,
        *,
        invalidates: Iterable[KeyTarget] = (),
        updates: CacheUpdates | None = None,
        on_settled: SettledCallback | None = None,
        success_message: str | None = None,
    ) -> Any:
        """Run a write, then invalidate.

        Args:
            action: Action or action name ("create-item" -> POST /create-item)
            payload: Request body
            invalidates: Resource prefixes, keys or descriptors to mark stale
            updates: Maps the result to (descriptor, data) pairs written to
                the cache directly
            on_settled: Called with (result, None) after invalidation, or
                with (None, error) on failure
            success_message: Emitted as a success notification

        Returns:
            The transport result. Raises TransportError on failure.
        """
        if isinstance(action, str):
            action = Action(action)
        epoch = self._gate.epoch
        targets = list(invalidates)

        try:
            result = await self._transport.send(action.method, action.target, payload)
        except Exception as e:
            error = classify_exception(e)
            self._fail(action, error, epoch)
            if on_settled is not None:
                on_settled(None, error)
            raise error

        if targets:
            keys = self._queries.invalidate(*targets)
            logger.debug("%s invalidated %d entries", action.name, len(keys))
        if updates is not None:
            for descriptor, data in updates(result):
                self._queries.set_query_data(descriptor, data)
        if success_message:
            self._notifier.emit(NotificationKind.SUCCESS, success_message)
        if on_settled is not None:
            on_settled(result, None)
        return result

    async def login(self, credentials: Any) -> User:
        """Log in and refresh everything cached for the anonymous session."""
        user = await self._gate.login(credentials)
        cleared = self._queries.store.clear_session_scoped()
        self._queries.invalidate(*cleared)
        return user

    async def logout(self) -> None:
        await self._gate.logout()

    def _fail(self, action: Action, error: TransportError, epoch: int) -> None:
        if self._gate.handle_failure(error, epoch):
            return
        logger.debug("Mutation %s failed: %r", action.name, error)
        self._notifier.emit(
            NotificationKind.ERROR,
            error.message,
            title=f"{action.name} failed",
        )
