"""Shared pytest fixtures."""

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from querysync import (
    CacheStore,
    CollectingSink,
    PolicyRegistry,
    SyncContext,
    create_context,
)


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeTransport:
    """Scripted transport.

    Responses are queued per (method, path); the last one repeats. Exceptions
    are raised, callables are called with the payload. ``pause()`` holds every
    call until ``resume()``.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []
        self.closed = False
        self._routes: dict[tuple[str, str], list[Any]] = {}
        self._released = asyncio.Event()
        self._released.set()

    def respond(self, method: str, path: str, *results: Any) -> None:
        self._routes[(method, path)] = list(results)

    def pause(self) -> None:
        self._released.clear()

    def resume(self) -> None:
        self._released.set()

    def count(self, method: str, path: str) -> int:
        return sum(1 for m, p, _ in self.calls if (m, p) == (method, path))

    async def send(self, method: str, path: str, payload: Any = None) -> Any:
        self.calls.append((method, path, payload))
        await self._released.wait()
        results = self._routes.get((method, path))
        if not results:
            raise AssertionError(f"unexpected call {method} {path}")
        result = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return result(payload)
        return result

    async def aclose(self) -> None:
        self.closed = True


class RecordingNavigator:
    def __init__(self) -> None:
        self.redirects = 0

    def redirect_to_login(self) -> None:
        self.redirects += 1


async def settle() -> None:
    """Let scheduled fetch tasks run to completion."""
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> CacheStore:
    """Create a fresh CacheStore for each test."""
    return CacheStore(clock=clock)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def navigator() -> RecordingNavigator:
    return RecordingNavigator()


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def policies() -> PolicyRegistry:
    registry = PolicyRegistry()
    registry.register("items:read", lambda user, _ctx: True)
    registry.register(
        "items:edit",
        lambda user, item: "editor" in user.roles or item.get("owner") == user.id,
    )
    registry.register("public", lambda user, _ctx: True, requires_identity=False)
    return registry


@pytest.fixture
def make_context(
    transport: FakeTransport,
    navigator: RecordingNavigator,
    sink: CollectingSink,
    policies: PolicyRegistry,
    clock: FakeClock,
) -> Callable[..., SyncContext]:
    def factory(**kwargs: Any) -> SyncContext:
        kwargs.setdefault("stale_time", "10s")
        return create_context(
            transport=transport,
            navigator=navigator,
            sink=sink,
            policies=policies,
            clock=clock,
            **kwargs,
        )

    return factory


@pytest.fixture
def ctx(make_context: Callable[..., SyncContext]) -> SyncContext:
    return make_context()


@pytest.fixture(name="settle")
def settle_fixture() -> Callable[[], Any]:
    return settle
