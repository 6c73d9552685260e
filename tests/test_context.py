"""Tests for SyncContext wiring and teardown."""

import asyncio

import pytest

from querysync import (
    EntryStatus,
    RequestDescriptor,
    SessionStatus,
    SyncConfig,
    SyncContext,
    create_context,
)


class TestCreateContext:
    def test_defaults(self, transport) -> None:
        """Test the context is built with default configuration."""
        ctx = create_context(transport=transport)
        assert ctx.gate.status is SessionStatus.UNKNOWN
        assert len(ctx.store) == 0
        assert ctx.policies.frozen

    def test_invalid_configuration(self, transport) -> None:
        """Invalid settings are rejected before anything is built."""
        with pytest.raises(ValueError, match="Invalid duration"):
            create_context(transport=transport, stale_time="soon")
        with pytest.raises(ValueError, match="retries"):
            create_context(transport=transport, retries=-1)

    def test_custom_paths(self, transport) -> None:
        """Test session endpoint paths are passed to the gate."""
        config = SyncConfig(identity_path="/me")
        ctx = SyncContext(transport, config=config)
        assert ctx.config.identity_path == "/me"

    async def test_idle_eviction_configured(self, make_context, transport) -> None:
        """Idle eviction setting reaches the store."""
        ctx = make_context(idle_eviction="0ms")
        transport.respond("GET", "/items", "data")
        await ctx.queries.fetch(RequestDescriptor("items"))
        await asyncio.sleep(0.01)
        assert ctx.queries.get_entry(RequestDescriptor("items")) is None


class TestTeardown:
    async def test_aclose_drops_state(self, ctx: SyncContext, transport) -> None:
        """Closing the context drops cached entries and the session."""
        transport.respond("GET", "/items", "data")
        transport.respond("GET", "/session", {"id": "u1"})
        await ctx.gate.ensure_session()
        await ctx.queries.fetch(RequestDescriptor("items"))

        await ctx.aclose()

        assert ctx.closed
        assert len(ctx.store) == 0
        assert ctx.gate.status is SessionStatus.UNKNOWN
        assert transport.closed

    async def test_aclose_cancels_pending_fetches(
        self, ctx: SyncContext, transport
    ) -> None:
        """Outstanding fetches are cancelled on close."""
        transport.respond("GET", "/items", "data")
        transport.pause()
        handle = ctx.queries.query(RequestDescriptor("items"))
        assert handle.status is EntryStatus.PENDING

        async with ctx:
            pass

        assert ctx.queries.in_flight(handle.key) is None
        assert ctx.closed

    async def test_aclose_is_idempotent(self, ctx: SyncContext, transport) -> None:
        """Test closing twice is harmless."""
        await ctx.aclose()
        await ctx.aclose(close_transport=False)
        assert transport.closed
