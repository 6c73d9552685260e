"""Tests for the mutation coordinator."""

import pytest

from querysync import (
    Action,
    EntryStatus,
    ErrorKind,
    NotificationKind,
    RequestDescriptor,
    SyncContext,
    TransportError,
)

ITEMS_PAGE_1 = RequestDescriptor("items", {"page": 1})
ITEMS_PAGE_2 = RequestDescriptor("items", {"page": 2})
USERS = RequestDescriptor("users")


class TestMutate:
    """Tests for mutate()."""

    async def test_action_name_maps_to_post(self, ctx: SyncContext, transport) -> None:
        """Test a bare action name is POSTed to its path."""
        transport.respond("POST", "/create-item", {"id": 2})

        result = await ctx.mutations.mutate("create-item", {"name": "x"})

        assert result == {"id": 2}
        assert transport.calls == [("POST", "/create-item", {"name": "x"})]

    async def test_explicit_action(self, ctx: SyncContext, transport) -> None:
        """Test an Action's method and path are used."""
        transport.respond("DELETE", "/items/2", None)

        await ctx.mutations.mutate(Action("delete-item", "DELETE", "/items/2"))

        assert transport.count("DELETE", "/items/2") == 1

    async def test_success_invalidates_prefix(
        self, ctx: SyncContext, transport
    ) -> None:
        """A successful write marks matching entries stale."""
        transport.respond("GET", "/items", "items")
        transport.respond("GET", "/users", "users")
        transport.respond("POST", "/create-item", {"id": 2})
        for descriptor in (ITEMS_PAGE_1, ITEMS_PAGE_2, USERS):
            await ctx.queries.fetch(descriptor)

        await ctx.mutations.mutate("create-item", {}, invalidates=["items"])

        assert ctx.queries.get_entry(ITEMS_PAGE_1).status is EntryStatus.STALE
        assert ctx.queries.get_entry(ITEMS_PAGE_2).status is EntryStatus.STALE
        assert ctx.queries.get_entry(USERS).status is EntryStatus.FRESH
        assert ctx.queries.get_entry(ITEMS_PAGE_1).data == "items"

    async def test_failure_does_not_invalidate(
        self, ctx: SyncContext, transport, sink
    ) -> None:
        """A failed write leaves the cache untouched."""
        transport.respond("GET", "/items", "items")
        transport.respond(
            "POST",
            "/create-item",
            TransportError(ErrorKind.CLIENT, "name taken", status=409),
        )
        await ctx.queries.fetch(ITEMS_PAGE_1)

        with pytest.raises(TransportError, match="name taken"):
            await ctx.mutations.mutate("create-item", {}, invalidates=["items"])

        assert ctx.queries.get_entry(ITEMS_PAGE_1).status is EntryStatus.FRESH
        [notification] = sink.notifications
        assert notification.kind is NotificationKind.ERROR
        assert notification.title == "create-item failed"

    async def test_never_retried(self, ctx: SyncContext, transport) -> None:
        """Test a failing mutation makes exactly one call."""
        transport.respond("POST", "/create-item", ConnectionError("reset"))

        with pytest.raises(TransportError) as exc_info:
            await ctx.mutations.mutate("create-item", {})

        assert exc_info.value.kind is ErrorKind.NETWORK
        assert transport.count("POST", "/create-item") == 1

    async def test_on_settled_runs_after_invalidation(
        self, ctx: SyncContext, transport
    ) -> None:
        """on_settled sees the cache already invalidated."""
        transport.respond("GET", "/items", "items")
        transport.respond("POST", "/create-item", {"id": 2})
        await ctx.queries.fetch(ITEMS_PAGE_1)
        observed = []

        def on_settled(result, error) -> None:
            observed.append(
                (result, error, ctx.queries.get_entry(ITEMS_PAGE_1).status)
            )

        await ctx.mutations.mutate(
            "create-item", {}, invalidates=["items"], on_settled=on_settled
        )

        assert observed == [({"id": 2}, None, EntryStatus.STALE)]

    async def test_on_settled_receives_error(self, ctx: SyncContext, transport) -> None:
        """Test on_settled is called with the error on failure."""
        failure = TransportError(ErrorKind.SERVER, "down", status=500)
        transport.respond("POST", "/create-item", failure)
        observed = []

        with pytest.raises(TransportError):
            await ctx.mutations.mutate(
                "create-item", {}, on_settled=lambda r, e: observed.append((r, e))
            )

        assert observed == [(None, failure)]

    async def test_updates_write_cache_directly(
        self, ctx: SyncContext, transport
    ) -> None:
        """Test updates write result data into the cache."""
        transport.respond("PUT", "/items/2", {"id": 2, "name": "renamed"})

        await ctx.mutations.mutate(
            Action("rename-item", "PUT", "/items/2"),
            {"name": "renamed"},
            updates=lambda item: [(RequestDescriptor(f"items/{item['id']}"), item)],
        )

        entry = ctx.queries.get_entry(RequestDescriptor("items/2"))
        assert entry.status is EntryStatus.FRESH
        assert entry.data == {"id": 2, "name": "renamed"}

    async def test_success_message(self, ctx: SyncContext, transport, sink) -> None:
        """Test a success notification is emitted."""
        transport.respond("POST", "/create-item", {"id": 2})

        await ctx.mutations.mutate("create-item", {}, success_message="Item created")

        [notification] = sink.notifications
        assert notification.kind is NotificationKind.SUCCESS
        assert notification.message == "Item created"

    async def test_subscribed_queries_revalidate(
        self, ctx: SyncContext, transport
    ) -> None:
        """Subscribed queries refetch after invalidation."""
        transport.respond("GET", "/items", ["a"], ["a", "b"])
        transport.respond("POST", "/create-item", {"id": "b"})
        handle = ctx.queries.query(ITEMS_PAGE_1)
        await handle

        await ctx.mutations.mutate("create-item", {}, invalidates=[ITEMS_PAGE_1])
        await ctx.queries.wait_idle()

        assert handle.data == ["a", "b"]
        assert transport.count("GET", "/items") == 2
