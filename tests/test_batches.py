"""Tests for batch card assignment and resolution."""

from unittest.mock import AsyncMock

import pytest

from conftest import classified, make_item
from inbox_triage.config_schema import AppConfig
from inbox_triage.core.errors import BatchCardNotFoundError, BatchCardStateError
from inbox_triage.db import BatchCard, DatabaseStore, new_id
from inbox_triage.engine.batches import BatchAssigner, BatchResolver, batch_type_config


async def _save(store: DatabaseStore, item_id: str, batch_type: str | None, **kwargs) -> None:
    item = make_item(item_id=item_id, **kwargs)
    item.classification = classified(batch_type)
    await store.save_item(item)


@pytest.fixture
def assigner(store: DatabaseStore) -> BatchAssigner:
    return BatchAssigner(store, AppConfig())


@pytest.fixture
def resolver(store: DatabaseStore) -> BatchResolver:
    return BatchResolver(store)


async def _assigned_card(store: DatabaseStore, assigner: BatchAssigner, *item_ids: str) -> BatchCard:
    for item_id in item_ids:
        await _save(store, item_id, "newsletters", sender=f"{item_id}@news.com")
    await assigner.assign()
    cards = await store.list_cards(pattern="batch", status="pending")
    assert len(cards) == 1
    return cards[0]


class TestBatchTypeConfig:
    def test_configured_type(self) -> None:
        settings = batch_type_config(AppConfig(), "calendar")
        assert settings.title == "Calendar"
        assert settings.action == "accept & archive"

    def test_unknown_type_gets_generic_card(self) -> None:
        settings = batch_type_config(AppConfig(), "travel_bookings")
        assert settings.title == "Travel bookings"
        assert settings.explanation == "Items grouped as travel bookings"
        assert settings.action == "archive"


class TestBatchAssigner:
    """Tests for grouping items onto pending cards."""

    @pytest.mark.asyncio
    async def test_one_pending_card_per_batch_type(self, store, assigner) -> None:
        await _save(store, "a", "newsletters")
        await _save(store, "b", "newsletters")
        await _save(store, "c", "finance")
        await _save(store, "d", None)

        result = await assigner.assign()

        assert result.assigned == 3
        assert result.per_type == {"newsletters": 2, "finance": 1}
        cards = {c.batch_type: c for c in await store.list_cards(pattern="batch")}
        assert set(cards) == {"newsletters", "finance"}
        assert cards["newsletters"].item_count == 2
        assert cards["newsletters"].title == "Newsletters"
        assert cards["newsletters"].data["action"] == "archive"
        item = await store.get_item("a")
        assert item.classification.batch_card_id == cards["newsletters"].id
        assert (await store.get_item("d")).classification.batch_card_id is None

    @pytest.mark.asyncio
    async def test_later_items_join_existing_card(self, store, assigner) -> None:
        await _save(store, "a", "newsletters")
        await _save(store, "b", "newsletters")
        await assigner.assign()

        await _save(store, "c", "newsletters")
        result = await assigner.assign()

        assert result.assigned == 1
        cards = await store.list_cards(pattern="batch")
        assert len(cards) == 1
        assert cards[0].item_count == 3

    @pytest.mark.asyncio
    async def test_rerun_is_a_no_op(self, store, assigner) -> None:
        await _save(store, "a", "spam")
        await assigner.assign()

        result = await assigner.assign()

        assert result.assigned == 0
        cards = await store.list_cards(pattern="batch")
        assert cards[0].item_count == 1

    @pytest.mark.asyncio
    async def test_resolved_card_gets_a_successor(self, store, assigner, resolver) -> None:
        card = await _assigned_card(store, assigner, "a")
        await resolver.resolve(card.id, accepted=["a"], rejected=[])

        await _save(store, "b", "newsletters")
        await assigner.assign()

        pending = await store.list_cards(pattern="batch", status="pending")
        assert len(pending) == 1
        assert pending[0].id != card.id
        assert pending[0].item_count == 1


class TestBatchResolver:
    """Tests for resolving batch cards."""

    @pytest.mark.asyncio
    async def test_accept_and_reject(self, store, assigner, resolver) -> None:
        card = await _assigned_card(store, assigner, "a", "b")

        result = await resolver.resolve(card.id, accepted=["a"], rejected=["b"])

        assert result.accepted_count == 1
        assert result.rejected_count == 1
        assert result.failed_count == 0
        assert result.action == "archive"

        accepted = await store.get_item("a")
        assert accepted.status == "archived"
        assert accepted.classification.triage_path == "bulk"

        rejected = await store.get_item("b")
        assert rejected.status == "new"
        assert rejected.classification is None

        stored = await store.get_card(card.id)
        assert stored.status == "confirmed"
        assert stored.result["acceptedCount"] == 1
        assert stored.result["rejectedCount"] == 1
        assert "completedAt" in stored.result

    @pytest.mark.asyncio
    async def test_rejected_item_is_reclassified_next_pass(self, store, assigner, resolver) -> None:
        card = await _assigned_card(store, assigner, "a")

        await resolver.resolve(card.id, accepted=[], rejected=["a"])

        assert [i.id for i in await store.list_unclassified_items()] == ["a"]

    @pytest.mark.asyncio
    async def test_writes_audit_entry(self, store, assigner, resolver) -> None:
        card = await _assigned_card(store, assigner, "a", "b")

        await resolver.resolve(card.id, accepted=["a", "b"], rejected=[])

        logs = await store.get_action_logs(action_type="triage_action")
        assert len(logs) == 1
        assert logs[0].description == (
            "Bulk-archived 2 newsletters item(s) from a@news.com, b@news.com; "
            "0 sent back for individual review"
        )
        assert logs[0].details["triagePath"] == "bulk"
        assert logs[0].triggered_by == "user"

    @pytest.mark.asyncio
    async def test_calendar_accept_logs_invites(self, store, assigner, resolver) -> None:
        await _save(store, "inv", "calendar")
        await assigner.assign()
        card = (await store.list_cards(pattern="batch"))[0]

        result = await resolver.resolve(card.id, accepted=["inv"], rejected=[])

        assert result.action == "accept & archive"
        descriptions = [log.description for log in await store.get_action_logs()]
        assert "Accepted 1 calendar invite" in descriptions

    @pytest.mark.asyncio
    async def test_second_resolve_rejected(self, store, assigner, resolver) -> None:
        card = await _assigned_card(store, assigner, "a")
        await resolver.resolve(card.id, accepted=["a"], rejected=[])

        with pytest.raises(BatchCardStateError):
            await resolver.resolve(card.id, accepted=["a"], rejected=[])

    @pytest.mark.asyncio
    async def test_unknown_card(self, resolver) -> None:
        with pytest.raises(BatchCardNotFoundError):
            await resolver.resolve("card_missing", accepted=[], rejected=[])

    @pytest.mark.asyncio
    async def test_learning_card_is_not_resolvable(self, store, resolver) -> None:
        card = await store.insert_card(
            BatchCard(id=new_id("card_"), title="Suggestions", pattern="learning", data={"batchType": "learning"})
        )

        with pytest.raises(BatchCardStateError):
            await resolver.resolve(card.id, accepted=[], rejected=[])

    @pytest.mark.asyncio
    async def test_missing_item_counted_not_fatal(self, store, assigner, resolver) -> None:
        card = await _assigned_card(store, assigner, "a", "b")

        result = await resolver.resolve(card.id, accepted=["a", "ghost", "b"], rejected=[])

        assert result.accepted_count == 2
        assert result.failed_count == 1
        assert result.failed_item_ids == ["ghost"]
        assert (await store.get_item("b")).status == "archived"
        assert (await store.get_card(card.id)).status == "confirmed"

    @pytest.mark.asyncio
    async def test_executor_is_best_effort(self, store, assigner) -> None:
        executor = AsyncMock()
        executor.execute.side_effect = RuntimeError("gmail down")
        resolver = BatchResolver(store, executors={"gmail": executor})
        card = await _assigned_card(store, assigner, "a")

        result = await resolver.resolve(card.id, accepted=["a"], rejected=[])

        assert result.accepted_count == 1
        executor.execute.assert_awaited_once()
        assert executor.execute.await_args.args[1] == "archive"
        assert (await store.get_item("a")).status == "archived"

    @pytest.mark.asyncio
    async def test_unlisted_item_moves_to_successor_card(self, store, assigner, resolver) -> None:
        """An item stamped after the user loaded the card is not lost on resolve."""
        card = await _assigned_card(store, assigner, "a", "b")

        await resolver.resolve(card.id, accepted=["a"], rejected=[])

        left_over = await store.get_item("b")
        assert left_over.status == "new"
        assert left_over.classification.batch_card_id is None
        assert left_over.classification.batch_type == "newsletters"

        result = await assigner.assign()

        assert result.assigned == 1
        pending = await resolver.list_pending()
        assert len(pending) == 1
        assert pending[0].card.id != card.id
        assert [i.id for i in pending[0].items] == ["b"]


class TestListPending:
    @pytest.mark.asyncio
    async def test_lists_cards_with_items(self, store, assigner, resolver) -> None:
        card = await _assigned_card(store, assigner, "a", "b")

        pending = await resolver.list_pending()

        assert len(pending) == 1
        assert pending[0].card.id == card.id
        assert sorted(i.id for i in pending[0].items) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_omits_resolved_cards(self, store, assigner, resolver) -> None:
        card = await _assigned_card(store, assigner, "a")
        await resolver.resolve(card.id, accepted=["a"], rejected=[])

        assert await resolver.list_pending() == []
