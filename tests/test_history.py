from datetime import datetime, timedelta

import pytest
from sqlalchemy import text

from stockledger.exceptions import InsufficientStockError, ItemNotFoundError, TransactionConflictError
from stockledger.models.movement import MovementType, utcnow
from stockledger.schemas.movement import HistoryFilters, MovementOut, MovementQuery
from stockledger.services import history_reconstructor, movement_store

T0 = datetime(2024, 3, 1, 9, 0)


def _movement(id, movement_type, quantity, before, after, item_id="item-1", at=None):
    return MovementOut(
        id=id,
        item_id=item_id,
        quantity=quantity,
        movement_type=movement_type,
        stock_before=before,
        stock_after=after,
        created_by="tester",
        created_at=at or T0 + timedelta(minutes=id),
    )


class TestReconstruct:
    def test_walks_back_from_current_stock(self):
        movements = [
            _movement(1, MovementType.IN, 3, 10, 13),
            _movement(2, MovementType.OUT, 5, 13, 8),
            _movement(3, MovementType.ADJUSTMENT, 12, 8, 20),
        ]
        entries = history_reconstructor.reconstruct("item-1", movements, 20)
        assert [(e.stock_before, e.stock_after) for e in entries] == [(10, 13), (13, 8), (8, 20)]

    def test_empty_slice(self):
        assert history_reconstructor.reconstruct("item-1", [], 7) == []

    def test_transfer_leaves_stock_unchanged(self):
        entries = history_reconstructor.reconstruct("item-1", [_movement(1, MovementType.TRANSFER, 4, 6, 6)], 6)
        assert (entries[0].stock_before, entries[0].stock_after) == (6, 6)

    def test_rejects_foreign_movement(self):
        with pytest.raises(ValueError):
            history_reconstructor.reconstruct("item-1", [_movement(1, MovementType.IN, 1, 0, 1, item_id="other")], 1)

    def test_rejects_newest_first_order(self):
        movements = [_movement(2, MovementType.IN, 1, 1, 2), _movement(1, MovementType.IN, 1, 0, 1)]
        with pytest.raises(ValueError):
            history_reconstructor.reconstruct("item-1", movements, 2)

    def test_same_timestamp_ordered_by_id(self):
        movements = [
            _movement(1, MovementType.IN, 1, 0, 1, at=T0),
            _movement(2, MovementType.IN, 1, 1, 2, at=T0),
        ]
        entries = history_reconstructor.reconstruct("item-1", movements, 2)
        assert [e.stock_after for e in entries] == [1, 2]

    def test_summarize(self):
        stats = history_reconstructor.summarize(
            [
                _movement(1, MovementType.IN, 3, 0, 3),
                _movement(2, MovementType.RETURN, 2, 3, 5),
                _movement(3, MovementType.DAMAGE, 1, 5, 4),
                _movement(4, MovementType.ADJUSTMENT, 6, 4, 10),
            ]
        )
        assert (stats.total_movements, stats.total_in, stats.total_out, stats.net_change) == (4, 5, 1, 4)

    def test_daily_levels_group_by_day(self):
        movements = [
            _movement(1, MovementType.IN, 5, 0, 5, at=T0),
            _movement(2, MovementType.OUT, 2, 5, 3, at=T0 + timedelta(hours=1)),
            _movement(3, MovementType.IN, 4, 3, 7, at=T0 + timedelta(days=1)),
        ]
        entries = history_reconstructor.reconstruct("item-1", movements, 7)
        days = history_reconstructor.daily_levels(entries)
        assert [d.day for d in days] == ["2024-03-01", "2024-03-02"]
        assert (days[0].stock_in, days[0].stock_out, days[0].net_change, days[0].closing_stock) == (5, 2, 3, 3)
        assert (days[1].movement_count, days[1].closing_stock) == (1, 7)


@pytest.fixture
def scenario(ledger, adjuster, make_item):
    """Opening stock 10: in 3, out 5, a refused out 9, then a count to 20."""
    item_id = make_item(opening_stock=10)
    ledger.record(item_id, 3, "in", {"reference": "PO-1"})
    ledger.record(item_id, 5, "out", {"reference": "SO-1"})
    with pytest.raises(InsufficientStockError):
        ledger.record(item_id, 9, "out")
    result = adjuster.apply_batch([{"item_id": item_id, "expected_previous_stock": 8, "new_stock": 20}], "auditor")
    assert result.success_count == 1
    return item_id


class TestLedgerHistory:
    def test_full_history(self, ledger, scenario):
        history = ledger.get_history(scenario)
        assert [e.stock_after for e in history.entries] == [13, 8, 20]
        assert [e.stock_before for e in history.entries] == [10, 13, 8]
        assert [e.movement.movement_type for e in history.entries] == [
            MovementType.IN,
            MovementType.OUT,
            MovementType.ADJUSTMENT,
        ]
        assert history.current_stock == 20
        assert history.total_count == 3
        assert history.complete
        assert history.anchored_to_present
        assert (history.stats.total_in, history.stats.total_out) == (3, 5)

    def test_reconstruction_matches_recorded_values(self, ledger, scenario):
        for entry in ledger.get_history(scenario).entries:
            assert entry.stock_before == entry.movement.stock_before
            assert entry.stock_after == entry.movement.stock_after

    def test_latest_page_is_anchored(self, ledger, scenario):
        history = ledger.get_history(scenario, HistoryFilters(limit=2))
        assert [e.stock_after for e in history.entries] == [8, 20]
        assert history.anchored_to_present
        assert not history.complete
        assert history.total_count == 3

    def test_older_page_is_relative(self, ledger, scenario):
        history = ledger.get_history(scenario, HistoryFilters(limit=2, offset=1))
        assert [e.movement.movement_type for e in history.entries] == [MovementType.IN, MovementType.OUT]
        assert [(e.stock_before, e.stock_after) for e in history.entries] == [(10, 13), (13, 8)]
        assert not history.anchored_to_present

    def test_type_filter_is_not_anchored(self, ledger, scenario):
        history = ledger.get_history(scenario, HistoryFilters(movement_types=[MovementType.OUT]))
        [entry] = history.entries
        assert (entry.stock_before, entry.stock_after) == (13, 8)
        assert history.total_count == 1
        assert not history.anchored_to_present
        assert not history.complete
        assert history.current_stock == 20

    def test_search_matches_reference(self, ledger, scenario):
        history = ledger.get_history(scenario, HistoryFilters(search="PO-"))
        assert [e.movement.reference for e in history.entries] == ["PO-1"]

    def test_date_window(self, ledger, scenario):
        future = utcnow() + timedelta(days=1)
        history = ledger.get_history(scenario, HistoryFilters(start_date=future))
        assert history.entries == []
        assert history.total_count == 0

    def test_item_without_movements(self, ledger, make_item):
        item_id = make_item(opening_stock=4)
        history = ledger.get_history(item_id)
        assert history.entries == []
        assert history.current_stock == 4
        assert history.complete

    def test_unknown_item(self, ledger):
        with pytest.raises(ItemNotFoundError):
            ledger.get_history("missing")

    def test_daily_stock_levels(self, ledger, scenario):
        [today] = ledger.daily_stock_levels(scenario, days=7)
        assert today.movement_count == 3
        assert today.closing_stock == 20
        assert (today.stock_in, today.stock_out) == (3, 5)
        assert today.net_change == 10


class TestReplay:
    def test_consistent_ledger(self, ledger, scenario):
        report = ledger.verify_replay(scenario)
        assert report.consistent
        assert report.initial_stock == 10
        assert report.replayed_stock == report.current_stock == 20
        assert report.movement_count == 3

    def test_item_never_moved(self, ledger, make_item):
        report = ledger.verify_replay(make_item(opening_stock=6))
        assert report.consistent
        assert report.replayed_stock == 6
        assert report.movement_count == 0

    def test_tampered_snapshot_detected(self, ledger, scenario, db):
        db.execute(text("UPDATE stock_snapshots SET current_stock = 99 WHERE item_id = :item_id"), {"item_id": scenario})
        db.commit()
        report = ledger.verify_replay(scenario)
        assert not report.consistent
        assert report.replayed_stock == 20
        assert report.current_stock == 99

    def test_broken_adjustment_chain(self, ledger, scenario, db):
        # Raw SQL bypasses the ORM immutability guard
        db.execute(
            text("UPDATE stock_movements SET quantity = 4 WHERE item_id = :item_id AND reference = 'PO-1'"),
            {"item_id": scenario},
        )
        db.commit()
        report = ledger.verify_replay(scenario)
        assert not report.consistent
        assert report.replayed_stock is None
        assert report.detail


class TestReadConsistency:
    def test_write_between_snapshot_and_page_is_reread(self, ledger, scenario, monkeypatch):
        real_list = movement_store.list_for_item
        calls = {"n": 0}

        def list_after_write(db, item_id, filters):
            calls["n"] += 1
            if calls["n"] == 1:
                ledger.record(item_id, 4, "in")
            return real_list(db, item_id, filters)

        monkeypatch.setattr(movement_store, "list_for_item", list_after_write)
        history = ledger.get_history(scenario)

        assert calls["n"] == 2
        assert history.current_stock == 24
        assert [e.stock_after for e in history.entries] == [13, 8, 20, 24]
        for entry in history.entries:
            assert entry.stock_before == entry.movement.stock_before

    def test_history_that_never_settles_is_a_conflict(self, ledger, scenario, monkeypatch):
        real_list = movement_store.list_for_item

        def list_after_write(db, item_id, filters):
            ledger.record(item_id, 1, "in")
            return real_list(db, item_id, filters)

        monkeypatch.setattr(movement_store, "list_for_item", list_after_write)
        with pytest.raises(TransactionConflictError):
            ledger.get_history(scenario)

    def test_daily_levels_reread_after_write(self, ledger, scenario, monkeypatch):
        real_since = movement_store.movements_since
        calls = {"n": 0}

        def since_after_write(db, item_id, since):
            calls["n"] += 1
            if calls["n"] == 1:
                ledger.record(item_id, 2, "out")
            return real_since(db, item_id, since)

        monkeypatch.setattr(movement_store, "movements_since", since_after_write)
        [today] = ledger.daily_stock_levels(scenario)
        assert today.closing_stock == 18
        assert today.movement_count == 4


class TestAllHistory:
    def test_lists_every_item_newest_first(self, ledger, make_item):
        a, b = make_item(opening_stock=5), make_item(opening_stock=5)
        first = ledger.record(a, 1, "in")
        second = ledger.record(b, 2, "out")
        third = ledger.record(a, 3, "return")

        page = ledger.get_all_history()
        assert [m.id for m in page.movements] == [third.id, second.id, first.id]
        assert page.total_count == 3

    def test_filters_and_pagination(self, ledger, make_item):
        a, b = make_item(opening_stock=5), make_item(opening_stock=5)
        ledger.record(a, 1, "in", {"reference": "PO-1"})
        ledger.record(b, 2, "out", {"reference": "SO-1"})
        ledger.record(a, 3, "out", {"reference": "SO-2"})

        page = ledger.get_all_history(MovementQuery(item_id=a))
        assert [m.item_id for m in page.movements] == [a, a]

        page = ledger.get_all_history(MovementQuery(movement_types=[MovementType.OUT]))
        assert [m.reference for m in page.movements] == ["SO-2", "SO-1"]

        page = ledger.get_all_history(MovementQuery(search="SO-", limit=1, offset=1))
        assert [m.reference for m in page.movements] == ["SO-1"]
        assert page.total_count == 2

    def test_empty_ledger(self, ledger):
        page = ledger.get_all_history()
        assert page.movements == []
        assert page.total_count == 0


class TestInventoryStats:
    def test_totals_and_today(self, ledger, adjuster, make_item):
        drained, low, full = make_item(opening_stock=4), make_item(opening_stock=10), make_item(opening_stock=10)
        make_item(opening_stock=50)  # never moved, so not tracked
        ledger.record(drained, 4, "out")
        ledger.record(low, 7, "out")
        ledger.record(full, 5, "in")
        ledger.record(full, 2, "transfer")
        adjuster.apply_batch([{"item_id": full, "expected_previous_stock": 15, "new_stock": 20}], "auditor")

        stats = ledger.inventory_stats(threshold=5)

        assert stats.tracked_items == 3
        assert stats.total_units == 0 + 3 + 20
        assert stats.average_stock == pytest.approx(23 / 3)
        assert stats.out_of_stock_count == 1
        assert stats.low_stock_count == 2
        assert stats.low_stock_threshold == 5
        assert stats.movements_today == 5
        assert stats.items_moved_today == 3
        assert stats.net_movement_today == -4 - 7 + 5

    def test_empty_ledger(self, ledger):
        stats = ledger.inventory_stats()
        assert (stats.tracked_items, stats.total_units, stats.average_stock) == (0, 0, 0.0)
        assert stats.movements_today == 0
        assert stats.net_movement_today == 0
