"""
Batch ledger: FEFO reservation, the two-phase reserve / consume / release
protocol and stock-in / adjustment bookkeeping.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.exceptions import (
    BatchExpired,
    ConcurrentModification,
    InsufficientStock,
    InvalidState,
)
from app.db.session import commit_or_conflict, flush_or_conflict
from app.models.inventory import (
    BatchStatus,
    InventoryBatch,
    MovementType,
    ReservationStatus,
    StockMovement,
    StockReservation,
)
from app.schemas.inventory import BatchReceiveIn
from app.services import inventory
from app.utils.timezone import today_utc


def _movements(db, batch_id):
    return (db.query(StockMovement).filter(StockMovement.batch_id == batch_id).order_by(
        StockMovement.id.asc()).all())


class TestFefoReservation:

    def test_earliest_expiry_first(self, db, make_medicine, make_batch):
        """5 units expiring in 10 days, 10 in 60 days: reserving 8 takes 5 + 3."""
        med = make_medicine()
        late = make_batch(med, 10, expires_in_days=60)
        early = make_batch(med, 5, expires_in_days=10)

        res = inventory.reserve(db, med.id, 8)
        db.commit()

        assert [(l.batch_id, l.quantity) for l in res.lines] == [(early.id, 5), (late.id, 3)]
        db.refresh(early)
        db.refresh(late)
        assert (early.on_hand_qty, early.reserved_qty) == (5, 5)
        assert (late.on_hand_qty, late.reserved_qty) == (10, 3)
        assert inventory.available_quantity(db, med.id) == 7

    def test_same_expiry_uses_receipt_order(self, db, make_medicine, make_batch):
        med = make_medicine()
        first = make_batch(med, 4, expires_in_days=30)
        second = make_batch(med, 4, expires_in_days=30)

        res = inventory.reserve(db, med.id, 5)
        assert [(l.batch_id, l.quantity) for l in res.lines] == [(first.id, 4), (second.id, 1)]

    def test_expired_and_inactive_batches_not_available(self, db, make_medicine, make_batch):
        med = make_medicine()
        make_batch(med, 50, expires_in_days=0)  # expires today
        make_batch(med, 20, expires_in_days=90, status=BatchStatus.QUARANTINED)
        good = make_batch(med, 3, expires_in_days=90)

        assert inventory.available_quantity(db, med.id) == 3
        res = inventory.reserve(db, med.id, 3)
        assert [l.batch_id for l in res.lines] == [good.id]

    def test_short_stock_reserves_nothing(self, db, make_medicine, make_batch):
        med = make_medicine("Warfarin")
        batch = make_batch(med, 4)

        with pytest.raises(InsufficientStock) as exc:
            inventory.reserve(db, med.id, 5)

        assert exc.value.unavailable == [{
            "medicine_id": med.id,
            "medicine_name": "Warfarin",
            "requested": 5,
            "available": 4,
        }]
        db.refresh(batch)
        assert batch.reserved_qty == 0

    def test_non_positive_quantity_rejected(self, db, make_medicine, make_batch):
        med = make_medicine()
        make_batch(med, 4)
        with pytest.raises(InvalidState):
            inventory.reserve(db, med.id, 0)


class TestConcurrency:

    def test_second_session_cannot_reserve_same_units(self, db, session_factory,
                                                      make_medicine, make_batch):
        """Two pharmacists after the last 5 units: only the first 4-unit hold succeeds."""
        med = make_medicine("Warfarin")
        batch = make_batch(med, 5)
        s1, s2 = session_factory(), session_factory()
        try:
            first = inventory.reserve(s1, med.id, 4, reference="RX-A")
            s1.commit()

            with pytest.raises(InsufficientStock) as exc:
                inventory.reserve(s2, med.id, 4, reference="RX-B")
            s2.rollback()

            assert exc.value.unavailable[0]["available"] == 1
            db.refresh(batch)
            assert (batch.on_hand_qty, batch.reserved_qty) == (5, 4)
            holds = db.query(StockReservation).all()
            assert [(r.token, r.status) for r in holds] == [(first.token, ReservationStatus.RESERVED)]
        finally:
            s1.close()
            s2.close()

    def test_stale_batch_write_is_a_conflict(self, db, session_factory, make_medicine, make_batch):
        med = make_medicine()
        batch = make_batch(med, 10)
        s1, s2 = session_factory(), session_factory()
        try:
            stale = s1.get(InventoryBatch, batch.id)
            assert stale.version == 1

            fresh = s2.get(InventoryBatch, batch.id)
            fresh.on_hand_qty = 12
            s2.commit()

            stale.reserved_qty = 3
            with pytest.raises(ConcurrentModification) as exc:
                flush_or_conflict(s1)

            assert exc.value.status_code == 409
            assert exc.value.code == "CONCURRENT_MODIFICATION"
            db.refresh(batch)
            assert (batch.on_hand_qty, batch.reserved_qty, batch.version) == (12, 0, 2)
        finally:
            s1.close()
            s2.close()

    def test_stale_commit_is_a_conflict(self, db, session_factory, make_medicine, make_batch):
        med = make_medicine()
        batch = make_batch(med, 10)
        s1, s2 = session_factory(), session_factory()
        try:
            stale = s1.get(InventoryBatch, batch.id)
            fresh = s2.get(InventoryBatch, batch.id)
            fresh.status = BatchStatus.QUARANTINED
            s2.commit()

            stale.on_hand_qty = 9
            with pytest.raises(ConcurrentModification):
                commit_or_conflict(s1)

            db.refresh(batch)
            assert (batch.on_hand_qty, batch.status) == (10, BatchStatus.QUARANTINED)
        finally:
            s1.close()
            s2.close()


class TestConsumeRelease:

    def test_consume_moves_stock_out(self, db, make_medicine, make_batch):
        med = make_medicine()
        batch = make_batch(med, 10, unit_cost="2.50")
        res = inventory.reserve(db, med.id, 4, reference="RX-1")

        out = inventory.consume(db, res.token, actor_id="ph-001")
        db.commit()

        assert len(out) == 1
        assert out[0].batch_no == batch.batch_no
        assert out[0].quantity == 4
        assert out[0].unit_cost == Decimal("2.50")
        db.refresh(batch)
        db.refresh(res)
        assert (batch.on_hand_qty, batch.reserved_qty) == (6, 0)
        assert res.status == ReservationStatus.CONSUMED

        mv = _movements(db, batch.id)[-1]
        assert mv.movement_type == MovementType.DISPENSED
        assert mv.quantity_change == -4
        assert mv.balance_after == 6
        assert mv.actor_id == "ph-001"

    def test_release_returns_stock_and_is_idempotent(self, db, make_medicine, make_batch):
        med = make_medicine()
        batch = make_batch(med, 10)
        res = inventory.reserve(db, med.id, 6)

        inventory.release(db, res.token)
        inventory.release(db, res.token)
        db.commit()

        db.refresh(batch)
        assert (batch.on_hand_qty, batch.reserved_qty) == (10, 0)
        assert inventory.available_quantity(db, med.id) == 10

    def test_consumed_reservation_cannot_be_released(self, db, make_medicine, make_batch):
        med = make_medicine()
        make_batch(med, 10)
        res = inventory.reserve(db, med.id, 2)
        inventory.consume(db, res.token)

        with pytest.raises(InvalidState):
            inventory.release(db, res.token)
        with pytest.raises(InvalidState):
            inventory.consume(db, res.token)

    def test_consume_on_expired_batch_aborts(self, db, make_medicine, make_batch):
        med = make_medicine()
        batch = make_batch(med, 10, expires_in_days=2)
        res = inventory.reserve(db, med.id, 2)

        with pytest.raises(BatchExpired):
            inventory.consume(db, res.token, today=batch.expiry_date)


class TestStockIn:

    def test_receive_writes_movement(self, db, make_medicine, pharmacist):
        med = make_medicine()
        batch = inventory.receive_stock(db, BatchReceiveIn(
            medicine_id=med.id,
            batch_no=" LOT-9 ",
            expiry_date=today_utc() + timedelta(days=200),
            quantity=40,
            unit_cost=Decimal("1.20"),
            supplier="Acme",
        ), pharmacist)

        assert batch.batch_no == "LOT-9"
        assert batch.status == BatchStatus.ACTIVE
        assert batch.received_by_id == pharmacist.subject_id
        mvs = _movements(db, batch.id)
        assert [(m.movement_type, m.quantity_change, m.balance_after) for m in mvs] == [
            (MovementType.RECEIVED, 40, 40)
        ]

    def test_receive_rejects_expired_and_duplicate(self, db, make_medicine, make_batch):
        med = make_medicine()
        make_batch(med, 5, batch_no="LOT-1")

        with pytest.raises(InvalidState):
            inventory.receive_stock(db, BatchReceiveIn(
                medicine_id=med.id, batch_no="LOT-2",
                expiry_date=today_utc(), quantity=5))
        with pytest.raises(InvalidState):
            inventory.receive_stock(db, BatchReceiveIn(
                medicine_id=med.id, batch_no="LOT-1",
                expiry_date=today_utc() + timedelta(days=30), quantity=5))

    def test_adjust_cannot_go_below_reserved(self, db, make_medicine, make_batch, pharmacist):
        med = make_medicine()
        batch = make_batch(med, 10)
        inventory.reserve(db, med.id, 6)
        db.commit()

        with pytest.raises(InvalidState):
            inventory.adjust_stock(db, batch.id, 5, notes="Count", actor=pharmacist)

        batch = inventory.adjust_stock(db, batch.id, 8, notes="Breakage", actor=pharmacist)
        assert (batch.on_hand_qty, batch.reserved_qty) == (8, 6)
        mv = _movements(db, batch.id)[-1]
        assert (mv.movement_type, mv.quantity_change, mv.notes) == (MovementType.ADJUSTED, -2, "Breakage")

    def test_status_change_blocked_while_reserved(self, db, make_medicine, make_batch, pharmacist):
        med = make_medicine()
        batch = make_batch(med, 10)
        res = inventory.reserve(db, med.id, 1)
        db.commit()

        with pytest.raises(InvalidState):
            inventory.set_batch_status(db, batch.id, BatchStatus.RECALLED, actor=pharmacist)

        inventory.release(db, res.token)
        db.commit()
        batch = inventory.set_batch_status(db, batch.id, BatchStatus.RECALLED, actor=pharmacist)
        assert batch.status == BatchStatus.RECALLED
        assert inventory.available_quantity(db, med.id) == 0

        with pytest.raises(InvalidState):
            inventory.set_batch_status(db, batch.id, BatchStatus.ACTIVE, actor=pharmacist)

    def test_expire_due_batches(self, db, make_medicine, make_batch):
        med = make_medicine()
        due = make_batch(med, 5, expires_in_days=0)
        fresh = make_batch(med, 5, expires_in_days=30)

        assert inventory.expire_due_batches(db) == [due.id]
        db.refresh(due)
        db.refresh(fresh)
        assert due.status == BatchStatus.EXPIRED
        assert fresh.status == BatchStatus.ACTIVE
        assert _movements(db, due.id)[-1].movement_type == MovementType.EXPIRED


class TestReports:

    def test_expiry_status_bands(self):
        today = today_utc()
        assert inventory.expiry_status(today, today) == "Expired"
        assert inventory.expiry_status(today + timedelta(days=30), today) == "Expiring Soon"
        assert inventory.expiry_status(today + timedelta(days=90), today) == "Monitor"
        assert inventory.expiry_status(today + timedelta(days=91), today) == "Good"

    def test_stock_status_bands(self):
        assert inventory.stock_status(0, reorder_level=20, minimum_stock=5) == "Out of Stock"
        assert inventory.stock_status(5, reorder_level=20, minimum_stock=5) == "Critical"
        assert inventory.stock_status(20, reorder_level=20, minimum_stock=5) == "Low"
        assert inventory.stock_status(21, reorder_level=20, minimum_stock=5) == "Normal"

    def test_low_stock_includes_medicines_without_batches(self, db, make_medicine, make_batch):
        low = make_medicine("Aspirin", reorder_level=20, minimum_stock=5)
        empty = make_medicine("Brufen", reorder_level=10)
        fine = make_medicine("Calpol", reorder_level=10)
        make_batch(low, 15)
        make_batch(fine, 50)

        rows = inventory.low_stock_medicines(db)
        assert [(r["medicine_id"], r["available"], r["stock_status"]) for r in rows] == [
            (low.id, 15, "Low"),
            (empty.id, 0, "Out of Stock"),
        ]

    def test_expiring_batches_window(self, db, make_medicine, make_batch):
        med = make_medicine()
        soon = make_batch(med, 5, expires_in_days=10)
        make_batch(med, 5, expires_in_days=120)
        make_batch(med, 5, expires_in_days=0)

        assert [b.id for b in inventory.expiring_batches(db, 30)] == [soon.id]

    def test_low_stock_notification(self, db, make_medicine, make_batch, events):
        med = make_medicine("Aspirin", reorder_level=10)
        make_batch(med, 8)

        alert = inventory.check_low_stock(db, med.id)
        assert alert["available"] == 8
        assert [e.name for e in events] == ["inventory.low_stock"]
