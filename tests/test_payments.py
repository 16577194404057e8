"""支付预占协调单元测试"""
import json
import pytest
from datetime import timedelta
from decimal import Decimal
from sqlalchemy import select

from dropshop.core.exceptions import (
    ExternalServiceError,
    InsufficientInventory,
    NoActiveDrop,
    ValidationError,
)
from dropshop.models import DropProduct, DropStatus, InventoryReservation, ReservationStatus
from dropshop.schemas.payments import CartItem, CustomerInfo, IntentSnapshot, SnapshotLine
from dropshop.services.deadline import utcnow
from dropshop.services.payment_processor import PaymentIntentHandle, to_minor_units
from dropshop.services.payment_service import validate_cart_items, validate_customer_info


def reserved(db, drop_product_id):
    db.expire_all()
    return db.get(DropProduct, drop_product_id).reserved_quantity


def holds(db, intent_id):
    db.expire_all()
    return db.execute(
        select(InventoryReservation).where(InventoryReservation.payment_intent_id == intent_id)
    ).scalars().all()


class TestValidation:

    def test_valid_customer(self, customer_info):
        assert validate_customer_info(customer_info) == []

    def test_invalid_customer(self):
        errors = validate_customer_info(CustomerInfo(name=" ", email="not-an-email", pickup_date="20/10/2026"))
        assert errors == [
            "Customer name is required",
            "Customer email is invalid",
            "Pickup time is required",
            "Pickup date must be YYYY-MM-DD",
        ]

    def test_empty_cart(self):
        assert validate_cart_items([]) == ["Cart cannot be empty"]

    def test_invalid_cart_lines(self):
        items = [
            CartItem(id=1, quantity=0, price=Decimal("1.00")),
            CartItem(id=2, quantity=1, price=Decimal("0")),
        ]
        assert validate_cart_items(items) == [
            "Item 1: Quantity must be greater than 0",
            "Item 2: Price must be greater than 0",
        ]

    def test_to_minor_units(self):
        assert to_minor_units(Decimal("20.00")) == 2000
        assert to_minor_units(Decimal("8.505")) == 851


class TestCreateIntent:
    """创建支付意图测试类"""

    def test_create_intent_success(self, db_session, coordinator, mock_processor, active_drop, make_cart, customer_info):
        first, second = active_drop.drop_products

        created = coordinator.create_intent(make_cart(active_drop, 2, 1), customer_info)

        assert created.payment_intent_id == "pi_test_1"
        assert created.client_secret == "pi_secret_test"
        assert created.drop_id == active_drop.id
        assert created.total_amount == Decimal("20.00")
        assert reserved(db_session, first.id) == 2
        assert reserved(db_session, second.id) == 1

        kwargs = mock_processor.create_intent.call_args.kwargs
        assert kwargs["amount"] == 2000
        snapshot = IntentSnapshot.from_metadata(kwargs["metadata"])
        assert snapshot.drop_id == active_drop.id
        assert snapshot.hold_id == kwargs["idempotency_key"]
        assert [(line.drop_product_id, line.quantity) for line in snapshot.lines] == [(first.id, 2), (second.id, 1)]

        rows = holds(db_session, "pi_test_1")
        assert len(rows) == 2
        assert {r.status for r in rows} == {ReservationStatus.RESERVED}

    def test_server_price_is_authoritative(self, coordinator, mock_processor, active_drop, customer_info):
        first = active_drop.drop_products[0]
        items = [CartItem(id=first.id, name="x", quantity=1, price=Decimal("0.01"))]

        created = coordinator.create_intent(items, customer_info)

        assert created.total_amount == Decimal("8.50")
        assert mock_processor.create_intent.call_args.kwargs["amount"] == 850

    def test_duplicate_lines_merged(self, db_session, coordinator, active_drop, customer_info):
        first = active_drop.drop_products[0]
        items = [
            CartItem(id=first.id, quantity=1, price=first.selling_price),
            CartItem(id=first.id, quantity=2, price=first.selling_price),
        ]

        coordinator.create_intent(items, customer_info)

        assert reserved(db_session, first.id) == 3

    def test_validation_errors(self, coordinator, mock_processor, active_drop):
        with pytest.raises(ValidationError) as exc_info:
            coordinator.create_intent([], CustomerInfo(name="Bob", email="bob@"))

        assert "Cart cannot be empty" in exc_info.value.errors
        assert "Customer email is invalid" in exc_info.value.errors
        mock_processor.create_intent.assert_not_called()

    def test_no_active_drop(self, coordinator, upcoming_drop, make_cart, customer_info):
        with pytest.raises(NoActiveDrop):
            coordinator.create_intent(make_cart(upcoming_drop, 1), customer_info)

    def test_insufficient_inventory_reserves_nothing(self, db_session, coordinator, mock_processor, active_drop, make_cart, customer_info):
        first, second = active_drop.drop_products

        with pytest.raises(InsufficientInventory) as exc_info:
            coordinator.create_intent(make_cart(active_drop, 2, 6), customer_info)

        assert exc_info.value.unavailable[0]["drop_product_id"] == second.id
        assert reserved(db_session, first.id) == 0
        assert reserved(db_session, second.id) == 0
        mock_processor.create_intent.assert_not_called()

    def test_item_from_other_drop(self, db_session, coordinator, lifecycle, location, products, active_drop, drop_date, customer_info):
        other = lifecycle.create_drop(drop_date, location.id, [{"product_id": products[0].id, "stock_quantity": 3}])
        items = [CartItem(id=other.drop_products[0].id, quantity=1, price=Decimal("8.50"))]

        with pytest.raises(InsufficientInventory):
            coordinator.create_intent(items, customer_info)

    def test_processor_failure_releases_hold(self, db_session, coordinator, mock_processor, active_drop, make_cart, customer_info):
        mock_processor.create_intent.side_effect = ExternalServiceError("stripe down")
        first = active_drop.drop_products[0]

        with pytest.raises(ExternalServiceError):
            coordinator.create_intent(make_cart(active_drop, 2), customer_info)

        assert reserved(db_session, first.id) == 0
        statuses = db_session.execute(select(InventoryReservation.status)).scalars().all()
        assert statuses == [ReservationStatus.RELEASED]


class TestIntentLifecycle:

    def test_validate_reusable_intent(self, coordinator, mock_processor, active_drop, make_cart, customer_info):
        created = coordinator.create_intent(make_cart(active_drop, 1), customer_info)
        mock_processor.retrieve_intent.return_value = PaymentIntentHandle(
            id=created.payment_intent_id, status="requires_payment_method", client_secret="pi_secret_test"
        )

        result = coordinator.validate_intent(created.payment_intent_id)

        assert result.valid is True
        assert result.client_secret == "pi_secret_test"

    def test_validate_succeeded_intent_not_reusable(self, coordinator, mock_processor, active_drop, make_cart, customer_info):
        created = coordinator.create_intent(make_cart(active_drop, 1), customer_info)
        mock_processor.retrieve_intent.return_value = PaymentIntentHandle(id=created.payment_intent_id, status="succeeded")

        result = coordinator.validate_intent(created.payment_intent_id)

        assert result.valid is False
        assert result.status == "succeeded"

    def test_validate_released_intent_not_reusable(self, coordinator, mock_processor, active_drop, make_cart, customer_info):
        created = coordinator.create_intent(make_cart(active_drop, 1), customer_info)
        coordinator.release_intent(created.payment_intent_id)
        mock_processor.retrieve_intent.return_value = PaymentIntentHandle(
            id=created.payment_intent_id, status="requires_payment_method"
        )

        assert coordinator.validate_intent(created.payment_intent_id).valid is False

    def test_release_intent(self, db_session, coordinator, active_drop, make_cart, customer_info):
        created = coordinator.create_intent(make_cart(active_drop, 2, 1), customer_info)

        assert coordinator.release_intent(created.payment_intent_id) == 2
        assert coordinator.release_intent(created.payment_intent_id) == 0
        assert all(dp_reserved == 0 for dp_reserved in (
            reserved(db_session, dp.id) for dp in active_drop.drop_products
        ))

    def test_sweep_abandoned(self, db_session, coordinator, mock_processor, active_drop, make_cart, customer_info):
        created = coordinator.create_intent(make_cart(active_drop, 2), customer_info)
        first = active_drop.drop_products[0]

        assert coordinator.sweep_abandoned(now=utcnow()) == 0
        assert coordinator.sweep_abandoned(now=utcnow() + timedelta(minutes=16)) == 1

        assert reserved(db_session, first.id) == 0
        mock_processor.cancel_intent.assert_called_once_with(created.payment_intent_id)

    def test_sweep_tolerates_cancel_failure(self, db_session, coordinator, mock_processor, active_drop, make_cart, customer_info):
        coordinator.create_intent(make_cart(active_drop, 1), customer_info)
        mock_processor.cancel_intent.side_effect = ExternalServiceError("already succeeded")

        assert coordinator.sweep_abandoned(now=utcnow() + timedelta(minutes=16)) == 1


class TestSnapshotMetadata:

    def test_long_snapshot_is_chunked(self, customer_info):
        customer = customer_info.model_copy(update={"special_instructions": "sans gluten " * 100})
        snapshot = IntentSnapshot(
            hold_id="abc",
            drop_id=7,
            customer=customer,
            lines=[SnapshotLine(drop_product_id=1, name="Jambon Beurre", quantity=2, unit_price=Decimal("8.50"))],
            total_amount=Decimal("17.00"),
        )

        metadata = snapshot.to_metadata()

        assert int(metadata["snapshot_parts"]) > 1
        assert all(len(value) <= 500 for value in metadata.values())
        assert metadata["drop_id"] == "7"
        restored = IntentSnapshot.from_metadata(metadata)
        assert restored.customer.special_instructions == customer.special_instructions
        assert restored.total_amount == Decimal("17.00")

    def test_snapshot_payload_is_json(self, customer_info):
        snapshot = IntentSnapshot(hold_id="h", drop_id=1, customer=customer_info, lines=[], total_amount=Decimal("0"))
        metadata = snapshot.to_metadata()
        payload = json.loads("".join(metadata[f"snapshot_{i}"] for i in range(int(metadata["snapshot_parts"]))))
        assert payload["hold_id"] == "h"
