"""API 路由测试"""
import pytest
from fastapi.testclient import TestClient

from dropshop.core import dependencies
from dropshop.main import app
from dropshop.models import DropProduct


class TestRouters:
    """路由测试类（依赖替换为测试数据库与模拟外部服务）"""

    @pytest.fixture
    def client(self, db_session, mock_redis, mock_redlock, mock_processor, mock_notifier):
        """创建测试客户端"""
        def override_db():
            yield db_session

        app.dependency_overrides[dependencies.get_db] = override_db
        app.dependency_overrides[dependencies.get_redis] = lambda: mock_redis
        app.dependency_overrides[dependencies.get_redlock] = lambda: mock_redlock
        app.dependency_overrides[dependencies.get_processor] = lambda: mock_processor
        app.dependency_overrides[dependencies.get_notifier] = lambda: mock_notifier
        try:
            yield TestClient(app)
        finally:
            app.dependency_overrides.clear()

    @pytest.fixture
    def checkout_body(self, active_drop, customer_info):
        first = active_drop.drop_products[0]
        return {
            "items": [{"id": first.id, "name": "Jambon Beurre", "quantity": 2, "price": "8.50"}],
            "customer_info": customer_info.model_dump(),
        }

    def _pay(self, client, mock_processor, succeed, intent_id):
        mock_processor.construct_event.return_value = {
            "type": "payment_intent.succeeded",
            "intent": succeed(intent_id),
            "last_payment_error": None,
        }
        return client.post("/api/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"})

    # ==================== 基础 ====================

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    # ==================== 场次 ====================

    def test_current_drop(self, client, active_drop):
        response = client.get("/api/v1/drops/current")

        assert response.status_code == 200
        data = response.json()
        assert data["drop"]["id"] == active_drop.id
        assert data["drop"]["location"]["code"] == "IH"
        assert [p["available_quantity"] for p in data["products"]] == [10, 5]
        assert data["products"][0]["name"] == "Jambon Beurre"

    def test_current_drop_empty(self, client, upcoming_drop):
        response = client.get("/api/v1/drops/current")

        assert response.status_code == 200
        assert response.json()["drop"] is None

    def test_upcoming_drops(self, client, upcoming_drop):
        response = client.get("/api/v1/drops/upcoming")

        assert response.status_code == 200
        data = response.json()
        assert [d["id"] for d in data] == [upcoming_drop.id]
        assert data[0]["deadline"] is not None

    def test_orderable(self, client, active_drop):
        response = client.get(f"/api/v1/drops/{active_drop.id}/orderable")

        assert response.status_code == 200
        data = response.json()
        assert data["orderable"] is True
        assert data["reason"] == "可下单"
        assert data["time_remaining_seconds"] > 0

    def test_orderable_unknown_drop(self, client):
        response = client.get("/api/v1/drops/999/orderable")

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_calculate_deadline(self, client, location):
        response = client.post("/api/v1/drops/calculate-deadline", json={
            "drop_date": "2026-12-01",
            "location_id": location.id,
        })

        assert response.status_code == 200
        # 巴黎冬令时 14:00 = 13:00 UTC
        assert response.json()["deadline"].startswith("2026-12-01T13:00:00")

    def test_change_status(self, client, upcoming_drop):
        response = client.put(
            f"/api/v1/drops/{upcoming_drop.id}/status",
            json={"new_status": "active"},
            headers={"X-Admin-User": "alice"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "active"
        assert data["last_modified_by"] == "alice"
        assert data["pickup_deadline"] is not None

    def test_change_status_invalid_transition(self, client, upcoming_drop):
        response = client.put(f"/api/v1/drops/{upcoming_drop.id}/status", json={"new_status": "completed"})

        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

    def test_change_status_unknown_value(self, client, upcoming_drop):
        response = client.put(f"/api/v1/drops/{upcoming_drop.id}/status", json={"new_status": "archived"})

        assert response.status_code == 422
        assert response.json()["success"] is False

    def test_update_inventory(self, client, products, active_drop):
        response = client.put(
            f"/api/v1/drops/{active_drop.id}/inventory",
            json={"inventory": [{"product_id": products[0].id, "stock_quantity": 25}]},
        )

        assert response.status_code == 200
        assert response.json()["data"][0]["stock_quantity"] == 25

    def test_get_inventory(self, client, active_drop):
        response = client.get(f"/api/v1/drops/{active_drop.id}/inventory")

        assert response.status_code == 200
        assert len(response.json()["data"]) == 2

    def test_delete_drop(self, client, upcoming_drop):
        response = client.delete(f"/api/v1/drops/{upcoming_drop.id}")

        assert response.status_code == 200
        assert client.get(f"/api/v1/drops/{upcoming_drop.id}/orderable").status_code == 404

    # ==================== 支付 ====================

    def test_create_intent(self, client, db_session, active_drop, checkout_body):
        response = client.post("/api/v1/payments/intents", json=checkout_body)

        assert response.status_code == 200
        data = response.json()
        assert data["payment_intent_id"] == "pi_test_1"
        assert data["client_secret"] == "pi_secret_test"
        assert data["total_amount"] == "17.00"
        db_session.expire_all()
        assert db_session.get(DropProduct, active_drop.drop_products[0].id).reserved_quantity == 2

    def test_create_intent_insufficient(self, client, checkout_body):
        checkout_body["items"][0]["quantity"] = 11

        response = client.post("/api/v1/payments/intents", json=checkout_body)

        assert response.status_code == 409
        data = response.json()
        assert data["code"] == "insufficient_inventory"
        assert data["details"]["unavailable"][0]["available"] == 10

    def test_create_intent_validation_error(self, client, checkout_body):
        checkout_body["customer_info"]["email"] = "nope"

        response = client.post("/api/v1/payments/intents", json=checkout_body)

        assert response.status_code == 400
        assert response.json()["details"]["errors"] == ["Customer email is invalid"]

    def test_create_intent_no_active_drop(self, client, upcoming_drop, customer_info):
        body = {
            "items": [{"id": upcoming_drop.drop_products[0].id, "quantity": 1, "price": "8.50"}],
            "customer_info": customer_info.model_dump(),
        }

        response = client.post("/api/v1/payments/intents", json=body)

        assert response.status_code == 409
        assert response.json()["code"] == "no_active_drop"

    def test_validate_intent(self, client, mock_processor, checkout_body):
        from dropshop.services.payment_processor import PaymentIntentHandle

        intent_id = client.post("/api/v1/payments/intents", json=checkout_body).json()["payment_intent_id"]
        mock_processor.retrieve_intent.return_value = PaymentIntentHandle(
            id=intent_id, status="requires_payment_method", client_secret="pi_secret_test"
        )

        response = client.post("/api/v1/payments/intents/validate", json={"payment_intent_id": intent_id})

        assert response.status_code == 200
        assert response.json()["valid"] is True

    # ==================== 回调与订单 ====================

    def test_webhook_succeeded_creates_order(self, client, mock_processor, checkout_body, succeed):
        intent_id = client.post("/api/v1/payments/intents", json=checkout_body).json()["payment_intent_id"]

        response = self._pay(client, mock_processor, succeed, intent_id)
        assert response.status_code == 200
        assert response.json()["order_number"] == "IH01-001"

        # 重复投递返回同一订单
        assert self._pay(client, mock_processor, succeed, intent_id).json()["order_number"] == "IH01-001"

        lookup = client.get(f"/api/v1/orders/by-payment-intent/{intent_id}")
        assert lookup.status_code == 200
        assert lookup.json()["order_number"] == "IH01-001"

        waited = client.get(f"/api/v1/orders/by-payment-intent/{intent_id}/wait")
        assert waited.status_code == 200
        assert waited.json()["status"] == "confirmed"

    def test_webhook_failed_releases(self, client, db_session, mock_processor, active_drop, checkout_body):
        from dropshop.services.payment_processor import PaymentIntentHandle

        intent_id = client.post("/api/v1/payments/intents", json=checkout_body).json()["payment_intent_id"]
        mock_processor.construct_event.return_value = {
            "type": "payment_intent.payment_failed",
            "intent": PaymentIntentHandle(id=intent_id, status="requires_payment_method"),
            "last_payment_error": "Your card was declined.",
        }

        response = client.post("/api/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"})

        assert response.status_code == 200
        assert response.json()["released"] == 1
        db_session.expire_all()
        assert db_session.get(DropProduct, active_drop.drop_products[0].id).reserved_quantity == 0

    def test_webhook_paid_after_drop_cancelled(self, client, mock_processor, mock_notifier, active_drop, checkout_body, succeed):
        intent_id = client.post("/api/v1/payments/intents", json=checkout_body).json()["payment_intent_id"]
        cancelled = client.put(f"/api/v1/drops/{active_drop.id}/status", json={"new_status": "cancelled"})
        assert cancelled.status_code == 200
        mock_processor.cancel_intent.assert_called_once_with(intent_id)

        # 取消前顾客已完成支付：告警一次并返回 2xx，Stripe 不再重投
        response = self._pay(client, mock_processor, succeed, intent_id)

        assert response.status_code == 200
        assert response.json() == {"received": True, "order_number": None, "alerted": True}
        mock_notifier.send_admin_alert.assert_called_once()
        assert client.get(f"/api/v1/orders/by-payment-intent/{intent_id}").status_code == 404

    def test_webhook_ignores_other_events(self, client, mock_processor):
        mock_processor.construct_event.return_value = {"type": "charge.refunded", "intent": None, "last_payment_error": None}

        response = client.post("/api/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"})

        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_order_not_found(self, client, location):
        response = client.get("/api/v1/orders/by-payment-intent/pi_missing")
        assert response.status_code == 404

    def test_wait_times_out(self, client, location, monkeypatch):
        monkeypatch.setattr("dropshop.core.config.settings.ORDER_POLL_INTERVAL_MS", 0)

        response = client.get("/api/v1/orders/by-payment-intent/pi_missing/wait", params={"max_attempts": 2})

        assert response.status_code == 202
        data = response.json()
        assert data["code"] == "materialization_timeout"
        assert data["details"]["attempts"] == 2

    def test_update_order_status(self, client, mock_processor, checkout_body, succeed):
        intent_id = client.post("/api/v1/payments/intents", json=checkout_body).json()["payment_intent_id"]
        self._pay(client, mock_processor, succeed, intent_id)
        order_id = client.get(f"/api/v1/orders/by-payment-intent/{intent_id}").json()["order_id"]

        response = client.patch(f"/api/v1/orders/{order_id}/status", json={"status": "ready"})
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

        response = client.patch(f"/api/v1/orders/{order_id}/status", json={"status": "pending"})
        assert response.status_code == 409
