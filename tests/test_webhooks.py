"""
Tests for webhook idempotency, event processing and signature verification
Run with: python -m pytest tests/test_webhooks.py -v
"""

import asyncio
import base64
import importlib
import json
import time
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from nexo.domain.billing.ledger import WebhookLedger
from nexo.domain.billing.notifications import NotificationDispatcher
from nexo.domain.billing.state_engine import Actor, SubscriptionStateEngine
from nexo.domain.billing.webhooks import WebhookEvent, WebhookProcessor, is_handled
from nexo.errors import GatewayError, IdempotencyShortCircuit
from nexo.main import app
from nexo.models import Organization, Payment, Subscription, WebhookReceipt, utcnow
from nexo.tenant import executor
from nexo.webhook_security import sign_payload, verify_signature, verify_timestamp

router_module = importlib.import_module("nexo.domain.billing.router")

SECRET = "whsec_" + base64.b64encode(b"nexo-test-signing-key-0123456789").decode()


def receipts():
    with executor.bypass_scope() as db:
        return list(db.execute(select(WebhookReceipt).order_by(WebhookReceipt.id)).scalars())


class TestWebhookLedger:
    @pytest.fixture(autouse=True)
    def setup(self, world):
        self.ledger = WebhookLedger()

    def test_second_record_of_the_same_delivery_gets_nothing(self):
        first = self.ledger.record("dodo", "wh_1", event_type="payment.succeeded")
        second = self.ledger.record("dodo", "wh_1", event_type="payment.succeeded")

        assert first is not None
        assert first.resultado == "success"
        assert second is None
        assert len(receipts()) == 1

    def test_same_request_id_on_another_gateway_is_distinct(self):
        assert self.ledger.record("dodo", "wh_1") is not None
        assert self.ledger.record("mercadopago", "wh_1") is not None

    def test_mark_outcome_and_counts(self):
        self.ledger.record("dodo", "wh_a")
        self.ledger.record("dodo", "wh_b")
        self.ledger.record("dodo", "wh_c", outcome="ignorado")

        assert self.ledger.mark_outcome("dodo", "wh_b", "error", "boom", tenant_id=2)
        assert not self.ledger.mark_outcome("dodo", "wh_missing", "error")

        counts = self.ledger.count_by_outcome(utcnow() - timedelta(hours=1))
        assert counts == {"success": 1, "error": 1, "skipped": 0, "duplicado": 0, "ignorado": 1}

    def test_unknown_outcome(self):
        with pytest.raises(ValueError):
            self.ledger.record("dodo", "wh_x", outcome="maybe")


class TestWebhookProcessor:
    @pytest.fixture(autouse=True)
    def setup(self, world, clock, gateway, sender, make_subscription, fetch):
        self.gateway = gateway
        self.sender = sender
        self.make_subscription = make_subscription
        self.fetch = fetch
        self.engine = SubscriptionStateEngine(clock=clock)
        self.processor = WebhookProcessor(
            gateway,
            ledger=WebhookLedger(),
            engine=self.engine,
            notifier=NotificationDispatcher(sender=sender),
        )

    def handle(self, request_id, event_type, **data):
        return asyncio.run(self.processor.handle(WebhookEvent(request_id, event_type, data)))

    def test_authorized_checkout_upgrades_the_subscriber(self):
        basic_id = self.make_subscription(
            plan_id=100,
            estado="pendiente_pago",
            fecha_proximo_cobro=None,
            precio_actual=299.0,
            gateway="dodo",
            subscription_id_gateway="sub_basic",
        )
        pro_id = self.make_subscription(
            estado="pendiente_pago",
            fecha_proximo_cobro=None,
            gateway="dodo",
            subscription_id_gateway="sub_pro",
        )
        self.gateway.statuses["sub_pro"] = "authorized"

        outcome = self.handle("wh_1", "subscription.active", subscription_id="sub_pro", payment_id="pay_1")

        assert outcome == "success"
        pro = self.fetch(Subscription, pro_id)
        assert pro.estado == "activa"
        assert pro.meses_activo == 1
        assert pro.total_pagado == 599.0
        assert pro.fecha_proximo_cobro == date(2026, 4, 10)
        basic = self.fetch(Subscription, basic_id)
        assert basic.estado == "cancelada"
        assert basic.razon_cancelacion == "Upgrade a plan Pro"
        assert self.fetch(Organization, 2).plan_actual == "pro"
        assert [email["to"] for email in self.sender.sent] == ["admin@spaluna.mx"]
        assert receipts()[0].resultado == "success"
        assert receipts()[0].organizacion_id == 1

        # Redelivery of the same event
        assert self.handle("wh_1", "subscription.active", subscription_id="sub_pro", payment_id="pay_1") == "duplicado"
        assert self.fetch(Subscription, pro_id).meses_activo == 1
        assert len(receipts()) == 1

    def test_failed_payment_starts_dunning(self):
        sub_id = self.make_subscription(gateway="dodo", subscription_id_gateway="sub_x")

        outcome = self.handle(
            "wh_2",
            "payment.failed",
            subscription_id="sub_x",
            payment_id="pay_f",
            total_amount=59900,
            error_message="card_declined",
        )

        assert outcome == "success"
        assert self.fetch(Subscription, sub_id).estado == "vencida"
        with executor.bypass_scope() as db:
            payment = db.execute(select(Payment).where(Payment.suscripcion_id == sub_id)).scalar_one()
        assert payment.estado == "fallido"
        assert payment.monto == 599.0
        assert payment.error_mensaje == "card_declined"
        assert self.sender.sent[0]["subject"].startswith("No pudimos procesar tu pago")

    def test_recovery_payment_reactivates(self):
        sub_id = self.make_subscription(
            estado="vencida", gateway="dodo", subscription_id_gateway="sub_v", meses_activo=3, total_pagado=1797.0
        )

        outcome = self.handle("wh_3", "payment.succeeded", subscription_id="sub_v", payment_id="pay_ok", total_amount=59900)

        assert outcome == "success"
        sub = self.fetch(Subscription, sub_id)
        assert sub.estado == "activa"
        assert sub.meses_activo == 4
        assert sub.total_pagado == 2396.0

    def test_lookup_by_local_id_in_metadata(self):
        sub_id = self.make_subscription(estado="pendiente_pago", fecha_proximo_cobro=None)

        outcome = self.handle("wh_4", "payment.succeeded", payment_id="pay_meta", metadata={"suscripcion_id": str(sub_id)})

        assert outcome == "success"
        assert self.fetch(Subscription, sub_id).estado == "activa"

    def test_gateway_cancellation(self):
        sub_id = self.make_subscription(gateway="dodo", subscription_id_gateway="sub_c")
        self.gateway.statuses["sub_c"] = "cancelled"

        assert self.handle("wh_5", "subscription.cancelled", subscription_id="sub_c") == "success"
        assert self.fetch(Subscription, sub_id).estado == "cancelada"
        assert self.handle("wh_6", "subscription.cancelled", subscription_id="sub_c") == "skipped"

    def test_unknown_subscription_is_skipped(self):
        assert self.handle("wh_7", "payment.failed", subscription_id="sub_nobody") == "skipped"
        assert receipts()[0].resultado == "skipped"

    def test_unhandled_event_is_ignored(self):
        assert self.handle("wh_8", "customer.created", customer_id="cus_1") == "ignorado"
        assert receipts()[0].resultado == "ignorado"

    def test_gateway_error_is_recorded_not_raised(self):
        self.make_subscription(gateway="dodo", subscription_id_gateway="sub_e")
        self.gateway.statuses["sub_e"] = GatewayError("timeout")

        assert self.handle("wh_9", "subscription.updated", subscription_id="sub_e") == "error"
        receipt = receipts()[0]
        assert receipt.resultado == "error"
        assert "timeout" in receipt.mensaje

    def test_concurrent_delivery_loses_the_insert(self):
        self.processor.ledger.record("dodo", "wh_race")

        class BlindLedger(WebhookLedger):
            def already_processed(self, gateway, request_id):
                return False

        self.processor.ledger = BlindLedger()
        with pytest.raises(IdempotencyShortCircuit):
            self.processor.acknowledge(WebhookEvent("wh_race", "payment.succeeded", {}))

    def test_delivery_without_request_id_is_processed_unguarded(self):
        sub_id = self.make_subscription(gateway="dodo", subscription_id_gateway="sub_n")

        assert self.handle(None, "payment.failed", subscription_id="sub_n") == "success"
        assert self.fetch(Subscription, sub_id).estado == "vencida"
        assert receipts() == []

    def test_is_handled(self):
        assert is_handled("subscription.renewed")
        assert is_handled("payment.failed")
        assert not is_handled("refund.succeeded")
        assert not is_handled(None)


class TestSignature:
    def test_round_trip_and_tampering(self):
        body = b'{"type": "payment.succeeded"}'
        signature = sign_payload(SECRET, "wh_1", "1700000000", body)

        assert verify_signature(SECRET, "wh_1", "1700000000", body, f"v1,{signature}")
        assert verify_signature(SECRET, "wh_1", "1700000000", body, f"v1,bogus v1,{signature}")
        assert not verify_signature(SECRET, "wh_1", "1700000000", body + b" ", f"v1,{signature}")
        assert not verify_signature(SECRET, "wh_2", "1700000000", body, f"v1,{signature}")
        assert not verify_signature(SECRET, "wh_1", "1700000000", body, f"v2,{signature}")

    def test_timestamp_window(self):
        assert verify_timestamp("1700000000", now=1700000100)
        assert not verify_timestamp("1700000000", now=1700001000)
        assert not verify_timestamp("yesterday", now=1700000000)


class TestWebhookEndpoint:
    @pytest.fixture(autouse=True)
    def setup(self, world, gateway, sender, make_subscription, fetch, monkeypatch):
        monkeypatch.setattr(router_module, "DODO_PAYMENTS_WEBHOOK_SECRET", SECRET)
        self.processor = WebhookProcessor(
            gateway,
            ledger=WebhookLedger(),
            engine=SubscriptionStateEngine(),
            notifier=NotificationDispatcher(sender=sender),
        )
        app.dependency_overrides[router_module.get_webhook_processor] = lambda: self.processor
        self.client = TestClient(app)
        self.make_subscription = make_subscription
        self.fetch = fetch
        yield
        app.dependency_overrides.clear()

    def post(self, webhook_id, payload, signature=None):
        body = json.dumps(payload).encode("utf-8")
        timestamp = str(int(time.time()))
        signature = signature or sign_payload(SECRET, webhook_id, timestamp, body)
        return self.client.post(
            "/webhooks/dodo",
            content=body,
            headers={
                "content-type": "application/json",
                "webhook-id": webhook_id,
                "webhook-timestamp": timestamp,
                "webhook-signature": f"v1,{signature}",
            },
        )

    def test_bad_signature_is_rejected(self):
        response = self.post("wh_bad", {"type": "payment.failed", "data": {}}, signature="bm9wZQ==")
        assert response.status_code == 401
        assert receipts() == []

    def test_unhandled_event(self):
        response = self.post("wh_ign", {"type": "customer.created", "data": {}})
        assert response.status_code == 200
        assert response.json()["status"] == "ignorado"

    def test_failed_payment_is_processed_after_the_ack(self):
        sub_id = self.make_subscription(gateway="dodo", subscription_id_gateway="sub_http")
        payload = {"type": "payment.failed", "data": {"subscription_id": "sub_http", "payment_id": "pay_http"}}

        response = self.post("wh_http", payload)

        assert response.status_code == 200
        assert response.json() == {"status": "received", "webhook_id": "wh_http"}
        assert self.fetch(Subscription, sub_id).estado == "vencida"

        again = self.post("wh_http", payload)
        assert again.json()["status"] == "duplicado"
        with executor.bypass_scope() as db:
            assert db.execute(select(func.count(Payment.id))).scalar_one() == 1


class TestErrorMapping:
    @pytest.fixture(autouse=True)
    def setup(self, world, make_subscription):
        self.client = TestClient(app)
        self.make_subscription = make_subscription
        yield
        app.dependency_overrides.clear()

    def as_org(self, org_id):
        app.dependency_overrides[router_module.get_current_actor] = lambda: Actor(organizacion_id=org_id)

    def test_missing_identity(self):
        response = self.client.post("/billing/subscriptions/1/cancel", json={})
        assert response.status_code == 401

    def test_not_found(self):
        self.as_org(2)
        response = self.client.post("/billing/subscriptions/999/cancel", json={})
        assert response.status_code == 404
        assert response.json()["detail"] == "Subscription 999 not found"

    def test_illegal_transition(self):
        sub_id = self.make_subscription()
        self.as_org(1)
        response = self.client.post(f"/billing/subscriptions/{sub_id}/state", json={"estado": "grace_period"})
        assert response.status_code == 400
        assert response.json()["details"] == {"from": "activa", "to": "grace_period"}

    def test_modules_endpoint(self):
        self.as_org(2)
        response = self.client.get("/billing/modules")
        assert response.status_code == 200
        assert response.json() == {"organizacion_id": 2, "modulos": {"core": True, "pos": False}}
