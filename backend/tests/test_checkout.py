"""
Checkout links: creation through the payment gateway, status refresh,
cancellation, expiry and gateway webhook notifications.

The gateway is replaced with httpx.MockTransport registered on
app.extensions["asaas_transport"].
"""

import json
from datetime import timedelta

import httpx
import pytest

from edunexia.models import CheckoutLink, Client, LeadActivity, PermissionAudit, SecurityEvent
from edunexia.services import checkout_service, crm_service
from edunexia.services.asaas_client import PaymentGatewayError
from edunexia.services.checkout_service import CheckoutStateError
from edunexia.time_utils import utcnow
from edunexia.validation import ValidationError


PAYLOAD = {
    "description": "Matricula 2026",
    "value": 199.9,
    "dueDate": "2026-12-10",
    "expirationTime": 15,
}


class FakeAsaas:
    """Routes gateway calls by (method, path) and records every request."""

    def __init__(self):
        self.requests = []
        self.payments = []
        self.fail_with = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            status, body = self.fail_with
            return httpx.Response(status, json=body)

        path = request.url.path
        if request.method == "POST" and path.endswith("/paymentLinks"):
            return httpx.Response(200, json={"id": f"lnk_{len(self.requests)}", "url": "https://pay.test/lnk"})
        if request.method == "GET" and path.endswith("/payments"):
            return httpx.Response(200, json={"object": "list", "data": self.payments})
        if request.method == "DELETE" and "/paymentLinks/" in path:
            return httpx.Response(200, json={"deleted": True})
        return httpx.Response(404, json={"errors": [{"code": "not_found", "description": "Not found"}]})


@pytest.fixture
def asaas(app, monkeypatch):
    fake = FakeAsaas()
    monkeypatch.setitem(app.extensions, "asaas_transport", httpx.MockTransport(fake))
    return fake


@pytest.fixture
def lead(db_session, institution):
    return crm_service.create_lead({
        "name": "Pedro Lima", "email": "pedro@example.com", "institution_id": institution.id,
    })


class TestValidation:

    @pytest.mark.parametrize("override", [
        {"description": "ab"},
        {"value": 0},
        {"value": -10},
        {"value": "abc"},
        {"value": True},
        {"dueDate": "10/12/2026"},
        {"dueDate": None},
        {"dueDate": "2026-W01-1"},
        {"dueDate": "2026-1-5"},
        {"dueDate": "2026-02-30"},
        {"expirationTime": 4},
        {"expirationTime": 61},
        {"courseId": "x"},
    ])
    def test_rejects(self, override):
        with pytest.raises(ValidationError):
            checkout_service.validate_checkout_data({**PAYLOAD, **override})

    def test_normalizes(self):
        fields = checkout_service.validate_checkout_data({
            "description": "  Curso  ", "value": "10.5", "due_date": "2026-01-01", "course_id": "7",
        })
        assert fields["description"] == "Curso"
        assert str(fields["value"]) == "10.50"
        assert fields["expiration_time"] == checkout_service.DEFAULT_EXPIRATION_MINUTES
        assert fields["course_id"] == 7

    def test_past_due_date_accepted(self):
        fields = checkout_service.validate_checkout_data({**PAYLOAD, "dueDate": "2020-01-31"})
        assert fields["due_date"].isoformat() == "2020-01-31"

    def test_transitions(self):
        assert checkout_service.can_transition("pending", "active")
        assert checkout_service.can_transition("active", "expired")
        assert not checkout_service.can_transition("canceled", "active")
        assert not checkout_service.can_transition("expired", "canceled")


class TestCreate:

    def test_create_stores_active_link(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)

        assert link.status == "active"
        assert link.payment_status == "pending"
        assert link.asaas_checkout_id == "lnk_1"
        assert link.url == "https://pay.test/lnk"

        sent = asaas.requests[0]
        assert sent.headers["access_token"] == "test-asaas-key"
        assert str(sent.url) == "https://sandbox.asaas.test/api/v3/paymentLinks"
        body = json.loads(sent.content)
        assert body["value"] == 199.9
        assert body["endDate"] == "2026-12-10"
        assert body["expirationMinutes"] == 15
        assert body["externalReference"] == f"lead:{lead.id}"

    def test_create_logs_activity_and_audit(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        activity = LeadActivity.query.filter_by(lead_id=lead.id, type="checkout").one()
        assert activity.details["checkout_link_id"] == link.id
        assert PermissionAudit.query.filter_by(entity_type="checkout_link", entity_id=link.id).count() == 1

    def test_gateway_error_stores_nothing(self, asaas, lead):
        asaas.fail_with = (400, {"errors": [{"code": "invalid_value", "description": "Valor invalido"}]})
        with pytest.raises(PaymentGatewayError) as exc:
            checkout_service.create_checkout_link(lead.id, PAYLOAD)
        assert exc.value.status_code == 400
        assert "Valor invalido" in str(exc.value)
        assert CheckoutLink.query.count() == 0
        assert LeadActivity.query.count() == 0

    def test_invalid_payload_never_calls_gateway(self, asaas, lead):
        with pytest.raises(ValidationError):
            checkout_service.create_checkout_link(lead.id, {**PAYLOAD, "value": 0})
        assert asaas.requests == []

    def test_missing_gateway_id(self, app, monkeypatch, lead):
        monkeypatch.setitem(
            app.extensions, "asaas_transport", httpx.MockTransport(lambda r: httpx.Response(200, json={}))
        )
        with pytest.raises(PaymentGatewayError):
            checkout_service.create_checkout_link(lead.id, PAYLOAD)
        assert CheckoutLink.query.count() == 0


class TestRefresh:

    def test_paid_converts_lead(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        asaas.payments = [
            {"id": "pay_1", "status": "RECEIVED", "customer": "cus_9", "paymentDate": "2026-03-02"},
        ]

        link = checkout_service.refresh_checkout_status(link.id)

        assert link.payment_status == "paid"
        assert link.paid_at.date().isoformat() == "2026-03-02"
        assert lead.status == "converted"
        client = Client.query.one()
        assert lead.converted_to_client_id == client.id
        assert link.client_id == client.id
        assert client.asaas_customer_id == "cus_9"
        assert client.email == "pedro@example.com"

        refresh_call = asaas.requests[-1]
        assert refresh_call.url.params["paymentLink"] == link.asaas_checkout_id

    def test_unchanged_status_is_noop(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        asaas.payments = [{"id": "pay_1", "status": "PENDING"}]
        before = PermissionAudit.query.count()
        checkout_service.refresh_checkout_status(link.id)
        assert PermissionAudit.query.count() == before

    def test_overdue(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        asaas.payments = [{"id": "pay_1", "status": "OVERDUE"}]
        assert checkout_service.refresh_checkout_status(link.id).payment_status == "overdue"
        assert lead.status == "new"

    def test_paid_wins_over_listing_order(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        asaas.payments = [{"id": "a", "status": "OVERDUE"}, {"id": "b", "status": "CONFIRMED"}]
        assert checkout_service.refresh_checkout_status(link.id).payment_status == "paid"

    def test_already_converted_lead_keeps_its_client(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        existing = crm_service.convert_lead_to_client(lead.id)
        asaas.payments = [{"id": "pay_1", "status": "CONFIRMED"}]
        checkout_service.refresh_checkout_status(link.id)
        assert Client.query.count() == 1
        assert link.client_id == existing.id

    def test_late_payment_on_canceled_link(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        checkout_service.cancel_checkout_link(link.id)
        asaas.payments = [{"id": "pay_1", "status": "RECEIVED"}]
        link = checkout_service.refresh_checkout_status(link.id)
        assert link.status == "canceled"
        assert link.payment_status == "paid"


class TestCancelAndExpire:

    def test_cancel_deletes_at_gateway(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        link = checkout_service.cancel_checkout_link(link.id)
        assert link.status == "canceled"
        assert asaas.requests[-1].method == "DELETE"
        assert asaas.requests[-1].url.path.endswith(f"/paymentLinks/{link.asaas_checkout_id}")

    def test_cancel_terminal_link(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        checkout_service.cancel_checkout_link(link.id)
        with pytest.raises(CheckoutStateError):
            checkout_service.cancel_checkout_link(link.id)

    def test_gateway_failure_keeps_link_active(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        asaas.fail_with = (500, {"errors": [{"description": "Erro interno"}]})
        with pytest.raises(PaymentGatewayError):
            checkout_service.cancel_checkout_link(link.id)
        assert checkout_service.get_checkout_link(link.id).status == "active"

    def test_expire_stale_links(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        assert checkout_service.expire_stale_links(now=utcnow() + timedelta(minutes=5)) == 0
        assert checkout_service.expire_stale_links(now=utcnow() + timedelta(minutes=16)) == 1
        assert checkout_service.get_checkout_link(link.id).status == "expired"
        # Terminal links are never picked up again
        assert checkout_service.expire_stale_links(now=utcnow() + timedelta(days=1)) == 0

    def test_paid_links_never_expire(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        asaas.payments = [{"id": "pay_1", "status": "RECEIVED"}]
        checkout_service.refresh_checkout_status(link.id)
        assert checkout_service.expire_stale_links(now=utcnow() + timedelta(days=1)) == 0


class TestCheckoutRoutes:

    def test_create(self, client, asaas, sales_headers, lead):
        resp = client.post(f"/api/v2/leads/{lead.id}/checkout", json=PAYLOAD, headers=sales_headers)
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["status"] == "active"
        assert body["value"] == 199.9

        resp = client.get(f"/api/v2/leads/{lead.id}/checkout", headers=sales_headers)
        assert resp.get_json()["count"] == 1

        resp = client.get(f"/api/v2/checkout/{body['id']}", headers=sales_headers)
        assert resp.status_code == 200

    def test_gateway_error_is_502(self, client, asaas, sales_headers, lead):
        asaas.fail_with = (401, {"errors": [{"description": "Chave invalida"}]})
        resp = client.post(f"/api/v2/leads/{lead.id}/checkout", json=PAYLOAD, headers=sales_headers)
        assert resp.status_code == 502
        assert resp.get_json()["gateway_status"] == 401

    def test_validation_is_400(self, client, asaas, sales_headers, lead):
        resp = client.post(
            f"/api/v2/leads/{lead.id}/checkout", json={**PAYLOAD, "description": "x"}, headers=sales_headers
        )
        assert resp.status_code == 400

    def test_missing_lead(self, client, asaas, sales_headers):
        assert client.post("/api/v2/leads/999/checkout", json=PAYLOAD, headers=sales_headers).status_code == 404

    def test_foreign_institution_denied(self, client, asaas, sales_headers, other_institution):
        foreign = crm_service.create_lead({"name": "X", "institution_id": other_institution.id})
        resp = client.post(f"/api/v2/leads/{foreign.id}/checkout", json=PAYLOAD, headers=sales_headers)
        assert resp.status_code == 403
        assert asaas.requests == []

    def test_refresh_and_cancel(self, client, asaas, admin_headers, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)

        asaas.payments = [{"id": "pay_1", "status": "CONFIRMED"}]
        resp = client.post(f"/api/v2/checkout/{link.id}/refresh", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["payment_status"] == "paid"

        resp = client.post(f"/api/v2/checkout/{link.id}/cancel", headers=admin_headers)
        assert resp.status_code == 200
        resp = client.post(f"/api/v2/checkout/{link.id}/cancel", headers=admin_headers)
        assert resp.status_code == 409

    def test_sales_cannot_refresh(self, client, asaas, sales_headers, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        assert client.post(f"/api/v2/checkout/{link.id}/refresh", headers=sales_headers).status_code == 403


WEBHOOK_TOKEN = "whsec-test-token"


def _notification(link, event="PAYMENT_RECEIVED", **payment):
    return {
        "event": event,
        "payment": {"id": "pay_7", "paymentLink": link.asaas_checkout_id, "customer": "cus_7", **payment},
    }


@pytest.fixture
def webhook_token(app, monkeypatch):
    monkeypatch.setitem(app.config, "ASAAS_WEBHOOK_TOKEN", WEBHOOK_TOKEN)
    return {"asaas-access-token": WEBHOOK_TOKEN}


class TestWebhookEvents:

    def test_received_converts_lead(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)

        link = checkout_service.handle_webhook_event(_notification(link, paymentDate="2026-04-01"))

        assert link.payment_status == "paid"
        assert link.paid_at.date().isoformat() == "2026-04-01"
        assert lead.status == "converted"
        assert Client.query.one().asaas_customer_id == "cus_7"
        assert LeadActivity.query.filter_by(lead_id=lead.id, type="checkout").count() == 2

    @pytest.mark.parametrize("event,expected", [
        ("PAYMENT_CONFIRMED", "paid"),
        ("PAYMENT_APPROVED", "paid"),
        ("PAYMENT_OVERDUE", "overdue"),
        ("PAYMENT_REFUNDED", "refunded"),
        ("PAYMENT_DELETED", "canceled"),
        ("PAYMENT_CANCELED", "canceled"),
    ])
    def test_event_mapping(self, asaas, lead, event, expected):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        assert checkout_service.handle_webhook_event(_notification(link, event)).payment_status == expected

    def test_unhandled_event_changes_nothing(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        assert checkout_service.handle_webhook_event(_notification(link, "PAYMENT_CREATED")) is None
        assert link.payment_status == "pending"

    def test_late_overdue_keeps_paid(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        checkout_service.handle_webhook_event(_notification(link))
        before = PermissionAudit.query.count()

        link = checkout_service.handle_webhook_event(_notification(link, "PAYMENT_OVERDUE"))

        assert link.payment_status == "paid"
        assert PermissionAudit.query.count() == before

    def test_redelivery_is_noop(self, asaas, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        checkout_service.handle_webhook_event(_notification(link))
        checkout_service.handle_webhook_event(_notification(link))
        assert Client.query.count() == 1

    @pytest.mark.parametrize("data", [
        None,
        [],
        {"event": "PAYMENT_RECEIVED"},
        {"payment": {"paymentLink": "lnk_1"}},
        {"event": "PAYMENT_RECEIVED", "payment": "lnk_1"},
        {"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_1"}},
    ])
    def test_invalid_body(self, db_session, data):
        with pytest.raises(ValidationError):
            checkout_service.handle_webhook_event(data)


class TestWebhookRoute:

    def test_paid_notification(self, client, db_session, asaas, webhook_token, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)

        resp = client.post("/api/v2/checkout/webhook", json=_notification(link), headers=webhook_token)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["handled"] is True
        assert body["checkout_link"]["payment_status"] == "paid"
        db_session.expire_all()
        assert lead.status == "converted"

    def test_wrong_token(self, client, db_session, asaas, webhook_token, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)

        resp = client.post(
            "/api/v2/checkout/webhook", json=_notification(link), headers={"asaas-access-token": "nope"}
        )

        assert resp.status_code == 401
        db_session.expire_all()
        assert checkout_service.get_checkout_link(link.id).payment_status == "pending"
        assert SecurityEvent.query.filter_by(event_type="WEBHOOK_REJECTED").count() == 1

    def test_missing_token(self, client, asaas, webhook_token, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        assert client.post("/api/v2/checkout/webhook", json=_notification(link)).status_code == 401

    def test_token_not_configured(self, client, app, monkeypatch, asaas, lead):
        monkeypatch.setitem(app.config, "ASAAS_WEBHOOK_TOKEN", None)
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        resp = client.post("/api/v2/checkout/webhook", json=_notification(link), headers={"asaas-access-token": ""})
        assert resp.status_code == 503

    def test_unknown_link(self, client, db_session, webhook_token):
        data = {"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_1", "paymentLink": "lnk_missing"}}
        assert client.post("/api/v2/checkout/webhook", json=data, headers=webhook_token).status_code == 404

    def test_invalid_body(self, client, db_session, webhook_token):
        resp = client.post("/api/v2/checkout/webhook", json={"event": "PAYMENT_RECEIVED"}, headers=webhook_token)
        assert resp.status_code == 400

    def test_unhandled_event_acknowledged(self, client, asaas, webhook_token, lead):
        link = checkout_service.create_checkout_link(lead.id, PAYLOAD)
        resp = client.post(
            "/api/v2/checkout/webhook", json=_notification(link, "PAYMENT_CREATED"), headers=webhook_token
        )
        assert resp.status_code == 200
        assert resp.get_json()["handled"] is False
