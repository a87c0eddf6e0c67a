# Overview: Service-layer operations for checkout links; gateway calls, status machine and lead conversion.

"""
Checkout Link Service

WHY: Sales staff send a lead a payment link. When the gateway reports the
charge as paid, the lead becomes a client automatically.

STATUS MACHINE (CheckoutLink.status):
    pending -> active -> canceled | expired
    pending -> canceled | expired
canceled and expired are terminal; nothing moves a link out of them.

payment_status follows the gateway charge independently and may still
change after the link itself is terminal (a late payment is recorded).
It is pulled by refresh_checkout_status or pushed by the gateway webhook
(handle_webhook_event); both apply it the same way.

VALIDATION (create):
- description: at least 3 characters
- value: > 0
- due_date: YYYY-MM-DD
- expiration_time: minutes, 5..60 (default 30)
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from ..extensions import db
from ..models import CheckoutLink, Client
from ..validation import ValidationError, NotFoundError
from . import audit_service, crm_service
from .asaas_client import AsaasClient, PaymentGatewayError, map_payment_status
from .audit_service import Actor
from edunexia.time_utils import utcnow, parse_iso_date, parse_iso_datetime


DEFAULT_EXPIRATION_MINUTES = 30
MIN_EXPIRATION_MINUTES = 5
MAX_EXPIRATION_MINUTES = 60
MIN_DESCRIPTION_LENGTH = 3

ALLOWED_TRANSITIONS = {
    "pending": {"active", "canceled", "expired"},
    "active": {"canceled", "expired"},
    "canceled": set(),
    "expired": set(),
}

TERMINAL_STATUSES = {"canceled", "expired"}


class CheckoutStateError(Exception):
    """Raised on a status change the link's lifecycle forbids."""
    pass


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


def transition(link: CheckoutLink, to_status: str) -> None:
    if not can_transition(link.status, to_status):
        raise CheckoutStateError(f"Cannot move checkout link from {link.status} to {to_status}")
    link.status = to_status
    link.updated_at = utcnow()


def _optional_int(data: dict, key: str) -> int | None:
    raw = data.get(key)
    if raw in (None, ""):
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


def validate_checkout_data(data: dict) -> dict:
    """
    Normalize a checkout request body.

    Accepts camelCase (dueDate, expirationTime, courseId, productId,
    additionalInfo) as sent by the web client, or snake_case.
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")

    description = str(data.get("description") or "").strip()
    if len(description) < MIN_DESCRIPTION_LENGTH:
        raise ValidationError(f"description must have at least {MIN_DESCRIPTION_LENGTH} characters")

    raw_value = data.get("value")
    if raw_value is None or isinstance(raw_value, bool):
        raise ValidationError("value must be a number greater than 0")
    try:
        value = Decimal(str(raw_value).strip())
    except InvalidOperation:
        raise ValidationError("value must be a number greater than 0")
    if not value.is_finite() or value <= 0:
        raise ValidationError("value must be a number greater than 0")
    value = value.quantize(Decimal("0.01"))

    raw_due = data.get("dueDate", data.get("due_date"))
    if not isinstance(raw_due, str):
        raise ValidationError("dueDate must be a date (YYYY-MM-DD)")
    try:
        due_date = parse_iso_date(raw_due)
    except ValueError:
        raise ValidationError("dueDate must be a date (YYYY-MM-DD)")
    if due_date is None:
        raise ValidationError("dueDate must be a date (YYYY-MM-DD)")

    expiration = data.get("expirationTime", data.get("expiration_time"))
    if expiration in (None, ""):
        expiration_time = DEFAULT_EXPIRATION_MINUTES
    else:
        expiration_time = _optional_int({"expirationTime": expiration}, "expirationTime")
        if not MIN_EXPIRATION_MINUTES <= expiration_time <= MAX_EXPIRATION_MINUTES:
            raise ValidationError(
                f"expirationTime must be between {MIN_EXPIRATION_MINUTES} and {MAX_EXPIRATION_MINUTES} minutes"
            )

    additional_info = data.get("additionalInfo", data.get("additional_info"))
    if additional_info is not None:
        additional_info = str(additional_info).strip() or None

    return {
        "description": description,
        "value": value,
        "due_date": due_date,
        "expiration_time": expiration_time,
        "course_id": _optional_int(data, "courseId") if "courseId" in data else _optional_int(data, "course_id"),
        "product_id": _optional_int(data, "productId") if "productId" in data else _optional_int(data, "product_id"),
        "additional_info": additional_info,
    }


def get_checkout_link(link_id: int) -> CheckoutLink:
    link = db.session.get(CheckoutLink, link_id)
    if not link:
        raise NotFoundError("Checkout link not found")
    return link


def list_lead_checkout_links(lead_id: int) -> list[CheckoutLink]:
    crm_service.get_lead(lead_id)
    return (
        db.session.query(CheckoutLink)
        .filter(CheckoutLink.lead_id == lead_id)
        .order_by(CheckoutLink.created_at.desc(), CheckoutLink.id.desc())
        .all()
    )


def create_checkout_link(
    lead_id: int,
    data: dict,
    actor: Actor | None = None,
    gateway: AsaasClient | None = None,
) -> CheckoutLink:
    """
    Create a gateway payment link for a lead and record it as active.

    Nothing is stored when the gateway call fails (PaymentGatewayError propagates).
    """
    lead = crm_service.get_lead(lead_id)
    fields = validate_checkout_data(data)
    gateway = gateway or AsaasClient.from_app()

    remote = gateway.create_payment_link(
        name=fields["description"],
        value=fields["value"],
        due_date=fields["due_date"],
        description=fields["additional_info"] or fields["description"],
        expiration_minutes=fields["expiration_time"],
        external_reference=f"lead:{lead.id}",
    )
    if not remote.get("id"):
        raise PaymentGatewayError("Payment gateway did not return a link id")

    now = utcnow()
    link = CheckoutLink(
        lead=lead,
        client_id=lead.converted_to_client_id,
        status="pending",
        payment_status="pending",
        asaas_checkout_id=remote["id"],
        url=remote.get("url"),
        created_by_id=actor.user_id if actor else None,
        created_at=now,
        updated_at=now,
        **fields,
    )
    transition(link, "active")
    db.session.add(link)
    db.session.flush()

    crm_service.add_lead_activity(
        lead.id,
        "checkout",
        f"Checkout link created: {fields['description']} (R$ {fields['value']})",
        metadata={"checkout_link_id": link.id, "url": link.url, "asaas_checkout_id": link.asaas_checkout_id},
        actor=actor,
        commit=False,
    )
    db.session.commit()

    audit_service.record(
        actor, "create", "checkout_link", link.id,
        f"Created checkout link for lead #{lead.id}",
        resource_type="checkout_links",
        new_value=link.to_dict(),
    )
    return link


def _paid_at(payment: dict) -> datetime:
    for key in ("clientPaymentDate", "paymentDate", "confirmedDate"):
        raw = payment.get(key)
        if not raw:
            continue
        try:
            return parse_iso_datetime(raw)
        except ValueError:
            continue
    return utcnow()


def _pick_payment(payments: list[dict]) -> tuple[str, dict | None]:
    """Paid beats everything; otherwise the first payment the gateway lists."""
    for payment in payments:
        if map_payment_status(payment.get("status")) == "paid":
            return "paid", payment
    if payments:
        return map_payment_status(payments[0].get("status")), payments[0]
    return "pending", None


def _convert_on_payment(link: CheckoutLink, payment: dict | None, actor: Actor | None) -> Client | None:
    lead = link.lead
    if lead is None:
        return link.client

    customer_id = payment.get("customer") if payment else None

    client = lead.converted_to_client
    if client is None:
        client = crm_service.build_client_from_lead(lead, {}, actor)
        db.session.flush()
        lead.status = "converted"
        lead.converted_to_client_id = client.id
        lead.updated_at = utcnow()
    elif lead.status != "converted":
        lead.status = "converted"
        lead.updated_at = utcnow()

    if customer_id and not client.asaas_customer_id:
        client.asaas_customer_id = customer_id

    link.client_id = client.id
    return client


def refresh_checkout_status(
    link_id: int,
    actor: Actor | None = None,
    gateway: AsaasClient | None = None,
) -> CheckoutLink:
    """
    Pull the charge status from the gateway.

    First time a link is seen paid: record paid_at, create the client from
    the lead when needed and mark the lead converted.
    """
    link = get_checkout_link(link_id)
    if not link.asaas_checkout_id:
        raise ValidationError("Checkout link has no gateway id")
    gateway = gateway or AsaasClient.from_app()

    payments = gateway.get_payment_link_payments(link.asaas_checkout_id)
    new_status, payment = _pick_payment(payments)
    return _apply_payment_status(link, new_status, payment, actor)


def _apply_payment_status(
    link: CheckoutLink,
    new_status: str,
    payment: dict | None,
    actor: Actor | None,
) -> CheckoutLink:
    if new_status == link.payment_status:
        return link

    old = link.to_dict()
    was_paid = link.payment_status == "paid"
    link.payment_status = new_status
    link.updated_at = utcnow()

    created_client = False
    if new_status == "paid" and not was_paid:
        link.paid_at = _paid_at(payment or {})
        created_client = link.lead is not None and link.lead.converted_to_client_id is None
        client = _convert_on_payment(link, payment, actor)
        if link.lead is not None:
            crm_service.add_lead_activity(
                link.lead.id,
                "checkout",
                f"Payment confirmed for checkout link #{link.id}",
                metadata={"checkout_link_id": link.id, "client_id": client.id if client else None},
                actor=actor,
                commit=False,
            )

    db.session.commit()

    audit_service.record(
        actor, "update", "checkout_link", link.id,
        f"Checkout link #{link.id} payment status {old['payment_status']} -> {new_status}",
        resource_type="checkout_links",
        old_value=old,
        new_value=link.to_dict(),
    )
    if created_client:
        audit_service.record(
            actor, "create", "client", link.client_id,
            f"Created client from paid checkout link #{link.id}",
            new_value=link.client.to_dict() if link.client else None,
        )
    return link


# Gateway webhook event -> payment_status. Other events are acknowledged and ignored.
WEBHOOK_EVENTS = {
    "PAYMENT_CONFIRMED": "CONFIRMED",
    "PAYMENT_RECEIVED": "RECEIVED",
    "PAYMENT_APPROVED": "CONFIRMED",
    "PAYMENT_OVERDUE": "OVERDUE",
    "PAYMENT_REFUNDED": "REFUNDED",
    "PAYMENT_DELETED": "DELETED",
    "PAYMENT_CANCELED": "DELETED",
}


def handle_webhook_event(data: dict, actor: Actor | None = None) -> CheckoutLink | None:
    """
    Apply a payment notification pushed by the gateway.

    Returns None for events that do not change a payment status. A link
    already paid is not moved back to pending or overdue by a late event.
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    event = data.get("event")
    payment = data.get("payment")
    if not isinstance(event, str) or not event or not isinstance(payment, dict):
        raise ValidationError("event and payment are required")

    gateway_status = WEBHOOK_EVENTS.get(event)
    if gateway_status is None:
        return None

    payment_link_id = payment.get("paymentLink")
    if not payment_link_id:
        raise ValidationError("payment.paymentLink is required")

    link = (
        db.session.query(CheckoutLink)
        .filter(CheckoutLink.asaas_checkout_id == str(payment_link_id))
        .first()
    )
    if link is None:
        raise NotFoundError("Checkout link not found")

    new_status = map_payment_status(gateway_status)
    if link.payment_status == "paid" and new_status in ("pending", "overdue"):
        return link
    return _apply_payment_status(link, new_status, payment, actor)


def cancel_checkout_link(
    link_id: int,
    actor: Actor | None = None,
    gateway: AsaasClient | None = None,
) -> CheckoutLink:
    """Delete the link at the gateway, then mark it canceled."""
    link = get_checkout_link(link_id)
    if not can_transition(link.status, "canceled"):
        raise CheckoutStateError(f"Cannot cancel a checkout link that is {link.status}")

    if link.asaas_checkout_id:
        gateway = gateway or AsaasClient.from_app()
        gateway.delete_payment_link(link.asaas_checkout_id)

    old = link.to_dict()
    transition(link, "canceled")
    if link.lead is not None:
        crm_service.add_lead_activity(
            link.lead.id,
            "checkout",
            f"Checkout link #{link.id} canceled",
            metadata={"checkout_link_id": link.id},
            actor=actor,
            commit=False,
        )
    db.session.commit()

    audit_service.record(
        actor, "update", "checkout_link", link.id, f"Canceled checkout link #{link.id}",
        resource_type="checkout_links",
        old_value=old,
        new_value=link.to_dict(),
    )
    return link


def expire_stale_links(now: datetime | None = None) -> int:
    """
    Expire unpaid pending/active links whose expiration window has passed.

    Returns the number of links expired.
    """
    now = now or utcnow()
    candidates = (
        db.session.query(CheckoutLink)
        .filter(
            CheckoutLink.status.in_(("pending", "active")),
            CheckoutLink.payment_status != "paid",
        )
        .all()
    )

    expired = 0
    for link in candidates:
        if link.created_at + timedelta(minutes=link.expiration_time) < now:
            transition(link, "expired")
            expired += 1

    db.session.commit()
    return expired
