# Overview: HTTP client for the Asaas payment gateway; customers and payment links.

"""
Asaas Payment Gateway Client

ENVIRONMENTS:
- production: https://api.asaas.com/v3
- sandbox:    https://sandbox.asaas.com/api/v3
ASAAS_API_URL overrides both; otherwise NODE_ENV / APP_ENV picks one.

AUTH: every request carries the API key in the "access_token" header.

ERRORS: non-2xx responses and transport failures raise PaymentGatewayError
with the HTTP status (None for transport failures) and the gateway's own
error description when it sends one.
"""
from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

import httpx
from flask import current_app


PRODUCTION_URL = "https://api.asaas.com/v3"
SANDBOX_URL = "https://sandbox.asaas.com/api/v3"
DEFAULT_TIMEOUT = 30.0

# Gateway payment status -> local payment_status
_PAYMENT_STATUS_MAP = {
    "CONFIRMED": "paid",
    "RECEIVED": "paid",
    "RECEIVED_IN_CASH": "paid",
    "PAID": "paid",
    "OVERDUE": "overdue",
    "PENDING_OVERDUE": "overdue",
    "REFUNDED": "refunded",
    "REFUND_REQUESTED": "refunded",
    "REFUND_IN_PROGRESS": "refunded",
    "CHARGEBACK_REQUESTED": "refunded",
    "CHARGEBACK_DISPUTE": "refunded",
    "DELETED": "canceled",
    "CANCELED": "canceled",
    "CANCELLED": "canceled",
}


class PaymentGatewayError(Exception):
    """Raised when the gateway rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None, payload=None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def map_payment_status(gateway_status: str | None) -> str:
    """Translate a gateway payment status; unknown statuses count as pending."""
    if not gateway_status:
        return "pending"
    return _PAYMENT_STATUS_MAP.get(gateway_status.upper(), "pending")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    errors = body.get("errors") if isinstance(body, dict) else None
    if errors:
        return "; ".join(e.get("description", str(e)) for e in errors if isinstance(e, dict)) or str(errors)
    return str(body)


class AsaasClient:
    """
    Thin synchronous wrapper over the Asaas REST API.

    transport is forwarded to httpx.Client so tests can plug in httpx.MockTransport.
    """

    def __init__(
        self,
        api_key: str | None,
        base_url: str = SANDBOX_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
        logger: logging.Logger | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_app(cls, transport: httpx.BaseTransport | None = None) -> "AsaasClient":
        config = current_app.config
        return cls(
            api_key=config.get("ASAAS_API_KEY"),
            base_url=config.get("ASAAS_API_URL") or (PRODUCTION_URL if config.get("IS_PRODUCTION") else SANDBOX_URL),
            timeout=config.get("ASAAS_TIMEOUT_SECONDS", DEFAULT_TIMEOUT),
            transport=transport or current_app.extensions.get("asaas_transport"),
            logger=current_app.logger,
        )

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "access_token": self.api_key or "",
        }

    def _request(self, method: str, path: str, json: dict | None = None, params: dict | None = None) -> dict:
        if not self.is_configured():
            raise PaymentGatewayError("ASAAS_API_KEY is not configured")

        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, headers=self._headers(), json=json, params=params)
        except httpx.HTTPError as e:
            self.logger.error("Asaas %s %s failed: %s", method, path, e)
            raise PaymentGatewayError(f"Could not reach payment gateway: {e}") from e

        if response.status_code >= 400:
            message = _error_message(response)
            self.logger.error("Asaas %s %s returned %s: %s", method, path, response.status_code, message)
            raise PaymentGatewayError(message, status_code=response.status_code, payload=response.text)

        self.logger.info("Asaas %s %s -> %s", method, path, response.status_code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise PaymentGatewayError("Payment gateway returned invalid JSON", status_code=response.status_code) from e

    # =========================================================================
    # Customers
    # =========================================================================

    def create_customer(
        self,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        cpf_cnpj: str | None = None,
        external_reference: str | None = None,
    ) -> dict:
        payload = {"name": name}
        if email:
            payload["email"] = email
        if phone:
            payload["mobilePhone"] = phone
        if cpf_cnpj:
            payload["cpfCnpj"] = cpf_cnpj
        if external_reference:
            payload["externalReference"] = external_reference
        return self._request("POST", "/customers", json=payload)

    def get_customer(self, customer_id: str) -> dict:
        return self._request("GET", f"/customers/{customer_id}")

    # =========================================================================
    # Payment links
    # =========================================================================

    def create_payment_link(
        self,
        name: str,
        value: Decimal | float,
        due_date: date,
        description: str | None = None,
        expiration_minutes: int | None = None,
        external_reference: str | None = None,
    ) -> dict:
        """
        Create a single-charge payment link.

        Returns the gateway object (id, url, active, ...).
        """
        payload = {
            "name": name,
            "description": description or name,
            "value": float(value),
            "billingType": "UNDEFINED",
            "chargeType": "DETACHED",
            "dueDateLimitDays": 5,
            "maxInstallmentCount": 1,
            "endDate": due_date.isoformat(),
        }
        if expiration_minutes is not None:
            payload["expirationMinutes"] = expiration_minutes
        if external_reference:
            payload["externalReference"] = external_reference
        return self._request("POST", "/paymentLinks", json=payload)

    def get_payment_link(self, link_id: str) -> dict:
        return self._request("GET", f"/paymentLinks/{link_id}")

    def get_payment_link_payments(self, link_id: str) -> list[dict]:
        """Payments made through a link, newest gateway order."""
        body = self._request("GET", "/payments", params={"paymentLink": link_id})
        return body.get("data", []) if isinstance(body, dict) else []

    def delete_payment_link(self, link_id: str) -> dict:
        return self._request("DELETE", f"/paymentLinks/{link_id}")
