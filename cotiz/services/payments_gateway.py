"""
cotiz/services/payments_gateway.py

Asaas-compatible payment gateway client.

Modes (PAYMENT_GATEWAY_MODE):
- mock: deterministic in-process responses, no network (development/tests).
- asaas: REST calls to PAYMENT_GATEWAY_URL with the access_token header.

Only the calls the marketplace needs: customer creation, one-off charges
(quote checkout, subscription invoices) and charge cancellation.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict

import requests
from flask import current_app

from ..errors import IntegrationError, ServiceUnavailable

log = logging.getLogger(__name__)

DEFAULT_BILLING_TYPE = "UNDEFINED"  # lets the payer pick PIX, boleto or card on the hosted page


class PaymentGateway:
    def __init__(self, mode: str, base_url: str, api_key: str | None, timeout: int, public_base_url: str):
        self.mode = (mode or "mock").lower()
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.public_base_url = public_base_url.rstrip("/")

    @property
    def is_mock(self) -> bool:
        return self.mode == "mock"

    # -----------------------------------------------------------------
    # transport
    # -----------------------------------------------------------------
    def _request(self, method: str, path: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
        if not self.api_key:
            raise ServiceUnavailable("Gateway de pagamento não configurado.")
        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(
                method,
                url,
                json=payload,
                headers={"access_token": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise IntegrationError("Gateway de pagamento indisponível.", details=str(exc))

        if resp.status_code >= 400:
            description = resp.reason
            try:
                errors = resp.json().get("errors") or []
                if errors:
                    description = errors[0].get("description") or description
            except ValueError:
                pass
            raise IntegrationError(
                "Gateway de pagamento recusou a operação.",
                details=f"{method} {path} -> {resp.status_code}: {description}",
            )
        return resp.json()

    def _mock_id(self, prefix: str) -> str:
        return f"mock_{prefix}_{uuid.uuid4().hex[:12]}"

    # -----------------------------------------------------------------
    # operations
    # -----------------------------------------------------------------
    def create_customer(self, *, name: str, email: str, cnpj: str | None, external_reference: str) -> str:
        if self.is_mock:
            return self._mock_id("cus")
        data = self._request(
            "POST",
            "/customers",
            {
                "name": name,
                "email": email,
                "cpfCnpj": cnpj,
                "externalReference": external_reference,
            },
        )
        return data["id"]

    def create_charge(
        self,
        *,
        customer_id: str,
        amount: Decimal,
        due_date: date,
        description: str,
        external_reference: str,
        billing_type: str = DEFAULT_BILLING_TYPE,
    ) -> Dict[str, Any]:
        """Create a one-off charge. Returns {"id", "invoice_url", "status"}."""
        if self.is_mock:
            charge_id = self._mock_id("pay")
            log.info(
                "Mock charge created %s (%s)",
                charge_id,
                external_reference,
                extra={"event": "gateway_mock_charge"},
            )
            return {
                "id": charge_id,
                "invoice_url": f"{self.public_base_url}/mock-checkout/{charge_id}",
                "status": "PENDING",
            }

        data = self._request(
            "POST",
            "/payments",
            {
                "customer": customer_id,
                "billingType": billing_type,
                "value": float(amount),
                "dueDate": due_date.isoformat(),
                "description": description,
                "externalReference": external_reference,
            },
        )
        return {
            "id": data["id"],
            "invoice_url": data.get("invoiceUrl"),
            "status": data.get("status"),
        }

    def cancel_charge(self, charge_id: str) -> None:
        if self.is_mock or not charge_id:
            return
        self._request("DELETE", f"/payments/{charge_id}")


def get_gateway() -> PaymentGateway:
    cfg = current_app.config
    return PaymentGateway(
        mode=cfg.get("PAYMENT_GATEWAY_MODE", "mock"),
        base_url=cfg.get("PAYMENT_GATEWAY_URL", ""),
        api_key=cfg.get("PAYMENT_GATEWAY_API_KEY"),
        timeout=int(cfg.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 20)),
        public_base_url=cfg.get("PUBLIC_BASE_URL", ""),
    )
