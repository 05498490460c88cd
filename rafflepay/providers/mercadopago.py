# providers/mercadopago.py
"""
Mercado Pago Checkout Pro.

Checkout creates a preference whose `external_reference` is our Payment id;
the buyer pays on MP's page and MP notifies the webhook with a payment id,
which we look up again (`GET /v1/payments/{id}`) before trusting anything.
"""

from __future__ import annotations
import hashlib
import hmac
import re
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from ..config import Settings
from ..errors import ProviderError
from ..helpers import ct_equal
from .base import (
    PaymentProvider, CheckoutRequest, ProviderCheckout, ProviderStatus,
    KIND_SUCCESS, KIND_FAILURE, KIND_PENDING,
)

log = structlog.get_logger(__name__)

_TRAILING_ID = re.compile(r"/(\d+)$")

# signature check outcomes
SIG_OK = "ok"
SIG_INVALID = "invalid"
SIG_UNCHECKED = "unchecked"


def map_status(status: Optional[str]) -> str:
    if status == "approved":
        return KIND_SUCCESS
    if status in ("rejected", "cancelled"):
        return KIND_FAILURE
    return KIND_PENDING


def _status_from_payment(data: Dict[str, Any]) -> ProviderStatus:
    amount = data.get("transaction_amount")
    ref = data.get("external_reference")
    return {
        "kind": map_status(data.get("status")),
        "correlation_id": str(ref) if ref else None,
        "provider_ref": str(data["id"]) if data.get("id") else None,
        "amount": int(amount) if amount is not None else None,
        "raw_status": data.get("status"),
    }


# ----------------------------
# Webhook payload
# ----------------------------
def extract_resource_id(query: Mapping[str, Any],
                        body: Optional[Mapping[str, Any]]) -> Optional[str]:
    """
    MP sends the id in several places depending on the notification flavour:
    ?id=, ?data.id=, {"data": {"id"}} or the tail of {"resource": ".../123"}.
    """
    for key in ("id", "data.id"):
        v = query.get(key)
        if v and str(v).strip():
            return str(v).strip()
    body = body or {}
    data = body.get("data")
    if isinstance(data, Mapping) and data.get("id"):
        return str(data["id"])
    resource = body.get("resource")
    if isinstance(resource, str):
        m = _TRAILING_ID.search(resource.strip())
        if m:
            return m.group(1)
    return None


def extract_topic(query: Mapping[str, Any],
                  body: Optional[Mapping[str, Any]]) -> Optional[str]:
    body = body or {}
    return query.get("topic") or query.get("type") or \
        body.get("type") or body.get("topic")


def is_payment_event(query: Mapping[str, Any],
                     body: Optional[Mapping[str, Any]]) -> bool:
    # query and body can disagree (?topic=merchant_order with type=payment)
    body = body or {}
    return "payment" in (
        query.get("topic"), query.get("type"),
        body.get("type"), body.get("topic"),
    )


def sign_manifest(secret: str, data_id: str, request_id: str, ts: str) -> str:
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    return hmac.new(secret.encode(), manifest.encode(),
                    hashlib.sha256).hexdigest()


def _parse_signature_header(header: str) -> Dict[str, str]:
    parts = {}
    for part in header.split(","):
        key, _, value = part.partition("=")
        if key.strip() and value.strip():
            parts[key.strip()] = value.strip()
    return parts


def verify_signature(secret: str, headers: Mapping[str, str],
                     data_id: Optional[str]) -> str:
    """
    x-signature: "ts=<ts>,v1=<hex>" over the manifest
    "id:<data_id>;request-id:<x-request-id>;ts:<ts>;" with HMAC-SHA256.
    Returns SIG_UNCHECKED when there is no secret, header or id to check.
    """
    x_signature = headers.get("x-signature")
    x_request_id = headers.get("x-request-id")
    if not secret or not x_signature or not x_request_id or not data_id:
        return SIG_UNCHECKED

    parts = _parse_signature_header(x_signature)
    ts = parts.get("ts", "")
    received = parts.get("v1", "").lower()
    expected = sign_manifest(secret, data_id, x_request_id, ts)
    return SIG_OK if received and ct_equal(expected, received) else SIG_INVALID


# ----------------------------
# Client
# ----------------------------
class MercadoPagoClient(PaymentProvider):
    name = "mercadopago"

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        super().__init__(http, settings.provider_timeout,
                         settings.checkout_timeout)
        self.access_token = settings.mp_access_token
        self.api_base = settings.mp_api_base
        self.app_base = settings.api_base_url
        self.webhook_secret = settings.mp_webhook_secret
        self.signature_mode = settings.mp_signature_mode

    @property
    def configured(self) -> bool:
        return bool(self.access_token)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def create_preference(self, req: CheckoutRequest) -> ProviderCheckout:
        ret = f"{self.app_base}/payments/mercadopago/return"
        body = {
            "items": [{
                "id": req["item_id"],
                "title": req["title"],
                "quantity": 1,
                "currency_id": "CLP",
                "unit_price": req["amount_clp"],
            }],
            "payer": {
                "email": req["payer_email"],
                "name": req["payer_name"] or "Cliente",
                "surname": req["payer_lastname"] or "",
            },
            "external_reference": req["payment_id"],
            "back_urls": {
                "success": f"{ret}?status=success",
                "failure": f"{ret}?status=failure",
                "pending": f"{ret}?status=pending",
            },
            "auto_return": "approved",
            "notification_url":
                f"{self.app_base}/payments/mercadopago/webhook",
            "statement_descriptor": "RAFFLEPAY",
        }
        data = await self._call(
            "mp.create_preference", "POST",
            f"{self.api_base}/checkout/preferences",
            json=body, headers=self._headers(),
            timeout=self.checkout_timeout,
        )
        pref_id = data.get("id")
        init_point = data.get("init_point") or data.get("sandbox_init_point")
        if not pref_id or not init_point:
            raise ProviderError("mercadopago: preference without init_point")
        return {
            "redirect_url": init_point,
            "provider_token": str(pref_id),
            "provider_order_id": None,
        }

    async def create_checkout(self, req: CheckoutRequest) -> ProviderCheckout:
        return await self.create_preference(req)

    async def get_payment(self, payment_id: str) -> ProviderStatus:
        data = await self._call(
            "mp.get_payment", "GET",
            f"{self.api_base}/v1/payments/{payment_id}",
            headers=self._headers(),
        )
        return _status_from_payment(data)

    async def get_status(self, ref: str) -> ProviderStatus:
        return await self.get_payment(ref)

    async def search_by_reference(
            self, external_reference: str) -> Optional[ProviderStatus]:
        """
        Most recent MP payment carrying our Payment id, or None if the buyer
        never got that far.
        """
        data = await self._call(
            "mp.search", "GET",
            f"{self.api_base}/v1/payments/search",
            params={
                "external_reference": external_reference,
                "sort": "date_created",
                "criteria": "desc",
            },
            headers=self._headers(),
        )
        results = data.get("results") or []
        if not results:
            return None
        # an approved attempt wins over later failed retries
        for r in results:
            if r.get("status") == "approved":
                return _status_from_payment(r)
        return _status_from_payment(results[0])

    def check_signature(self, headers: Mapping[str, str],
                        data_id: Optional[str]) -> bool:
        """
        Apply the configured strictness. False means: drop the notification.
        """
        if self.signature_mode == "off":
            return True
        result = verify_signature(self.webhook_secret, headers, data_id)
        if result == SIG_INVALID:
            if self.signature_mode == "strict":
                log.error("mp_signature_invalid", data_id=data_id,
                          action="dropped")
                return False
            log.error("mp_signature_invalid", data_id=data_id,
                      action="accepted")
        return True
