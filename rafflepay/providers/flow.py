from __future__ import annotations
import hashlib
import hmac
from typing import Any, Dict, Mapping, Optional

import httpx

from ..config import Settings
from ..errors import ProviderError
from .base import (
    PaymentProvider, CheckoutRequest, ProviderCheckout, ProviderStatus,
    KIND_SUCCESS, KIND_FAILURE, KIND_PENDING,
)

# getStatus: 1 pending, 2 paid, 3 rejected, 4 cancelled
FLOW_PENDING = 1
FLOW_PAID = 2
FLOW_REJECTED = 3
FLOW_CANCELLED = 4


def map_status(status: Any) -> str:
    try:
        status = int(status)
    except (TypeError, ValueError):
        return KIND_PENDING
    if status == FLOW_PAID:
        return KIND_SUCCESS
    if status in (FLOW_REJECTED, FLOW_CANCELLED):
        return KIND_FAILURE
    return KIND_PENDING


def sign(secret: str, params: Mapping[str, Any]) -> str:
    """HMAC-SHA256 hex over "k1=v1&k2=v2..." with keys sorted."""
    data = "&".join(f"{k}={params[k]}" for k in sorted(params))
    return hmac.new(secret.encode(), data.encode(), hashlib.sha256).hexdigest()


class FlowClient(PaymentProvider):
    name = "flow"

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        super().__init__(http, settings.provider_timeout,
                         settings.checkout_timeout)
        self.api_key = settings.flow_api_key
        self.secret_key = settings.flow_secret_key
        self.api_url = settings.flow_api_url
        self.app_base = settings.api_base_url

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.secret_key and self.api_url)

    def signed(self, params: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(params, apiKey=self.api_key)
        out["s"] = sign(self.secret_key, out)
        return out

    async def create_payment(self, req: CheckoutRequest) -> ProviderCheckout:
        oid = req["order_id"]
        params = self.signed({
            "commerceOrder": req["payment_id"],
            "subject": req["title"],
            "amount": req["amount_clp"],
            "email": req["payer_email"],
            "currency": "CLP",
            "urlConfirmation": f"{self.app_base}/payments/flow/webhook",
            "urlReturn": f"{self.app_base}/payments/flow/return?order_id={oid}",
            "urlFailure":
                f"{self.app_base}/payments/flow/failure?order_id={oid}",
        })
        data = await self._call(
            "flow.create", "POST", f"{self.api_url}/payment/create",
            data={k: str(v) for k, v in params.items()},
            timeout=self.checkout_timeout,
        )
        token, url = data.get("token"), data.get("url")
        if not token or not url:
            raise ProviderError("flow: invalid create response")
        flow_order = data.get("flowOrder")
        return {
            "redirect_url": f"{url}?token={token}",
            "provider_token": str(token),
            "provider_order_id": str(flow_order) if flow_order else None,
        }

    async def create_checkout(self, req: CheckoutRequest) -> ProviderCheckout:
        return await self.create_payment(req)

    async def get_status(self, ref: str) -> ProviderStatus:
        data = await self._call(
            "flow.get_status", "GET", f"{self.api_url}/payment/getStatus",
            params=self.signed({"token": ref}),
        )
        flow_order = data.get("flowOrder")
        commerce_order = data.get("commerceOrder")
        amount = data.get("amount")
        return {
            "kind": map_status(data.get("status")),
            "correlation_id": str(commerce_order) if commerce_order else None,
            "provider_ref": str(flow_order) if flow_order else None,
            "amount": int(float(amount)) if amount is not None else None,
            "raw_status": data.get("status"),
        }


def extract_token(body: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not body:
        return None
    token = body.get("token")
    if token and str(token).strip():
        return str(token).strip()
    return None
