from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict

import httpx
import orjson
import structlog

from ..errors import ProviderError, ProviderUnavailable
from ..infra.timings import timeit

log = structlog.get_logger(__name__)

# ProviderStatus.kind
KIND_SUCCESS = "success"
KIND_FAILURE = "failure"
KIND_PENDING = "pending"


# ----------------------------
# Payment Provider Interface
# ----------------------------
class CheckoutRequest(TypedDict):
    payment_id: str      # local Payment id, the provider's correlation field
    order_id: str
    item_id: str
    title: str
    amount_clp: int
    payer_email: str
    payer_name: str
    payer_lastname: str


class ProviderCheckout(TypedDict):
    redirect_url: str
    provider_token: str
    provider_order_id: Optional[str]


class ProviderStatus(TypedDict):
    kind: str                      # success | failure | pending
    correlation_id: Optional[str]  # local Payment id as echoed back
    provider_ref: Optional[str]    # MP payment id | Flow flowOrder
    amount: Optional[int]
    raw_status: Any


class PaymentProvider(ABC):
    name: str

    def __init__(self, http: httpx.AsyncClient, timeout: float,
                 checkout_timeout: float) -> None:
        self.http = http
        self.timeout = timeout
        self.checkout_timeout = checkout_timeout

    @property
    @abstractmethod
    def configured(self) -> bool: ...

    @abstractmethod
    async def create_checkout(
            self, req: CheckoutRequest) -> ProviderCheckout: ...

    # token | resource id -> authoritative status
    @abstractmethod
    async def get_status(self, ref: str) -> ProviderStatus: ...

    async def _call(self, kind: str, method: str, url: str, *,
                    timeout: Optional[float] = None,
                    **kw) -> Dict[str, Any]:
        """
        One provider round trip. Network trouble and timeouts raise
        ProviderUnavailable (outcome unknown); HTTP errors and non-JSON
        bodies raise ProviderError.
        """
        if not self.configured:
            raise ProviderError(f"{self.name} is not configured")
        try:
            async with timeit(kind):
                resp = await self.http.request(
                    method, url, timeout=timeout or self.timeout, **kw
                )
        except httpx.TimeoutException as e:
            log.warning("provider_timeout", provider=self.name, call=kind)
            raise ProviderUnavailable(f"{self.name}: timeout") from e
        except httpx.TransportError as e:
            log.warning("provider_unreachable", provider=self.name,
                        call=kind, error=str(e))
            raise ProviderUnavailable(f"{self.name}: {e}") from e

        if resp.status_code >= 400:
            log.error("provider_http_error", provider=self.name, call=kind,
                      status=resp.status_code, body=resp.text[:500])
            raise ProviderError(
                f"{self.name} answered HTTP {resp.status_code}"
            )
        try:
            data = orjson.loads(resp.content)
        except orjson.JSONDecodeError as e:
            raise ProviderError(f"{self.name}: invalid JSON") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name}: unexpected response")
        return data
