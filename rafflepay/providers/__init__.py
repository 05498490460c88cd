from .base import (
    PaymentProvider, CheckoutRequest, ProviderCheckout, ProviderStatus,
    KIND_SUCCESS, KIND_FAILURE, KIND_PENDING,
)
from .mercadopago import MercadoPagoClient
from .flow import FlowClient

__all__ = [
    "PaymentProvider", "CheckoutRequest", "ProviderCheckout",
    "ProviderStatus", "KIND_SUCCESS", "KIND_FAILURE", "KIND_PENDING",
    "MercadoPagoClient", "FlowClient",
]
