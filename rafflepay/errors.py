"""
Domain errors.

Raised by model and service code; `rafflepay.server` maps them onto HTTP
responses with `status_code`.
"""


class RaffleError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(RaffleError):
    status_code = 400


class NotFound(RaffleError):
    status_code = 404


class Conflict(RaffleError):
    status_code = 409


class InsufficientTickets(Conflict):
    def __init__(self, requested: int, found: int):
        super().__init__(
            f"not enough tickets available: requested {requested}, "
            f"found {found}"
        )
        self.requested = requested
        self.found = found


class InsufficientStock(Conflict):
    pass


class CouponExhausted(Conflict):
    pass


class ProviderError(RaffleError):
    status_code = 502


class ProviderUnavailable(ProviderError):
    """Timeout or network failure talking to a provider: outcome unknown."""
