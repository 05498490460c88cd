from pathlib import Path
from typing import List, Optional, TypedDict

import httpx
import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .config import Settings
from .infra.timings import timeit

log = structlog.get_logger(__name__)


class Billing(TypedDict):
    name: str
    address: str
    city: str
    phone: str


class OrderConfirmation(TypedDict):
    order_number: str
    customer_name: str
    tickets: List[int]
    total_clp: int
    products: List[str]
    raffle_date: Optional[str]
    billing: Billing


_env = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)
_env.filters["clp"] = lambda v: f"${int(v):,}".replace(",", ".")
_env.filters["sticker"] = lambda n: f"N-{int(n):04d}"


def render_order_confirmation(payload: OrderConfirmation) -> str:
    return _env.get_template("order_confirmation.html").render(**payload)


class Mailer:
    """Transactional mail through the Resend HTTP API."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self.http = http
        self.api_key = settings.resend_api_key
        self.api_base = settings.resend_api_base
        self.sender = settings.email_from
        self.timeout = settings.provider_timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, html: str) -> bool:
        if not self.configured:
            log.warning("mail_skipped", to=to, subject=subject,
                        reason="RESEND_API_KEY not set")
            return False
        async with timeit("mail.send"):
            resp = await self.http.post(
                f"{self.api_base}/emails",
                json={
                    "from": self.sender,
                    "to": [to],
                    "subject": subject,
                    "html": html,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        resp.raise_for_status()
        log.info("mail_sent", to=to, subject=subject)
        return True

    async def send_order_confirmation(
            self, email: str, payload: OrderConfirmation) -> bool:
        html = render_order_confirmation(payload)
        return await self.send(
            email, f"Order confirmed #{payload['order_number']}", html
        )
