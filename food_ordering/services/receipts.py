"""
Receipt Dispatcher

Best-effort payment receipts, sent after a settlement transaction commits:

1. ``collect_receipt`` reads the customer e-mail and line items in a short
   read transaction
2. ``render_receipt`` renders the Jinja2 templates in ``food_ordering/templates``
3. ``DefaultReceiptDispatcher`` delivers inline (an ``asyncio`` task) or hands
   the payload to the Celery task ``send_payment_receipt``

Failures are logged and never propagate to the settlement caller.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Optional, Protocol

from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from food_ordering.core.config import ReceiptDelivery, get_settings
from food_ordering.core.money import quantize, to_decimal
from food_ordering.core.timeutils import utcnow
from food_ordering.database import async_session_maker, transaction
from food_ordering.models import Order, OrderItem, User
from food_ordering.services.notifications import (
    BaseNotificationService,
    EmailMessage,
    NotificationResult,
    get_notification_service,
)

logger = logging.getLogger(__name__)

STATUS_BADGES = {
    "success": {"label": "Payment Successful", "bg": "#e8fff3", "color": "#0a7a4b", "border": "#8be3ba"},
    "failed": {"label": "Payment Failed", "bg": "#fff0f0", "color": "#a31515", "border": "#f2a5a5"},
}
DEFAULT_BADGE = {"label": "Payment Status Update", "bg": "#f3f4ff", "color": "#2d3cae", "border": "#bec6ff"}


# =============================================================================
# PAYLOAD
# =============================================================================

@dataclass
class ReceiptLine:
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return quantize(self.unit_price * self.quantity)


@dataclass
class ReceiptPayload:
    customer_email: str
    order_id: str
    reference: Optional[str]
    status: str
    total_amount: Decimal
    currency: str
    items: list[ReceiptLine] = field(default_factory=list)

    def to_dict(self) -> dict:
        """JSON-safe form for the Celery queue (amounts as strings)."""
        data = asdict(self)
        data["total_amount"] = str(self.total_amount)
        data["items"] = [
            {"name": i.name, "quantity": i.quantity, "unit_price": str(i.unit_price)}
            for i in self.items
        ]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ReceiptPayload":
        return cls(
            customer_email=data["customer_email"],
            order_id=data["order_id"],
            reference=data.get("reference"),
            status=data["status"],
            total_amount=to_decimal(data["total_amount"]),
            currency=data["currency"],
            items=[
                ReceiptLine(
                    name=i["name"],
                    quantity=int(i["quantity"]),
                    unit_price=to_decimal(i["unit_price"]),
                )
                for i in data.get("items", [])
            ],
        )


async def collect_receipt(
    session: AsyncSession,
    order_id: str,
    reference: Optional[str],
    status: str,
) -> Optional[ReceiptPayload]:
    """Everything a receipt needs; ``None`` when the customer has no e-mail."""
    result = await session.execute(
        select(Order.id, Order.payable_amount, User.email)
        .join(User, User.id == Order.user_id)
        .where(Order.id == order_id)
    )
    row = result.first()
    if row is None or not row.email:
        return None

    items_result = await session.execute(
        select(OrderItem.name, OrderItem.quantity, OrderItem.price_at_order)
        .where(OrderItem.order_id == order_id)
        .order_by(OrderItem.name)
    )
    items = [
        ReceiptLine(name=name, quantity=quantity, unit_price=to_decimal(price))
        for name, quantity, price in items_result.all()
    ]

    return ReceiptPayload(
        customer_email=row.email,
        order_id=row.id,
        reference=reference,
        status=status,
        total_amount=to_decimal(row.payable_amount),
        currency=get_settings().currency,
        items=items,
    )


# =============================================================================
# RENDERING
# =============================================================================

def format_money(value, currency: str = "NGN") -> str:
    return f"{currency} {to_decimal(value):,.2f}"


@lru_cache()
def _template_env() -> Environment:
    env = Environment(
        loader=PackageLoader("food_ordering", "templates"),
        autoescape=select_autoescape(["html"]),
        undefined=StrictUndefined,
        trim_blocks=False,
    )
    env.filters["money"] = format_money
    return env


def render_receipt(
    payload: ReceiptPayload,
    restaurant_name: Optional[str] = None,
    generated_at: Optional[datetime] = None,
) -> EmailMessage:
    badge = STATUS_BADGES.get("failed" if payload.status == "declined" else payload.status, DEFAULT_BADGE)
    context = {
        "receipt": payload,
        "badge": badge,
        "restaurant_name": restaurant_name or get_settings().restaurant_name,
        "generated_at": (generated_at or utcnow()).strftime("%Y-%m-%d %H:%M UTC"),
    }
    env = _template_env()
    return EmailMessage(
        subject=f"Receipt - {badge['label']} ({payload.order_id})",
        body_html=env.get_template("receipt.html").render(**context),
        body_text=env.get_template("receipt.txt").render(**context),
    )


async def deliver_receipt(
    payload: ReceiptPayload,
    notifier: Optional[BaseNotificationService] = None,
) -> NotificationResult:
    notifier = notifier or get_notification_service()
    result = await notifier.send_receipt(payload.customer_email, render_receipt(payload))
    if result.success:
        logger.info(f"Receipt sent for order {payload.order_id} ({payload.status})")
    else:
        logger.warning(
            f"Receipt for order {payload.order_id} not delivered: {result.error_message}"
        )
    return result


# =============================================================================
# DISPATCH
# =============================================================================

class ReceiptDispatcher(Protocol):
    async def dispatch(self, order_id: str, reference: Optional[str], status: str) -> None:
        ...


class DefaultReceiptDispatcher:
    """
    Collects the receipt on its own session and sends it off the request path.

    ``dispatch`` never raises.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_maker,
        delivery: Optional[ReceiptDelivery] = None,
        notifier: Optional[BaseNotificationService] = None,
    ):
        self.session_factory = session_factory
        self.delivery = delivery or get_settings().receipt_delivery
        self.notifier = notifier
        self._pending: set[asyncio.Task] = set()

    async def dispatch(self, order_id: str, reference: Optional[str], status: str) -> None:
        try:
            async with self.session_factory() as session:
                async with transaction(session):
                    payload = await collect_receipt(session, order_id, reference, status)
            if payload is None:
                logger.info(f"No receipt e-mail for order {order_id}: customer has no address")
                return

            if self.delivery == ReceiptDelivery.CELERY:
                from food_ordering.tasks import send_payment_receipt
                # the broker publish is blocking I/O
                await asyncio.to_thread(send_payment_receipt.delay, payload.to_dict())
                return

            task = asyncio.create_task(self._deliver(payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        except Exception:
            logger.exception(f"Failed to dispatch receipt for order {order_id}")

    async def _deliver(self, payload: ReceiptPayload) -> None:
        try:
            await deliver_receipt(payload, self.notifier)
        except Exception:
            logger.exception(f"Failed to send receipt for order {payload.order_id}")

    async def drain(self) -> None:
        """Wait for in-flight inline deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


@lru_cache()
def get_receipt_dispatcher() -> DefaultReceiptDispatcher:
    return DefaultReceiptDispatcher()


def reset_receipt_dispatcher() -> None:
    get_receipt_dispatcher.cache_clear()
