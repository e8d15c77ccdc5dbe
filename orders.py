# orders.py
import random
import re
import time
from typing import TYPE_CHECKING, Optional

import structlog

from errors import AlreadySettled, InvalidOrderFormat, MalformedGatewayResponse, ValidationError
from models import Bill, CreateOrderParams, Order

if TYPE_CHECKING:
    from gateway_client import GatewayClient

logger = structlog.get_logger(__name__)

# BILL_<billId>_<timestampMillis>_<salt>; only the first two segments carry meaning
ORDER_PREFIX = "BILL"
DELIMITER = "_"
MOBILE_PATTERN = re.compile(r"^[6-9]\d{9}$")


def generate_order_id(bill_id: str, now_ms: Optional[int] = None, salt: Optional[int] = None) -> str:
    if not bill_id or DELIMITER in bill_id:
        raise ValidationError(
            f"Bill id must be non-empty and must not contain {DELIMITER!r}", {"billId": bill_id}
        )
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if salt is None:
        salt = random.randint(0, 9999)
    return DELIMITER.join([ORDER_PREFIX, bill_id, str(now_ms), str(salt)])


def parse_bill_id(order_id: str) -> str:
    """Recover the bill id from an order id, never guessing."""
    if not isinstance(order_id, str):
        raise InvalidOrderFormat(order_id)
    parts = order_id.split(DELIMITER)
    if len(parts) < 2 or parts[0] != ORDER_PREFIX or not parts[1]:
        raise InvalidOrderFormat(order_id)
    return parts[1]


def validate_mobile(mobile: str) -> str:
    cleaned = (mobile or "").strip()
    if not MOBILE_PATTERN.match(cleaned):
        raise ValidationError(
            "Mobile number must be 10 digits starting with 6-9", {"customerMobile": mobile}
        )
    return cleaned


class OrderInitiator:
    def __init__(self, gateway: "GatewayClient", default_redirect_url: str):
        self.gateway = gateway
        self.default_redirect_url = default_redirect_url

    async def create_order(
        self,
        bill: Bill,
        customer_mobile: str,
        redirect_url: Optional[str] = None,
        remark1: Optional[str] = None,
        remark2: Optional[str] = None,
    ) -> Order:
        if bill.isPaid:
            raise AlreadySettled(bill.id)
        amount = bill.totalDue
        if amount <= 0:
            raise ValidationError("Bill amount must be greater than zero", {"billId": bill.id, "amount": amount})
        mobile = validate_mobile(customer_mobile)
        redirect = redirect_url or self.default_redirect_url
        order_id = generate_order_id(bill.id)

        raw = await self.gateway.create_order(CreateOrderParams(
            orderId=order_id,
            amount=amount,
            customerMobile=mobile,
            redirectUrl=redirect,
            remark1=remark1 or bill.id,
            remark2=remark2 or bill.memberEmail,
        ))
        payment_url = (raw.get("result") or {}).get("payment_url")
        if not payment_url:
            raise MalformedGatewayResponse("Gateway order response has no payment_url", {"orderId": order_id})

        logger.info("order_created", order_id=order_id, bill_id=bill.id, amount=amount)
        return Order(
            orderId=order_id,
            billId=bill.id,
            amount=amount,
            customerMobile=mobile,
            redirectUrl=redirect,
            paymentUrl=payment_url,
        )
