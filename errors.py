# errors.py
from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base for every failure raised by the payment settlement flow."""

    status_code = 500
    code = "SETTLEMENT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Bad input, rejected before any remote call
class ValidationError(SettlementError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidOrderFormat(SettlementError):
    status_code = 400
    code = "INVALID_ORDER_FORMAT"

    def __init__(self, order_id: Any):
        super().__init__(f"Order id {order_id!r} is not a bill order id", {"orderId": order_id})
        self.order_id = order_id


class BillNotFound(SettlementError):
    status_code = 404
    code = "BILL_NOT_FOUND"

    def __init__(self, bill_id: str):
        super().__init__(f"Bill {bill_id} not found", {"billId": bill_id})
        self.bill_id = bill_id


class MemberNotFound(SettlementError):
    status_code = 404
    code = "MEMBER_NOT_FOUND"

    def __init__(self, email: str):
        super().__init__(f"No member registered with email {email}", {"email": email})
        self.email = email


class NotAuthorized(SettlementError):
    status_code = 401
    code = "NOT_AUTHORIZED"


class AlreadySettled(SettlementError):
    status_code = 409
    code = "ALREADY_SETTLED"

    def __init__(self, bill_id: str):
        super().__init__(f"Bill {bill_id} is already paid", {"billId": bill_id})
        self.bill_id = bill_id


class GatewayError(SettlementError):
    status_code = 502
    code = "GATEWAY_ERROR"


# Network failure, timeout or non-2xx answer
class GatewayUnavailable(GatewayError):
    code = "GATEWAY_UNAVAILABLE"


# Gateway answered but explicitly refused the request
class GatewayRejected(GatewayError):
    code = "GATEWAY_REJECTED"


class MalformedGatewayResponse(GatewayError):
    code = "MALFORMED_GATEWAY_RESPONSE"
