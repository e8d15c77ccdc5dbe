# gateway_client.py
import json
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from errors import GatewayRejected, GatewayUnavailable, InvalidOrderFormat, MalformedGatewayResponse
from models import CreateOrderParams, PaymentResult, PaymentStatus
from orders import parse_bill_id

logger = structlog.get_logger(__name__)

SUCCESS_STATUSES = {"SUCCESS", "SUCCESSFUL", "COMPLETED", "COMPLETE", "PAID", "CAPTURED", "TXN_SUCCESS"}
PENDING_STATUSES = {"PENDING", "INITIATED", "CREATED", "PROCESSING", "SUBMITTED", "AWAITING_PAYMENT"}
FAILED_STATUSES = {
    "FAILED", "FAILURE", "TXN_FAILURE", "DECLINED", "REJECTED",
    "CANCELLED", "CANCELED", "EXPIRED", "ERROR",
}
ACCEPTED_ENVELOPES = {"TRUE", "SUCCESS", "OK", "1"}

ORDER_ID_KEYS = ("orderId", "order_id")
STATUS_KEYS = ("txnStatus", "status")
TRANSACTION_KEYS = ("utr", "transactionId", "transaction_id", "UTR", "rrn")
AMOUNT_KEYS = ("amount", "txnAmount")


def _first(mapping: Mapping[str, Any], keys) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None and value != "":
            return value
    return None


def _envelope_accepted(status: Any) -> bool:
    if isinstance(status, bool):
        return status
    return str(status).strip().upper() in ACCEPTED_ENVELOPES


def map_status(value: Any) -> PaymentStatus:
    """Fold a gateway status into SUCCESS/PENDING/FAILED. Unknown values stay PENDING."""
    if value is None:
        return PaymentStatus.PENDING
    if isinstance(value, bool):
        return PaymentStatus.PENDING if value else PaymentStatus.FAILED
    key = str(value).strip().upper().replace("-", "_").replace(" ", "_")
    if key in SUCCESS_STATUSES:
        return PaymentStatus.SUCCESS
    if key in FAILED_STATUSES:
        return PaymentStatus.FAILED
    if key not in PENDING_STATUSES:
        logger.warning("unrecognised_gateway_status", raw_status=value)
    return PaymentStatus.PENDING


def _parse_amount(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        logger.warning("unparseable_gateway_amount", raw_amount=value)
        return None


def normalize(raw: Any, order_id: Optional[str] = None) -> PaymentResult:
    """
    Convert a check-status response or a webhook body into a PaymentResult.

    ``order_id`` is the id the caller asked about. It wins over any id
    the payload carries.
    Raises MalformedGatewayResponse only when the payload cannot be read at
    all or carries no usable order id.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise MalformedGatewayResponse("Gateway payload is not valid JSON") from e
    if not isinstance(raw, dict):
        raise MalformedGatewayResponse("Gateway payload is not a JSON object", {"type": type(raw).__name__})

    # check-status wraps the transaction in an envelope, the webhook does not
    enveloped = "result" in raw
    if enveloped:
        nested = raw["result"]
        if nested is not None and not isinstance(nested, dict):
            raise MalformedGatewayResponse("Gateway 'result' is not an object", {"orderId": order_id})
        body: Dict[str, Any] = nested or {}
    else:
        body = raw

    payload_order_id = _first(body, ORDER_ID_KEYS)
    if payload_order_id is None and enveloped:
        payload_order_id = _first(raw, ORDER_ID_KEYS)
    if order_id is not None:
        if payload_order_id is not None and str(payload_order_id) != order_id:
            logger.warning("gateway_order_id_mismatch", requested=order_id, received=str(payload_order_id))
        resolved_order_id = order_id
    else:
        resolved_order_id = str(payload_order_id) if payload_order_id is not None else None
    if not resolved_order_id:
        raise MalformedGatewayResponse("Gateway payload carries no order id")

    raw_status = _first(body, STATUS_KEYS)
    if raw_status is not None:
        status = map_status(raw_status)
    elif enveloped and not _envelope_accepted(raw.get("status")):
        # refused at envelope level with no transaction info, e.g. unknown order
        status = PaymentStatus.FAILED
    else:
        status = PaymentStatus.PENDING

    transaction_id = _first(body, TRANSACTION_KEYS)
    try:
        bill_id = parse_bill_id(resolved_order_id)
    except InvalidOrderFormat:
        bill_id = None

    return PaymentResult(
        orderId=resolved_order_id,
        billId=bill_id,
        status=status,
        amount=_parse_amount(_first(body, AMOUNT_KEYS)),
        transactionId=str(transaction_id) if transaction_id is not None else None,
        rawStatus=str(raw_status) if raw_status is not None else None,
        rawPayload=raw,
    )


def format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return str(int(amount))
    return f"{amount:.2f}"


class GatewayClient:
    """Form-encoded request/response wrapper around the gateway HTTP API."""

    def __init__(
        self,
        base_url: str,
        user_token: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_token = user_token
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def aclose(self):
        await self._client.aclose()

    async def _post(self, path: str, form: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, data=form)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"Gateway timed out on {path}", {"path": path}) from e
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"Gateway unreachable on {path}: {e}", {"path": path}) from e

        if not response.is_success:
            raise GatewayUnavailable(
                f"Gateway returned HTTP {response.status_code} on {path}",
                {"path": path, "statusCode": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedGatewayResponse(f"Gateway sent non-JSON body on {path}", {"path": path}) from e
        if not isinstance(payload, dict):
            raise MalformedGatewayResponse(f"Gateway sent a non-object body on {path}", {"path": path})
        return payload

    async def create_order(self, params: CreateOrderParams) -> Dict[str, Any]:
        form = {
            "user_token": self.user_token,
            "customer_mobile": params.customerMobile,
            "amount": format_amount(params.amount),
            "order_id": params.orderId,
            "redirect_url": params.redirectUrl,
        }
        if params.remark1:
            form["remark1"] = params.remark1
        if params.remark2:
            form["remark2"] = params.remark2

        payload = await self._post("/create-order", form)
        if not _envelope_accepted(payload.get("status")):
            raise GatewayRejected(
                payload.get("message") or "Order creation failed",
                {"orderId": params.orderId},
            )
        return payload

    async def check_status(self, order_id: str) -> Dict[str, Any]:
        logger.debug("gateway_status_check", order_id=order_id)
        return await self._post("/check-order-status", {"user_token": self.user_token, "order_id": order_id})
