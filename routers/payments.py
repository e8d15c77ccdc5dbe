# routers/payments.py
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from typing import Dict, Any

import structlog

from models import *
from dependencies import *
from errors import BillNotFound, InvalidOrderFormat, MalformedGatewayResponse
from gateway_client import normalize
from reconciliation import check_and_settle
from utils_email import send_settlement_receipt

logger = structlog.get_logger(__name__)

member_user = require_role(Role.MEMBER)
admin_user = require_role(Role.ADMIN)

router = APIRouter()

@router.post("/create-order", response_model=Dict[str, Any])
async def create_payment_order(
    body: CreateOrderRequest,
    current_user: MemberOut = Depends(member_user),
    bills: BillStore = Depends(get_bill_store),
    initiator: OrderInitiator = Depends(get_order_initiator),
):
    bill = await bills.get(body.billId)
    if bill is None:
        raise BillNotFound(body.billId)
    if current_user.role != Role.ADMIN and bill.memberEmail.lower() != current_user.email.lower():
        raise HTTPException(status_code=403, detail="Bill belongs to another member")

    order = await initiator.create_order(bill, body.customerMobile, body.redirectUrl, body.remark1, body.remark2)
    return {
        "success": True,
        "message": "Payment order created",
        "data": {"orderId": order.orderId, "paymentUrl": order.paymentUrl, "amount": order.amount}
    }

@router.post("/check-status", response_model=Dict[str, Any])
async def check_payment_status(
    body: CheckStatusRequest,
    background_tasks: BackgroundTasks,
    _: MemberOut = Depends(member_user),
    gateway: GatewayClient = Depends(get_gateway_client),
    bills: BillStore = Depends(get_bill_store),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    result, report = await check_and_settle(gateway, engine, body.orderId)
    if report.outcome == SettlementOutcome.SETTLED:
        background_tasks.add_task(send_settlement_receipt, bills, report)
    return {
        "success": True,
        "data": {
            "payment": result.dict(exclude={"rawPayload"}),
            "settlement": report.dict()
        }
    }

@router.post("/webhook")
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    bills: BillStore = Depends(get_bill_store),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    """Gateway push. Anything structurally valid is acknowledged with 200 so the gateway stops retrying."""
    try:
        payload = await request.json()
    except ValueError:
        return error_response(400, "Webhook body is not valid JSON", "INVALID_PAYLOAD")
    if not isinstance(payload, dict) or not payload.get("orderId") or not payload.get("status"):
        return error_response(400, "orderId and status are required", "INVALID_PAYLOAD")

    log = logger.bind(order_id=payload.get("orderId"))
    log.info("webhook_received", status=payload.get("status"), txn_status=payload.get("txnStatus"))
    try:
        result = normalize(payload)
        report = await engine.settle(result)
    except (InvalidOrderFormat, MalformedGatewayResponse) as e:
        log.warning("webhook_rejected", error=str(e))
        return error_response(400, e.message, e.code, e.details)
    except BillNotFound as e:
        log.warning("webhook_bill_missing", bill_id=e.bill_id)
        return error_response(404, e.message, e.code, e.details)
    except Exception:
        log.exception("webhook_failed")
        return error_response(500, "Internal error while processing webhook", "INTERNAL_ERROR")

    if report.outcome == SettlementOutcome.SETTLED:
        background_tasks.add_task(send_settlement_receipt, bills, report)
    return {"success": True, "message": "Webhook acknowledged", "data": report.dict()}

@router.post("/bills/{bill_id}/cash", response_model=Dict[str, Any])
async def record_cash_payment(
    bill_id: str,
    background_tasks: BackgroundTasks,
    current_user: MemberOut = Depends(admin_user),
    bills: BillStore = Depends(get_bill_store),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    report = await engine.settle_cash(bill_id, recorded_by=current_user.email)
    if report.outcome == SettlementOutcome.SETTLED:
        background_tasks.add_task(send_settlement_receipt, bills, report)
    return {"success": True, "message": report.message, "data": report.dict()}

@router.get("/history", response_model=Dict[str, Any])
async def payment_history(
    current_user: MemberOut = Depends(member_user),
    ledger: LedgerStore = Depends(get_ledger_store),
):
    entries = await ledger.list_entries(current_user.email)
    return {"success": True, "data": {"payments": [e.dict() for e in entries]}}
