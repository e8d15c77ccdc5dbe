# reconciliation.py
"""Bill settlement: the only writer of paid state and ledger entries."""
import time
from datetime import date
from typing import Callable, Optional

import structlog

from errors import BillNotFound, MemberNotFound
from models import (
    Bill, GatewayDetails, LedgerEntry, PaymentMethod, PaymentResult,
    PaymentStatus, SettlementOutcome, SettlementReport,
)
from gateway_client import GatewayClient, normalize
from orders import parse_bill_id
from stores import BillStore, LedgerStore
from utils_ids import generate_id

logger = structlog.get_logger(__name__)

AMOUNT_TOLERANCE = 0.005


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class SettlementEngine:
    def __init__(
        self,
        bills: BillStore,
        ledger: LedgerStore,
        id_factory: Callable[[str], str] = generate_id,
        today: Callable[[], date] = date.today,
        clock_ms: Callable[[], int] = _epoch_ms,
    ):
        self.bills = bills
        self.ledger = ledger
        self._id = id_factory
        self._today = today
        self._clock_ms = clock_ms

    async def settle(self, result: PaymentResult) -> SettlementReport:
        """Idempotently move the bill behind ``result.orderId`` to paid."""
        bill_id = parse_bill_id(result.orderId)
        log = logger.bind(order_id=result.orderId, bill_id=bill_id)

        bill = await self.bills.get(bill_id)
        if bill is None:
            raise BillNotFound(bill_id)

        if bill.isPaid:
            log.info("settlement_noop", reason="already_paid")
            return self._report(SettlementOutcome.NOOP, bill_id, result, "Bill already paid")

        if result.status != PaymentStatus.SUCCESS:
            log.info("settlement_not_completed", payment_status=result.status.value, raw_status=result.rawStatus)
            return self._report(SettlementOutcome.NOT_COMPLETED, bill_id, result, "Payment not completed")

        self._check_amount(bill, result, log)

        paid_date = self._today().isoformat()
        receipt_number = self._id("RC")
        transaction_id = result.transactionId or result.orderId
        details = GatewayDetails(
            orderId=result.orderId,
            rawStatus=result.rawStatus,
            amount=result.amount,
            transactionId=result.transactionId,
        )
        won = await self.bills.mark_paid_if_unpaid(bill_id, {
            "paidDate": paid_date,
            "paymentMethod": PaymentMethod.UPI.value,
            "receiptNumber": receipt_number,
            "transactionId": transaction_id,
            "gatewayDetails": details.dict(),
        })
        if not won:
            # another caller settled between our read and our write
            log.info("settlement_noop", reason="lost_race")
            return self._report(SettlementOutcome.NOOP, bill_id, result, "Bill already paid")

        entry = LedgerEntry(
            id=self._id("TXN"),
            billId=bill_id,
            amount=result.amount if result.amount is not None else bill.totalDue,
            method=PaymentMethod.UPI,
            mode="UPI Payment",
            date=paid_date,
            receiptNumber=receipt_number,
            transactionId=transaction_id,
            dedupeKey=result.orderId,
            gatewayDetails=details,
        )
        entry_id = await self._append(bill, entry, log)
        log.info("bill_settled", receipt_number=receipt_number, transaction_id=transaction_id, ledger_entry_id=entry_id)
        return self._report(
            SettlementOutcome.SETTLED, bill_id, result, "Payment settled",
            receipt_number=receipt_number, ledger_entry_id=entry_id,
        )

    async def settle_cash(self, bill_id: str, recorded_by: Optional[str] = None) -> SettlementReport:
        """Record a cash payment through the same guarded writes as online settlement."""
        log = logger.bind(bill_id=bill_id, method=PaymentMethod.CASH.value, recorded_by=recorded_by)
        bill = await self.bills.get(bill_id)
        if bill is None:
            raise BillNotFound(bill_id)
        if bill.isPaid:
            log.info("settlement_noop", reason="already_paid")
            return SettlementReport(
                outcome=SettlementOutcome.NOOP, billId=bill_id,
                paymentStatus=PaymentStatus.SUCCESS, message="Bill already paid",
            )

        paid_date = self._today().isoformat()
        receipt_number = self._id("RC")
        transaction_id = f"CASH_{self._clock_ms()}"
        won = await self.bills.mark_paid_if_unpaid(bill_id, {
            "paidDate": paid_date,
            "paymentMethod": PaymentMethod.CASH.value,
            "receiptNumber": receipt_number,
            "transactionId": transaction_id,
        })
        if not won:
            log.info("settlement_noop", reason="lost_race")
            return SettlementReport(
                outcome=SettlementOutcome.NOOP, billId=bill_id,
                paymentStatus=PaymentStatus.SUCCESS, message="Bill already paid",
            )

        entry = LedgerEntry(
            id=self._id("TXN"),
            billId=bill_id,
            amount=bill.totalDue,
            method=PaymentMethod.CASH,
            mode="Cash Payment",
            date=paid_date,
            receiptNumber=receipt_number,
            transactionId=transaction_id,
            dedupeKey=f"CASH_{bill_id}",
        )
        entry_id = await self._append(bill, entry, log)
        log.info("bill_settled", receipt_number=receipt_number, transaction_id=transaction_id, ledger_entry_id=entry_id)
        return SettlementReport(
            outcome=SettlementOutcome.SETTLED, billId=bill_id, paymentStatus=PaymentStatus.SUCCESS,
            receiptNumber=receipt_number, ledgerEntryId=entry_id, message="Cash payment recorded",
        )

    async def _append(self, bill: Bill, entry: LedgerEntry, log) -> Optional[str]:
        # The bill is already paid at this point; a ledger problem must not undo that.
        try:
            appended = await self.ledger.append_if_absent(bill.memberEmail, entry)
        except MemberNotFound:
            log.error("ledger_member_missing", member_email=bill.memberEmail, dedupe_key=entry.dedupeKey)
            return None
        if not appended:
            log.warning("ledger_entry_exists", dedupe_key=entry.dedupeKey)
            return None
        return entry.id

    def _check_amount(self, bill: Bill, result: PaymentResult, log) -> None:
        # Logged only; a mismatch does not block settlement.
        if result.amount is None:
            log.warning("settlement_amount_unknown", expected=bill.totalDue)
        elif abs(result.amount - bill.totalDue) > AMOUNT_TOLERANCE:
            log.warning("settlement_amount_mismatch", expected=bill.totalDue, reported=result.amount)

    @staticmethod
    def _report(outcome, bill_id, result: PaymentResult, message, receipt_number=None, ledger_entry_id=None):
        return SettlementReport(
            outcome=outcome,
            billId=bill_id,
            orderId=result.orderId,
            paymentStatus=result.status,
            receiptNumber=receipt_number,
            ledgerEntryId=ledger_entry_id,
            message=message,
        )


async def check_and_settle(gateway: GatewayClient, engine: SettlementEngine, order_id: str):
    """Ask the gateway about ``order_id`` and feed the answer to the engine."""
    bill_id = parse_bill_id(order_id)
    raw = await gateway.check_status(order_id)
    result = normalize(raw, order_id=order_id)
    logger.info("status_checked", order_id=order_id, bill_id=bill_id, payment_status=result.status.value)
    return result, await engine.settle(result)
