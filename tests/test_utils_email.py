"""Tests for settlement receipt emails."""

import pytest
from unittest.mock import AsyncMock, patch

import utils_email
from models import BillStatus, PaymentMethod, PaymentStatus, SettlementOutcome, SettlementReport
from tests.fakes import MEMBER_EMAIL, InMemoryBillStore


def _report(outcome=SettlementOutcome.SETTLED, bill_id="B1"):
    return SettlementReport(outcome=outcome, billId=bill_id, paymentStatus=PaymentStatus.SUCCESS, receiptNumber="RC0001")


@pytest.fixture
def paid_bill(bill):
    return bill.copy(update={
        "status": BillStatus.PAID, "paymentMethod": PaymentMethod.UPI,
        "transactionId": "UTR123", "paidDate": "2026-10-19",
    })


def test_receipt_body(paid_bill):
    body = utils_email.receipt_body(paid_bill, _report())

    assert "October 2026" in body
    assert "Rs. 2,500.00" in body
    assert "RC0001" in body
    assert "UTR123" in body


async def test_sends_receipt_for_settled_bill(paid_bill):
    with patch.object(utils_email, "send_email", new=AsyncMock(return_value=True)) as send:
        sent = await utils_email.send_settlement_receipt(InMemoryBillStore([paid_bill]), _report())

    assert sent is True
    to_email, subject, _ = send.call_args.args
    assert to_email == MEMBER_EMAIL
    assert subject == "Payment receipt RC0001"


@pytest.mark.parametrize("outcome", [SettlementOutcome.NOOP, SettlementOutcome.NOT_COMPLETED])
async def test_no_receipt_unless_settled(paid_bill, outcome):
    with patch.object(utils_email, "send_email", new=AsyncMock()) as send:
        sent = await utils_email.send_settlement_receipt(InMemoryBillStore([paid_bill]), _report(outcome))

    assert sent is False
    send.assert_not_called()


async def test_missing_bill_skips_receipt():
    with patch.object(utils_email, "send_email", new=AsyncMock()) as send:
        sent = await utils_email.send_settlement_receipt(InMemoryBillStore([]), _report(bill_id="B404"))

    assert sent is False
    send.assert_not_called()


def test_send_without_credentials_is_skipped():
    with patch.object(utils_email, "SMTP_USERNAME", ""), patch("smtplib.SMTP") as smtp:
        assert utils_email._send_email_sync(MEMBER_EMAIL, "subject", "body") is False
    smtp.assert_not_called()
