import smtplib
import os
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
import asyncio
from concurrent.futures import ThreadPoolExecutor

import structlog

from models import Bill, SettlementOutcome, SettlementReport

SMTP_SERVER = os.getenv("SMTP_SERVER", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SENDER_EMAIL = os.getenv("SENDER_EMAIL", SMTP_USERNAME)

logger = structlog.get_logger(__name__)
executor = ThreadPoolExecutor()

def _send_email_sync(to_email: str, subject: str, body: str) -> bool:
    if not SMTP_USERNAME or not SMTP_PASSWORD:
        logger.info("email_skipped", reason="smtp_credentials_missing", to=to_email)
        return False

    try:
        msg = MIMEMultipart()
        msg['From'] = SENDER_EMAIL
        msg['To'] = to_email
        msg['Subject'] = subject

        msg.attach(MIMEText(body, 'plain'))

        server = smtplib.SMTP(SMTP_SERVER, SMTP_PORT)
        server.starttls()
        server.login(SMTP_USERNAME, SMTP_PASSWORD)
        server.sendmail(SENDER_EMAIL, to_email, msg.as_string())
        server.quit()
        logger.info("email_sent", to=to_email, subject=subject)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error("email_failed", to=to_email, error=str(e))
        return False

async def send_email(to_email: str, subject: str, body: str) -> bool:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, _send_email_sync, to_email, subject, body)

def receipt_body(bill: Bill, report: SettlementReport) -> str:
    period = " ".join(str(p) for p in (bill.month, bill.year) if p) or "your bill"
    lines = [
        "Dear Member,",
        "",
        f"We have received your payment for {period}.",
        "",
        f"Amount: Rs. {bill.totalDue:,.2f}",
        f"Receipt number: {report.receiptNumber}",
        f"Payment method: {bill.paymentMethod.value if bill.paymentMethod else 'UPI'}",
        f"Transaction id: {bill.transactionId or '-'}",
        f"Paid on: {bill.paidDate or '-'}",
        "",
        "Thank you.",
    ]
    return "\n".join(lines)

async def send_settlement_receipt(bills, report: SettlementReport) -> bool:
    """Email the member a receipt for a bill this request settled."""
    if report.outcome != SettlementOutcome.SETTLED:
        return False
    bill = await bills.get(report.billId)
    if bill is None:
        logger.warning("receipt_skipped", reason="bill_missing", bill_id=report.billId)
        return False
    subject = f"Payment receipt {report.receiptNumber}"
    return await send_email(bill.memberEmail, subject, receipt_body(bill, report))
