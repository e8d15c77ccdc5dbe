# models.py
from datetime import datetime
from typing import List, Optional, Any, Dict
from enum import Enum
from pydantic import BaseModel, Field, EmailStr, validator

# Enums
class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"

class BillStatus(str, Enum):
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"

class PaymentStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PENDING = "PENDING"
    FAILED = "FAILED"

class PaymentMethod(str, Enum):
    CASH = "Cash"
    UPI = "UPI"

class SettlementOutcome(str, Enum):
    SETTLED = "settled"
    NOOP = "noop"
    NOT_COMPLETED = "not_completed"

# Member Models
class MemberOut(BaseModel):
    id: Optional[str] = None
    email: EmailStr
    fullName: Optional[str] = None
    phone: Optional[str] = None
    flatNumber: Optional[str] = None
    role: Role = Role.MEMBER

# Bill Models
class GatewayDetails(BaseModel):
    orderId: str
    rawStatus: Optional[str] = None
    amount: Optional[float] = None
    transactionId: Optional[str] = None
    processedAt: datetime = Field(default_factory=datetime.utcnow)

class Bill(BaseModel):
    id: str
    memberId: Optional[str] = None
    memberEmail: EmailStr
    amount: float
    lateFee: float = 0.0
    status: BillStatus = BillStatus.PENDING
    month: Optional[str] = None
    year: Optional[int] = None
    dueDate: Optional[datetime] = None
    paidDate: Optional[str] = None
    paymentMethod: Optional[PaymentMethod] = None
    receiptNumber: Optional[str] = None
    transactionId: Optional[str] = None
    gatewayDetails: Optional[GatewayDetails] = None

    @validator('paymentMethod', pre=True)
    def validate_payment_method_case(cls, v):
        if isinstance(v, str):
            if v.lower() == 'cash':
                return 'Cash'
            if v.lower() == 'upi':
                return 'UPI'
        return v

    @property
    def totalDue(self) -> float:
        return (self.amount or 0) + (self.lateFee or 0)

    @property
    def isPaid(self) -> bool:
        return self.status == BillStatus.PAID

# Gateway Models
class Order(BaseModel):
    orderId: str
    billId: str
    amount: float
    customerMobile: str
    redirectUrl: str
    paymentUrl: str
    createdAt: datetime = Field(default_factory=datetime.utcnow)

class PaymentResult(BaseModel):
    """Canonical payment status, whatever shape the gateway answered with."""
    orderId: str
    billId: Optional[str] = None
    status: PaymentStatus
    amount: Optional[float] = None
    transactionId: Optional[str] = None
    rawStatus: Optional[str] = None
    rawPayload: Dict[str, Any] = {}

# Ledger Models
class LedgerEntry(BaseModel):
    id: str
    billId: str
    amount: float
    method: PaymentMethod
    mode: str
    date: str
    receiptNumber: str
    transactionId: Optional[str] = None
    status: str = "success"
    dedupeKey: str
    gatewayDetails: Optional[GatewayDetails] = None
    createdAt: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        frozen = True
        use_enum_values = True

class SettlementReport(BaseModel):
    outcome: SettlementOutcome
    billId: str
    orderId: Optional[str] = None
    paymentStatus: PaymentStatus
    receiptNumber: Optional[str] = None
    ledgerEntryId: Optional[str] = None
    message: str = ""

    @property
    def billPaid(self) -> bool:
        # noop is only ever returned for a bill that is already paid
        return self.outcome in (SettlementOutcome.SETTLED, SettlementOutcome.NOOP)

# Request Models
class CreateOrderRequest(BaseModel):
    billId: str
    customerMobile: str
    redirectUrl: Optional[str] = None
    remark1: Optional[str] = None
    remark2: Optional[str] = None

class CheckStatusRequest(BaseModel):
    orderId: str

class CreateOrderParams(BaseModel):
    orderId: str
    amount: float
    customerMobile: str
    redirectUrl: str
    remark1: Optional[str] = None
    remark2: Optional[str] = None
