# dependencies.py
from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from typing import Any, Dict, Optional

from config import db, SECRET_KEY, ALGORITHM, PAYMENT_REDIRECT_URL
from models import *
from gateway_client import GatewayClient
from orders import OrderInitiator
from reconciliation import SettlementEngine
from stores import BillStore, LedgerStore, MongoBillStore, MongoLedgerStore

security = HTTPBearer()

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> MemberOut:
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
        email: str = payload.get("sub")
        if email is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials")
        user = await db.users.find_one({"email": email}, {"payments": 0, "password": 0})
        if user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
        return MemberOut(**{**user, "id": str(user.get("_id", ""))})
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Could not validate credentials")

def require_role(required_role: Role):
    def role_checker(current_user: MemberOut = Depends(get_current_user)):
        if current_user.role != required_role and current_user.role != Role.ADMIN:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current_user
    return role_checker

# Settlement collaborators
def get_bill_store() -> BillStore:
    return MongoBillStore(db.bills)

def get_ledger_store() -> LedgerStore:
    return MongoLedgerStore(db.users)

def get_gateway_client(request: Request) -> GatewayClient:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Payment gateway not initialised")
    return gateway

def get_settlement_engine(
    bills: BillStore = Depends(get_bill_store),
    ledger: LedgerStore = Depends(get_ledger_store),
) -> SettlementEngine:
    return SettlementEngine(bills, ledger)

def get_order_initiator(gateway: GatewayClient = Depends(get_gateway_client)) -> OrderInitiator:
    return OrderInitiator(gateway, default_redirect_url=PAYMENT_REDIRECT_URL)

def error_response(status_code: int, message: str, error: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": message,
            "error": error or message.upper().replace(" ", "_"),
            "details": details or {}
        }
    )
