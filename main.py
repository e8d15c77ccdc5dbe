# main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException
from dotenv import load_dotenv

load_dotenv()  # Load environment variables

import structlog

from config import db, CORS_ORIGINS, GATEWAY_BASE_URL, GATEWAY_USER_TOKEN, GATEWAY_TIMEOUT_SECONDS
from dependencies import error_response
from errors import SettlementError
from gateway_client import GatewayClient
from logging_config import configure_logging
from routers import payments

configure_logging()
logger = structlog.get_logger(__name__)

# App
app = FastAPI(title="Society Billing Payments API", version="1.0.0", openapi_url="/openapi.json")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])

# Health Check
@app.get("/health", tags=["Health Check"])
async def health():
    return {"status": "OK", "message": "Payments service is running"}

@app.get("/db-check", tags=["Health Check"])
async def db_check():
    try:
        await db.command('ping')
        return {"status": "success", "message": "Database connection is active"}
    except Exception as e:
        logger.error("db_ping_failed", error=str(e))
        return {"status": "error", "message": f"Database connection failed: {str(e)}"}

@app.on_event("startup")
async def startup_event():
    app.state.gateway = GatewayClient(GATEWAY_BASE_URL, GATEWAY_USER_TOKEN, timeout=GATEWAY_TIMEOUT_SECONDS)
    await db.bills.create_index("status")
    await db.bills.create_index("memberEmail")
    await db.users.create_index("email", unique=True)
    await db.users.create_index("payments.dedupeKey")
    logger.info("startup_complete", gateway=GATEWAY_BASE_URL)

@app.on_event("shutdown")
async def shutdown_event():
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        await gateway.aclose()

# Error Handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    return error_response(exc.status_code, str(exc.detail))

@app.exception_handler(SettlementError)
async def settlement_exception_handler(request, exc: SettlementError):
    if exc.status_code >= 500:
        logger.warning("request_failed", path=request.url.path, error=exc.code, message=exc.message)
    return error_response(exc.status_code, exc.message, exc.code, exc.details)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
