# config.py
import os
from motor.motor_asyncio import AsyncIOMotorClient

MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "society")
client = AsyncIOMotorClient(MONGODB_URL)
db = client[MONGODB_DB]

# UPI gateway
GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://frinext.com/api")
GATEWAY_USER_TOKEN = os.getenv("GATEWAY_USER_TOKEN", "")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))
PAYMENT_REDIRECT_URL = os.getenv("PAYMENT_REDIRECT_URL", "http://localhost:5173/member/payments")

# Status polling
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
POLL_TIMEOUT_SECONDS = float(os.getenv("POLL_TIMEOUT_SECONDS", "300"))

# Auth
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")
ALGORITHM = os.getenv("ALGORITHM", "HS256")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")

CORS_ORIGINS = [o.strip() for o in os.getenv(
    "CORS_ORIGINS", "http://localhost:5173,http://localhost:3000,http://127.0.0.1:5173"
).split(",") if o.strip()]
