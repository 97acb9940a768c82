"""
Runtime settings for the marketplace API.

Values come from the process environment; a local .env file is merged in
first so development setups need no exported variables.
"""
import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "marketplace")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))

# Credentials
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))
VERIFY_TOKEN_EXPIRE_MINUTES = int(os.getenv("VERIFY_TOKEN_EXPIRE_MINUTES", str(60 * 24)))
RESET_TOKEN_EXPIRE_MINUTES = int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", "60"))
PASSWORD_HASH_ITERATIONS = int(os.getenv("PASSWORD_HASH_ITERATIONS", "120000"))

# Orders
STOCK_LOCK_TIMEOUT = float(os.getenv("STOCK_LOCK_TIMEOUT", "5.0"))
RESTOCK_ON_CANCEL = _flag("RESTOCK_ON_CANCEL")
REQUIRE_VERIFIED_EMAIL = _flag("REQUIRE_VERIFIED_EMAIL")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = _flag("LOG_JSON")

# Bootstrap admin, created at startup when email and password are set
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

# Server, when started with `python main.py`
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
