import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _split_csv(value: str):
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    # Secret key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")

    # Session / cookie config
    SESSION_COOKIE_NAME = "groupsplit_session"
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Frontend dev server by default
    CORS_ORIGINS = _split_csv(os.environ.get("CORS_ORIGINS", "http://localhost:5173"))

    # Database config (defaults allow local run without crashing)
    DB_HOST = os.environ.get("DB_HOST", "localhost")
    DB_PORT = int(os.environ.get("DB_PORT", 3306))
    DB_USER = os.environ.get("DB_USER", "root")
    DB_PASSWORD = os.environ.get("DB_PASSWORD", "")
    DB_NAME = os.environ.get("DB_NAME", "groupsplit")
    DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", 10))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    # Allowed gap between an expense amount and the sum of its splits
    SPLIT_TOLERANCE = Decimal(os.environ.get("SPLIT_TOLERANCE", "0.01"))


config = Config()
