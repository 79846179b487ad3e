import os
from dotenv import load_dotenv

load_dotenv()


def _split_origins(value: str):
    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    if not origins or origins == ["*"]:
        return "*"
    return origins


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")

    SESSION_COOKIE_NAME = "tripsplit_session"
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Defaults allow a local run against a stock MySQL install
    DB_HOST = os.environ.get("DB_HOST", "localhost")
    DB_PORT = int(os.environ.get("DB_PORT", 3306))
    DB_USER = os.environ.get("DB_USER", "root")
    DB_PASSWORD = os.environ.get("DB_PASSWORD", "")
    DB_NAME = os.environ.get("DB_NAME", "tripsplit")
    DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", 10))

    CORS_ORIGINS = _split_origins(os.environ.get("CORS_ORIGINS", "*"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


config = Config()
