import os
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    STORE_URL: str = os.getenv("STORE_URL", "http://localhost:3000")
    EVENTS_PATH: str = os.getenv("EVENTS_PATH", "/api/events")
    TERMINAL_USER_ID: str = os.getenv("TERMINAL_USER_ID", "guest")
    HOST: str = os.getenv("HOST", "127.0.0.1")
    PORT: int = int(os.getenv("PORT", "8000"))

    # transport
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "15"))
    SUBMIT_MAX_ATTEMPTS: int = int(os.getenv("SUBMIT_MAX_ATTEMPTS", "3"))
    RETRY_INITIAL_DELAY: float = float(os.getenv("RETRY_INITIAL_DELAY", "1.0"))
    RETRY_MAX_DELAY: float = float(os.getenv("RETRY_MAX_DELAY", "10.0"))
    RETRY_BACKOFF_FACTOR: float = float(os.getenv("RETRY_BACKOFF_FACTOR", "2.0"))
    SUBMIT_DEADLINE: float = float(os.getenv("SUBMIT_DEADLINE", "60"))
    DEDUP_TTL: float = float(os.getenv("DEDUP_TTL", "60"))
    DEDUP_GRACE: float = float(os.getenv("DEDUP_GRACE", "5"))

    # reconciliation
    POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "5"))
    RECONNECT_BASE_DELAY: float = float(os.getenv("RECONNECT_BASE_DELAY", "1"))
    RECONNECT_MAX_DELAY: float = float(os.getenv("RECONNECT_MAX_DELAY", "30"))
    RECONNECT_MAX_ATTEMPTS: int = int(os.getenv("RECONNECT_MAX_ATTEMPTS", "10"))
    ORDERS_LIMIT: int = int(os.getenv("ORDERS_LIMIT", "500"))
    EXPENSES_LIMIT: int = int(os.getenv("EXPENSES_LIMIT", "200"))
    COWORKING_LIMIT: int = int(os.getenv("COWORKING_LIMIT", "200"))
    CASH_SESSIONS_LIMIT: int = int(os.getenv("CASH_SESSIONS_LIMIT", "100"))
    CUSTOMERS_LIMIT: int = int(os.getenv("CUSTOMERS_LIMIT", "500"))

    # "session" or "general", see cafe_pos.services.billing
    COWORKING_SETTLEMENT_RATES: str = os.getenv("COWORKING_SETTLEMENT_RATES", "session")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON: bool = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")

    class Config:
        env_file = ".env"

    def refresh(self):
        """Reload environment variables"""
        load_dotenv(override=True)
        return Settings()

    def list_limit(self, collection: str) -> int | None:
        return {
            "orders": self.ORDERS_LIMIT,
            "expenses": self.EXPENSES_LIMIT,
            "coworking_sessions": self.COWORKING_LIMIT,
            "cash_sessions": self.CASH_SESSIONS_LIMIT,
            "customers": self.CUSTOMERS_LIMIT,
        }.get(collection)

settings = Settings()
