import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry: total attempts and the fixed pause between them."""

    max_attempts: int = 2
    delay_seconds: float = 1.5


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./kiosk.db")

MP_API_BASE_URL = os.getenv("MP_API_BASE_URL", "https://api.mercadopago.com")
MP_HTTP_TIMEOUT = float(os.getenv("MP_HTTP_TIMEOUT", "15"))
MP_WEBHOOK_SECRET = os.getenv("MP_WEBHOOK_SECRET")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")

# In-memory gateway, for local development only
PAYMENTS_MOCK_MODE = _flag("PAYMENTS_MOCK_MODE")

DEFAULT_STORE_ID = os.getenv("DEFAULT_STORE_ID", "default")

REGISTRY_RETENTION_SECONDS = int(os.getenv("REGISTRY_RETENTION_SECONDS", "3600"))
REGISTRY_SWEEP_INTERVAL_SECONDS = int(os.getenv("REGISTRY_SWEEP_INTERVAL_SECONDS", "300"))
QUEUE_SWEEP_INTERVAL_SECONDS = int(os.getenv("QUEUE_SWEEP_INTERVAL_SECONDS", "120"))
SCHEDULER_ENABLED = _flag("SCHEDULER_ENABLED", "1")

FUZZY_WINDOW_MINUTES = int(os.getenv("FUZZY_WINDOW_MINUTES", "15"))
FUZZY_SEARCH_LIMIT = int(os.getenv("FUZZY_SEARCH_LIMIT", "20"))
AMOUNT_EPSILON = float(os.getenv("AMOUNT_EPSILON", "0.01"))

DELETE_RETRY = RetryPolicy(
    max_attempts=int(os.getenv("DELETE_RETRY_ATTEMPTS", "2")),
    delay_seconds=float(os.getenv("DELETE_RETRY_DELAY_SECONDS", "1.5")),
)

JWT_SECRET = os.getenv("JWT_SECRET")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "plain")

MENU_SEED_PATH = os.getenv("MENU_SEED_PATH", str(BASE_DIR / "data" / "menu.json"))
