"""Configuration for the ticket dashboard backend."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Chatwoot
CHATWOOT_URL = (os.getenv("CHATWOOT_URL") or "").strip().rstrip("/")
CHATWOOT_ACCOUNT_ID = (os.getenv("CHATWOOT_ACCOUNT_ID") or "").strip()
CHATWOOT_API_TOKEN = (os.getenv("CHATWOOT_API_TOKEN") or "").strip()
CHATWOOT_TIMEOUT = float(os.getenv("CHATWOOT_TIMEOUT", "30"))

# Paging
CONVERSATIONS_PER_PAGE = int(os.getenv("CONVERSATIONS_PER_PAGE", "25"))
MESSAGES_PAGE_SIZE = int(os.getenv("MESSAGES_PAGE_SIZE", "20"))  # fixed by Chatwoot
DEFAULT_PER_PAGE = int(os.getenv("DEFAULT_PER_PAGE", "20"))

# "cache" counts local rows, "upstream" reads meta.all_count from Chatwoot
TOTAL_COUNT_SOURCE = os.getenv("TOTAL_COUNT_SOURCE", "cache").strip().lower()

DISPLAY_TIMEZONE = os.getenv("DISPLAY_TIMEZONE", "America/Sao_Paulo")

# Database configuration with sensible dev fallback
# Prefer explicit DATABASE_URL. Otherwise use Postgres if all env vars are present.
# If not, default to local SQLite so the API can run without Docker.
DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    pg_user = os.getenv("POSTGRES_USER")
    pg_password = os.getenv("POSTGRES_PASSWORD")
    pg_host = os.getenv("POSTGRES_HOST")
    pg_port = os.getenv("POSTGRES_PORT")
    pg_db = os.getenv("POSTGRES_DB")
    if os.getenv("USE_SQLITE", "1") == "1" or not all([pg_user, pg_password, pg_host, pg_port, pg_db]):
        DATABASE_URL = "sqlite:///dev.db"
    else:
        DATABASE_URL = f"postgresql+psycopg2://{pg_user}:{pg_password}@{pg_host}:{pg_port}/{pg_db}"


def validate_config() -> list[str]:
    """Return the names of missing Chatwoot settings (empty when complete)."""
    missing = []
    if not CHATWOOT_URL:
        missing.append("CHATWOOT_URL")
    if not CHATWOOT_ACCOUNT_ID:
        missing.append("CHATWOOT_ACCOUNT_ID")
    if not CHATWOOT_API_TOKEN:
        missing.append("CHATWOOT_API_TOKEN")
    if TOTAL_COUNT_SOURCE not in ("cache", "upstream"):
        missing.append("TOTAL_COUNT_SOURCE (cache|upstream)")
    return missing
