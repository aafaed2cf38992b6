import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from a local .env if present.
load_dotenv()

DEFAULT_LLM_ENDPOINT = "https://api.groq.com/openai/v1/chat/completions"
DEFAULT_LLM_MODEL = "llama-3.3-70b-versatile"
DEFAULT_STATE_TTL_SECONDS = 30 * 24 * 3600
TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    telegram_bot_token: str
    llm_api_key: str
    llm_model: str
    database_path: Path
    catalog_path: Path
    admin_user: str
    admin_pass: str
    telegram_webhook_secret: str = ""
    telegram_webhook_path: str = "/api/telegram/webhook"
    whatsapp_phone_number_id: str = ""
    whatsapp_access_token: str = ""
    whatsapp_verify_token: str = "realty_verify"
    whatsapp_api_version: str = "v18.0"
    whatsapp_mark_read: bool = True
    twilio_auth_token: str = ""
    llm_endpoint: str = DEFAULT_LLM_ENDPOINT
    display_timezone: str = "Asia/Singapore"
    kv_provider: str = "sqlite"
    upstash_redis_rest_url: str = ""
    upstash_redis_rest_token: str = ""
    state_ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS
    state_cache_size: int = 1000
    calendar_provider: str = "none"
    google_calendar_access_token: str = ""
    google_calendar_id: str = "primary"
    viewing_duration_minutes: int = 60
    agent_name: str = "your agent"
    agent_telegram_chat_id: str = ""
    outbound_timeout_seconds: float = 10.0
    startup_preflight_mode: str = "off"


def project_root() -> Path:
    # /project_root/realty_agent/realty_core/config.py -> project_root
    return Path(__file__).resolve().parent.parent.parent


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def get_settings() -> Settings:
    root = project_root()

    database_path = os.getenv("DATABASE_PATH", "").strip()
    db_path = Path(database_path) if database_path else root / "data" / "realty_agent.db"
    catalog_path = os.getenv("CATALOG_PATH", "").strip()
    catalog = Path(catalog_path) if catalog_path else root / "catalog" / "properties.yaml"

    telegram_webhook_path = (
        os.getenv("TELEGRAM_WEBHOOK_PATH", "/api/telegram/webhook").strip() or "/api/telegram/webhook"
    )
    if not telegram_webhook_path.startswith("/"):
        telegram_webhook_path = f"/{telegram_webhook_path}"

    kv_provider = os.getenv("KV_PROVIDER", "sqlite").strip().lower()
    if kv_provider not in {"sqlite", "upstash", "memory"}:
        kv_provider = "sqlite"
    calendar_provider = os.getenv("CALENDAR_PROVIDER", "none").strip().lower()
    if calendar_provider not in {"none", "google"}:
        calendar_provider = "none"

    llm_api_key = os.getenv("LLM_API_KEY", "").strip() or os.getenv("OPENAI_API_KEY", "").strip()
    whatsapp_mark_read = os.getenv("WHATSAPP_MARK_READ", "true").strip().lower() in TRUTHY

    return Settings(
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", "").strip(),
        telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET", "").strip(),
        telegram_webhook_path=telegram_webhook_path,
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", "").strip(),
        whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", "").strip(),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", "realty_verify").strip() or "realty_verify",
        whatsapp_api_version=os.getenv("WHATSAPP_API_VERSION", "v18.0").strip() or "v18.0",
        whatsapp_mark_read=whatsapp_mark_read,
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", "").strip(),
        llm_api_key=llm_api_key,
        llm_model=os.getenv("LLM_MODEL", DEFAULT_LLM_MODEL).strip() or DEFAULT_LLM_MODEL,
        llm_endpoint=os.getenv("LLM_ENDPOINT", DEFAULT_LLM_ENDPOINT).strip() or DEFAULT_LLM_ENDPOINT,
        database_path=db_path,
        catalog_path=catalog,
        display_timezone=os.getenv("DISPLAY_TIMEZONE", "Asia/Singapore").strip() or "Asia/Singapore",
        kv_provider=kv_provider,
        upstash_redis_rest_url=os.getenv("UPSTASH_REDIS_REST_URL", "").strip(),
        upstash_redis_rest_token=os.getenv("UPSTASH_REDIS_REST_TOKEN", "").strip(),
        state_ttl_seconds=_int_env("STATE_TTL_SECONDS", DEFAULT_STATE_TTL_SECONDS),
        state_cache_size=_int_env("STATE_CACHE_SIZE", 1000, minimum=1),
        calendar_provider=calendar_provider,
        google_calendar_access_token=os.getenv("GOOGLE_CALENDAR_ACCESS_TOKEN", "").strip(),
        google_calendar_id=os.getenv("GOOGLE_CALENDAR_ID", "primary").strip() or "primary",
        viewing_duration_minutes=_int_env("VIEWING_DURATION_MINUTES", 60, minimum=1),
        agent_name=os.getenv("AGENT_NAME", "your agent").strip() or "your agent",
        agent_telegram_chat_id=os.getenv("AGENT_TELEGRAM_CHAT_ID", "").strip(),
        outbound_timeout_seconds=_float_env("OUTBOUND_TIMEOUT_SECONDS", 10.0),
        startup_preflight_mode=os.getenv("STARTUP_PREFLIGHT_MODE", "fail").strip().lower() or "fail",
        admin_user=os.getenv("ADMIN_USER", "").strip(),
        admin_pass=os.getenv("ADMIN_PASS", "").strip(),
    )
