import os

from dotenv import load_dotenv

# Carrega o .env da raiz do projeto
load_dotenv()


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./atendimento.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_PROD = ENV_NORMALIZED in {"prod", "production"}

# Buffer de mensagens (debounce por conversa)
MESSAGE_BUFFER_MS = _env_int("MESSAGE_BUFFER_MS", 20000)
MESSAGE_BUFFER_MIN_MS = 3000
MESSAGE_BUFFER_MAX_MS = 120000

# TTLs de rotação da conversa
CONVERSATION_TTL_MS = _env_int("CONVERSATION_TTL_MS", 60 * 60 * 1000)
MID_FLOW_TTL_MS = _env_int("MID_FLOW_TTL_MS", 30 * 60 * 1000)
WAITING_PAYMENT_TTL_MS = _env_int("WAITING_PAYMENT_TTL_MS", 15 * 60 * 1000)

# Timers de acompanhamento
FOLLOWUP_NUDGE_MS = _env_int("FOLLOWUP_NUDGE_MS", 5 * 60 * 1000)
CART_CANCEL_MS = _env_int("CART_CANCEL_MS", 20 * 60 * 1000)

# Idempotência
INBOUND_DEDUP_WINDOW_MS = _env_int("INBOUND_DEDUP_WINDOW_MS", 5 * 60 * 1000)
INBOUND_DEDUP_MAX_ENTRIES = _env_int("INBOUND_DEDUP_MAX_ENTRIES", 5000)
DUPLICATE_TEXT_WINDOW_SECONDS = _env_int("DUPLICATE_TEXT_WINDOW_SECONDS", 90)

SNAPSHOT_DEBOUNCE_MS = _env_int("SNAPSHOT_DEBOUNCE_MS", 500)
MAX_CONVERSATION_MESSAGES = _env_int("MAX_CONVERSATION_MESSAGES", 30)
SUMMARY_EVERY_N_MESSAGES = _env_int("SUMMARY_EVERY_N_MESSAGES", 8)

HANDOFF_FAILURE_THRESHOLD = _env_int("HANDOFF_FAILURE_THRESHOLD", 3)
HANDOFF_MIN_CONFIDENCE = float(os.getenv("HANDOFF_MIN_CONFIDENCE", "0.45") or 0.45)

# LLM (opcional)
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip()
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
OPENAI_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "20") or 20)

# Evolution API (WhatsApp)
EVOLUTION_API_URL = os.getenv("EVOLUTION_API_URL", "").rstrip("/")
EVOLUTION_API_KEY = os.getenv("EVOLUTION_API_KEY", "")
EVOLUTION_INSTANCE = os.getenv("EVOLUTION_INSTANCE", "")
WHATSAPP_MOCK_SEND = _env_flag("WHATSAPP_MOCK_SEND", "0")

# Tenants
TENANTS_CONFIG_PATH = os.getenv("TENANTS_CONFIG_PATH", "config/tenants.json")
COMPANY_DATA_CACHE_TTL_MS = _env_int("COMPANY_DATA_CACHE_TTL_MS", 60 * 1000)

# SAIPOS
SAIPOS_CREDENTIALS = {
    "homologation": {
        "api_url": os.getenv("HOMOLOG_API_URL", "").rstrip("/"),
        "id_partner": os.getenv("HOMOLOG_ID_PARTNER", ""),
        "secret": os.getenv("HOMOLOG_SECRET", ""),
        "cod_store": os.getenv("HOMOLOG_COD_STORE", ""),
    },
    "production": {
        "api_url": os.getenv("PRODUCTION_API_URL", "").rstrip("/"),
        "id_partner": os.getenv("PRODUCTION_ID_PARTNER", ""),
        "secret": os.getenv("PRODUCTION_SECRET", ""),
        "cod_store": os.getenv("PRODUCTION_COD_STORE", ""),
    },
}
SAIPOS_TOKEN_DEFAULT_TTL_SECONDS = 47 * 60 * 60

# AnaFood
ANAFOOD_API_URL = os.getenv("ANAFOOD_API_URL", "").strip()
ANAFOOD_AUTH_MODE = os.getenv("ANAFOOD_AUTH_MODE", "company_key").strip().lower()
ANAFOOD_COMPANY_KEY = os.getenv("ANAFOOD_COMPANY_KEY", "").strip()
ANAFOOD_API_TOKEN = os.getenv("ANAFOOD_API_TOKEN", "").strip()
ANAFOOD_COMPANY_ID = os.getenv("ANAFOOD_COMPANY_ID", "").strip()
ANAFOOD_COMPANY_HEADER = os.getenv("ANAFOOD_COMPANY_HEADER", "").strip()

# Agente
DEFAULT_AGENT_NAME = os.getenv("DEFAULT_AGENT_NAME", "Ana").strip() or "Ana"
DEFAULT_GREETING_MESSAGE = os.getenv("DEFAULT_GREETING_MESSAGE", "Olá! Como posso ajudar você hoje?").strip()

# Rotas de operador (/api/agent e /internal). Vazio desliga a checagem.
ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "").strip()
