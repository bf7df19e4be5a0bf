import os
from pathlib import Path

from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parent

# Real environment wins over .env values.
load_dotenv(BASE_DIR / ".env", override=False)


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _env_first(*keys: str, default: str = "") -> str:
    for key in keys:
        val = (os.getenv(key) or "").strip()
        if val:
            return val
    return default


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def _env_int(key: str, default: int) -> int:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except Exception:
        return default


def _env_coords(key: str, default: tuple) -> tuple:
    raw = (os.getenv(key) or "").strip()
    if not raw or "," not in raw:
        return default
    try:
        lat, lng = raw.split(",", 1)
        return float(lat), float(lng)
    except Exception:
        return default


APP_NAME = _env("DONKEYMAP_APP_NAME", "Donkey Mapping Initiative")
APP_VERSION = _env("DONKEYMAP_APP_VERSION", "0.1.0")
APP_ENV = _env("DONKEYMAP_ENV", "development").strip().lower()

# Hosted backend (auth + database). The NEXT_PUBLIC_* / SUPABASE_KEY names are
# accepted so an existing deployment's environment keeps working.
SUPABASE_URL = _env_first("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL").rstrip("/")
SUPABASE_ANON_KEY = _env_first("SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY")
SUPABASE_SERVICE_KEY = _env_first("SUPABASE_SERVICE_KEY", "SUPABASE_KEY")

SITE_URL = _env_first("DONKEYMAP_SITE_URL", "NEXT_PUBLIC_SITE_URL").rstrip("/")

HOST = _env("DONKEYMAP_HOST", "127.0.0.1")
PORT = _env_int("DONKEYMAP_PORT", 5000)
DEBUG = _env_bool(
    "DONKEYMAP_DEBUG",
    APP_ENV in ("dev", "development", "local"),
)

SECRET_KEY = _env("DONKEYMAP_SECRET_KEY", "")
LOG_LEVEL = _env("DONKEYMAP_LOG_LEVEL", "INFO").strip().upper()

HTTP_TIMEOUT = _env_int("DONKEYMAP_HTTP_TIMEOUT", 15)
OTP_COOLDOWN_SECONDS = _env_int("DONKEYMAP_OTP_COOLDOWN_SECONDS", 60)
MIN_PASSWORD_LENGTH = _env_int("DONKEYMAP_MIN_PASSWORD_LENGTH", 6)

# Taita Taveta County
MAP_CENTER = _env_coords("DONKEYMAP_MAP_CENTER", (-3.3984, 38.5618))
MAP_ZOOM = _env_int("DONKEYMAP_MAP_ZOOM", 10)
