import os


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default) in ("1", "true", "True")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./edusite.db")

# secret for signing identity tokens; override with SESSION_SECRET env var in production
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change-me")

COOKIE_SECURE = _flag("COOKIE_SECURE")
ALLOW_DEV_LOGIN = _flag("ALLOW_DEV_LOGIN")

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,https://realvn.top,http://realvn.top").split(",")
    if o.strip()
]

CACHE_TTL_MINUTES = int(os.getenv("CACHE_TTL_MINUTES", "20"))
PROFILE_CACHE_TTL_MINUTES = int(os.getenv("PROFILE_CACHE_TTL_MINUTES", "5"))

# "json", "pretty" or empty for auto-detect
LOG_FORMAT = os.getenv("LOG_FORMAT", "").lower()
LOG_COLOR = os.getenv("LOG_COLOR", "1").lower() not in ("0", "false", "no")
