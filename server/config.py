import os

from dotenv import load_dotenv

load_dotenv()


def _database_url(raw: str) -> str:
    # hosted Postgres providers still hand out the legacy scheme
    if raw.startswith("postgres://"):
        return raw.replace("postgres://", "postgresql://", 1)
    return raw


class Settings:
    API_KEY = os.environ.get("API_KEY", "")
    DATABASE_URL = _database_url(os.environ.get("DATABASE_URL", "sqlite:///local.db"))
    RATE_LIMIT_PER_MINUTE = int(os.environ.get("RATE_LIMIT_PER_MINUTE", "100"))
    RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60"))
    AUDIT_QUERY_DEFAULT = int(os.environ.get("AUDIT_QUERY_DEFAULT", "100"))
    AUDIT_QUERY_MAX = int(os.environ.get("AUDIT_QUERY_MAX", "1000"))
    STORE_CAS_ATTEMPTS = int(os.environ.get("STORE_CAS_ATTEMPTS", "100"))
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    def __init__(self, **overrides):
        for name, value in overrides.items():
            if not hasattr(type(self), name):
                raise AttributeError(f"unknown setting {name}")
            setattr(self, name, value)


settings = Settings()
