"""应用配置（通过 .env 覆盖）。"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# 优先加载项目根目录下的 .env
BASE_DIR = Path(__file__).resolve().parents[1]
load_dotenv(BASE_DIR / ".env")


def _to_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    """安全解析整数环境变量。"""

    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


def _to_float(value: str | None, default: float, *, minimum: float = 0.0) -> float:
    """安全解析浮点环境变量。"""

    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


def _to_bool(value: str | None, default: bool = False) -> bool:
    """安全解析布尔环境变量。"""

    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "on", "yes"}


APP_NAME = os.getenv("APP_NAME", "HotelAuthz")
APP_ENV = os.getenv("APP_ENV", "dev")

MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
MONGO_DB = os.getenv("MONGO_DB", "hotel_authz")

# 为空时退回进程内缓存
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", "")

APP_PORT = _to_int(os.getenv("APP_PORT"), 8000, minimum=1)
API_TOKEN = os.getenv("API_TOKEN", "dev-api-token")

UVICORN_HOST = os.getenv("UVICORN_HOST", "0.0.0.0")
UVICORN_LOG_LEVEL = os.getenv("UVICORN_LOG_LEVEL", "info")
UVICORN_RELOAD = _to_bool(os.getenv("UVICORN_RELOAD"), default=False)

PERMISSION_CACHE_TTL_SECONDS = _to_int(os.getenv("PERMISSION_CACHE_TTL_SECONDS"), 15 * 60, minimum=1)
INHERITANCE_MAX_DEPTH = _to_int(os.getenv("INHERITANCE_MAX_DEPTH"), 10, minimum=1)
ENABLE_AUDIT_LOG_INHERITANCE = _to_bool(os.getenv("ENABLE_AUDIT_LOG_INHERITANCE"), default=False)
AUDIT_LOG_INHERITANCE_LIMIT = _to_int(os.getenv("AUDIT_LOG_INHERITANCE_LIMIT"), 10, minimum=1)
MAX_ACTIVE_DELEGATIONS = _to_int(os.getenv("MAX_ACTIVE_DELEGATIONS"), 10, minimum=1)

EXCESSIVE_PERMISSION_THRESHOLD = _to_int(os.getenv("EXCESSIVE_PERMISSION_THRESHOLD"), 50, minimum=1)
COMPLIANCE_VIOLATION_RATE = _to_float(os.getenv("COMPLIANCE_VIOLATION_RATE"), 0.1)
