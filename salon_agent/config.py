"""Centralized configuration for the salon booking assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/salon-agent/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415  lazy import, boto3 is optional

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/salon-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /salon-agent/{name} (AWS)."
    )


def _optional_env(name: str) -> str | None:
    value = os.getenv(name)
    if value:
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
MODEL_TIMEOUT_SECONDS: float = float(os.getenv("MODEL_TIMEOUT_SECONDS", "60"))

# ── Salon backend (scheduling + contacts, GraphQL) ──────────────────
SALON_API_URL: str = os.getenv("SALON_API_URL", "https://api.soho.sg/graphql")
SALON_API_TOKEN: str = _require_env("SALON_API_TOKEN")
BUSINESS_NAME: str = os.getenv("BUSINESS_NAME", "Rare Beauty Professional")
BUSINESS_TIMEZONE: str = os.getenv("BUSINESS_TIMEZONE", "Asia/Singapore")

# ── Conversation engine ─────────────────────────────────────────────
HISTORY_WINDOW: int = int(os.getenv("HISTORY_WINDOW", "20"))
# Tool calls kept in the persisted session record; 0 keeps all of them.
TOOL_LOG_WINDOW: int = int(os.getenv("TOOL_LOG_WINDOW", "50"))
MAX_TOOL_ROUNDS: int = int(os.getenv("MAX_TOOL_ROUNDS", "3"))
TOOL_TIMEOUT_SECONDS: float = float(os.getenv("TOOL_TIMEOUT_SECONDS", "20"))
SERVICES_CACHE_TTL_SECONDS: float = float(os.getenv("SERVICES_CACHE_TTL_SECONDS", "3600"))

# ── Session store ───────────────────────────────────────────────────
SESSION_STORE: str = os.getenv("SESSION_STORE", "memory").lower()
SESSION_TABLE_NAME: str = os.getenv("SESSION_TABLE_NAME", "salon-agent-sessions")
# Inactivity eviction for the durable store; 0 disables it.
SESSION_TTL_SECONDS: int = int(os.getenv("SESSION_TTL_SECONDS", "0"))

# ── Server ──────────────────────────────────────────────────────────
ADMIN_API_TOKEN: str | None = _optional_env("ADMIN_API_TOKEN")
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
