"""Centralized configuration for the clinic agent orchestration engine.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/clinic-agents/<VARIABLE_NAME>``.
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
        import boto3  # noqa: PLC0415  lazy: boto3 is only needed on AWS

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/clinic-agents/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _get_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _get_secret(name)
    if value:
        return value
    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /clinic-agents/{name} (AWS)."
    )


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")

# Cheap model used only to classify which module a new conversation belongs to
ROUTER_MODEL_NAME: str = os.getenv("ROUTER_MODEL_NAME", "claude-haiku-4-5")

# ── Engine ──────────────────────────────────────────────────────────
MAX_TOOL_CALLS: int = _int_env("MAX_TOOL_CALLS", 5)
TOOL_TIMEOUT_SECONDS: float = float(os.getenv("TOOL_TIMEOUT_SECONDS", "20"))
MAX_HISTORY_MESSAGES: int = _int_env("MAX_HISTORY_MESSAGES", 30)

# ── Subscription gate ───────────────────────────────────────────────
GATE_CACHE_TTL_SECONDS: float = float(os.getenv("GATE_CACHE_TTL_SECONDS", "60"))

# ── Message processing ──────────────────────────────────────────────
PROCESS_TIMEOUT_SECONDS: float = float(os.getenv("PROCESS_TIMEOUT_SECONDS", "60"))

# ── Cron ────────────────────────────────────────────────────────────
# Unset secret means every cron call is rejected.
CRON_SECRET: str | None = _get_secret("CRON_SECRET")
CRON_FAN_OUT: int = _int_env("CRON_FAN_OUT", 4)
CRON_BATCH_SIZE: int = _int_env("CRON_BATCH_SIZE", 50)
# Upper bound on candidate pages scanned to fill one batch.
CRON_MAX_PAGES: int = _int_env("CRON_MAX_PAGES", 10)
FOLLOW_UP_AFTER_HOURS: int = _int_env("FOLLOW_UP_AFTER_HOURS", 24)
CONFIRMATION_CHANNEL: str = os.getenv("CONFIRMATION_CHANNEL", "whatsapp")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _int_env("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
