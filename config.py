from __future__ import annotations

import logging
import os
from urllib.parse import urlparse

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("kue.config")


def env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value


def bool_env(name: str, default: str | None = None) -> bool:
    raw = env(name, default)
    if raw is None:
        return False
    return raw.strip().lower() in {"1", "true", "yes"}


def int_env(name: str, default: int) -> int:
    return int(env(name, str(default)) or default)


def environment() -> str:
    return (env("ENVIRONMENT", "development") or "development").strip().lower()


def strict_env() -> bool:
    if os.getenv("STRICT_ENV_VALIDATION") is not None:
        return bool_env("STRICT_ENV_VALIDATION", "true")
    return environment() in {"production", "prod"}


def payments_enabled() -> bool:
    if os.getenv("PAYMENTS_ENABLED") is not None:
        return bool_env("PAYMENTS_ENABLED", "true")
    return environment() in {"production", "prod"}


def credit_store_backend() -> str:
    return (env("CREDIT_STORE", "postgres") or "postgres").strip().lower()


def auth_secret() -> str:
    """Load the shared secret the identity provider signs bearer tokens with."""
    secret = env("AUTH_SECRET")
    if not secret:
        raise RuntimeError("AUTH_SECRET is not set.")
    return secret


def frontend_url() -> str:
    url = env("FRONTEND_URL")
    if not url:
        raise RuntimeError("FRONTEND_URL is not set.")
    return url.rstrip("/")


def _parse_origins(value: str | None) -> list[str]:
    if not value:
        return []
    origins: list[str] = []
    for origin in value.split(","):
        origin = origin.strip()
        if not origin or origin == "*":
            continue
        origins.append(origin.rstrip("/"))
    return origins


def cors_origins() -> list[str]:
    origins = [frontend_url()]
    for origin in _parse_origins(env("CORS_ORIGINS")):
        if origin not in origins:
            origins.append(origin)
    return origins


def razorpay_key_id() -> str:
    key_id = env("RAZORPAY_KEY_ID")
    if not key_id:
        raise RuntimeError("RAZORPAY_KEY_ID is not set.")
    return key_id


def razorpay_key_secret() -> str:
    secret = env("RAZORPAY_KEY_SECRET")
    if not secret:
        raise RuntimeError("RAZORPAY_KEY_SECRET is not set.")
    return secret


def razorpay_webhook_secret() -> str:
    secret = env("RAZORPAY_WEBHOOK_SECRET")
    if not secret:
        raise RuntimeError("RAZORPAY_WEBHOOK_SECRET is not set.")
    return secret


def validate_env() -> None:
    errors: list[str] = []
    warnings: list[str] = []
    strict = strict_env()

    secret = env("AUTH_SECRET")
    if not secret:
        errors.append("AUTH_SECRET is required.")
    elif strict and len(secret) < 32:
        errors.append("AUTH_SECRET must be at least 32 characters.")

    try:
        frontend = frontend_url()
    except RuntimeError as exc:
        errors.append(str(exc))
        frontend = None
    if frontend and strict and urlparse(frontend).scheme != "https":
        errors.append("FRONTEND_URL must use https in production.")

    backend = credit_store_backend()
    if backend not in {"postgres", "memory"}:
        errors.append('CREDIT_STORE must be "postgres" or "memory".')
    elif backend == "postgres" and not env("DATABASE_URL"):
        errors.append("DATABASE_URL is required when CREDIT_STORE=postgres.")
    elif backend == "memory":
        if strict:
            errors.append("CREDIT_STORE=memory is not allowed in production.")
        else:
            warnings.append("Using in-memory credit store; balances reset on restart.")

    if payments_enabled():
        for name in ("RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET", "RAZORPAY_WEBHOOK_SECRET"):
            if not env(name):
                errors.append(f"{name} is required.")
    else:
        warnings.append("Payments disabled; Razorpay keys not required.")

    if not env("LLM_API_KEY"):
        if strict:
            errors.append("LLM_API_KEY is required.")
        else:
            warnings.append("LLM_API_KEY not set; reply generation will fail.")

    for name in ("REPLY_COUNT", "LLM_TIMEOUT_SECONDS", "RAZORPAY_PRO_AMOUNT"):
        try:
            int(env(name, "0") or 0)
        except ValueError:
            errors.append(f"{name} must be an integer.")

    if errors:
        raise RuntimeError("Config errors: " + "; ".join(errors))
    for warning in warnings:
        logger.warning(warning)
