from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("influxity")


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


def is_production() -> bool:
    return environment() in {"production", "prod"}


def strict_env() -> bool:
    if os.getenv("STRICT_ENV_VALIDATION") is not None:
        return bool_env("STRICT_ENV_VALIDATION", "true")
    return is_production()


def payments_enabled() -> bool:
    if os.getenv("PAYMENTS_ENABLED") is not None:
        return bool_env("PAYMENTS_ENABLED", "true")
    return is_production()


def frontend_url() -> str:
    url = env("FRONTEND_URL")
    if not url:
        raise RuntimeError("FRONTEND_URL is not set.")
    return url.rstrip("/")


def parse_origins(value: str | None) -> list[str]:
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
    for origin in parse_origins(env("CORS_ORIGINS")):
        if origin not in origins:
            origins.append(origin)
    return origins


def auth_secret() -> str:
    """Load the shared secret used to verify session tokens."""
    secret = env("AUTH_SECRET")
    if not secret:
        raise RuntimeError("AUTH_SECRET is not set.")
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

    if payments_enabled():
        if not env("STRIPE_SECRET_KEY"):
            errors.append("STRIPE_SECRET_KEY is required.")
        if not env("STRIPE_WEBHOOK_SECRET"):
            errors.append("STRIPE_WEBHOOK_SECRET is required.")
    else:
        warnings.append("Payments disabled; Stripe keys not required.")

    if not env("OPENROUTER_API_KEY"):
        warnings.append("OPENROUTER_API_KEY not set; AI features will fail.")
    if not env("OWNER_OPEN_ID"):
        warnings.append("OWNER_OPEN_ID is not set; admin endpoints unreachable.")

    try:
        _ = frontend_url()
    except RuntimeError as exc:
        errors.append(str(exc))

    for name in ("CACHE_DEFAULT_TTL_SECONDS", "CACHE_STATIC_TTL_SECONDS", "CACHE_MAX_KEYS"):
        try:
            int(env(name, "0") or 0)
        except ValueError:
            errors.append(f"{name} must be an integer.")

    if errors:
        raise RuntimeError("Config errors: " + "; ".join(errors))
    for warning in warnings:
        logger.warning(warning)
