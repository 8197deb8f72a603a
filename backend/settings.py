import os
from datetime import timedelta
from typing import Dict, List, Optional


def env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None or not str(raw_value).strip():
        return default
    try:
        return int(float(raw_value))
    except (TypeError, ValueError):
        return default


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def load_config_from_env() -> Dict[str, object]:
    """Collect every environment-driven setting into a flat Flask config mapping."""
    return {
        "MONGO_URI": env_str("MONGO_URI", "mongodb://localhost:27017/macrobox"),
        "JWT_SECRET_KEY": env_str("JWT_SECRET_KEY", "change-me-in-production"),
        "JWT_ACCESS_TOKEN_EXPIRES": timedelta(hours=1),
        "RAZORPAY_KEY_ID": env_str("RAZORPAY_KEY_ID"),
        "RAZORPAY_KEY_SECRET": env_str("RAZORPAY_KEY_SECRET"),
        "RAZORPAY_API_BASE": env_str("RAZORPAY_API_BASE", "https://api.razorpay.com"),
        "RAZORPAY_TIMEOUT_SECONDS": env_int("RAZORPAY_TIMEOUT_SECONDS", 10),
        "PAYMENT_CURRENCY": env_str("PAYMENT_CURRENCY", "INR").upper() or "INR",
        "DELIVERY_START_HOUR": env_int("DELIVERY_START_HOUR", 7),
        "DELIVERY_END_HOUR": env_int("DELIVERY_END_HOUR", 19),
        "DELIVERY_MIN_LEAD_HOURS": env_int("DELIVERY_MIN_LEAD_HOURS", 3),
        "RESEND_ORDER_EMAIL_API_KEY": env_str("RESEND_ORDER_EMAIL_API_KEY"),
        "ORDER_EMAIL_SENDER": env_str(
            "ORDER_EMAIL_SENDER", "MacroBox <orders@macrobox.app>"
        ),
        "CORS_ALLOWED_ORIGINS": parse_origins(os.getenv("CORS_ALLOWED_ORIGINS", "")),
        "TRUSTED_PROXY_HOPS": max(0, env_int("TRUSTED_PROXY_HOPS", 1)),
    }


def parse_origins(raw_value: Optional[str]) -> List[str]:
    origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        env_str("FRONTEND_URL"),
    ]
    for origin in (raw_value or "").split(","):
        trimmed = origin.strip()
        if trimmed:
            origins.append(trimmed)
    return [origin for origin in origins if origin]
