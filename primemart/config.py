import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()


def utcnow() -> datetime:
    # Naive UTC, matching what PyMongo hands back for stored dates.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name, str(default))
    try:
        return int(raw_value)
    except (TypeError, ValueError):
        return default


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def allowed_origins() -> List[str]:
    origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        _env_str("CLIENT_URL"),
        _env_str("FRONTEND_URL"),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                origins.append(trimmed)
    return [origin for origin in origins if origin]


def configure_app(app, overrides: Optional[Dict] = None):
    app.config["JWT_SECRET_KEY"] = _env_str("JWT_SECRET_KEY", "change-me-in-production")
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(days=1)
    app.config["MONGO_URI"] = _env_str(
        "MONGO_URI", "mongodb://localhost:27017/primemart"
    )
    app.config["TRUSTED_PROXY_HOPS"] = max(0, _env_int("TRUSTED_PROXY_HOPS", 1))
    app.config["CORS_ORIGINS"] = allowed_origins()
    app.config["CLIENT_URL"] = _env_str("CLIENT_URL", "http://localhost:5173")
    app.config["PUBLIC_BASE_URL"] = _env_str("PUBLIC_BASE_URL", "http://localhost:5000")

    app.config["DEFAULT_ADMIN_EMAIL"] = _env_str(
        "DEFAULT_ADMIN_EMAIL", "admin@primemart.com"
    ).lower()
    app.config["DEFAULT_ADMIN_NAME"] = _env_str("DEFAULT_ADMIN_NAME", "PrimeMart Admin")
    app.config["OTP_EXPIRATION_MINUTES"] = _env_int("OTP_EXPIRATION_MINUTES", 5)
    app.config["LOW_STOCK_THRESHOLD"] = _env_int("LOW_STOCK_THRESHOLD", 10)

    app.config["RESEND_API_KEY"] = _env_str("RESEND_API_KEY")
    app.config["MAIL_SENDER"] = _env_str("MAIL_SENDER", "PrimeMart <orders@primemart.com>")

    app.config["RENDERER_URL"] = _env_str("RENDERER_URL", "http://localhost:3000")
    app.config["RENDERER_TIMEOUT_SECONDS"] = _env_int("RENDERER_TIMEOUT_SECONDS", 30)

    app.config["STRIPE_SECRET_KEY"] = _env_str("STRIPE_SECRET_KEY")
    app.config["STRIPE_API_BASE"] = _env_str("STRIPE_API_BASE", "https://api.stripe.com")
    app.config["PAYMENT_TIMEOUT_SECONDS"] = _env_int("PAYMENT_TIMEOUT_SECONDS", 20)
    app.config["PAYMENT_CURRENCY"] = "inr"

    upload_directory = _env_str("INVOICE_UPLOAD_FOLDER") or os.path.join(
        app.root_path, "uploads"
    )
    app.config["INVOICE_UPLOAD_FOLDER"] = upload_directory

    app.config["SELLER_INFO"] = {
        "name": _env_str("SELLER_NAME", "PrimeMart Retail Pvt Ltd"),
        "address": _env_str("SELLER_ADDRESS", "Warehouse Block C-12, Sector 44"),
        "city": _env_str("SELLER_CITY", "Amravati"),
        "state": _env_str("SELLER_STATE", "Maharashtra"),
        "pincode": _env_str("SELLER_PINCODE", "444606"),
        "gstin": _env_str("SELLER_GSTIN", "06AAAPM0000A1Z5"),
        "phone": _env_str("SELLER_PHONE", "+91 90000 00086"),
        "email": _env_str("SELLER_EMAIL", "support@primemart.com"),
    }

    if overrides:
        app.config.update(overrides)

    return app.config
