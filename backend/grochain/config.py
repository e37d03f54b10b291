import os

from flask import current_app


def _normalize_database_url(url: str) -> str:
    # Render/Heroku sometimes provide postgres:// which SQLAlchemy expects as postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return float(default)


# Values shipped in .env templates; a key still set to one of these is "not configured".
PLACEHOLDER_SECRETS = {
    "sk_test_your_secret_key_here",
    "FLWSECK_TEST_your_secret_key_here",
    "your_flutterwave_secret_key",
}

SUPPORTED_PROVIDERS = ("paystack", "flutterwave")


class Config:
    # Base directory of the backend (one level above this `grochain` package)
    BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    INSTANCE_DIR = os.path.join(BACKEND_DIR, "instance")
    ENV = (os.getenv("GROCHAIN_ENV", "dev") or "dev").strip().lower()
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    _default_sqlite_path = os.path.join(INSTANCE_DIR, "grochain.db").replace("\\", "/")
    _db_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL") or f"sqlite:///{_default_sqlite_path}"
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(_db_url)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CORS: comma-separated origins for web builds
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Payment providers
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "").strip()
    PAYSTACK_PUBLIC_KEY = os.getenv("PAYSTACK_PUBLIC_KEY", "").strip()
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    FLUTTERWAVE_SECRET_KEY = os.getenv("FLUTTERWAVE_SECRET_KEY", "").strip()
    FLUTTERWAVE_PUBLIC_KEY = os.getenv("FLUTTERWAVE_PUBLIC_KEY", "").strip()
    FLUTTERWAVE_WEBHOOK_HASH = os.getenv("FLUTTERWAVE_WEBHOOK_HASH", "").strip()
    FLUTTERWAVE_BASE_URL = os.getenv("FLUTTERWAVE_BASE_URL", "https://api.flutterwave.com/v3")
    GATEWAY_TIMEOUT_SECONDS = _float_env("GATEWAY_TIMEOUT_SECONDS", 10.0)

    # auto: test mode whenever the provider has no usable secret; 1: always; 0: never
    PAYMENTS_TEST_MODE = (os.getenv("PAYMENTS_TEST_MODE", "auto") or "auto").strip().lower()
    PAYMENTS_WEBHOOK_STRICT = os.getenv("PAYMENTS_WEBHOOK_STRICT", "0").strip() == "1"

    # Settlement economics (fractions, 0.03 = 3%)
    PLATFORM_FEE_RATE = _float_env("PLATFORM_FEE_RATE", 0.03)
    DEFAULT_COMMISSION_RATE = _float_env("DEFAULT_COMMISSION_RATE", 0.05)

    SETTLEMENT_RETRY_AGE_MINUTES = int(_float_env("SETTLEMENT_RETRY_AGE_MINUTES", 5))


def setting(name: str, default=None):
    return current_app.config.get(name, default)


def provider_secret(provider: str) -> str:
    if provider == "flutterwave":
        return (setting("FLUTTERWAVE_SECRET_KEY") or "").strip()
    return (setting("PAYSTACK_SECRET_KEY") or "").strip()


def provider_configured(provider: str) -> bool:
    secret = provider_secret(provider)
    return bool(secret) and secret not in PLACEHOLDER_SECRETS


def is_test_mode(provider: str) -> bool:
    """Whether settlement for `provider` should bypass the gateway with the always-paid stub."""
    mode = str(setting("PAYMENTS_TEST_MODE", "auto") or "auto").strip().lower()
    if mode in ("1", "true", "yes", "on"):
        return True
    if mode in ("0", "false", "no", "off"):
        return False
    return not provider_configured(provider)
