import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_bool_env(name: str, default: str) -> bool:
    return (_get_env_var(name, default) or default).lower() in {"1", "true", "yes"}


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class Config:
    """Configuration class for the application"""

    # Environment Detection
    APP_ENV = _get_env_var("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_STAGING = APP_ENV == "staging"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or os.environ.get("TESTING", "").lower() in {
        "1",
        "true",
        "yes",
    }

    SERVICE_NAME = _get_env_var("SERVICE_NAME", "beautybook-api")

    # Supabase Configuration (service-role key: the reconciler writes across users)
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY") or _get_env_var("SUPABASE_SERVICE_ROLE_KEY")

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")
    STRIPE_PRICE_STARTER_MONTHLY = _get_env_var("STRIPE_PRICE_STARTER_MONTHLY")
    STRIPE_PRICE_PRO_MONTHLY = _get_env_var("STRIPE_PRICE_PRO_MONTHLY")
    STRIPE_PRICE_FOUNDER_ANNUAL = _get_env_var("STRIPE_PRICE_FOUNDER_ANNUAL")
    # Optional: checkout falls back to a product-name search when unset
    STRIPE_PRICE_ELITE_MONTHLY = _get_env_var("STRIPE_PRICE_ELITE_MONTHLY")
    STRIPE_PRICE_STUDIO_MONTHLY = _get_env_var("STRIPE_PRICE_STUDIO_MONTHLY")

    # Frontend
    SITE_URL = _get_env_var("SITE_URL", "http://localhost:5173")
    ALLOWED_ORIGINS = _split_csv(_get_env_var("ALLOWED_ORIGINS"))

    # Sentry Configuration
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = _get_bool_env("SENTRY_ENABLED", "true")
    SENTRY_ENVIRONMENT = _get_env_var("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_RELEASE = _get_env_var("SENTRY_RELEASE", "0.4.0")
    SENTRY_TRACES_SAMPLE_RATE = float(_get_env_var("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Grafana Loki Configuration
    LOKI_ENABLED = _get_bool_env("LOKI_ENABLED", "false")
    LOKI_PUSH_URL = _get_env_var("LOKI_PUSH_URL", "http://loki:3100/loki/api/v1/push")

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "STRIPE_SECRET_KEY=sk_live_or_test_key\n"
                "STRIPE_WEBHOOK_SECRET=whsec_signing_secret"
            )

        return True

    @classmethod
    def missing_stripe_prices(cls) -> dict[str, bool]:
        """Report which of the required price ids are absent."""
        return {
            "STRIPE_PRICE_STARTER_MONTHLY": not cls.STRIPE_PRICE_STARTER_MONTHLY,
            "STRIPE_PRICE_PRO_MONTHLY": not cls.STRIPE_PRICE_PRO_MONTHLY,
            "STRIPE_PRICE_FOUNDER_ANNUAL": not cls.STRIPE_PRICE_FOUNDER_ANNUAL,
        }

    @classmethod
    def site_origin(cls) -> str | None:
        from urllib.parse import urlparse

        if not cls.SITE_URL:
            return None
        parsed = urlparse(cls.SITE_URL)
        if not parsed.scheme or not parsed.netloc:
            return None
        return f"{parsed.scheme}://{parsed.netloc}"

    @classmethod
    def cors_origins(cls) -> list[str]:
        """Allowed browser origins: local dev servers, ALLOWED_ORIGINS and the site origin."""
        origins = [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
            *cls.ALLOWED_ORIGINS,
        ]
        site_origin = cls.site_origin()
        if site_origin:
            origins.append(site_origin)
        # dict.fromkeys keeps first-seen order
        return list(dict.fromkeys(origins))
