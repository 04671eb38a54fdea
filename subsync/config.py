import os


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_API_TIMEOUT_SECONDS = int(os.environ.get("STRIPE_API_TIMEOUT_SECONDS", 20))

    # --- Webhook verification ---
    # Signature timestamps outside this window are rejected as replays.
    WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("WEBHOOK_TOLERANCE_SECONDS", 300))
    # Older events are only logged, never rejected.
    WEBHOOK_MAX_EVENT_AGE_SECONDS = int(
        os.environ.get("WEBHOOK_MAX_EVENT_AGE_SECONDS", 600)
    )
    PROCESSED_EVENT_RETENTION_DAYS = int(
        os.environ.get("PROCESSED_EVENT_RETENTION_DAYS", 30)
    )

    # --- Payment recovery ---
    PAYMENT_FAILURE_UNPAID_THRESHOLD = int(
        os.environ.get("PAYMENT_FAILURE_UNPAID_THRESHOLD", 3)
    )

    # --- Operator endpoints ---
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, fake Stripe credentials."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    WEBHOOK_TOLERANCE_SECONDS = 300
    WEBHOOK_MAX_EVENT_AGE_SECONDS = 600
    PAYMENT_FAILURE_UNPAID_THRESHOLD = 3
    ADMIN_API_TOKEN = "admin-token-test"
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
