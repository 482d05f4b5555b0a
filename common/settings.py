import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    app_url: str = os.getenv("APP_URL", "http://localhost:8000")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@example.com")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "merchant-ledger")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    # DATABASE_URL wins over the MySQL parts (tests point it at sqlite)
    database_url: str = os.getenv("DATABASE_URL", "")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "ledger")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    events_enabled: bool = os.getenv("EVENTS_ENABLED", "false").lower() == "true"

    # "mock" or "live"; resolved once when the gateways are built
    gateway_mode: str = os.getenv("GATEWAY_MODE", "mock")
    gateway_timeout_seconds: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))
    mock_gateway_success_rate: float = float(os.getenv("MOCK_GATEWAY_SUCCESS_RATE", "0.9"))
    mock_gateway_latency_seconds: float = float(os.getenv("MOCK_GATEWAY_LATENCY_SECONDS", "1.0"))

    mtn_api_base_url: str = os.getenv("MTN_API_BASE_URL", "https://sandbox.momodeveloper.mtn.com")
    mtn_api_key: str = os.getenv("MTN_API_KEY", "")
    mtn_api_secret: str = os.getenv("MTN_API_SECRET", "")
    mtn_subscription_key: str = os.getenv("MTN_SUBSCRIPTION_KEY", "")
    mtn_target_environment: str = os.getenv("MTN_TARGET_ENVIRONMENT", "sandbox")

    digicash_api_base_url: str = os.getenv("DIGICASH_API_BASE_URL", "https://api.digicash.example")
    digicash_api_key: str = os.getenv("DIGICASH_API_KEY", "")
    digicash_api_secret: str = os.getenv("DIGICASH_API_SECRET", "")
    digicash_merchant_id: str = os.getenv("DIGICASH_MERCHANT_ID", "")

    webhook_timeout_seconds: float = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
    webhook_max_retries: int = int(os.getenv("WEBHOOK_MAX_RETRIES", "3"))
    webhook_retry_delay_seconds: float = float(os.getenv("WEBHOOK_RETRY_DELAY_SECONDS", "1.0"))

    reconcile_interval_seconds: float = float(os.getenv("RECONCILE_INTERVAL_SECONDS", "120"))
    reconcile_min_age_seconds: int = int(os.getenv("RECONCILE_MIN_AGE_SECONDS", "300"))
    reconcile_batch_size: int = int(os.getenv("RECONCILE_BATCH_SIZE", "50"))
    worker_enabled: bool = os.getenv("WORKER_ENABLED", "true").lower() == "true"

    transaction_ttl_hours: int = int(os.getenv("TRANSACTION_TTL_HOURS", "24"))
    max_pending_payouts: int = int(os.getenv("MAX_PENDING_PAYOUTS", "3"))
    min_payout_amount: float = float(os.getenv("MIN_PAYOUT_AMOUNT", "10"))
    payout_verification_threshold: float = float(os.getenv("PAYOUT_VERIFICATION_THRESHOLD", "1000"))

    settings_cache_ttl_seconds: float = float(os.getenv("SETTINGS_CACHE_TTL_SECONDS", "60"))
    unique_view_ttl_seconds: int = int(os.getenv("UNIQUE_VIEW_TTL_SECONDS", "86400"))

settings = Settings()
