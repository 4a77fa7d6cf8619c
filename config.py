from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./line_service.db"

    # Telephony (numbers in the pool are Twilio numbers)
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_DEFAULT_AREA_CODE: str = ""

    # Voice routing provider
    VAPI_API_KEY: str = ""
    VAPI_API_BASE: str = "https://api.vapi.ai"
    VAPI_SERVER_URL: str = ""
    VAPI_SERVER_SECRET: str = ""

    # Billing
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_ID: str = ""
    STRIPE_API_VERSION: str = "2024-06-20"
    SITE_URL: str = "http://localhost:3000"
    ACCOUNT_METADATA_KEY: str = "account_id"

    # Audit log (optional)
    AIRTABLE_API_KEY: str = ""
    AIRTABLE_BASE_ID: str = ""
    AIRTABLE_AUDIT_LOG_TABLE: str = "Audit Log"

    # Tuning
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    CLAIM_SELECTION_ATTEMPTS: int = 3
    GRACE_PERIOD_SECONDS: float = 3.0
    INGEST_MAX_ATTEMPTS: int = 3
    INGEST_BASE_DELAY_SECONDS: float = 2.0
    INGEST_MAX_DELAY_SECONDS: float = 8.0
    SWEEP_MAX_WORKERS: int = 4
    SWEEP_INTERVAL_SECONDS: int = 0
    REACTIVATION_GRACE_DAYS: int = 30

    class Config:
        env_file = ".env"

settings = Settings()
