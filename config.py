"""
Configuration settings for the Guest Analysis service.
Loads from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    APP_ENV: str = "development"  # "production" switches logs to JSON

    # OpenPhone
    OPENPHONE_API_KEY: str = ""
    OPENPHONE_BASE_URL: str = "https://api.openphone.com/v1"

    # Hostify
    HOSTIFY_API_KEY: str = ""
    HOSTIFY_BASE_URL: str = "https://api-rms.hostify.com"

    # OpenAI
    OPENAI_API_KEY: str = ""
    GUEST_ANALYSIS_MODEL: str = "gpt-4.1"
    GUEST_ANALYSIS_TEMPERATURE: float = 0.3

    # Database
    DATABASE_URL: str = "sqlite:///./guest_analysis.db"

    # Business timezone (used for "today's checkouts" and the daily job)
    TIMEZONE: str = "America/New_York"

    # Phone numbers with exactly 10 digits get this country code
    DEFAULT_COUNTRY_CODE: str = "1"

    # Scheduled analysis
    ENABLE_SCHEDULED_ANALYSIS: bool = True
    GUEST_ANALYSIS_CRON_HOUR: int = 0
    GUEST_ANALYSIS_CRON_MINUTE: int = 15
    ANALYSIS_FRESHNESS_HOURS: int = 24

    # Upstream HTTP
    HTTP_TIMEOUT_SECONDS: float = 30.0
    PAGE_DELAY_SECONDS: float = 0.1  # Small delay between pages to avoid rate limiting

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
