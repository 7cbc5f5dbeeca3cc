import sys

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Defines the application's configuration settings.

    Pydantic will automatically read from the environment or a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    DATABASE_URL: str

    SUPABASE_URL: str

    SUPABASE_KEY: str

    WHATSAPP_API_URL: str

    WHATSAPP_API_KEY: str

    WHATSAPP_INSTANCE_PREFIX: str = "secretaria"

    WHATSAPP_WEBHOOK_URL: str = ""

    WHATSAPP_POLL_INTERVAL: float = 5.0

    WHATSAPP_POLL_RETRY_INTERVAL: float = 10.0

    WHATSAPP_POLL_TIMEOUT: float = 600.0

    WEBHOOK_SECRET: str = ""

    GOOGLE_CLIENT_ID: str = ""

    GOOGLE_CLIENT_SECRET: str = ""

    GOOGLE_REDIRECT_URI: str = ""

    ENCRYPTION_KEY: str

    CORS_ORIGINS: str = "*"

    LOGGING_LEVEL: str = "INFO"


try:
    settings = Settings()

except Exception as e:
    print(f"FATAL: Failed to load application settings: {e}", file=sys.stderr)
    sys.exit("Failed to load configuration. Exiting.")
