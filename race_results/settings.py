from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Security
    RACE_ADMIN_EMAIL: str = "admin@example.com"
    RACE_ADMIN_PASSWORD: str = "change-me"
    RACE_SECRET_KEY: str = "dev-secret-change-me"
    RACE_COOKIE_SECURE: bool = False  # set True behind HTTPS

    # Database
    RACE_DB_URL: str = "sqlite:///./race_results.db"

    # Logging
    RACE_LOG_LEVEL: str = "INFO"

settings = Settings()
