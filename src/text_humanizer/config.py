from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.1.0"
    database_path: str = "data/humanizer.db"
    log_level: str = "INFO"

    humanizer_api_key: str = ""
    humanizer_base_url: str = "https://humanize.undetectable.ai"
    request_timeout_sec: int = 30

    poll_max_attempts: int = 12
    poll_interval_sec: float = 5.0

    min_input_chars: int = 50
    max_input_chars: int = 15000

    rehumanize_charges_credits: bool = False
    default_plan_type: str = "free"
    signup_credits: int = 0

    admin_api_token: str = ""


settings = Settings()
