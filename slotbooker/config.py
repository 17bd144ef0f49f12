from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    doinsport_email: str = ""
    doinsport_password: str = ""
    doinsport_base_url: str = "https://api-v3.doinsport.club"
    doinsport_club_id: str = ""
    doinsport_activity_id: str = ""

    stripe_pk: str = ""
    stripe_account: str = ""
    stripe_source_id: str = ""

    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_channel: str = "sms"
    user_phone_number: str = ""

    scheduler_api_key: str = ""
    scheduler_service_account: str = ""

    database_url: str = "sqlite+aiosqlite:///./slotbooker.db"
    public_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    timezone: str = "Europe/Paris"
    advance_days: int = 45
    default_activity: str = "football_5v5"
    playground_names: list[str] = [f"Foot {i}" for i in range(1, 8)]

    tick_interval_seconds: int = 60
    shutdown_deadline_seconds: float = 30.0
    provider_timeout_seconds: float = 15.0
    payment_ready_timeout_seconds: float = 10.0
    payment_confirm_timeout_seconds: float = 15.0

    search_window_minutes: int = 120
    manual_window_start: str = "08:00"
    manual_window_end: str = "23:00"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
