from typing import Dict, Literal
from pydantic_settings import BaseSettings
from dotenv import load_dotenv


load_dotenv()


# Roles not listed here have no minimum age.
DEFAULT_ROLE_AGE_REQUIREMENTS: Dict[str, int] = {
    "rider": 0,
    "owner": 0,
    "trainer": 18,
    "coach": 18,
    "guardian": 18,
    "other": 0,
}


class Settings(BaseSettings):
    app_name: str = "SignatureHub API"
    debug: bool = False
    database_url: str = "sqlite:///./signaturehub.db"
    auto_create_tables: bool = True
    host: str = "127.0.0.1"
    port: int = 8000
    allowed_hosts: str = ""
    public_url: str = "http://localhost:8000"
    log_file: str = "logs/application.log"

    # Demo mode skips real email/SMS delivery and issues a fixed code.
    demo_mode: bool = True
    demo_code: str = "123456"

    # Verification codes
    code_length: int = 6
    code_expiry_minutes: int = 5
    max_code_attempts: int = 3

    # Abuse prevention on code issuance
    verify_ip_limit: int = 10
    verify_ip_window_minutes: int = 15
    destination_limit: int = 5
    destination_window_minutes: int = 60
    token_code_limit: int = 10

    # Per client address budgets for whole routes
    submit_ip_limit: int = 20
    submit_ip_window_minutes: int = 60
    api_rate_limit: int = 100
    api_rate_window_seconds: int = 60

    # Requests
    request_expiry_days: int = 7
    decline_reason_max_length: int = 500
    expiry_check_interval_minutes: int = 5
    role_age_requirements: Dict[str, int] = DEFAULT_ROLE_AGE_REQUIREMENTS

    # Email
    smtp_host: str = "smtp.example.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_starttls: bool = True
    email_from: str = "signatures@example.com"

    # SMS (Twilio-compatible REST API)
    sms_provider: Literal["twilio", "log"] = "twilio"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"

    webhook_timeout_seconds: float = 10.0


settings = Settings()
