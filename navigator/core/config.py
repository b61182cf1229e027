from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "navigator"
    postgres_password: str = "changeme"
    postgres_db: str = "md_navigator"

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def postgres_url_sync(self) -> str:
        """For Alembic migrations (sync driver)."""
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://localhost:6379/0"

    # Auth
    jwt_secret_key: str = "change-this-to-a-random-string"
    jwt_access_token_expire_minutes: int = 30
    jwt_refresh_token_expire_days: int = 30
    jwt_algorithm: str = "HS256"

    # Encryption for tenant credentials (Twilio auth tokens)
    fernet_key: str = ""

    # IRS Modernized e-File
    irs_mock_mode: bool = True
    irs_mef_endpoint: str = "https://la.www4.irs.gov/a2a/mef/services"
    irs_efin: str = ""
    irs_software_id: str = "MDTAXNAV2025"
    irs_software_version: str = "1.0.0"
    irs_preparer_ptin: str = ""
    irs_preparer_ein: str = ""
    irs_timeout_seconds: float = 30.0
    irs_circuit_breaker_threshold: int = 5
    irs_circuit_breaker_cooldown_seconds: float = 300.0

    # Maryland iFile
    maryland_ifile_environment: str = "mock"  # mock / test / production
    maryland_ifile_client_id: str = ""
    maryland_ifile_client_secret: str = ""
    maryland_ifile_cert_path: str = ""
    maryland_ifile_api_base_url: str = ""  # empty = derived from environment

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_api_url: str = "https://api.twilio.com/2010-04-01"

    # E-file queue processing
    efile_worker_autostart: bool = False  # start the in-process poller on app startup
    federal_poll_interval_seconds: float = 30.0
    maryland_poll_interval_seconds: float = 30.0
    maryland_peak_poll_interval_seconds: float = 15.0

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated, e.g. "https://navigator.maryland.gov"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.jwt_secret_key in ("change-this-to-a-random-string", ""):
        errors.append("JWT_SECRET_KEY must be set to a secure random value")

    if len(settings.jwt_secret_key) < 32:
        errors.append("JWT_SECRET_KEY must be at least 32 characters")

    if not settings.fernet_key:
        errors.append(
            'FERNET_KEY must be set (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")'
        )

    if settings.maryland_ifile_environment not in ("mock", "test", "production"):
        errors.append("MARYLAND_IFILE_ENVIRONMENT must be one of: mock, test, production")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if not settings.irs_mock_mode and not settings.irs_efin:
            errors.append("IRS_EFIN must be set when IRS_MOCK_MODE is false")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
