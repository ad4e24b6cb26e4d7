from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "bp_user"
    postgres_password: str = "changeme"
    postgres_db: str = "brand_pulse"
    database_url: str = ""  # full SQLAlchemy URL, overrides the postgres_* fields when set

    @property
    def postgres_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://localhost:6379/0"

    # Model providers
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_utility_model: str = "gemini-2.5-flash-lite"  # classification, brand grouping
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-2024-11-20"
    model_temperature: float = 0.1
    model_max_output_tokens: int = 16000
    provider_timeout_seconds: float = 300.0

    # Pipeline
    question_batch_size: int = 15  # in-flight questions per batch
    classifier_batch_size: int = 100
    classifier_max_retries: int = 2
    classifier_base_retry_delay: float = 2.0
    classifier_timeout_seconds: float = 60.0
    enable_brand_grouping: bool = True
    reputation_llm_extraction: bool = False  # keyword extraction keeps replays deterministic
    dimension_llm_classification: bool = False  # same for pros/cons dimensions
    enable_collaboration_recommendations: bool = True
    collaboration_limit: int = 5  # top Critical/Strategic opportunities
    youtube_metadata_enabled: bool = True  # oEmbed channel lookup for video citations
    youtube_metadata_timeout_seconds: float = 5.0
    youtube_metadata_concurrency: int = 5
    progress_queue_size: int = 100
    stuck_report_minutes: int = 30
    stuck_sweep_interval_minutes: int = 10
    analysis_time_limit_seconds: int = 4 * 3600

    # Scoring thresholds
    min_source_citations: int = 3
    min_source_impact: float = 0.15
    min_competitive_impact: float = 0.25
    min_reputation_severity: float = 0.3
    competitive_loss_gap_penalty: int = 5
    unranked_gap_penalty: int = 5
    low_confidence_authority: float = 0.30

    # App
    app_env: str = "development"
    app_debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Metrics
    metrics_port: int = 0  # worker /metrics exporter, 0 disables it

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on worker startup in non-test environments."""
    errors: list[str] = []

    if not settings.gemini_api_key:
        errors.append("GEMINI_API_KEY must be set")
    if not settings.openai_api_key:
        errors.append("OPENAI_API_KEY must be set")

    if settings.question_batch_size < 1:
        errors.append("QUESTION_BATCH_SIZE must be at least 1")
    if settings.progress_queue_size < 1:
        errors.append("PROGRESS_QUEUE_SIZE must be at least 1")

    if settings.app_env == "production":
        if settings.postgres_password in ("changeme", ""):
            errors.append("POSTGRES_PASSWORD must be changed in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
