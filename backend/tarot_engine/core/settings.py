import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    return int(_getenv(name, str(default)) or str(default))


def _getenv_float(name: str, default: float) -> float:
    return float(_getenv(name, str(default)) or str(default))


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./tarot.db") or "sqlite:///./tarot.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.basic_auth_enabled = _getenv_bool(
            "BASIC_AUTH_ENABLED",
            default=(self.environment == "production"),
        )
        self.basic_auth_username = _getenv("BASIC_AUTH_USERNAME")
        self.basic_auth_password = _getenv("BASIC_AUTH_PASSWORD")
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")
        self.cron_secret = _getenv("CRON_SECRET")
        self.user_id_header = _getenv("USER_ID_HEADER", "X-User-Id") or "X-User-Id"
        self.default_locale = (_getenv("DEFAULT_LOCALE", "th") or "th").lower()

        self.openrouter_api_key = _getenv("OPENROUTER_API_KEY")
        self.openrouter_model = _getenv("OPENROUTER_MODEL")
        self.openrouter_site_url = _getenv("OPENROUTER_SITE_URL")
        self.openrouter_app_name = _getenv("OPENROUTER_APP_NAME")

        self.llm_api_key = _getenv("LLM_API_KEY") or self.openrouter_api_key
        self.llm_base_url = _getenv("LLM_BASE_URL") or ("https://openrouter.ai/api/v1" if self.openrouter_api_key else None)
        self.llm_model = _getenv("LLM_MODEL") or self.openrouter_model
        self.llm_temperature = _getenv_float("LLM_TEMPERATURE", 0.7)
        self.llm_concurrency = max(1, _getenv_int("LLM_CONCURRENCY", 10))
        self.llm_max_retries = max(1, _getenv_int("LLM_MAX_RETRIES", 2))
        self.llm_retry_base_s = _getenv_float("LLM_RETRY_BASE_S", 0.7)

        # Optional second provider, used after the main one exhausts its attempts
        self.fallback_llm_api_key = _getenv("FALLBACK_LLM_API_KEY")
        self.fallback_llm_base_url = _getenv("FALLBACK_LLM_BASE_URL") or self.llm_base_url
        self.fallback_llm_model = _getenv("FALLBACK_LLM_MODEL")

        # Generation pipeline
        self.generation_timeout_s = _getenv_float("READING_GENERATION_TIMEOUT_S", 60.0)
        self.generation_max_attempts = max(1, _getenv_int("READING_GENERATION_MAX_ATTEMPTS", 3))
        self.analysis_timeout_s = _getenv_float("READING_ANALYSIS_TIMEOUT_S", 15.0)
        self.question_min_length = _getenv_int("READING_QUESTION_MIN_LENGTH", 10)
        self.question_max_length = _getenv_int("READING_QUESTION_MAX_LENGTH", 180)

        # Worker pool
        self.worker_enabled = _getenv_bool("WORKER_ENABLED", default=True)
        self.worker_concurrency = max(1, _getenv_int("WORKER_CONCURRENCY", 2))
        self.worker_stalled_interval_s = _getenv_float("WORKER_STALLED_INTERVAL_S", 90.0)
        self.worker_max_stalled_count = max(0, _getenv_int("WORKER_MAX_STALLED_COUNT", 1))
        self.worker_max_attempts = max(1, _getenv_int("WORKER_MAX_ATTEMPTS", 3))
        self.worker_retry_delay_s = _getenv_float("WORKER_RETRY_DELAY_S", 2.0)
        self.worker_poll_interval_s = _getenv_float("WORKER_POLL_INTERVAL_S", 30.0)
        self.worker_batch_size = max(1, _getenv_int("WORKER_BATCH_SIZE", 5))
        self.worker_stuck_after_s = _getenv_float("WORKER_STUCK_AFTER_S", 600.0)
        self.failed_retention_days = max(1, _getenv_int("READING_FAILED_RETENTION_DAYS", 7))
        self.cleanup_interval_s = _getenv_float("READING_CLEANUP_INTERVAL_S", 3600.0)

        # Status reporting
        self.estimate_base_s = _getenv_int("READING_ESTIMATE_BASE_S", 60)
        self.estimate_per_job_s = _getenv_int("READING_ESTIMATE_PER_JOB_S", 30)
        self.stream_poll_interval_s = _getenv_float("READING_STREAM_POLL_INTERVAL_S", 1.0)
        self.stream_max_duration_s = _getenv_float("READING_STREAM_MAX_DURATION_S", 300.0)

        # Achievement notifications after a completed reading
        self.achievements_webhook_url = _getenv("ACHIEVEMENTS_WEBHOOK_URL")
        self.achievements_timeout_s = _getenv_float("ACHIEVEMENTS_TIMEOUT_S", 5.0)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def llm_configured(self) -> bool:
        return bool(self.llm_api_key and self.llm_model)

    @property
    def fallback_llm_configured(self) -> bool:
        return bool(self.fallback_llm_api_key and self.fallback_llm_model)

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:3000", "http://localhost:8000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins


settings = Settings()
