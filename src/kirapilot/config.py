"""Application configuration contract."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    app_db: str = Field(alias="APP_DB", default="/tmp/kirapilot.db")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")

    gemini_api_key: str = Field(alias="GEMINI_API_KEY", default="")
    gemini_model: str = Field(alias="GEMINI_MODEL", default="gemini-1.5-flash")
    gemini_base_url: str = Field(
        alias="GEMINI_BASE_URL", default="https://generativelanguage.googleapis.com"
    )
    gemini_timeout_seconds: int = Field(alias="GEMINI_TIMEOUT_SECONDS", default=30)

    local_model_dir: str = Field(alias="LOCAL_MODEL_DIR", default="")
    local_model_repo: str = Field(alias="LOCAL_MODEL_REPO", default="ggml-org/gemma-3-1b-it-GGUF")
    local_model_file: str = Field(alias="LOCAL_MODEL_FILE", default="gemma-3-1b-it-Q4_K_M.gguf")
    local_model_url: str = Field(alias="LOCAL_MODEL_URL", default="")
    local_auto_download: int = Field(alias="LOCAL_AUTO_DOWNLOAD", default=1)
    local_context_size: int = Field(alias="LOCAL_CONTEXT_SIZE", default=4096)
    local_max_prompt_chars: int = Field(alias="LOCAL_MAX_PROMPT_CHARS", default=32000)
    local_threads: int = Field(alias="LOCAL_THREADS", default=0)

    completions_base_url: str = Field(alias="COMPLETIONS_BASE_URL", default="")
    completions_model: str = Field(alias="COMPLETIONS_MODEL", default="gemma-3-1b-it")
    completions_timeout_seconds: int = Field(alias="COMPLETIONS_TIMEOUT_SECONDS", default=120)

    primary_provider: str = Field(alias="PRIMARY_PROVIDER", default="local")
    fallback_providers: str = Field(alias="FALLBACK_PROVIDERS", default="gemini")
    allow_auto_switch: int = Field(alias="ALLOW_AUTO_SWITCH", default=1)
    prefer_local: int = Field(alias="PREFER_LOCAL", default=1)
    max_response_time_ms: int = Field(alias="MAX_RESPONSE_TIME_MS", default=30000)
    max_consecutive_failures: int = Field(alias="MAX_CONSECUTIVE_FAILURES", default=3)
    enable_auto_failover: int = Field(alias="ENABLE_AUTO_FAILOVER", default=1)
    health_check_interval_seconds: int = Field(alias="HEALTH_CHECK_INTERVAL_SECONDS", default=30)
    health_check_timeout_seconds: int = Field(alias="HEALTH_CHECK_TIMEOUT_SECONDS", default=10)
    retry_cooldown_seconds: int = Field(alias="RETRY_COOLDOWN_SECONDS", default=300)

    retry_max_attempts: int = Field(alias="RETRY_MAX_ATTEMPTS", default=3)
    retry_initial_delay_seconds: float = Field(alias="RETRY_INITIAL_DELAY_SECONDS", default=1.0)
    retry_max_delay_seconds: float = Field(alias="RETRY_MAX_DELAY_SECONDS", default=30.0)
    retry_backoff_multiplier: float = Field(alias="RETRY_BACKOFF_MULTIPLIER", default=2.0)
    retry_jitter: int = Field(alias="RETRY_JITTER", default=1)

    circuit_failure_threshold: int = Field(alias="CIRCUIT_FAILURE_THRESHOLD", default=5)
    circuit_recovery_timeout_seconds: float = Field(
        alias="CIRCUIT_RECOVERY_TIMEOUT_SECONDS", default=60.0
    )

    react_max_iterations: int = Field(alias="REACT_MAX_ITERATIONS", default=5)
    react_turn_timeout_seconds: float = Field(alias="REACT_TURN_TIMEOUT_SECONDS", default=60.0)
    react_temperature: float = Field(alias="REACT_TEMPERATURE", default=0.3)
    react_max_tokens: int = Field(alias="REACT_MAX_TOKENS", default=1024)
    react_detailed_logging: int = Field(alias="REACT_DETAILED_LOGGING", default=0)

    interaction_log_enabled: int = Field(alias="INTERACTION_LOG_ENABLED", default=1)
    interaction_log_max_logs: int = Field(alias="INTERACTION_LOG_MAX_LOGS", default=10000)
    interaction_log_retention_days: int = Field(alias="INTERACTION_LOG_RETENTION_DAYS", default=30)
    interaction_log_sensitive: int = Field(alias="INTERACTION_LOG_SENSITIVE", default=0)
    interaction_log_level: str = Field(alias="INTERACTION_LOG_LEVEL", default="info")

    suggest_name_weight: float = Field(alias="SUGGEST_NAME_WEIGHT", default=0.8)
    suggest_keyword_weight: float = Field(alias="SUGGEST_KEYWORD_WEIGHT", default=0.2)
    suggest_trigger_weight: float = Field(alias="SUGGEST_TRIGGER_WEIGHT", default=0.6)
    suggest_recency_weight: float = Field(alias="SUGGEST_RECENCY_WEIGHT", default=0.1)
    suggest_threshold: float = Field(alias="SUGGEST_THRESHOLD", default=0.3)

    default_permissions: str = Field(
        alias="DEFAULT_PERMISSIONS", default="ReadOnly,ModifyTasks,TimerControl"
    )


def split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def validate_settings_for_env(settings: Settings) -> None:
    missing: list[str] = []
    if not 1 <= settings.react_max_iterations <= 10:
        missing.append("REACT_MAX_ITERATIONS(1..10)")
    if settings.max_consecutive_failures < 1:
        missing.append("MAX_CONSECUTIVE_FAILURES(>=1)")
    if settings.retry_max_attempts < 1:
        missing.append("RETRY_MAX_ATTEMPTS(>=1)")
    if settings.interaction_log_level.lower() not in {"debug", "info", "warn", "error"}:
        missing.append("INTERACTION_LOG_LEVEL(debug|info|warn|error)")

    if settings.app_env == "prod":
        required_non_empty = {
            "APP_DB": settings.app_db,
            "PRIMARY_PROVIDER": settings.primary_provider,
            "GEMINI_MODEL": settings.gemini_model,
        }
        for key, value in required_non_empty.items():
            if not value.strip():
                missing.append(key)
        providers = {settings.primary_provider, *split_csv(settings.fallback_providers)}
        if "gemini" in providers and not settings.gemini_api_key.strip():
            missing.append("GEMINI_API_KEY")
        if not settings.app_db.startswith("/"):
            missing.append("APP_DB(absolute path required)")

    if missing:
        keys = ", ".join(sorted(set(missing)))
        raise ValueError(f"invalid configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
