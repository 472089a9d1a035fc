from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated, e.g. "https://app.example.com,https://admin.example.com"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    # Response cache
    cache_capacity: int = 200
    cache_ttl_seconds: float = 3600.0
    cache_fuzzy_threshold: float = 0.70
    cache_fuzzy_window: int = 200  # chars of cached payload scanned by the fuzzy matcher

    # Credential pools
    credential_max_errors: int = 5  # consecutive errors before a key is disabled
    credential_default_retry_after: float = 60.0

    # Local runner (Ollama)
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "deepseek-coder:6.7b"
    ollama_timeout_seconds: float = 180.0

    # Cloud providers
    cloud_timeout_seconds: float = 60.0
    groq_model: str = "llama-3.3-70b-versatile"
    huggingface_model: str = "Qwen/Qwen2.5-Coder-7B-Instruct"
    openai_model: str = "gpt-4o"
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    gemini_model: str = "gemini-1.5-pro"
    deepseek_model: str = "deepseek-coder"
    deepseek_base_url: str = "https://api.deepseek.com/v1"

    # Silent audit
    audit_enabled: bool = False
    audit_timeout_seconds: float = 60.0
    opencode_binary: str = "opencode"
    opencode_model: str = ""

    # API
    codegen_rate_limit: str = "20/minute"
    max_prompt_length: int = 2000


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.cache_capacity < 1:
        errors.append("CACHE_CAPACITY must be at least 1")

    if not 0.0 < settings.cache_fuzzy_threshold <= 1.0:
        errors.append("CACHE_FUZZY_THRESHOLD must be in (0, 1]")

    if settings.credential_max_errors < 1:
        errors.append("CREDENTIAL_MAX_ERRORS must be at least 1")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
