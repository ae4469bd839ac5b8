from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Provider credentials (empty = provider not configured)
    openai_api_key: str = ""
    google_api_key: str = ""
    openrouter_api_key: str = ""
    anthropic_api_key: str = ""
    mistral_api_key: str = ""

    # Local Ollama server
    ollama_enabled: bool = False
    ollama_base_url: str = "http://localhost:11434"
    ollama_installed_models: str = ""  # comma-separated, e.g. "qwen3:8b,mistral:latest"

    # Provider endpoints
    openai_api_base: str = "https://api.openai.com/v1"
    google_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    openrouter_api_base: str = "https://openrouter.ai/api/v1"
    anthropic_api_base: str = "https://api.anthropic.com/v1"
    mistral_api_base: str = "https://api.mistral.ai/v1"

    # OpenRouter attribution headers
    openrouter_referer: str = "http://localhost"
    openrouter_title: str = "Bulletin Assistant"

    # Generation
    current_ai_model: str = "gemini-2.5-flash"
    enable_api_fallback: bool = True

    # Timeouts
    api_call_timeout_ms: int = 25_000
    api_call_timeout_ollama_ms: int = 120_000

    # Adaptive rate limiting
    default_delay_ms: int = 6_000
    generation_estimate_ms: int = 2_000  # Rough per-item generation time for estimates
    success_streak_threshold: int = 3
    max_delay_multiplier: int = 5
    backoff_multiplier: int = 2

    # Rate state persistence: "memory", "file" or "redis"
    rate_state_backend: str = "file"
    rate_state_path: str = ".bulletin_ai/rate_state.json"

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    @property
    def ollama_models(self) -> list[str]:
        return [m.strip() for m in self.ollama_installed_models.split(",") if m.strip()]

    @property
    def provider_api_keys(self) -> dict[str, str]:
        """API keys indexed by provider id."""
        return {
            "openai": self.openai_api_key,
            "google": self.google_api_key,
            "openrouter": self.openrouter_api_key,
            "anthropic": self.anthropic_api_key,
            "mistral": self.mistral_api_key,
        }

    @property
    def provider_api_bases(self) -> dict[str, str]:
        return {
            "openai": self.openai_api_base,
            "google": self.google_api_base,
            "openrouter": self.openrouter_api_base,
            "anthropic": self.anthropic_api_base,
            "mistral": self.mistral_api_base,
            "ollama": self.ollama_base_url,
        }


settings = Settings()


def validate_settings() -> None:
    """Validate critical settings. Called by entry points before generating."""
    errors: list[str] = []

    if settings.rate_state_backend not in ("memory", "file", "redis"):
        errors.append("RATE_STATE_BACKEND must be one of: memory, file, redis")

    if settings.success_streak_threshold < 1:
        errors.append("SUCCESS_STREAK_THRESHOLD must be at least 1")

    if settings.max_delay_multiplier < 1 or settings.backoff_multiplier < 1:
        errors.append("MAX_DELAY_MULTIPLIER and BACKOFF_MULTIPLIER must be at least 1")

    if settings.api_call_timeout_ms <= 0 or settings.api_call_timeout_ollama_ms <= 0:
        errors.append("API call timeouts must be positive")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
