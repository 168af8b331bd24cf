from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "env_file": "../.env",
        "extra": "ignore",
        "env_prefix": "",
        "case_sensitive": False,
    }

    # AI APIs
    google_ai_api_key: str = ""
    anthropic_api_key: str = ""
    analysis_model: str = "gemini-2.5-flash"
    render_model: str = "gemini-2.5-flash-image"
    claude_audit_model: str = "claude-sonnet-4-5-20250929"
    audit_backend: str = "gemini"  # "gemini" or "claude"
    model_timeout_seconds: float = 150.0

    # Render loop tuning (empirical, not derived)
    render_temperature: float = 0.4
    convergence_threshold: float = 0.75
    max_initial_attempts: int = 3
    max_refine_attempts: int = 2

    # Retry budgets per call site: (retries, base delay seconds)
    survey_retries: int = 3
    survey_base_delay: float = 4.0
    lighting_retries: int = 2
    lighting_base_delay: float = 2.0
    render_retries: int = 3
    render_base_delay: float = 5.0
    audit_retries: int = 3
    audit_base_delay: float = 2.0
    backoff_step_seconds: float = 3.0

    # Uploads
    max_photo_bytes: int = 20 * 1024 * 1024

    # Sessions idle longer than this are evicted on the next API access
    session_ttl_seconds: float = 3600.0

    # App
    environment: str = "development"
    log_level: str = "INFO"
    log_file: str = ""


settings = Settings()
