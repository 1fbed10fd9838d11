from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    openrouter_api_key: str = ""
    telegram_bot_token: str = ""
    db_path: str = "chatledger.json"

    # Layer 3
    llm_model: str = "google/gemini-2.0-flash-exp"
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_timeout_seconds: float = 15.0
    llm_daily_limit: int = 50
    min_execute_confidence: float = 0.5

    # Layer 2
    cache_similarity_threshold: float = 0.85
    cache_write_min_confidence: float = 0.8

    # Duplicate detection
    duplicate_window_hours: int = 24
    duplicate_max_candidates: int = 50
    duplicate_amount_tolerance_percent: float = 5.0
    duplicate_warn_threshold: float = 0.7
    duplicate_block_threshold: float = 0.95

    # Pending state / undo
    pending_ttl_seconds: float = 300.0
    credit_mode_ttl_seconds: float = 600.0
    installment_ttl_seconds: float = 600.0
    sweep_interval_seconds: float = 60.0
    undo_ttl_seconds: float = 300.0
    undo_max_depth: int = 3


@lru_cache
def get_settings() -> Settings:
    return Settings()
