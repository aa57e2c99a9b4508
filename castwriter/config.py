from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Keys
    anthropic_api_key: str = ""
    openai_api_key: str = ""

    # Database
    database_url: str = "sqlite:///data/castwriter.db"

    # LLM providers
    llm_timeout_seconds: float = 120.0
    max_retries: int = 2  # SDK-level retries for transient provider errors

    # Orchestration
    stage_timeout_seconds: float = 300.0  # per phase, 5 minutes
    max_parallel_stages: int = 5
    preprocess_threshold_tokens: int = 8000

    # Shared reference content (voice guidelines, podcast info, host profile)
    evergreen_path: str = "data/evergreen.yaml"

    # Reports & Logs
    reports_dir: str = "data/reports"
    logs_dir: str = "data/logs"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @field_validator("llm_timeout_seconds", "stage_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("max_parallel_stages")
    @classmethod
    def _at_least_one_worker(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_parallel_stages must be at least 1")
        return v

    @field_validator("max_retries", "preprocess_threshold_tokens")
    @classmethod
    def _not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v


def get_settings() -> Settings:
    return Settings()
