from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Query Orchestrator API"
    app_env: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    api_v1_prefix: str = "/api/v1"
    allowed_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000"]
    )

    database_url: str = "sqlite:///./query_orchestrator.db"
    db_pool_pre_ping: bool = True
    db_pool_recycle_seconds: int = 300
    db_pool_size: int = 5
    db_max_overflow: int = 10

    # Primary LLM provider (Gemini REST)
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_max_output_tokens: int = 1024
    gemini_temperature: float = 0.2
    gemini_timeout_seconds: int = 60

    # Fallback LLM provider (any OpenAI-compatible chat completions endpoint)
    fallback_llm_base_url: str = "https://api.openai.com/v1"
    fallback_llm_api_key: str = ""
    fallback_llm_model: str = "gpt-4o-mini"
    fallback_llm_timeout_seconds: int = 60

    embedding_model_name: str = "text-embedding-004"
    embedding_timeout_seconds: int = 30

    # Result/plan cache
    cache_max_entries: int = 1000
    cache_sweep_interval_seconds: float = 120.0
    cache_short_ttl_seconds: float = 300.0
    cache_plan_ttl_seconds: float = 600.0
    cache_analysis_ttl_seconds: float = 3600.0

    # Planner
    planner_llm_threshold: float = 0.75
    planner_base_estimate_ms: int = 2000
    planner_medium_surcharge_ms: int = 3000
    planner_complex_surcharge_ms: int = 6000
    planner_per_source_ms: int = 1000
    planner_cross_validation_ms: int = 2000
    planner_hallucination_ms: int = 3000
    planner_max_estimate_ms: int = 15000

    # Pipeline executor
    stage_timeout_seconds: float = 30.0
    request_deadline_seconds: float = 90.0

    # Sources
    source_min_relevance: float = 0.3
    source_max_selected: int = 10
    source_default_relevance: float = 0.1
    structured_row_limit: int = 100
    document_passage_limit: int = 8
    document_min_coverage: float = 0.25
    external_timeout_seconds: int = 20

    # Agents / validation
    agent_llm_threshold: float = 0.8
    answer_confidence_floor: float = 0.3
    history_max_messages: int = 12

    telemetry_enabled: bool = True

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
