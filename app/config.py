# app/config.py
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    database_url: str = Field(..., validation_alias="DATABASE_URL")
    embedding_dim: int = Field(384, validation_alias="EMBEDDING_DIM")
    embedding_model: str = Field(
        "sentence-transformers/all-MiniLM-L6-v2", validation_alias="EMBEDDING_MODEL"
    )

    openai_api_key: str | None = Field(None, validation_alias="OPENAI_API_KEY")
    openai_base_url: str | None = Field(None, validation_alias="OPENAI_BASE_URL")
    llm_model: str = Field("llama-3.3-70b-versatile", validation_alias="LLM_MODEL")
    llm_temperature: float = Field(0.2, validation_alias="LLM_TEMPERATURE")
    max_tool_iterations: int = Field(8, validation_alias="MAX_TOOL_ITERATIONS")

    # Working-set windows used when hydrating a turn
    active_episode_days: int = Field(14, validation_alias="ACTIVE_EPISODE_DAYS")
    negative_finding_days: int = Field(7, validation_alias="NEGATIVE_FINDING_DAYS")

    # Snapshot-diff fallback for change reconciliation
    change_window_seconds: int = Field(30, validation_alias="CHANGE_WINDOW_SECONDS")
    diff_fallback_enabled: bool = Field(True, validation_alias="DIFF_FALLBACK_ENABLED")

    # Conversation history handed to the model
    max_context_messages: int = Field(0, validation_alias="MAX_CONTEXT_MESSAGES")
    cross_conversation_search: bool = Field(
        False, validation_alias="CROSS_CONVERSATION_SEARCH"
    )
    max_cross_conversation_results: int = Field(
        5, validation_alias="MAX_CROSS_CONVERSATION_RESULTS"
    )
    cross_conversation_threshold: int = Field(
        5, validation_alias="CROSS_CONVERSATION_THRESHOLD"
    )
    min_similarity_score: float = Field(0.7, validation_alias="MIN_SIMILARITY_SCORE")
    index_messages: bool = Field(True, validation_alias="INDEX_MESSAGES")

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    log_json: bool = Field(True, validation_alias="LOG_JSON")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
