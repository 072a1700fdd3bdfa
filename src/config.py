from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # API Keys
    anthropic_api_key: str = ""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # LLM
    llm_model: str = "claude-sonnet-4-20250514"
    llm_max_tokens: int = 8192
    llm_max_tool_turns: int = 24

    # Audit pipeline
    audit_evidence_gating: bool = True
    audit_double_check: bool = True
    audit_step_concurrency: int = 3

    # Transcript tools (limits exposed to the model)
    transcript_max_search_results: int = 25
    transcript_max_chunk_fetch: int = 20
    transcript_max_chunk_chars: int = 20_000
    transcript_max_preview_chars: int = 450

    # Messages per timeline chunk when chunks are rebuilt from words
    timeline_chunk_size: int = 10

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except Exception:
        # If .env is missing or unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]


settings = get_settings()
