"""
Central feature flags. Process-level switches for external dependencies.

Set via environment variables (prefix FF_) or .env file.
The per-feature runtime toggles (skills / summarization / memory enabled)
are NOT here: administrators flip those through the settings API.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Auth ─────────────────────────────────────────────────────────
    use_auth: bool = Field(default=True, alias="FF_USE_AUTH")
    # ON  → JWT validated against the identity provider JWKS.
    # OFF → Dev user injected (user_id=1, admin). No token needed.

    # ── LLM Provider ─────────────────────────────────────────────────
    llm_provider: str = Field(default="openai", alias="FF_LLM_PROVIDER")
    # "openai"  → Direct OpenAI. Needs OPENAI_API_KEY.
    # "litellm" → LiteLLM proxy. Needs LITELLM_BASE_URL + LITELLM_API_KEY.

    # ── Skills ───────────────────────────────────────────────────────
    seed_core_skills: bool = Field(default=True, alias="FF_SEED_CORE_SKILLS")
    # ON  → Core skills from config/skills.json are inserted on startup.
    # OFF → Nothing seeded. Admins create skills by hand.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()
